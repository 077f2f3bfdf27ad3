"""
FREEGHOST CORE - Privacy-Preserving Identity Core

Turns biometric and behavioral feature vectors into irreversible templates,
derives unlinkable per-service identifiers, and proves statements about a
template in zero knowledge under post-quantum signed keys.

The template never leaves the core: collaborators hold opaque handles, and
verifiers only ever see identifiers, proofs and accept/reject outcomes.
"""

__version__ = "0.1.0"
__author__ = "FREEGHOST Core Team"
__email__ = "core@freeghost.org"
