"""
Constants and protocol parameters for the FREEGHOST identity core.

This module centralizes all fixed protocol parameters. Values that operators
may tune at deployment time are only defaults here; `config.py` reads the
overrides from the environment.
"""

from typing import Dict, Final

# =============================================================================
# Feature Dimensions
# =============================================================================

# Biometric feature vector dimension handed over by the feature extractor
BIOMETRIC_FEATURE_DIM: Final[int] = 16

# Behavioral feature vector dimension handed over by the feature extractor
BEHAVIORAL_FEATURE_DIM: Final[int] = 8

# =============================================================================
# Template Generation (Argon2id)
# =============================================================================

# Length of the fresh random noise R mixed into every template
TEMPLATE_NOISE_LENGTH: Final[int] = 32

# Argon2 time cost parameter (number of iterations)
ARGON2_TIME_COST: Final[int] = 3

# Argon2 memory cost parameter in KB (64 MB)
ARGON2_MEMORY_COST: Final[int] = 65536

# Argon2 parallelism parameter (number of threads)
ARGON2_PARALLELISM: Final[int] = 1

# Length of the template hash T in bytes
TEMPLATE_HASH_LENGTH: Final[int] = 32

# Domain separation salt for the template hash (Argon2 requires >= 8 bytes)
TEMPLATE_DOMAIN_SALT: Final[bytes] = b"freeghost/tmpl/1"

# Number of recent noise fingerprints kept to detect a repeating source
NOISE_HISTORY_SIZE: Final[int] = 4096

# =============================================================================
# Security Levels
# =============================================================================

# ML-DSA parameter set per security level (NIST FIPS 204)
SIGNATURE_SCHEMES: Final[Dict[int, str]] = {
    128: "ml_dsa_44",
    192: "ml_dsa_65",
    256: "ml_dsa_87",
}

# Expected (public key, secret key, signature) sizes per parameter set
SIGNATURE_SIZES: Final[Dict[str, tuple]] = {
    "ml_dsa_44": (1312, 2560, 2420),
    "ml_dsa_65": (1952, 4032, 3309),
    "ml_dsa_87": (2592, 4896, 4627),
}

# Fiat-Shamir transcript hash per security level
TRANSCRIPT_HASHES: Final[Dict[int, str]] = {
    128: "sha3_256",
    192: "sha3_384",
    256: "sha3_512",
}

# RFC 3526 MODP group size per security level
MODP_GROUP_BITS: Final[Dict[int, int]] = {
    128: 3072,
    192: 6144,
    256: 8192,
}

# =============================================================================
# Service Identifiers
# =============================================================================

# Length of a service identifier in bytes
SERVICE_IDENTIFIER_LENGTH: Final[int] = 32

# HKDF info labels
SERVICE_SECRET_INFO: Final[bytes] = b"freeghost/service-secret/v1"
ATTRIBUTE_BLINDING_INFO: Final[bytes] = b"freeghost/attribute-blinding/v1"
IDENTIFIER_TAG: Final[bytes] = b"freeghost/service-id/v1"

# =============================================================================
# Zero-Knowledge Proofs
# =============================================================================

# Proof format version carried in every serialized proof
PROOF_FORMAT_VERSION: Final[int] = 1

# Number of bits in the eligibility range proof (v - threshold in [0, 2^k)).
# 32 covers every attribute value accepted at enrollment.
RANGE_PROOF_BITS: Final[int] = 32

# Nothing-up-my-sleeve labels for derived group generators
PEDERSEN_H_LABEL: Final[bytes] = b"freeghost/pedersen-h/v1"
NULLIFIER_BASE_LABEL: Final[bytes] = b"freeghost/nullifier-base/v1"
TRANSCRIPT_LABEL: Final[bytes] = b"freeghost/zk-transcript/v1"
ATTESTATION_LABEL: Final[bytes] = b"freeghost/attribute-attestation/v1"
RESPONSE_BINDING_LABEL: Final[bytes] = b"freeghost/response-binding/v1"

# =============================================================================
# Challenges and Replay Protection
# =============================================================================

# Length of challenge identifiers and nonces in bytes
CHALLENGE_ID_LENGTH: Final[int] = 16
CHALLENGE_NONCE_LENGTH: Final[int] = 32

# Default challenge lifetime in seconds
DEFAULT_CHALLENGE_TTL: Final[float] = 60.0

# Default freshness window for verification responses in seconds
DEFAULT_REPLAY_WINDOW: Final[float] = 300.0

# Accepted clock skew for response timestamps in seconds
DEFAULT_CLOCK_SKEW: Final[float] = 5.0

# Maximum number of live (identifier, challenge) pairs kept by the guard
DEFAULT_REPLAY_CAPACITY: Final[int] = 100_000

# Minimum cosine similarity between behavior sample and class centroid
DEFAULT_BEHAVIOR_THRESHOLD: Final[float] = 0.85

# =============================================================================
# Key Management
# =============================================================================

# Default rotation period for signing keys in days
DEFAULT_KEY_ROTATION_DAYS: Final[int] = 30

# AES-GCM key and nonce lengths
ARTIFACT_KEY_LENGTH: Final[int] = 32
ARTIFACT_NONCE_LENGTH: Final[int] = 12
ARTIFACT_PROTECTION_INFO: Final[bytes] = b"freeghost/artifact-protection/v1"

# Salt length for deriving a backup encryption key from the backup secret
BACKUP_SALT_LENGTH: Final[int] = 16

# =============================================================================
# Audit
# =============================================================================

# Number of audit events retained in memory
AUDIT_TRAIL_SIZE: Final[int] = 10_000
