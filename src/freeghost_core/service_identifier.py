"""
Per-service identifier derivation.

For a template ``T`` and a service salt ``S`` the deriver computes a
service secret ``x_s = HKDF-SHA512(ikm=T, salt=S) mod q``, its public element
``Y_s = g^x_s`` in the proof group, and the identifier
``ID_s = SHA3-256(tag || Y_s)``. The identifier is a deterministic function
of ``(T, S)``; for distinct salts the HKDF outputs are independent
pseudorandom values, so identifiers of one person at two services are
unlinkable without ``T``. Keeping ``x_s`` as a discrete log lets the proof
engine show possession of ``T`` behind ``ID_s`` without revealing it.
"""

import hashlib
from dataclasses import dataclass

import structlog
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .constants import ATTRIBUTE_BLINDING_INFO, IDENTIFIER_TAG, SERVICE_SECRET_INFO
from .data_models import SecurityLevel, ServiceIdentifier, Template
from .exceptions import EmptySalt, InputError
from .zk_group import PrimeOrderGroup, get_group

# Initialize structured logger
logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ServiceSecret:
    """Service-specific witness of a template: ``x`` with ``Y = g^x``."""

    x: int
    public_element: int
    identifier: ServiceIdentifier

    def __repr__(self) -> str:
        return f"ServiceSecret(identifier={self.identifier.preview()})"


def identifier_from_element(group: PrimeOrderGroup, element: int) -> ServiceIdentifier:
    """Hash a public element to its 32-byte service identifier."""
    digest = hashlib.sha3_256(IDENTIFIER_TAG + group.element_bytes(element)).digest()
    return ServiceIdentifier(digest)


class ServiceIdentifierDeriver:
    """
    Derive unlinkable per-service identifiers from a template.

    Parameters
    ----------
    level : SecurityLevel, default=SecurityLevel.LEVEL_128
        Selects the proof group the service secret lives in.
    """

    def __init__(self, level: SecurityLevel = SecurityLevel.LEVEL_128) -> None:
        self.level = level
        self.group = get_group(level.group_bits)

    def _expand(self, template: Template, service_salt: bytes, info: bytes) -> int:
        if not isinstance(service_salt, (bytes, bytearray)):
            raise InputError("Service salt must be bytes", parameter="service_salt")
        if len(service_salt) == 0:
            raise EmptySalt()
        if template.wiped:
            raise InputError("Template has been wiped", parameter="template")

        # 128 extra bits keep the reduction mod q statistically uniform
        length = (self.group.q.bit_length() + 128 + 7) // 8
        hkdf = HKDF(
            algorithm=hashes.SHA512(),
            length=length,
            salt=bytes(service_salt),
            info=info,
        )
        return int.from_bytes(hkdf.derive(bytes(template.value)), "big") % self.group.q

    def derive_secret(self, template: Template, service_salt: bytes) -> ServiceSecret:
        """
        Derive the service secret, public element and identifier.

        Raises
        ------
        EmptySalt
            If the salt is zero-length.
        """
        x = self._expand(template, service_salt, SERVICE_SECRET_INFO)
        if x == 0:
            # Probability about 2^-3000; the identity element would be public
            raise InputError("Degenerate service secret", parameter="template")
        element = pow(self.group.g, x, self.group.p)
        return ServiceSecret(x, element, identifier_from_element(self.group, element))

    def derive(self, template: Template, service_salt: bytes) -> ServiceIdentifier:
        """
        Derive the identifier of `template` at the service owning `service_salt`.

        Parameters
        ----------
        template : Template
            Template of the enrolled person.
        service_salt : bytes
            Service-unique, non-empty salt.

        Returns
        -------
        ServiceIdentifier
            32-byte pseudonym, identical for identical inputs.

        Raises
        ------
        EmptySalt
            If the salt is zero-length.
        """
        identifier = self.derive_secret(template, service_salt).identifier
        logger.debug(
            "Service identifier derived",
            identifier_preview=identifier.preview(),
            salt_length=len(service_salt),
        )
        return identifier

    def derive_blinding(self, template: Template, service_salt: bytes, attribute: str) -> int:
        """Pedersen blinding factor for one attribute at one service."""
        return self._expand(
            template, service_salt, ATTRIBUTE_BLINDING_INFO + b"/" + attribute.encode("utf-8")
        )
