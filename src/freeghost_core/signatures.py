"""
Post-quantum signatures for the FREEGHOST identity core.

`QuantumSignatureModule` wraps the ML-DSA (NIST FIPS 204, formerly
Dilithium) implementations shipped by ``pqcrypto``. The parameter set
follows the security level: ML-DSA-44 for 128, ML-DSA-65 for 192 and
ML-DSA-87 for 256. The underlying PQClean code is constant-time with respect
to the secret key.
"""

import importlib
import time
from types import ModuleType
from typing import Dict

import structlog

from .data_models import KeyPair, PublicKey, SecretKey, SecurityLevel, Signature
from .exceptions import CryptoError, InvalidKeyFormat, SignatureVerificationFailed
from .utils import generate_handle_id, timer

# Initialize structured logger
logger = structlog.get_logger(__name__)


class QuantumSignatureModule:
    """
    Key generation, signing and verification with ML-DSA.

    Parameters
    ----------
    level : SecurityLevel, default=SecurityLevel.LEVEL_128
        Security level of keys produced by `keygen()` when no level is given.

    Examples
    --------
    >>> module = QuantumSignatureModule()
    >>> keypair = module.keygen()
    >>> sig = module.sign(b"message", keypair.secret_key)
    >>> module.verify(b"message", sig, keypair.public_key)
    True
    """

    def __init__(self, level: SecurityLevel = SecurityLevel.LEVEL_128) -> None:
        self.level = level
        self._schemes: Dict[SecurityLevel, ModuleType] = {}

        logger.info(
            "QuantumSignatureModule initialized",
            level=level.bits,
            scheme=level.signature_scheme,
        )

    def _scheme(self, level: SecurityLevel) -> ModuleType:
        scheme = self._schemes.get(level)
        if scheme is None:
            scheme = importlib.import_module(f"pqcrypto.sign.{level.signature_scheme}")
            self._schemes[level] = scheme
        return scheme

    @timer
    def keygen(self, level: SecurityLevel = None) -> KeyPair:
        """
        Generate a fresh ML-DSA key pair.

        Parameters
        ----------
        level : SecurityLevel, optional
            Parameter set to use. Defaults to the module's level.

        Returns
        -------
        KeyPair
            New key pair tagged with its level.

        Raises
        ------
        CryptoError
            If the underlying implementation fails.
        """
        level = level or self.level
        try:
            public_key, secret_key = self._scheme(level).generate_keypair()
        except Exception as e:
            raise CryptoError(
                f"ML-DSA key generation failed: {e}", operation="keygen"
            ) from e

        keypair = KeyPair(
            public_key=PublicKey(level, bytes(public_key)),
            secret_key=SecretKey(level, secret_key),
            key_id=generate_handle_id("key"),
            created_at=time.time(),
        )
        self._check_public_key(keypair.public_key)
        self._check_secret_key(keypair.secret_key)

        logger.info(
            "Signing key pair generated",
            key_id=keypair.key_id,
            scheme=level.signature_scheme,
            fingerprint=keypair.public_key.fingerprint(),
        )
        return keypair

    def sign(self, message: bytes, secret_key: SecretKey) -> Signature:
        """
        Sign a message.

        Raises
        ------
        InvalidKeyFormat
            If the secret key length does not match its parameter set.
        CryptoError
            If signing fails inside the library.
        """
        self._check_secret_key(secret_key)
        try:
            value = self._scheme(secret_key.level).sign(bytes(secret_key.data), bytes(message))
        except Exception as e:
            raise CryptoError(f"ML-DSA signing failed: {e}", operation="sign") from e
        return Signature(secret_key.level, bytes(value))

    def verify(self, message: bytes, signature: Signature, public_key: PublicKey) -> bool:
        """
        Verify a signature.

        Returns
        -------
        bool
            True for a valid signature, False otherwise.

        Raises
        ------
        InvalidKeyFormat
            If the key or signature is malformed for its level, or the two
            belong to different levels.
        """
        self._check_public_key(public_key)
        if signature.level is not public_key.level:
            raise InvalidKeyFormat(
                "Signature and public key belong to different security levels",
                context={
                    "signature_level": signature.level.bits,
                    "key_level": public_key.level.bits,
                },
            )
        expected = public_key.level.signature_sizes[2]
        if len(signature.value) != expected:
            raise InvalidKeyFormat(
                "Signature has the wrong length",
                context={"expected": expected, "actual": len(signature.value)},
            )

        try:
            result = self._scheme(public_key.level).verify(
                public_key.data, bytes(message), signature.value
            )
        except ValueError:
            return False
        # Older pqcrypto releases return None on success and raise on failure
        return result is not False

    def verify_or_raise(self, message: bytes, signature: Signature, public_key: PublicKey) -> None:
        """Verify a signature, raising `SignatureVerificationFailed` on mismatch."""
        if not self.verify(message, signature, public_key):
            logger.warning(
                "Signature verification failed",
                key_fingerprint=public_key.fingerprint(),
            )
            raise SignatureVerificationFailed(
                context={"key_fingerprint": public_key.fingerprint()}
            )

    @staticmethod
    def _check_public_key(public_key: PublicKey) -> None:
        expected = public_key.level.signature_sizes[0]
        if len(public_key.data) != expected:
            raise InvalidKeyFormat(
                "Public key has the wrong length",
                context={"expected": expected, "actual": len(public_key.data)},
            )

    @staticmethod
    def _check_secret_key(secret_key: SecretKey) -> None:
        expected = secret_key.level.signature_sizes[1]
        if len(secret_key.data) != expected:
            raise InvalidKeyFormat(
                "Secret key has the wrong length",
                context={"expected": expected, "actual": len(secret_key.data)},
            )
