"""
Custom exception classes for the FREEGHOST identity core.

This module defines the error taxonomy of the core. Every error carries a
context dictionary and an error code so that the structured reason can be
written to the local audit log, while the counterpart service only ever sees
a generic rejection.

Families
--------
InputError
    Caller supplied malformed input. Always recoverable by retrying with
    corrected input.
CryptoError
    Signature or proof verification failed. Never recovered automatically.
FreshnessError
    Stale or future timestamps, replayed challenges. May prompt a fresh
    challenge.
ConsistencyError
    Key rotation left a partial state. Fatal for the affected identity.
EntropyError
    The randomness source could not deliver. Fatal for the operation.
"""

from typing import Optional, Dict, Any


class FreeghostError(Exception):
    """
    Base exception class for all FREEGHOST core errors.

    Parameters
    ----------
    message : str
        Human-readable error message.
    context : dict, optional
        Additional context information about the error.
    error_code : str, optional
        Unique error code for programmatic handling.
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ) -> None:
        self.message = message
        self.context = context or {}
        self.error_code = error_code
        super().__init__(self.message)

    def __str__(self) -> str:
        """Return a formatted string representation of the error."""
        parts = [self.message]

        if self.error_code:
            parts.append(f"[Error Code: {self.error_code}]")

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            parts.append(f"[Context: {context_str}]")

        return " ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert the exception to a dictionary for structured logging.

        Returns
        -------
        dict
            Dictionary representation of the exception.
        """
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "context": self.context,
        }


# =============================================================================
# Input errors
# =============================================================================


class InputError(FreeghostError):
    """Exception raised when the caller supplied malformed input."""

    def __init__(
        self,
        message: str,
        parameter: Optional[str] = None,
        **kwargs,
    ) -> None:
        context = kwargs.get("context", {})
        if parameter:
            context["parameter"] = parameter

        super().__init__(message, context, kwargs.get("error_code", "INPUT_000"))


class InvalidFeatureDimension(InputError):
    """Exception raised when a feature vector has the wrong shape or size."""

    def __init__(
        self, message: str, kind: str, actual: Any, expected: int, **kwargs
    ) -> None:
        context = {"vector_kind": kind, "actual": actual, "expected": expected}
        super().__init__(
            message, parameter=kind, context=context, error_code="INPUT_001"
        )


class EmptySalt(InputError):
    """Exception raised when a zero-length service salt is supplied."""

    def __init__(self, message: str = "Service salt must not be empty") -> None:
        super().__init__(message, parameter="service_salt", error_code="INPUT_002")


class UnsupportedStatement(InputError):
    """Exception raised for an unknown or malformed statement encoding."""

    def __init__(self, message: str, statement_tag: Optional[int] = None) -> None:
        context = {}
        if statement_tag is not None:
            context["statement_tag"] = statement_tag
        super().__init__(
            message, parameter="statement", context=context, error_code="INPUT_003"
        )


class EncodingError(InputError):
    """Exception raised when a binary encoding cannot be parsed."""

    def __init__(self, message: str, object_type: str = "unknown") -> None:
        super().__init__(
            message,
            parameter="encoding",
            context={"object_type": object_type},
            error_code="INPUT_004",
        )


class PredicateNotSatisfied(InputError):
    """Exception raised when the prover's hidden value does not meet a predicate."""

    def __init__(self, attribute: str, threshold: int) -> None:
        super().__init__(
            f"Hidden attribute '{attribute}' does not satisfy the predicate",
            parameter="statement",
            context={"attribute": attribute, "threshold": threshold},
            error_code="INPUT_005",
        )


class UnknownTemplateHandle(InputError):
    """Exception raised when a template handle is unknown or superseded."""

    def __init__(self, handle_id: str) -> None:
        super().__init__(
            "Template handle is unknown or has been superseded",
            parameter="handle",
            context={"handle_id": handle_id},
            error_code="INPUT_006",
        )


# =============================================================================
# Cryptographic errors
# =============================================================================


class CryptoError(FreeghostError):
    """
    Exception raised for failures of cryptographic operations.

    Crypto errors are surfaced as rejections and never retried: retrying a
    failed verification with the same inputs cannot succeed.
    """

    def __init__(self, message: str, operation: Optional[str] = None, **kwargs) -> None:
        context = kwargs.get("context", {})
        if operation:
            context["cryptographic_operation"] = operation

        super().__init__(message, context, kwargs.get("error_code", "CRYPTO_000"))


class InvalidKeyFormat(CryptoError):
    """Exception raised when key or signature material has the wrong format."""

    def __init__(self, message: str, **kwargs) -> None:
        super().__init__(
            message,
            operation="key_format",
            context=kwargs.get("context", {}),
            error_code="CRYPTO_001",
        )


class SignatureVerificationFailed(CryptoError):
    """Exception raised when a signature does not verify."""

    def __init__(self, message: str = "Signature verification failed", **kwargs) -> None:
        super().__init__(
            message,
            operation="signature_verification",
            context=kwargs.get("context", {}),
            error_code="CRYPTO_002",
        )


class ProofGenerationError(CryptoError):
    """Exception raised during zero-knowledge proof generation."""

    def __init__(self, message: str, statement_kind: str = "unknown", **kwargs) -> None:
        super().__init__(
            message,
            operation="proof_generation",
            context={"statement_kind": statement_kind},
            error_code="CRYPTO_003",
        )


class ProofVerificationError(CryptoError):
    """Exception raised when a zero-knowledge proof is rejected."""

    def __init__(self, message: str = "Proof verification failed", **kwargs) -> None:
        super().__init__(
            message,
            operation="proof_verification",
            context=kwargs.get("context", {}),
            error_code="CRYPTO_004",
        )


class UniquenessViolation(CryptoError):
    """Exception raised when a nullifier was already used for a context."""

    def __init__(self, context_label: str) -> None:
        super().__init__(
            "Identifier already produced a proof for this context",
            operation="uniqueness",
            context={"uniqueness_context": context_label},
            error_code="CRYPTO_005",
        )


class RevokedIdentifier(CryptoError):
    """Exception raised when a proof is bound to a revoked identifier."""

    def __init__(self, identifier_preview: str) -> None:
        super().__init__(
            "Service identifier has been revoked",
            operation="revocation",
            context={"identifier_preview": identifier_preview},
            error_code="CRYPTO_006",
        )


class KeyRetiredError(CryptoError):
    """Exception raised when an artifact references a retired key version."""

    def __init__(self, key_version: int) -> None:
        super().__init__(
            f"Key version {key_version} has been retired",
            operation="unprotect",
            context={"key_version": key_version},
            error_code="CRYPTO_007",
        )


# =============================================================================
# Freshness errors
# =============================================================================


class FreshnessError(FreeghostError):
    """Exception raised when a challenge or response is not fresh."""

    def __init__(self, message: str, **kwargs) -> None:
        super().__init__(
            message, kwargs.get("context", {}), kwargs.get("error_code", "FRESH_000")
        )


class StaleChallenge(FreshnessError):
    """Exception raised when a proof is bound to an expired or consumed challenge."""

    def __init__(self, challenge_id: str, reason: str) -> None:
        super().__init__(
            f"Challenge is stale: {reason}",
            context={"challenge_id": challenge_id, "reason": reason},
            error_code="FRESH_001",
        )


class ReplayError(FreshnessError):
    """Base class for errors raised by the verifier-side replay guard."""


class StaleResponse(ReplayError):
    """Exception raised when a response is older than the freshness window."""

    def __init__(self, message: str = "Response is stale", **kwargs) -> None:
        super().__init__(
            message,
            context=kwargs.get("context", {}),
            error_code=kwargs.get("error_code", "FRESH_002"),
        )


class ReplayedResponse(StaleResponse):
    """Exception raised when a challenge or response pair was already accepted."""

    def __init__(self, challenge_id: str) -> None:
        super().__init__(
            "Response replays an already consumed challenge",
            context={"challenge_id": challenge_id},
            error_code="FRESH_003",
        )


class FutureTimestamp(ReplayError):
    """Exception raised when a response timestamp lies beyond the clock skew."""

    def __init__(self, timestamp: float, now: float, tolerance: float) -> None:
        super().__init__(
            "Response timestamp lies in the future",
            context={"timestamp": timestamp, "now": now, "tolerance": tolerance},
            error_code="FRESH_004",
        )


class BehavioralMismatch(ReplayError):
    """Exception raised when the behavior sample is inconsistent with its class."""

    def __init__(self, message: str, behavior_class: Optional[str], score: Optional[float] = None) -> None:
        super().__init__(
            message,
            context={"behavior_class": behavior_class, "score": score},
            error_code="FRESH_005",
        )


class ReplayCapacityExceeded(ReplayError):
    """Exception raised when the replay set is full of live entries."""

    def __init__(self, capacity: int) -> None:
        super().__init__(
            "Replay guard capacity exhausted",
            context={"capacity": capacity},
            error_code="FRESH_006",
        )


# =============================================================================
# Key management, consistency and entropy errors
# =============================================================================


class KeyManagerError(FreeghostError):
    """Exception raised for key management failures."""

    def __init__(self, message: str, key_version: Optional[int] = None, **kwargs) -> None:
        context = kwargs.get("context", {})
        if key_version is not None:
            context["key_version"] = key_version

        super().__init__(message, context, kwargs.get("error_code", "KEY_000"))


class RotationError(KeyManagerError):
    """Exception raised when a rotation is aborted with the old state intact."""

    def __init__(self, message: str, key_version: Optional[int] = None) -> None:
        super().__init__(message, key_version=key_version, error_code="KEY_001")


class BackupError(KeyManagerError):
    """Exception raised when a key backup cannot be produced or restored."""

    def __init__(self, message: str, key_version: Optional[int] = None) -> None:
        super().__init__(message, key_version=key_version, error_code="KEY_002")


class ConsistencyError(FreeghostError):
    """
    Exception raised when key rotation left, or would leave, a partial state.

    This is fatal: the key manager halts further operations until the
    inconsistency is resolved manually.
    """

    def __init__(self, message: str, **kwargs) -> None:
        super().__init__(message, kwargs.get("context", {}), "CONSISTENCY_001")


class EntropyError(FreeghostError):
    """Exception raised when the randomness source is unusable."""

    def __init__(self, message: str, **kwargs) -> None:
        super().__init__(
            message, kwargs.get("context", {}), kwargs.get("error_code", "ENTROPY_000")
        )


class InsufficientEntropy(EntropyError):
    """Exception raised when the random source cannot supply the required bytes."""

    def __init__(self, message: str, requested: int, received: Optional[int] = None) -> None:
        super().__init__(
            message,
            context={"requested_bytes": requested, "received_bytes": received},
            error_code="ENTROPY_001",
        )


# =============================================================================
# Configuration errors
# =============================================================================


class ConfigurationError(FreeghostError):
    """
    Exception raised for configuration-related errors.

    This includes invalid configuration values or missing required
    environment variables.
    """

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        config_value: Optional[str] = None,
        **kwargs,
    ) -> None:
        context = kwargs.get("context", {})
        if config_key:
            context["config_key"] = config_key
        if config_value:
            context["config_value"] = config_value

        super().__init__(message, context, kwargs.get("error_code", "CONFIG_001"))
