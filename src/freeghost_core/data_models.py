"""
Data models for the FREEGHOST identity core.

This module defines the data structures flowing through enrollment, proving
and verification. Secret-bearing models (`FeatureVector`, `Template`,
`SecretKey`) keep their material in mutable buffers so it can be wiped once
the owning operation finishes. Every cryptographic object serializes to the
versioned envelope defined in `encoding.py`.
"""

import hashlib
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

import numpy as np

from .constants import (
    MODP_GROUP_BITS,
    RESPONSE_BINDING_LABEL,
    SIGNATURE_SCHEMES,
    SIGNATURE_SIZES,
    TRANSCRIPT_HASHES,
)
from .encoding import BinaryReader, BinaryWriter, ObjectType, decode_envelope, encode_envelope
from .exceptions import EncodingError, InvalidFeatureDimension
from .secure_memory import wipe
from .statements import Statement


class SecurityLevel(Enum):
    """
    Target security level selecting every parameter set of the core.

    Examples
    --------
    >>> SecurityLevel.from_bits(192).signature_scheme
    'ml_dsa_65'
    """

    LEVEL_128 = 128
    LEVEL_192 = 192
    LEVEL_256 = 256

    @classmethod
    def from_bits(cls, bits: int) -> "SecurityLevel":
        for level in cls:
            if level.value == bits:
                return level
        raise ValueError(f"Unsupported security level {bits}; expected 128, 192 or 256")

    @property
    def bits(self) -> int:
        return self.value

    @property
    def signature_scheme(self) -> str:
        return SIGNATURE_SCHEMES[self.value]

    @property
    def signature_sizes(self) -> Tuple[int, int, int]:
        return SIGNATURE_SIZES[self.signature_scheme]

    @property
    def transcript_hash(self) -> str:
        return TRANSCRIPT_HASHES[self.value]

    @property
    def group_bits(self) -> int:
        return MODP_GROUP_BITS[self.value]


def _level_from_header(bits: int, object_type: str) -> SecurityLevel:
    try:
        return SecurityLevel.from_bits(bits)
    except ValueError as e:
        raise EncodingError(str(e), object_type=object_type) from e


# =============================================================================
# Features and templates
# =============================================================================


class FeatureVector:
    """
    Fixed-length ordered sequence of real-valued features.

    Produced by an external feature extractor. The values are copied into a
    private float64 array that is read-only until `wipe()` clears it.

    Parameters
    ----------
    values : Sequence[float] or np.ndarray
        Feature values.
    kind : str
        ``"biometric"`` or ``"behavioral"``.
    """

    def __init__(self, values: Any, kind: str) -> None:
        try:
            array = np.array(values, dtype=np.float64, copy=True)
        except (TypeError, ValueError) as e:
            raise InvalidFeatureDimension(
                f"{kind} features are not numeric", kind=kind, actual=None, expected=0
            ) from e
        array.flags.writeable = False
        self._values = array
        self.kind = kind

    @property
    def values(self) -> np.ndarray:
        return self._values

    @property
    def dimension(self) -> int:
        return int(self._values.size)

    def write_into(self, buffer: bytearray, offset: int) -> int:
        """Copy the little-endian float64 encoding into `buffer`; return bytes written."""
        view = np.frombuffer(buffer, dtype="<f8", count=self._values.size, offset=offset)
        view[:] = self._values
        return self._values.size * 8

    def wipe(self) -> None:
        wipe(self._values)

    def __len__(self) -> int:
        return self.dimension

    def __repr__(self) -> str:
        return f"FeatureVector(kind={self.kind!r}, dimension={self.dimension})"


class Template:
    """
    Non-reversible fusion ``T = H(B || R || C)`` of one enrolled person.

    The template value lives in a wipeable buffer. Use the template as a
    context manager to guarantee the in-memory copy is cleared::

        with core_template as t:
            secret = deriver.derive_secret(t, salt)

    Parameters
    ----------
    value : bytes or bytearray
        Template hash bytes.
    attributes : Mapping[str, int], optional
        Hidden integer attributes captured at enrollment.
    epoch : int, default=1
        Enrollment generation; increases on re-enrollment.
    """

    def __init__(
        self,
        value: Any,
        attributes: Optional[Mapping[str, int]] = None,
        epoch: int = 1,
    ) -> None:
        self._value = bytearray(value)
        self.attributes: Dict[str, int] = dict(attributes or {})
        self.epoch = epoch

    @property
    def value(self) -> bytearray:
        return self._value

    @property
    def wiped(self) -> bool:
        return not any(self._value)

    def wipe(self) -> None:
        wipe(self._value)
        self.attributes.clear()

    def __enter__(self) -> "Template":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.wipe()

    def __repr__(self) -> str:
        return f"Template(epoch={self.epoch}, length={len(self._value)}, attributes={sorted(self.attributes)})"

    def to_bytes(self) -> bytes:
        """Serialize for sealing. Only the key manager's protect path calls this."""
        writer = BinaryWriter().write_bytes(bytes(self._value)).write_u32(self.epoch)
        writer.write_u16(len(self.attributes))
        for name in sorted(self.attributes):
            writer.write_str(name).write_u64(self.attributes[name])
        return encode_envelope(ObjectType.TEMPLATE, 0, writer.getvalue())

    @classmethod
    def from_bytes(cls, data: bytes) -> "Template":
        _, reader = decode_envelope(data, ObjectType.TEMPLATE, level_bits=0)
        value = reader.read_bytes()
        epoch = reader.read_u32()
        attributes = {}
        for _ in range(reader.read_u16()):
            name = reader.read_str()
            attributes[name] = reader.read_u64()
        reader.expect_end()
        return cls(value, attributes=attributes, epoch=epoch)


@dataclass(frozen=True)
class TemplateHandle:
    """Opaque reference to a sealed template held by the prover core."""

    handle_id: str
    epoch: int = 1
    created_at: float = 0.0


# =============================================================================
# Post-quantum key material
# =============================================================================


@dataclass(frozen=True)
class PublicKey:
    """ML-DSA public key tagged with its security level."""

    level: SecurityLevel
    data: bytes

    def fingerprint(self) -> str:
        return hashlib.sha3_256(self.data).hexdigest()[:16]

    def to_bytes(self) -> bytes:
        body = BinaryWriter().write_bytes(self.data).getvalue()
        return encode_envelope(ObjectType.PUBLIC_KEY, self.level.bits, body)

    @classmethod
    def from_bytes(cls, data: bytes) -> "PublicKey":
        bits, reader = decode_envelope(data, ObjectType.PUBLIC_KEY)
        key = reader.read_bytes()
        reader.expect_end()
        return cls(_level_from_header(bits, "public_key"), key)


class SecretKey:
    """ML-DSA secret key kept in a wipeable buffer."""

    def __init__(self, level: SecurityLevel, data: Any) -> None:
        self.level = level
        self._data = bytearray(data)

    @property
    def data(self) -> bytearray:
        return self._data

    def wipe(self) -> None:
        wipe(self._data)

    def __repr__(self) -> str:
        return f"SecretKey(level={self.level.bits}, length={len(self._data)})"


@dataclass
class KeyPair:
    """
    A (SecretKey, PublicKey) pair from a post-quantum signature scheme.

    The secret key is only ever serialized by the key manager's backup path,
    which encrypts the result under a separate backup key.
    """

    public_key: PublicKey
    secret_key: SecretKey
    key_id: str
    created_at: float

    @property
    def level(self) -> SecurityLevel:
        return self.public_key.level

    def to_bytes(self) -> bytes:
        body = (
            BinaryWriter()
            .write_str(self.key_id)
            .write_f64(self.created_at)
            .write_bytes(self.public_key.data)
            .write_bytes(bytes(self.secret_key.data))
            .getvalue()
        )
        return encode_envelope(ObjectType.KEY_PAIR, self.level.bits, body)

    @classmethod
    def from_bytes(cls, data: bytes) -> "KeyPair":
        bits, reader = decode_envelope(data, ObjectType.KEY_PAIR)
        level = _level_from_header(bits, "key_pair")
        key_id = reader.read_str()
        created_at = reader.read_f64()
        public = reader.read_bytes()
        secret = reader.read_bytes()
        reader.expect_end()
        return cls(PublicKey(level, public), SecretKey(level, secret), key_id, created_at)


@dataclass(frozen=True)
class Signature:
    """ML-DSA signature tagged with its security level."""

    level: SecurityLevel
    value: bytes

    def to_bytes(self) -> bytes:
        body = BinaryWriter().write_bytes(self.value).getvalue()
        return encode_envelope(ObjectType.SIGNATURE, self.level.bits, body)

    @classmethod
    def from_bytes(cls, data: bytes) -> "Signature":
        bits, reader = decode_envelope(data, ObjectType.SIGNATURE)
        value = reader.read_bytes()
        reader.expect_end()
        return cls(_level_from_header(bits, "signature"), value)


@dataclass(frozen=True)
class KeyHandle:
    """Immutable, versioned reference to the active key pair."""

    version: int
    keypair: KeyPair
    activated_at: float


# =============================================================================
# Identifiers, challenges and proofs
# =============================================================================


@dataclass(frozen=True)
class ServiceIdentifier:
    """Per-service pseudonym derived from a template and a service salt."""

    value: bytes

    def hex(self) -> str:
        return self.value.hex()

    def preview(self) -> str:
        return self.value[:8].hex() + "..."


@dataclass(frozen=True)
class Challenge:
    """
    Verifier-issued, single-use random value bound to one session.

    Parameters
    ----------
    challenge_id : bytes
        Unique identifier of the challenge.
    nonce : bytes
        Fresh random value hashed into the proof transcript.
    issued_at : float
        Issue time in seconds since the epoch.
    ttl : float
        Lifetime in seconds.
    service_salt : bytes
        Salt of the issuing service; the prover derives its identifier from it.
    """

    challenge_id: bytes
    nonce: bytes
    issued_at: float
    ttl: float
    service_salt: bytes

    @property
    def expires_at(self) -> float:
        return self.issued_at + self.ttl

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def to_bytes(self) -> bytes:
        body = (
            BinaryWriter()
            .write_bytes(self.challenge_id)
            .write_bytes(self.nonce)
            .write_f64(self.issued_at)
            .write_f64(self.ttl)
            .write_bytes(self.service_salt)
            .getvalue()
        )
        return encode_envelope(ObjectType.CHALLENGE, 0, body)

    @classmethod
    def from_bytes(cls, data: bytes) -> "Challenge":
        _, reader = decode_envelope(data, ObjectType.CHALLENGE, level_bits=0)
        challenge = cls(
            challenge_id=reader.read_bytes(),
            nonce=reader.read_bytes(),
            issued_at=reader.read_f64(),
            ttl=reader.read_f64(),
            service_salt=reader.read_bytes(),
        )
        reader.expect_end()
        return challenge


@dataclass(frozen=True)
class AttributeAttestation:
    """
    Issuer signature over a Pedersen commitment to a hidden attribute.

    The commitment is specific to one service identifier, so attestations
    cannot link a person across services beyond revealing the issuer.
    """

    attribute: str
    identifier: bytes
    commitment: int
    signature: Signature
    issuer_key: PublicKey

    def to_bytes(self) -> bytes:
        body = (
            BinaryWriter()
            .write_str(self.attribute)
            .write_bytes(self.identifier)
            .write_int(self.commitment)
            .write_bytes(self.signature.value)
            .write_bytes(self.issuer_key.data)
            .getvalue()
        )
        return encode_envelope(ObjectType.ATTRIBUTE_ATTESTATION, self.signature.level.bits, body)

    @classmethod
    def from_bytes(cls, data: bytes) -> "AttributeAttestation":
        bits, reader = decode_envelope(data, ObjectType.ATTRIBUTE_ATTESTATION)
        level = _level_from_header(bits, "attribute_attestation")
        attestation = cls(
            attribute=reader.read_str(),
            identifier=reader.read_bytes(),
            commitment=reader.read_int(),
            signature=Signature(level, reader.read_bytes()),
            issuer_key=PublicKey(level, reader.read_bytes()),
        )
        reader.expect_end()
        return attestation


@dataclass(frozen=True)
class ZKProof:
    """
    Non-interactive zero-knowledge proof bound to one challenge.

    Attributes
    ----------
    level : SecurityLevel
        Parameter set the proof was produced under.
    statement : Statement
        Statement the proof claims.
    identifier : bytes
        Service identifier the proof speaks about.
    challenge_id : bytes
        Identifier of the challenge the proof is bound to.
    public_element : int
        Group element ``Y_s = g^x_s`` whose hash is the identifier.
    commitments : Tuple[int, ...]
        Prover's first-move commitments (layout depends on the statement).
    responses : Tuple[int, ...]
        Prover's responses (layout depends on the statement).
    nullifier : int, optional
        Context nullifier of a uniqueness proof.
    attestation : AttributeAttestation, optional
        Issuer attestation of an eligibility proof.
    binding : bytes
        Digest of the response fields the proof commits to, see
        `response_binding`.
    version : int
        Proof format version.
    """

    level: SecurityLevel
    statement: Statement
    identifier: bytes
    challenge_id: bytes
    public_element: int
    commitments: Tuple[int, ...]
    responses: Tuple[int, ...]
    nullifier: Optional[int] = None
    attestation: Optional[AttributeAttestation] = None
    binding: bytes = b""
    version: int = 1

    def to_bytes(self) -> bytes:
        writer = (
            BinaryWriter()
            .write_u8(self.version)
            .write_bytes(self.statement.to_bytes())
            .write_bytes(self.identifier)
            .write_bytes(self.challenge_id)
            .write_int(self.public_element)
            .write_int_list(self.commitments)
            .write_int_list(self.responses)
        )
        writer.write_optional_bytes(
            self.nullifier.to_bytes(max(1, (self.nullifier.bit_length() + 7) // 8), "big")
            if self.nullifier is not None
            else None
        )
        writer.write_optional_bytes(
            self.attestation.to_bytes() if self.attestation is not None else None
        )
        writer.write_bytes(self.binding)
        return encode_envelope(ObjectType.ZK_PROOF, self.level.bits, writer.getvalue())

    @classmethod
    def from_bytes(cls, data: bytes) -> "ZKProof":
        """
        Decode a proof.

        Raises
        ------
        EncodingError
            On any framing error.
        UnsupportedStatement
            When the embedded statement cannot be decoded.
        """
        bits, reader = decode_envelope(data, ObjectType.ZK_PROOF)
        level = _level_from_header(bits, "zk_proof")
        version = reader.read_u8()
        statement = Statement.from_bytes(reader.read_bytes())
        identifier = reader.read_bytes()
        challenge_id = reader.read_bytes()
        public_element = reader.read_int()
        commitments = reader.read_int_list()
        responses = reader.read_int_list()
        nullifier_raw = reader.read_optional_bytes()
        if nullifier_raw is not None and (
            not nullifier_raw or (len(nullifier_raw) > 1 and nullifier_raw[0] == 0)
        ):
            raise EncodingError("Non-minimal nullifier encoding", object_type="zk_proof")
        attestation_raw = reader.read_optional_bytes()
        binding = reader.read_bytes()
        reader.expect_end()
        return cls(
            level=level,
            statement=statement,
            identifier=identifier,
            challenge_id=challenge_id,
            public_element=public_element,
            commitments=commitments,
            responses=responses,
            nullifier=int.from_bytes(nullifier_raw, "big") if nullifier_raw is not None else None,
            attestation=(
                AttributeAttestation.from_bytes(attestation_raw)
                if attestation_raw is not None
                else None
            ),
            binding=binding,
            version=version,
        )


def _sample_bytes(behavior_sample: Any) -> Optional[bytes]:
    if behavior_sample is None:
        return None
    return np.asarray(behavior_sample, dtype="<f8").tobytes()


def response_binding(timestamp: float, behavior_sample: Any = None) -> bytes:
    """
    Digest of the response fields that travel next to a proof.

    The prover commits to it in the proof transcript, so a response whose
    timestamp or behavior sample was altered no longer verifies.
    """
    writer = BinaryWriter().write_bytes(RESPONSE_BINDING_LABEL).write_f64(timestamp)
    writer.write_optional_bytes(_sample_bytes(behavior_sample))
    return hashlib.sha3_256(writer.getvalue()).digest()


@dataclass(frozen=True)
class VerificationResponse:
    """Response the prover sends to the verifier for one challenge."""

    proof: ZKProof
    identifier: bytes
    behavior_sample: Optional[np.ndarray]
    timestamp: float

    def binding(self) -> bytes:
        return response_binding(self.timestamp, self.behavior_sample)

    def to_bytes(self) -> bytes:
        writer = BinaryWriter().write_bytes(self.proof.to_bytes()).write_bytes(self.identifier)
        writer.write_optional_bytes(_sample_bytes(self.behavior_sample))
        writer.write_f64(self.timestamp)
        return encode_envelope(
            ObjectType.VERIFICATION_RESPONSE, self.proof.level.bits, writer.getvalue()
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "VerificationResponse":
        bits, reader = decode_envelope(data, ObjectType.VERIFICATION_RESPONSE)
        proof = ZKProof.from_bytes(reader.read_bytes())
        if bits != proof.level.bits:
            raise EncodingError(
                f"Header level {bits} does not match proof level {proof.level.bits}",
                object_type="verification_response",
            )
        identifier = reader.read_bytes()
        sample_raw = reader.read_optional_bytes()
        timestamp = reader.read_f64()
        reader.expect_end()
        sample = None
        if sample_raw is not None:
            if len(sample_raw) % 8:
                raise EncodingError("Behavior sample length", object_type="verification_response")
            sample = np.frombuffer(sample_raw, dtype="<f8").astype(np.float64)
        return cls(proof, identifier, sample, timestamp)


@dataclass(frozen=True)
class PublicContext:
    """
    Public information the verifier checks a proof against.

    Parameters
    ----------
    service_salt : bytes
        Salt of the verifying service.
    trusted_issuers : Tuple[PublicKey, ...]
        Keys whose attribute attestations the service accepts.
    nullifier_store : Store, optional
        Append-only store of nullifiers already used per uniqueness context.
    revoked_identifiers : FrozenSet[bytes]
        Identifiers superseded by re-enrollment.
    """

    service_salt: bytes
    trusted_issuers: Tuple[PublicKey, ...] = ()
    nullifier_store: Optional[Any] = None
    revoked_identifiers: FrozenSet[bytes] = frozenset()


# =============================================================================
# Outcomes
# =============================================================================


class RejectionReason(Enum):
    """Structured rejection reasons, visible to local logging and audit only."""

    STALE_CHALLENGE = "stale_challenge"
    STALE_RESPONSE = "stale_response"
    FUTURE_TIMESTAMP = "future_timestamp"
    BEHAVIORAL_MISMATCH = "behavioral_mismatch"
    UNSUPPORTED_STATEMENT = "unsupported_statement"
    MALFORMED = "malformed"
    INVALID_PROOF = "invalid_proof"
    NOT_UNIQUE = "not_unique"
    REVOKED = "revoked"
    CAPACITY = "capacity"


@dataclass(frozen=True)
class VerificationOutcome:
    """
    Result of a verification: ``Accepted`` or ``Rejected(reason)``.

    `reason` and `detail` are for local audit only; `public_view()` is what
    the counterpart service may be told.
    """

    accepted: bool
    reason: Optional[RejectionReason] = None
    detail: Optional[str] = None

    @classmethod
    def accept(cls) -> "VerificationOutcome":
        return cls(True)

    @classmethod
    def reject(cls, reason: RejectionReason, detail: Optional[str] = None) -> "VerificationOutcome":
        return cls(False, reason, detail)

    def public_view(self) -> Dict[str, str]:
        return {"status": "accepted" if self.accepted else "rejected"}

    def __str__(self) -> str:
        if self.accepted:
            return "Accepted"
        label = "".join(p.capitalize() for p in self.reason.value.split("_")) if self.reason else "Unknown"
        return f"Rejected({label})"


@dataclass(frozen=True)
class RotationOutcome:
    """Result of a key rotation request."""

    rotated: bool
    old_version: int
    new_version: int
    reprotected: int = 0
    error: Optional[str] = None


@dataclass(frozen=True)
class EncryptedArtifact:
    """
    Data sealed under the active key version.

    AES-256-GCM ciphertext with the artifact id and key version as associated
    data, signed with the ML-DSA key of the same version.
    """

    artifact_id: str
    key_version: int
    nonce: bytes
    ciphertext: bytes
    signature: Signature

    def signed_payload(self) -> bytes:
        return (
            BinaryWriter()
            .write_str(self.artifact_id)
            .write_u32(self.key_version)
            .write_bytes(self.nonce)
            .write_bytes(self.ciphertext)
            .getvalue()
        )

    def associated_data(self) -> bytes:
        return BinaryWriter().write_str(self.artifact_id).write_u32(self.key_version).getvalue()

    def to_bytes(self) -> bytes:
        body = BinaryWriter().write_bytes(self.signed_payload()).write_bytes(self.signature.value).getvalue()
        return encode_envelope(ObjectType.ENCRYPTED_ARTIFACT, self.signature.level.bits, body)

    @classmethod
    def from_bytes(cls, data: bytes) -> "EncryptedArtifact":
        bits, reader = decode_envelope(data, ObjectType.ENCRYPTED_ARTIFACT)
        level = _level_from_header(bits, "encrypted_artifact")
        payload = BinaryReader(reader.read_bytes(), object_type="encrypted_artifact")
        signature = reader.read_bytes()
        reader.expect_end()
        artifact = cls(
            artifact_id=payload.read_str(),
            key_version=payload.read_u32(),
            nonce=payload.read_bytes(),
            ciphertext=payload.read_bytes(),
            signature=Signature(level, signature),
        )
        payload.expect_end()
        return artifact


def as_feature_vector(values: Any, kind: str) -> FeatureVector:
    """Accept either a FeatureVector or a raw sequence."""
    if isinstance(values, FeatureVector):
        return values
    return FeatureVector(values, kind)
