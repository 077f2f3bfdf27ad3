"""
Zero-knowledge proof generation and verification for the FREEGHOST core.

Proofs are Sigma protocols in the prime-order subgroup of an RFC 3526 MODP
group, made non-interactive with the Fiat-Shamir transform. The transcript
binds the verifier's challenge (id, nonce, issue time), the service salt,
the statement encoding, every prover commitment and a digest of the response
fields sent alongside the proof (timestamp, behavior sample), so a proof
cannot be precomputed for an unissued challenge, moved to another session or
re-stamped.

Statements
----------
KnowledgeOfTemplate
    Schnorr proof of ``x_s`` with ``Y_s = g^x_s`` and ``ID_s = H(Y_s)``.
Uniqueness(context)
    Nullifier ``N = G_ctx^x_s`` with a Chaum-Pedersen proof that it shares
    its discrete log with ``Y_s``. A second proof for the same context
    yields the same ``N`` and is rejected by the nullifier registry.
EligibilityPredicate(attribute, threshold)
    Issuer-attested Pedersen commitment ``C = g^v h^rho`` to a hidden
    attribute, with a bit-decomposition range proof (CDS OR-proofs) that
    ``v - threshold`` lies in ``[0, 2^k)``.

Notes
-----
Soundness rests on the discrete-log assumption, which is not post-quantum.
Long-term authenticity (issuer attestations, sealed artifacts) uses ML-DSA.
The planned replacement is a lattice-based proof system (module-SIS
commitments, Fiat-Shamir with aborts) behind the same `prove`/`verify`
interface; `ZKProof.version` tells the two proof formats apart.
"""

import struct
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog

from .constants import (
    NULLIFIER_BASE_LABEL,
    PEDERSEN_H_LABEL,
    PROOF_FORMAT_VERSION,
    RANGE_PROOF_BITS,
    TRANSCRIPT_LABEL,
    ATTESTATION_LABEL,
)
from .data_models import (
    AttributeAttestation,
    Challenge,
    PublicContext,
    SecurityLevel,
    Template,
    ZKProof,
)
from .encoding import BinaryWriter
from .entropy import SystemRandomSource, random_scalar
from .exceptions import (
    InvalidKeyFormat,
    PredicateNotSatisfied,
    ProofGenerationError,
    RevokedIdentifier,
    StaleChallenge,
    UniquenessViolation,
    UnsupportedStatement,
)
from .service_identifier import ServiceIdentifierDeriver, ServiceSecret, identifier_from_element
from .signatures import QuantumSignatureModule
from .statements import EligibilityPredicate, KnowledgeOfTemplate, Statement, Uniqueness
from .utils import constant_time_equals, timer
from .zk_group import PrimeOrderGroup, Transcript

# Initialize structured logger
logger = structlog.get_logger(__name__)

NULLIFIER_NAMESPACE = "nullifiers"

SUPPORTED_STATEMENTS = (KnowledgeOfTemplate, Uniqueness, EligibilityPredicate)


def attestation_message(identifier: bytes, attribute: str, commitment: int) -> bytes:
    """Message an issuer signs to attest an attribute commitment."""
    return (
        BinaryWriter()
        .write_bytes(ATTESTATION_LABEL)
        .write_bytes(identifier)
        .write_str(attribute)
        .write_int(commitment)
        .getvalue()
    )


class ZKProofEngine:
    """
    Prover and verifier for the closed set of identity statements.

    Parameters
    ----------
    level : SecurityLevel, default=SecurityLevel.LEVEL_128
        Selects the proof group and transcript hash.
    random_source : RandomSource, optional
        Source of prover nonces. Defaults to `SystemRandomSource`.
    clock : Clock, optional
        Clock for challenge expiry. Defaults to `time.time`.
    challenge_store : object, optional
        Anything exposing ``is_consumed(challenge_id) -> bool``, typically
        the verifier's `ReplayGuard`.
    signature_module : QuantumSignatureModule, optional
        Verifies issuer attestations of eligibility proofs.
    range_bits : int, default=RANGE_PROOF_BITS
        Width ``k`` of eligibility range proofs.

    Examples
    --------
    >>> engine = ZKProofEngine()
    >>> proof = engine.prove(KnowledgeOfTemplate(), template, challenge)
    >>> engine.verify(proof, KnowledgeOfTemplate(), challenge, context)
    True
    """

    def __init__(
        self,
        level: SecurityLevel = SecurityLevel.LEVEL_128,
        random_source: Any = None,
        clock: Any = None,
        challenge_store: Any = None,
        signature_module: Optional[QuantumSignatureModule] = None,
        range_bits: int = RANGE_PROOF_BITS,
        deriver: Optional[ServiceIdentifierDeriver] = None,
    ) -> None:
        if range_bits < 1 or range_bits > 32:
            raise ProofGenerationError(f"range_bits must lie in [1, 32], got {range_bits}")

        self.level = level
        self.random_source = random_source or SystemRandomSource()
        self.clock = clock
        self.challenge_store = challenge_store
        self.signatures = signature_module or QuantumSignatureModule(level)
        self.range_bits = range_bits
        self.deriver = deriver or ServiceIdentifierDeriver(level)
        self.group: PrimeOrderGroup = self.deriver.group
        self.h = self.group.hash_to_element(PEDERSEN_H_LABEL)

        self._stats = {"proofs_generated": 0, "proofs_verified": 0, "proofs_rejected": 0}

        logger.info(
            "ZKProofEngine initialized",
            level=level.bits,
            group_bits=self.group.bits,
            transcript_hash=level.transcript_hash,
            range_bits=range_bits,
        )

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    def _now(self) -> float:
        return self.clock.now() if self.clock is not None else time.time()

    def _check_statement(self, statement: Any) -> Statement:
        if not isinstance(statement, SUPPORTED_STATEMENTS):
            raise UnsupportedStatement(
                f"Unsupported statement type {type(statement).__name__}"
            )
        statement.validate()
        return statement

    def _check_challenge(self, challenge: Challenge) -> None:
        """
        Raise `StaleChallenge` for an expired or already consumed challenge.
        """
        challenge_hex = challenge.challenge_id.hex()
        if challenge.is_expired(self._now()):
            raise StaleChallenge(challenge_hex, "expired")
        if self.challenge_store is not None and self.challenge_store.is_consumed(
            challenge.challenge_id
        ):
            raise StaleChallenge(challenge_hex, "consumed")

    def _random_scalar(self) -> int:
        return random_scalar(self.random_source, self.group.q)

    def nullifier_base(self, service_salt: bytes, context: str) -> int:
        return self.group.hash_to_element(
            NULLIFIER_BASE_LABEL, bytes(service_salt), context.encode("utf-8")
        )

    def _transcript(
        self,
        statement: Statement,
        challenge: Challenge,
        identifier: bytes,
        public_element: int,
        nullifier: Optional[int],
        commitment: Optional[int],
        binding: bytes,
    ) -> Transcript:
        transcript = Transcript(TRANSCRIPT_LABEL, self.level.transcript_hash)
        transcript.append(b"version", bytes([PROOF_FORMAT_VERSION]))
        transcript.append(b"level", self.level.bits.to_bytes(2, "big"))
        transcript.append(b"statement", statement.to_bytes())
        transcript.append(b"service_salt", challenge.service_salt)
        transcript.append(b"identifier", identifier)
        transcript.append_int(b"public_element", public_element)
        transcript.append(b"challenge_id", challenge.challenge_id)
        transcript.append(b"nonce", challenge.nonce)
        transcript.append(b"issued_at", struct.pack(">dd", challenge.issued_at, challenge.ttl))
        transcript.append(b"response_binding", binding)
        if nullifier is not None:
            transcript.append_int(b"nullifier", nullifier)
        if commitment is not None:
            transcript.append_int(b"attribute_commitment", commitment)
        return transcript

    def commit_attribute(self, template: Template, service_salt: bytes, attribute: str) -> int:
        """
        Pedersen commitment ``g^v h^rho`` to a hidden template attribute.

        Raises
        ------
        PredicateNotSatisfied
            If the template carries no such attribute.
        """
        if attribute not in template.attributes:
            raise PredicateNotSatisfied(attribute, 0)
        value = template.attributes[attribute]
        rho = self.deriver.derive_blinding(template, service_salt, attribute)
        return self.group.mul(pow(self.group.g, value, self.group.p), self.group.exp(self.h, rho))

    # ------------------------------------------------------------------
    # Proving
    # ------------------------------------------------------------------

    @timer
    def prove(
        self,
        statement: Statement,
        template: Template,
        challenge: Challenge,
        attestation: Optional[AttributeAttestation] = None,
        binding: bytes = b"",
    ) -> ZKProof:
        """
        Produce a proof of `statement` about `template`, bound to `challenge`.

        Parameters
        ----------
        statement : Statement
            One of `KnowledgeOfTemplate`, `Uniqueness`, `EligibilityPredicate`.
        template : Template
            Prover's template; never leaves this call.
        challenge : Challenge
            Verifier-issued challenge carrying the service salt.
        attestation : AttributeAttestation, optional
            Required for `EligibilityPredicate`.
        binding : bytes, optional
            Digest of the response fields sent with the proof, see
            `response_binding`.

        Returns
        -------
        ZKProof
            Non-interactive proof.

        Raises
        ------
        UnsupportedStatement
            If the statement is not one of the supported kinds or is ill-formed.
        StaleChallenge
            If the challenge is expired or consumed.
        PredicateNotSatisfied
            If the hidden attribute does not satisfy an eligibility predicate.
        ProofGenerationError
            If a required attestation is missing or does not match, or the
            attribute exceeds the threshold by more than the range proof covers.
        """
        statement = self._check_statement(statement)
        self._check_challenge(challenge)

        secret = self.deriver.derive_secret(template, challenge.service_salt)

        if isinstance(statement, KnowledgeOfTemplate):
            proof = self._prove_knowledge(statement, secret, challenge, binding)
        elif isinstance(statement, Uniqueness):
            proof = self._prove_uniqueness(statement, secret, challenge, binding)
        else:
            proof = self._prove_eligibility(
                statement, template, secret, challenge, attestation, binding
            )

        self._stats["proofs_generated"] += 1
        logger.info(
            "Proof generated",
            statement_kind=statement.kind,
            identifier_preview=secret.identifier.preview(),
            commitments=len(proof.commitments),
        )
        return proof

    def _build(
        self,
        statement: Statement,
        secret: ServiceSecret,
        challenge: Challenge,
        commitments: Sequence[int],
        responses: Sequence[int],
        nullifier: Optional[int] = None,
        attestation: Optional[AttributeAttestation] = None,
        binding: bytes = b"",
    ) -> ZKProof:
        return ZKProof(
            level=self.level,
            statement=statement,
            identifier=secret.identifier.value,
            challenge_id=challenge.challenge_id,
            public_element=secret.public_element,
            commitments=tuple(commitments),
            responses=tuple(responses),
            nullifier=nullifier,
            attestation=attestation,
            binding=binding,
            version=PROOF_FORMAT_VERSION,
        )

    def _prove_knowledge(
        self,
        statement: KnowledgeOfTemplate,
        secret: ServiceSecret,
        challenge: Challenge,
        binding: bytes,
    ) -> ZKProof:
        group = self.group
        w = self._random_scalar()
        a = group.exp(group.g, w)

        transcript = self._transcript(
            statement,
            challenge,
            secret.identifier.value,
            secret.public_element,
            None,
            None,
            binding,
        )
        transcript.append_ints(b"commitments", [a])
        c = transcript.challenge_scalar(group.q)

        z = (w + c * secret.x) % group.q
        return self._build(statement, secret, challenge, [a], [z], binding=binding)

    def _prove_uniqueness(
        self,
        statement: Uniqueness,
        secret: ServiceSecret,
        challenge: Challenge,
        binding: bytes,
    ) -> ZKProof:
        group = self.group
        base = self.nullifier_base(challenge.service_salt, statement.context)
        nullifier = group.exp(base, secret.x)

        w = self._random_scalar()
        a1 = group.exp(group.g, w)
        a2 = group.exp(base, w)

        transcript = self._transcript(
            statement,
            challenge,
            secret.identifier.value,
            secret.public_element,
            nullifier,
            None,
            binding,
        )
        transcript.append_ints(b"commitments", [a1, a2])
        c = transcript.challenge_scalar(group.q)

        z = (w + c * secret.x) % group.q
        return self._build(
            statement, secret, challenge, [a1, a2], [z], nullifier=nullifier, binding=binding
        )

    def _prove_eligibility(
        self,
        statement: EligibilityPredicate,
        template: Template,
        secret: ServiceSecret,
        challenge: Challenge,
        attestation: Optional[AttributeAttestation],
        binding: bytes,
    ) -> ZKProof:
        group, h, k = self.group, self.h, self.range_bits

        value = template.attributes.get(statement.attribute)
        if value is None or value < statement.threshold:
            raise PredicateNotSatisfied(statement.attribute, statement.threshold)
        if value - statement.threshold >= 2**k:
            raise ProofGenerationError(
                f"Attribute exceeds the threshold by more than the {k}-bit range proof covers",
                statement_kind=statement.kind,
            )

        if attestation is None:
            raise ProofGenerationError(
                "Eligibility proofs require an issuer attestation",
                statement_kind=statement.kind,
            )
        rho = self.deriver.derive_blinding(template, challenge.service_salt, statement.attribute)
        commitment = group.mul(pow(group.g, value, group.p), group.exp(h, rho))
        if (
            attestation.commitment != commitment
            or attestation.attribute != statement.attribute
            or not constant_time_equals(attestation.identifier, secret.identifier.value)
        ):
            raise ProofGenerationError(
                "Attestation does not match the hidden attribute at this service",
                statement_kind=statement.kind,
            )

        diff = value - statement.threshold
        bits = [(diff >> i) & 1 for i in range(k)]
        blinds = [self._random_scalar() for _ in range(k)]
        bit_commitments = [
            group.mul(group.g if b else 1, group.exp(h, r)) for b, r in zip(bits, blinds)
        ]
        g_inv = group.inverse(group.g)

        # Opening of D = C g^-t / prod C_i^(2^i) with respect to h
        r_d = (rho - sum(r << i for i, r in enumerate(blinds))) % group.q

        w = self._random_scalar()
        a = group.exp(group.g, w)

        or_commitments: List[int] = []
        or_state: List[Tuple[int, int, int]] = []
        for bit, c_i in zip(bits, bit_commitments):
            targets = (c_i, group.mul(c_i, g_inv))
            u = self._random_scalar()
            c_sim = self._random_scalar()
            z_sim = self._random_scalar()
            simulated = group.mul(
                group.exp(h, z_sim), group.exp(group.inverse(targets[1 - bit]), c_sim)
            )
            real = group.exp(h, u)
            pair = (real, simulated) if bit == 0 else (simulated, real)
            or_commitments.extend(pair)
            or_state.append((u, c_sim, z_sim))

        u_d = self._random_scalar()
        a_d = group.exp(h, u_d)

        commitments = bit_commitments + [a] + or_commitments + [a_d]
        transcript = self._transcript(
            statement,
            challenge,
            secret.identifier.value,
            secret.public_element,
            None,
            commitment,
            binding,
        )
        transcript.append_ints(b"commitments", commitments)
        c = transcript.challenge_scalar(group.q)

        responses = [(w + c * secret.x) % group.q]
        for bit, r_i, (u, c_sim, z_sim) in zip(bits, blinds, or_state):
            c_real = (c - c_sim) % group.q
            z_real = (u + c_real * r_i) % group.q
            if bit == 0:
                responses.extend([c_real, z_real, z_sim])
            else:
                responses.extend([c_sim, z_sim, z_real])
        responses.append((u_d + c * r_d) % group.q)

        return self._build(
            statement,
            secret,
            challenge,
            commitments,
            responses,
            attestation=attestation,
            binding=binding,
        )

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    @timer
    def verify(
        self,
        proof: ZKProof,
        statement: Statement,
        challenge: Challenge,
        public_context: PublicContext,
    ) -> bool:
        """
        Verify a proof against the expected statement and challenge.

        Parameters
        ----------
        proof : ZKProof
            Proof to check.
        statement : Statement
            Statement the verifier expects.
        challenge : Challenge
            Challenge the verifier issued.
        public_context : PublicContext
            Service salt, trusted issuers, nullifier registry and revocations.

        Returns
        -------
        bool
            True only if every check passes.

        Raises
        ------
        UnsupportedStatement
            If the expected statement is malformed or unsupported.
        StaleChallenge
            If the challenge is expired or consumed.
        RevokedIdentifier
            If the proof speaks about a revoked identifier.
        UniquenessViolation
            If a uniqueness nullifier was already used for the context.
        """
        statement = self._check_statement(statement)
        self._check_challenge(challenge)

        valid = self._verify_checks(proof, statement, challenge, public_context)
        if valid:
            self._stats["proofs_verified"] += 1
        else:
            self._stats["proofs_rejected"] += 1
        logger.info(
            "Proof verification completed",
            statement_kind=statement.kind,
            identifier_preview=proof.identifier[:8].hex() + "...",
            is_valid=valid,
        )
        return valid

    def _verify_checks(
        self,
        proof: ZKProof,
        statement: Statement,
        challenge: Challenge,
        public_context: PublicContext,
    ) -> bool:
        group = self.group

        if proof.version != PROOF_FORMAT_VERSION or proof.level is not self.level:
            return False
        if proof.statement != statement:
            return False
        if not constant_time_equals(proof.challenge_id, challenge.challenge_id):
            return False
        if not constant_time_equals(challenge.service_salt, public_context.service_salt):
            return False

        if proof.identifier in public_context.revoked_identifiers:
            raise RevokedIdentifier(proof.identifier[:8].hex() + "...")

        if not group.is_element(proof.public_element):
            return False
        expected_id = identifier_from_element(group, proof.public_element)
        if not constant_time_equals(expected_id.value, proof.identifier):
            return False

        if isinstance(statement, KnowledgeOfTemplate):
            return self._verify_knowledge(proof, statement, challenge)
        if isinstance(statement, Uniqueness):
            return self._verify_uniqueness(proof, statement, challenge, public_context)
        return self._verify_eligibility(proof, statement, challenge, public_context)

    def _verify_knowledge(
        self, proof: ZKProof, statement: KnowledgeOfTemplate, challenge: Challenge
    ) -> bool:
        group = self.group
        if len(proof.commitments) != 1 or len(proof.responses) != 1:
            return False
        if proof.nullifier is not None or proof.attestation is not None:
            return False
        (a,), (z,) = proof.commitments, proof.responses
        if not group.is_element(a) or not group.is_scalar(z):
            return False

        transcript = self._transcript(
            statement,
            challenge,
            proof.identifier,
            proof.public_element,
            None,
            None,
            proof.binding,
        )
        transcript.append_ints(b"commitments", [a])
        c = transcript.challenge_scalar(group.q)

        return group.exp(group.g, z) == group.mul(a, group.exp(proof.public_element, c))

    def _verify_uniqueness(
        self,
        proof: ZKProof,
        statement: Uniqueness,
        challenge: Challenge,
        public_context: PublicContext,
    ) -> bool:
        group = self.group
        if len(proof.commitments) != 2 or len(proof.responses) != 1:
            return False
        if proof.attestation is not None or proof.nullifier is None:
            return False
        a1, a2 = proof.commitments
        (z,) = proof.responses
        nullifier = proof.nullifier
        if not all(group.is_element(e) for e in (a1, a2, nullifier)) or not group.is_scalar(z):
            return False

        transcript = self._transcript(
            statement,
            challenge,
            proof.identifier,
            proof.public_element,
            nullifier,
            None,
            proof.binding,
        )
        transcript.append_ints(b"commitments", [a1, a2])
        c = transcript.challenge_scalar(group.q)

        base = self.nullifier_base(challenge.service_salt, statement.context)
        if group.exp(group.g, z) != group.mul(a1, group.exp(proof.public_element, c)):
            return False
        if group.exp(base, z) != group.mul(a2, group.exp(nullifier, c)):
            return False

        store = public_context.nullifier_store
        if store is not None and store.contains(NULLIFIER_NAMESPACE, group.element_bytes(nullifier)):
            logger.warning(
                "Nullifier already used for context",
                uniqueness_context=statement.context,
            )
            raise UniquenessViolation(statement.context)
        return True

    def _verify_eligibility(
        self,
        proof: ZKProof,
        statement: EligibilityPredicate,
        challenge: Challenge,
        public_context: PublicContext,
    ) -> bool:
        group, h, k = self.group, self.h, self.range_bits
        attestation = proof.attestation
        if attestation is None or proof.nullifier is not None:
            return False
        if len(proof.commitments) != 3 * k + 2 or len(proof.responses) != 3 * k + 2:
            return False
        if not self._attestation_trusted(attestation, proof, statement, public_context):
            return False

        commitment = attestation.commitment
        if not group.is_element(commitment):
            return False
        if not all(group.is_element(e) for e in proof.commitments):
            return False
        if not all(group.is_scalar(s) for s in proof.responses):
            return False

        bit_commitments = proof.commitments[:k]
        a = proof.commitments[k]
        or_commitments = proof.commitments[k + 1 : 3 * k + 1]
        a_d = proof.commitments[3 * k + 1]

        transcript = self._transcript(
            statement,
            challenge,
            proof.identifier,
            proof.public_element,
            None,
            commitment,
            proof.binding,
        )
        transcript.append_ints(b"commitments", proof.commitments)
        c = transcript.challenge_scalar(group.q)

        z = proof.responses[0]
        if group.exp(group.g, z) != group.mul(a, group.exp(proof.public_element, c)):
            return False

        g_inv = group.inverse(group.g)
        for i, c_i in enumerate(bit_commitments):
            c0, z0, z1 = proof.responses[1 + 3 * i : 4 + 3 * i]
            c1 = (c - c0) % group.q
            a0, a1 = or_commitments[2 * i], or_commitments[2 * i + 1]
            if group.exp(h, z0) != group.mul(a0, group.exp(c_i, c0)):
                return False
            if group.exp(h, z1) != group.mul(a1, group.exp(group.mul(c_i, g_inv), c1)):
                return False

        d = group.mul(commitment, group.exp(g_inv, statement.threshold))
        for i, c_i in enumerate(bit_commitments):
            d = group.mul(d, group.inverse(pow(c_i, 1 << i, group.p)))
        z_d = proof.responses[-1]
        return group.exp(h, z_d) == group.mul(a_d, group.exp(d, c))

    def _attestation_trusted(
        self,
        attestation: AttributeAttestation,
        proof: ZKProof,
        statement: EligibilityPredicate,
        public_context: PublicContext,
    ) -> bool:
        if attestation.attribute != statement.attribute:
            return False
        if not constant_time_equals(attestation.identifier, proof.identifier):
            return False

        issuer = attestation.issuer_key
        trusted = any(
            key.level is issuer.level and constant_time_equals(key.data, issuer.data)
            for key in public_context.trusted_issuers
        )
        if not trusted:
            logger.warning("Attestation issuer is not trusted", issuer=issuer.fingerprint())
            return False

        message = attestation_message(
            attestation.identifier, attestation.attribute, attestation.commitment
        )
        try:
            return self.signatures.verify(message, attestation.signature, issuer)
        except InvalidKeyFormat:
            return False

    def record_nullifier(self, proof: ZKProof, public_context: PublicContext) -> None:
        """
        Record the nullifier of an accepted uniqueness proof.

        Raises
        ------
        UniquenessViolation
            If a concurrent acceptance recorded the same nullifier first.
        """
        store = public_context.nullifier_store
        if proof.nullifier is None or store is None:
            return
        label = proof.statement.context if isinstance(proof.statement, Uniqueness) else ""
        try:
            store.append(
                NULLIFIER_NAMESPACE,
                self.group.element_bytes(proof.nullifier),
                label.encode("utf-8"),
            )
        except KeyError as e:
            raise UniquenessViolation(label) from e

    def get_statistics(self) -> Dict[str, Any]:
        """Counters of generated, verified and rejected proofs."""
        return {
            "level": self.level.bits,
            "group_bits": self.group.bits,
            "range_bits": self.range_bits,
            **self._stats,
        }
