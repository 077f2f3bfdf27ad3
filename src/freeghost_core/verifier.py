"""
Verifier-side interface of the FREEGHOST identity core.

The `Verifier` issues challenges and runs the verification pipeline for one
service: replay guard check, proof verification, then commit of the
consumed challenge (and uniqueness nullifier), all serialized per challenge.
Outcomes carry a structured rejection reason for local audit; only
`VerificationOutcome.public_view()` may be returned to the submitting party.
"""

from typing import Any, FrozenSet, Iterable, Optional

import structlog

from .audit import AuditEventType
from .constants import CHALLENGE_ID_LENGTH, CHALLENGE_NONCE_LENGTH
from .context import CoreContext
from .data_models import (
    Challenge,
    PublicContext,
    PublicKey,
    RejectionReason,
    VerificationOutcome,
    VerificationResponse,
    ZKProof,
)
from .exceptions import (
    BehavioralMismatch,
    CryptoError,
    EmptySalt,
    FreeghostError,
    FutureTimestamp,
    InputError,
    ReplayCapacityExceeded,
    RevokedIdentifier,
    StaleChallenge,
    StaleResponse,
    UniquenessViolation,
    UnsupportedStatement,
)
from .replay_guard import BehaviorProfile, ReplayGuard
from .statements import Statement
from .utils import constant_time_equals, preview
from .zk_prover import ZKProofEngine

# Initialize structured logger
logger = structlog.get_logger(__name__)

# Most specific first
_REJECTION_REASONS = (
    (StaleResponse, RejectionReason.STALE_RESPONSE),
    (FutureTimestamp, RejectionReason.FUTURE_TIMESTAMP),
    (BehavioralMismatch, RejectionReason.BEHAVIORAL_MISMATCH),
    (ReplayCapacityExceeded, RejectionReason.CAPACITY),
    (StaleChallenge, RejectionReason.STALE_CHALLENGE),
    (UnsupportedStatement, RejectionReason.UNSUPPORTED_STATEMENT),
    (UniquenessViolation, RejectionReason.NOT_UNIQUE),
    (RevokedIdentifier, RejectionReason.REVOKED),
    (InputError, RejectionReason.MALFORMED),
    (CryptoError, RejectionReason.INVALID_PROOF),
)


def rejection_reason(error: FreeghostError) -> Optional[RejectionReason]:
    for error_type, reason in _REJECTION_REASONS:
        if isinstance(error, error_type):
            return reason
    return None


class Verifier:
    """
    Challenge issuance and response verification for one service.

    Parameters
    ----------
    context : CoreContext
        Shared components built at startup.
    behavior_profile : BehaviorProfile, optional
        Behavior classes eligibility statements may name.
    store : Store, optional
        Append-only store for seen identifiers and nullifiers. Defaults to
        the context's store.
    """

    def __init__(
        self,
        context: CoreContext,
        behavior_profile: Optional[BehaviorProfile] = None,
        store: Any = None,
    ) -> None:
        config = context.config
        self.context = context
        self.store = store if store is not None else context.store
        self.guard = ReplayGuard(
            context.clock,
            window=config.replay_window,
            clock_skew=config.clock_skew,
            capacity=config.replay_capacity,
            behavior_profile=behavior_profile
            or BehaviorProfile(threshold=config.behavior_threshold),
            store=self.store,
        )
        self.engine = ZKProofEngine(
            context.level,
            random_source=context.random_source,
            clock=context.clock,
            challenge_store=self.guard,
            signature_module=context.signatures,
            range_bits=config.range_proof_bits,
            deriver=context.deriver,
        )

    def issue_challenge(self, service_salt: bytes, ttl: Optional[float] = None) -> Challenge:
        """
        Issue a fresh single-use challenge for a service.

        Raises
        ------
        EmptySalt
            If the service salt is zero-length.
        InsufficientEntropy
            If the random source fails.
        """
        if not service_salt:
            raise EmptySalt()
        challenge = Challenge(
            challenge_id=self.context.random_source.read(CHALLENGE_ID_LENGTH),
            nonce=self.context.random_source.read(CHALLENGE_NONCE_LENGTH),
            issued_at=self.context.clock.now(),
            ttl=self.context.config.challenge_ttl if ttl is None else ttl,
            service_salt=bytes(service_salt),
        )
        logger.debug(
            "Challenge issued",
            challenge_id=challenge.challenge_id.hex(),
            ttl=challenge.ttl,
        )
        return challenge

    def public_context(
        self,
        service_salt: bytes,
        trusted_issuers: Iterable[PublicKey] = (),
        revoked_identifiers: FrozenSet[bytes] = frozenset(),
    ) -> PublicContext:
        """Public context of this service backed by the verifier's store."""
        return PublicContext(
            service_salt=bytes(service_salt),
            trusted_issuers=tuple(trusted_issuers),
            nullifier_store=self.store,
            revoked_identifiers=frozenset(revoked_identifiers),
        )

    def verify_proof(
        self,
        proof: ZKProof,
        statement: Statement,
        challenge: Challenge,
        public_context: PublicContext,
    ) -> VerificationOutcome:
        """
        Verify a bare proof as if it arrived in a response stamped now.

        Only unbound proofs (made without a response binding) are accepted
        here. Statements that name a behavior class need a behavior sample
        and therefore `verify_response`.
        """
        response = VerificationResponse(
            proof=proof,
            identifier=proof.identifier,
            behavior_sample=None,
            timestamp=self.context.clock.now(),
        )
        return self._run(response, statement, challenge, public_context, binding=b"")

    def verify_response(
        self,
        response: VerificationResponse,
        statement: Statement,
        challenge: Challenge,
        public_context: PublicContext,
    ) -> VerificationOutcome:
        """
        Run guard check, proof verification and commit for one response.

        Returns
        -------
        VerificationOutcome
            ``Accepted`` or ``Rejected(reason)``. Any failure rejects.
        """
        return self._run(
            response, statement, challenge, public_context, binding=response.binding()
        )

    def _run(
        self,
        response: VerificationResponse,
        statement: Statement,
        challenge: Challenge,
        public_context: PublicContext,
        binding: bytes,
    ) -> VerificationOutcome:
        with self.guard.exclusive(challenge.challenge_id):
            try:
                outcome = self._verify(response, statement, challenge, public_context, binding)
            except FreeghostError as e:
                reason = rejection_reason(e)
                if reason is None:
                    raise
                outcome = VerificationOutcome.reject(reason, e.message)

        self._audit(response, statement, outcome)
        return outcome

    def verify_bytes(
        self,
        payload: bytes,
        statement: Statement,
        challenge: Challenge,
        public_context: PublicContext,
    ) -> VerificationOutcome:
        """Decode a response received from the transport and verify it."""
        try:
            response = VerificationResponse.from_bytes(payload)
        except InputError as e:
            outcome = VerificationOutcome.reject(RejectionReason.MALFORMED, e.message)
            logger.warning("Malformed response rejected", error=e.message)
            self.context.audit.record(
                AuditEventType.VERIFICATION, accepted=False, reason=outcome.reason.value
            )
            return outcome
        return self.verify_response(response, statement, challenge, public_context)

    def _verify(
        self,
        response: VerificationResponse,
        statement: Statement,
        challenge: Challenge,
        public_context: PublicContext,
        binding: bytes,
    ) -> VerificationOutcome:
        proof = response.proof
        if not constant_time_equals(response.identifier, proof.identifier):
            return VerificationOutcome.reject(
                RejectionReason.INVALID_PROOF, "Response identifier differs from proof"
            )
        if not constant_time_equals(proof.challenge_id, challenge.challenge_id):
            return VerificationOutcome.reject(
                RejectionReason.INVALID_PROOF, "Proof bound to another challenge"
            )

        self.guard.check(response)
        if not constant_time_equals(proof.binding, binding):
            return VerificationOutcome.reject(
                RejectionReason.INVALID_PROOF, "Proof bound to other response fields"
            )
        if not self.engine.verify(proof, statement, challenge, public_context):
            return VerificationOutcome.reject(RejectionReason.INVALID_PROOF)

        self.guard.commit(response, challenge.challenge_id)
        self.engine.record_nullifier(proof, public_context)
        return VerificationOutcome.accept()

    def _audit(
        self,
        response: VerificationResponse,
        statement: Statement,
        outcome: VerificationOutcome,
    ) -> None:
        self.context.audit.record(
            AuditEventType.VERIFICATION,
            accepted=outcome.accepted,
            reason=outcome.reason.value if outcome.reason else None,
            statement_kind=getattr(statement, "kind", "unknown"),
            identifier_preview=preview(response.identifier),
        )
