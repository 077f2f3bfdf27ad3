"""
End-to-end tests: enrollment on the prover side, verification on the verifier side.

Both sides share one `CoreContext` built from the fast test configuration,
with a controllable clock and an in-memory append-only store.
"""

import threading
from dataclasses import replace

import numpy as np
import pytest

from freeghost_core.audit import AuditEventType
from freeghost_core.data_models import RejectionReason
from freeghost_core.exceptions import PredicateNotSatisfied, UnknownTemplateHandle
from freeghost_core.replay_guard import BehaviorProfile
from freeghost_core.statements import EligibilityPredicate, KnowledgeOfTemplate, Uniqueness
from freeghost_core.verifier import Verifier

BANK = b"bank-42"
CLINIC = b"clinic-7"


class TestEnrollment:
    """Handles and identifiers."""

    def test_identifiers_per_service(self, core, biometric, behavioral):
        handle = core.enroll(biometric, behavioral)
        id_bank = core.get_service_identifier(handle, BANK)
        id_clinic = core.get_service_identifier(handle, CLINIC)
        assert id_bank != id_clinic
        assert core.get_service_identifier(handle, BANK) == id_bank

    def test_two_enrollments_unlinkable(self, core, biometric, behavioral):
        first = core.enroll(biometric, behavioral)
        second = core.enroll(biometric, behavioral)
        assert core.get_service_identifier(first, BANK) != core.get_service_identifier(second, BANK)

    def test_template_is_sealed(self, core, context, biometric, behavioral):
        handle = core.enroll(biometric, behavioral)
        artifact = context.key_manager.artifact(handle.handle_id)
        assert artifact is not None
        assert artifact.key_version == context.key_manager.current.version

    def test_unknown_handle(self, core, biometric, behavioral):
        from freeghost_core.data_models import TemplateHandle

        with pytest.raises(UnknownTemplateHandle):
            core.get_service_identifier(TemplateHandle("tmpl_missing"), BANK)

    def test_enrollment_audited(self, core, context, biometric, behavioral):
        core.enroll(biometric, behavioral)
        assert context.audit.events(AuditEventType.TEMPLATE_GENERATION)


class TestKnowledgeVerification:
    """Challenge, proof, verification and replay."""

    def test_accepted_then_replay_rejected(self, core, verifier, biometric, behavioral):
        handle = core.enroll(biometric, behavioral)
        challenge = verifier.issue_challenge(BANK)
        response = core.build_response(handle, KnowledgeOfTemplate(), challenge)
        context = verifier.public_context(BANK)

        first = verifier.verify_response(response, KnowledgeOfTemplate(), challenge, context)
        second = verifier.verify_response(response, KnowledgeOfTemplate(), challenge, context)

        assert str(first) == "Accepted"
        assert str(second) == "Rejected(StaleResponse)"
        assert second.public_view() == {"status": "rejected"}

    def test_expired_challenge(self, core, verifier, clock, biometric, behavioral):
        handle = core.enroll(biometric, behavioral)
        challenge = verifier.issue_challenge(BANK)
        response = core.build_response(handle, KnowledgeOfTemplate(), challenge)
        clock.advance(61.0)
        outcome = verifier.verify_response(
            response, KnowledgeOfTemplate(), challenge, verifier.public_context(BANK)
        )
        assert outcome.reason is RejectionReason.STALE_CHALLENGE

    def test_future_timestamp(self, core, verifier, clock, biometric, behavioral):
        handle = core.enroll(biometric, behavioral)
        challenge = verifier.issue_challenge(BANK)
        response = core.build_response(handle, KnowledgeOfTemplate(), challenge)
        ahead = replace(response, timestamp=clock.now() + 30.0)
        outcome = verifier.verify_response(
            ahead, KnowledgeOfTemplate(), challenge, verifier.public_context(BANK)
        )
        assert outcome.reason is RejectionReason.FUTURE_TIMESTAMP

    def test_proof_for_other_service(self, core, verifier, biometric, behavioral):
        handle = core.enroll(biometric, behavioral)
        challenge = verifier.issue_challenge(BANK)
        response = core.build_response(handle, KnowledgeOfTemplate(), challenge)
        outcome = verifier.verify_response(
            response, KnowledgeOfTemplate(), challenge, verifier.public_context(CLINIC)
        )
        assert outcome.reason is RejectionReason.INVALID_PROOF

    def test_verify_bytes(self, core, verifier, biometric, behavioral):
        handle = core.enroll(biometric, behavioral)
        challenge = verifier.issue_challenge(BANK)
        response = core.build_response(handle, KnowledgeOfTemplate(), challenge)
        context = verifier.public_context(BANK)

        garbage = verifier.verify_bytes(b"\x00" * 40, KnowledgeOfTemplate(), challenge, context)
        assert garbage.reason is RejectionReason.MALFORMED

        outcome = verifier.verify_bytes(response.to_bytes(), KnowledgeOfTemplate(), challenge, context)
        assert outcome.accepted

    @pytest.mark.slow
    def test_every_flipped_byte_rejected(self, core, verifier, biometric, behavioral):
        handle = core.enroll(biometric, behavioral)
        challenge = verifier.issue_challenge(BANK)
        payload = core.build_response(handle, KnowledgeOfTemplate(), challenge).to_bytes()
        context = verifier.public_context(BANK)

        accepted = []
        for offset in range(len(payload)):
            tampered = bytearray(payload)
            tampered[offset] ^= 0x01
            outcome = verifier.verify_bytes(bytes(tampered), KnowledgeOfTemplate(), challenge, context)
            if outcome.accepted:
                accepted.append(offset)

        assert accepted == []
        assert verifier.verify_bytes(payload, KnowledgeOfTemplate(), challenge, context).accepted

    def test_restamped_response_rejected(self, core, verifier, biometric, behavioral):
        handle = core.enroll(biometric, behavioral)
        challenge = verifier.issue_challenge(BANK)
        response = core.build_response(handle, KnowledgeOfTemplate(), challenge)
        context = verifier.public_context(BANK)

        restamped = replace(response, timestamp=response.timestamp - 1.0)
        outcome = verifier.verify_response(restamped, KnowledgeOfTemplate(), challenge, context)
        assert outcome.reason is RejectionReason.INVALID_PROOF
        assert verifier.verify_response(response, KnowledgeOfTemplate(), challenge, context).accepted

    def test_bare_proof(self, core, verifier, biometric, behavioral):
        handle = core.enroll(biometric, behavioral)
        context = verifier.public_context(BANK)

        challenge = verifier.issue_challenge(BANK)
        proof = core.prove_statement(handle, KnowledgeOfTemplate(), challenge)
        assert verifier.verify_proof(proof, KnowledgeOfTemplate(), challenge, context).accepted

        challenge = verifier.issue_challenge(BANK)
        bound = core.build_response(handle, KnowledgeOfTemplate(), challenge).proof
        outcome = verifier.verify_proof(bound, KnowledgeOfTemplate(), challenge, context)
        assert outcome.reason is RejectionReason.INVALID_PROOF

    def test_concurrent_submissions_accept_once(self, core, verifier, biometric, behavioral):
        handle = core.enroll(biometric, behavioral)
        challenge = verifier.issue_challenge(BANK)
        response = core.build_response(handle, KnowledgeOfTemplate(), challenge)
        context = verifier.public_context(BANK)
        outcomes = []

        def submit():
            outcomes.append(
                verifier.verify_response(response, KnowledgeOfTemplate(), challenge, context)
            )

        threads = [threading.Thread(target=submit) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sum(o.accepted for o in outcomes) == 1

    def test_rejections_audited(self, core, verifier, context, biometric, behavioral):
        handle = core.enroll(biometric, behavioral)
        challenge = verifier.issue_challenge(BANK)
        response = core.build_response(handle, KnowledgeOfTemplate(), challenge)
        public = verifier.public_context(BANK)
        verifier.verify_response(response, KnowledgeOfTemplate(), challenge, public)
        verifier.verify_response(response, KnowledgeOfTemplate(), challenge, public)

        summary = context.audit.summary()
        assert summary["rejections_by_reason"] == {"stale_response": 1}


class TestUniquenessVerification:
    """One valid proof per person and context."""

    def test_second_proof_rejected(self, core, verifier, biometric, behavioral):
        handle = core.enroll(biometric, behavioral)
        statement = Uniqueness(context="election-2026")
        context = verifier.public_context(BANK)

        first_challenge = verifier.issue_challenge(BANK)
        first = verifier.verify_response(
            core.build_response(handle, statement, first_challenge), statement, first_challenge, context
        )
        second_challenge = verifier.issue_challenge(BANK)
        second = verifier.verify_response(
            core.build_response(handle, statement, second_challenge), statement, second_challenge, context
        )

        assert first.accepted
        assert second.reason is RejectionReason.NOT_UNIQUE

    def test_other_person_accepted(self, core, verifier, rng):
        statement = Uniqueness(context="election-2026")
        context = verifier.public_context(BANK)
        for _ in range(2):
            handle = core.enroll(rng.random(16), rng.random(8))
            challenge = verifier.issue_challenge(BANK)
            outcome = verifier.verify_response(
                core.build_response(handle, statement, challenge), statement, challenge, context
            )
            assert outcome.accepted


class TestEligibilityVerification:
    """Hidden attribute predicates."""

    def test_predicate_accepted(self, core, verifier, biometric, behavioral):
        handle = core.enroll(biometric, behavioral, attributes={"age": 25})
        statement = EligibilityPredicate(attribute="age", threshold=18)
        challenge = verifier.issue_challenge(BANK)
        response = core.build_response(handle, statement, challenge)
        context = verifier.public_context(BANK, trusted_issuers=[core.issuer_key])
        assert verifier.verify_response(response, statement, challenge, context).accepted

    def test_untrusted_issuer_rejected(self, core, verifier, biometric, behavioral):
        handle = core.enroll(biometric, behavioral, attributes={"age": 25})
        statement = EligibilityPredicate(attribute="age", threshold=18)
        challenge = verifier.issue_challenge(BANK)
        response = core.build_response(handle, statement, challenge)
        outcome = verifier.verify_response(
            response, statement, challenge, verifier.public_context(BANK)
        )
        assert outcome.reason is RejectionReason.INVALID_PROOF

    def test_predicate_not_satisfied(self, core, verifier, biometric, behavioral):
        handle = core.enroll(biometric, behavioral, attributes={"age": 16})
        challenge = verifier.issue_challenge(BANK)
        with pytest.raises(PredicateNotSatisfied):
            core.build_response(handle, EligibilityPredicate(attribute="age", threshold=18), challenge)

    def test_behavior_class(self, core, context, biometric, behavioral):
        centroid = np.linspace(0.1, 0.8, 8)
        verifier = Verifier(context, behavior_profile=BehaviorProfile({"typing": centroid}))
        handle = core.enroll(biometric, behavioral, attributes={"age": 25})
        statement = EligibilityPredicate(attribute="age", threshold=18, behavior_class="typing")
        public = verifier.public_context(BANK, trusted_issuers=[core.issuer_key])

        challenge = verifier.issue_challenge(BANK)
        consistent = core.build_response(handle, statement, challenge, behavior_sample=centroid * 1.02)
        assert verifier.verify_response(consistent, statement, challenge, public).accepted

        challenge = verifier.issue_challenge(BANK)
        inconsistent = core.build_response(handle, statement, challenge, behavior_sample=centroid[::-1])
        outcome = verifier.verify_response(inconsistent, statement, challenge, public)
        assert outcome.reason is RejectionReason.BEHAVIORAL_MISMATCH

        challenge = verifier.issue_challenge(BANK)
        response = core.build_response(handle, statement, challenge, behavior_sample=centroid)
        swapped = replace(response, behavior_sample=centroid * 1.05)
        outcome = verifier.verify_response(swapped, statement, challenge, public)
        assert outcome.reason is RejectionReason.INVALID_PROOF


class TestLifecycle:
    """Re-enrollment and key rotation."""

    def test_re_enroll_revokes_old_identifiers(self, core, verifier, biometric, behavioral):
        handle = core.enroll(biometric, behavioral)
        challenge = verifier.issue_challenge(BANK)
        old_response = core.build_response(handle, KnowledgeOfTemplate(), challenge)

        new_handle = core.re_enroll(handle, biometric, behavioral)

        assert new_handle.epoch == handle.epoch + 1
        assert old_response.identifier in core.revoked_identifiers()
        with pytest.raises(UnknownTemplateHandle):
            core.get_service_identifier(handle, BANK)
        assert core.get_service_identifier(new_handle, BANK).value != old_response.identifier

        context = verifier.public_context(BANK, revoked_identifiers=core.revoked_identifiers())
        outcome = verifier.verify_response(old_response, KnowledgeOfTemplate(), challenge, context)
        assert outcome.reason is RejectionReason.REVOKED

    def test_rotation_keeps_identifiers(self, core, context, biometric, behavioral):
        handle = core.enroll(biometric, behavioral)
        before = core.get_service_identifier(handle, BANK)

        outcome = core.rotate_keys()

        assert outcome.rotated
        assert (outcome.old_version, outcome.new_version) == (1, 2)
        assert outcome.reprotected == 1
        assert context.key_manager.artifact(handle.handle_id).key_version == 2
        assert core.get_service_identifier(handle, BANK) == before

    def test_enrollment_during_rotation_kept(
        self, core, context, biometric, behavioral, rng, monkeypatch
    ):
        core.enroll(biometric, behavioral)
        key_manager = context.key_manager
        stage = key_manager._stage
        late_handles = []

        def stage_with_enrollment(dependents, old, new):
            if not late_handles:
                late_handles.append(core.enroll(rng.random(16), rng.random(8)))
            return stage(dependents, old, new)

        monkeypatch.setattr(key_manager, "_stage", stage_with_enrollment)
        outcome = core.rotate_keys()

        assert outcome.rotated
        (late,) = late_handles
        assert key_manager.artifact(late.handle_id).key_version == outcome.new_version
        assert core.get_service_identifier(late, BANK)

    def test_rotation_failure_reported(self, core, context, biometric, behavioral, monkeypatch):
        from freeghost_core.exceptions import CryptoError

        handle = core.enroll(biometric, behavioral)

        def failing_stage(dependents, old, new):
            raise CryptoError("self-check failed", operation="rotate")

        monkeypatch.setattr(context.key_manager, "_stage", failing_stage)
        outcome = core.rotate_keys()

        assert not outcome.rotated
        assert outcome.new_version == outcome.old_version == 1
        assert core.get_service_identifier(handle, BANK)

    def test_eligibility_after_rotation_uses_new_issuer(self, core, verifier, biometric, behavioral):
        handle = core.enroll(biometric, behavioral, attributes={"age": 25})
        core.rotate_keys()
        statement = EligibilityPredicate(attribute="age", threshold=18)
        challenge = verifier.issue_challenge(BANK)
        response = core.build_response(handle, statement, challenge)
        context = verifier.public_context(BANK, trusted_issuers=[core.issuer_key])
        assert verifier.verify_response(response, statement, challenge, context).accepted
