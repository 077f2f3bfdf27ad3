"""Tests for zero-knowledge proof generation and verification."""

import os
from dataclasses import replace

import pytest

from freeghost_core.capabilities import InMemoryStore
from freeghost_core.data_models import (
    AttributeAttestation,
    Challenge,
    PublicContext,
    SecurityLevel,
    Template,
    ZKProof,
    response_binding,
)
from freeghost_core.exceptions import (
    PredicateNotSatisfied,
    ProofGenerationError,
    RevokedIdentifier,
    StaleChallenge,
    UniquenessViolation,
    UnsupportedStatement,
)
from freeghost_core.signatures import QuantumSignatureModule
from freeghost_core.statements import EligibilityPredicate, KnowledgeOfTemplate, Uniqueness
from freeghost_core.zk_prover import NULLIFIER_NAMESPACE, ZKProofEngine, attestation_message

BANK = b"bank-42"
CLINIC = b"clinic-7"


class ConsumedStore:
    """Challenge store reporting every challenge as consumed."""

    def is_consumed(self, challenge_id):
        return True


@pytest.fixture(scope="module")
def signatures():
    return QuantumSignatureModule(SecurityLevel.LEVEL_128)


@pytest.fixture(scope="module")
def issuer(signatures):
    return signatures.keygen()


@pytest.fixture
def engine(clock, signatures):
    return ZKProofEngine(
        SecurityLevel.LEVEL_128, clock=clock, signature_module=signatures, range_bits=4
    )


@pytest.fixture
def template():
    return Template(os.urandom(32), attributes={"age": 25})


def issue(clock, salt=BANK, ttl=60.0):
    return Challenge(os.urandom(16), os.urandom(32), clock.now(), ttl, salt)


def attest(engine, signatures, issuer, template, salt, attribute="age"):
    identifier = engine.deriver.derive(template, salt)
    commitment = engine.commit_attribute(template, salt, attribute)
    signature = signatures.sign(
        attestation_message(identifier.value, attribute, commitment), issuer.secret_key
    )
    return AttributeAttestation(
        attribute=attribute,
        identifier=identifier.value,
        commitment=commitment,
        signature=signature,
        issuer_key=issuer.public_key,
    )


class TestKnowledgeOfTemplate:
    """Schnorr proof of possession."""

    def test_valid_proof(self, engine, template, clock):
        challenge = issue(clock)
        proof = engine.prove(KnowledgeOfTemplate(), template, challenge)
        assert proof.identifier == engine.deriver.derive(template, BANK).value
        assert engine.verify(proof, KnowledgeOfTemplate(), challenge, PublicContext(BANK))

    def test_proof_survives_serialization(self, engine, template, clock):
        challenge = issue(clock)
        proof = engine.prove(KnowledgeOfTemplate(), template, challenge)
        decoded = ZKProof.from_bytes(proof.to_bytes())
        assert decoded == proof
        assert engine.verify(decoded, KnowledgeOfTemplate(), challenge, PublicContext(BANK))

    def test_tampered_response(self, engine, template, clock):
        challenge = issue(clock)
        proof = engine.prove(KnowledgeOfTemplate(), template, challenge)
        tampered = replace(proof, responses=((proof.responses[0] + 1) % engine.group.q,))
        assert not engine.verify(tampered, KnowledgeOfTemplate(), challenge, PublicContext(BANK))

    def test_tampered_identifier(self, engine, template, clock):
        challenge = issue(clock)
        proof = engine.prove(KnowledgeOfTemplate(), template, challenge)
        tampered = replace(proof, identifier=bytes(32))
        assert not engine.verify(tampered, KnowledgeOfTemplate(), challenge, PublicContext(BANK))

    def test_proof_bound_to_its_challenge(self, engine, template, clock):
        proof = engine.prove(KnowledgeOfTemplate(), template, issue(clock))
        other = issue(clock)
        assert not engine.verify(proof, KnowledgeOfTemplate(), other, PublicContext(BANK))
        moved = replace(proof, challenge_id=other.challenge_id)
        assert not engine.verify(moved, KnowledgeOfTemplate(), other, PublicContext(BANK))

    def test_proof_not_valid_at_another_service(self, engine, template, clock):
        challenge = issue(clock)
        proof = engine.prove(KnowledgeOfTemplate(), template, challenge)
        assert not engine.verify(proof, KnowledgeOfTemplate(), challenge, PublicContext(CLINIC))

    def test_wrong_statement(self, engine, template, clock):
        challenge = issue(clock)
        proof = engine.prove(KnowledgeOfTemplate(), template, challenge)
        assert not engine.verify(proof, Uniqueness(context="vote"), challenge, PublicContext(BANK))

    def test_revoked_identifier(self, engine, template, clock):
        challenge = issue(clock)
        proof = engine.prove(KnowledgeOfTemplate(), template, challenge)
        context = PublicContext(BANK, revoked_identifiers=frozenset({proof.identifier}))
        with pytest.raises(RevokedIdentifier):
            engine.verify(proof, KnowledgeOfTemplate(), challenge, context)


class TestChallengeHandling:
    """Expired, consumed and unsupported inputs."""

    def test_expired_challenge_on_prove(self, engine, template, clock):
        challenge = issue(clock, ttl=10.0)
        clock.advance(11.0)
        with pytest.raises(StaleChallenge):
            engine.prove(KnowledgeOfTemplate(), template, challenge)

    def test_expired_challenge_on_verify(self, engine, template, clock):
        challenge = issue(clock, ttl=10.0)
        proof = engine.prove(KnowledgeOfTemplate(), template, challenge)
        clock.advance(11.0)
        with pytest.raises(StaleChallenge):
            engine.verify(proof, KnowledgeOfTemplate(), challenge, PublicContext(BANK))

    def test_consumed_challenge(self, clock, signatures, template):
        engine = ZKProofEngine(
            SecurityLevel.LEVEL_128,
            clock=clock,
            signature_module=signatures,
            challenge_store=ConsumedStore(),
        )
        with pytest.raises(StaleChallenge):
            engine.prove(KnowledgeOfTemplate(), template, issue(clock))

    def test_unsupported_statement(self, engine, template, clock):
        with pytest.raises(UnsupportedStatement):
            engine.prove(object(), template, issue(clock))

    def test_malformed_statement(self, engine, template, clock):
        with pytest.raises(UnsupportedStatement):
            engine.prove(Uniqueness(context=""), template, issue(clock))

    def test_statistics(self, engine, template, clock):
        challenge = issue(clock)
        proof = engine.prove(KnowledgeOfTemplate(), template, challenge)
        engine.verify(proof, KnowledgeOfTemplate(), challenge, PublicContext(BANK))
        stats = engine.get_statistics()
        assert stats["proofs_generated"] == 1
        assert stats["proofs_verified"] == 1
        assert stats["group_bits"] == 3072


class TestUniqueness:
    """Nullifier-based one-per-person proofs."""

    def test_valid_then_reused(self, engine, template, clock):
        store = InMemoryStore()
        context = PublicContext(BANK, nullifier_store=store)
        statement = Uniqueness(context="election-2026")

        first_challenge = issue(clock)
        first = engine.prove(statement, template, first_challenge)
        assert engine.verify(first, statement, first_challenge, context)
        engine.record_nullifier(first, context)
        assert store.count(NULLIFIER_NAMESPACE) == 1

        second_challenge = issue(clock)
        second = engine.prove(statement, template, second_challenge)
        assert second.nullifier == first.nullifier
        with pytest.raises(UniquenessViolation):
            engine.verify(second, statement, second_challenge, context)

    def test_contexts_are_independent(self, engine, template, clock):
        a = engine.prove(Uniqueness(context="vote-a"), template, issue(clock))
        b = engine.prove(Uniqueness(context="vote-b"), template, issue(clock))
        assert a.nullifier != b.nullifier

    def test_recording_twice(self, engine, template, clock):
        context = PublicContext(BANK, nullifier_store=InMemoryStore())
        proof = engine.prove(Uniqueness(context="vote"), template, issue(clock))
        engine.record_nullifier(proof, context)
        with pytest.raises(UniquenessViolation):
            engine.record_nullifier(proof, context)

    def test_forged_nullifier(self, engine, template, clock):
        challenge = issue(clock)
        statement = Uniqueness(context="vote")
        proof = engine.prove(statement, template, challenge)
        forged = replace(proof, nullifier=engine.group.exp(engine.group.g, 7))
        assert not engine.verify(forged, statement, challenge, PublicContext(BANK))


class TestEligibility:
    """Attested range proofs on hidden attributes."""

    def test_valid_proof(self, engine, signatures, issuer, template, clock):
        attestation = attest(engine, signatures, issuer, template, BANK)
        statement = EligibilityPredicate(attribute="age", threshold=18)
        challenge = issue(clock)
        proof = engine.prove(statement, template, challenge, attestation)
        assert len(proof.commitments) == 3 * 4 + 2
        context = PublicContext(BANK, trusted_issuers=(issuer.public_key,))
        assert engine.verify(proof, statement, challenge, context)

    def test_threshold_equal_to_value(self, engine, signatures, issuer, template, clock):
        attestation = attest(engine, signatures, issuer, template, BANK)
        statement = EligibilityPredicate(attribute="age", threshold=25)
        challenge = issue(clock)
        proof = engine.prove(statement, template, challenge, attestation)
        context = PublicContext(BANK, trusted_issuers=(issuer.public_key,))
        assert engine.verify(proof, statement, challenge, context)

    def test_predicate_not_satisfied(self, engine, signatures, issuer, template, clock):
        attestation = attest(engine, signatures, issuer, template, BANK)
        with pytest.raises(PredicateNotSatisfied):
            engine.prove(
                EligibilityPredicate(attribute="age", threshold=30), template, issue(clock), attestation
            )

    def test_missing_attribute(self, engine, template, clock):
        with pytest.raises(PredicateNotSatisfied):
            engine.prove(EligibilityPredicate(attribute="tier", threshold=1), template, issue(clock))

    def test_missing_attestation(self, engine, template, clock):
        with pytest.raises(ProofGenerationError):
            engine.prove(EligibilityPredicate(attribute="age", threshold=18), template, issue(clock))

    def test_untrusted_issuer(self, engine, signatures, issuer, template, clock):
        attestation = attest(engine, signatures, issuer, template, BANK)
        statement = EligibilityPredicate(attribute="age", threshold=18)
        challenge = issue(clock)
        proof = engine.prove(statement, template, challenge, attestation)
        other = signatures.keygen()
        context = PublicContext(BANK, trusted_issuers=(other.public_key,))
        assert not engine.verify(proof, statement, challenge, context)

    def test_threshold_swapped_after_proving(self, engine, signatures, issuer, template, clock):
        attestation = attest(engine, signatures, issuer, template, BANK)
        challenge = issue(clock)
        proof = engine.prove(
            EligibilityPredicate(attribute="age", threshold=18), template, challenge, attestation
        )
        lowered = replace(proof, statement=EligibilityPredicate(attribute="age", threshold=10))
        context = PublicContext(BANK, trusted_issuers=(issuer.public_key,))
        assert not engine.verify(lowered, lowered.statement, challenge, context)

    def test_attestation_from_other_service_rejected(self, engine, signatures, issuer, template, clock):
        attestation = attest(engine, signatures, issuer, template, CLINIC)
        with pytest.raises(ProofGenerationError):
            engine.prove(
                EligibilityPredicate(attribute="age", threshold=18), template, issue(clock), attestation
            )

    def test_true_predicate_beyond_configured_width(self, engine, signatures, issuer, template, clock):
        attestation = attest(engine, signatures, issuer, template, BANK)
        with pytest.raises(ProofGenerationError) as excinfo:
            engine.prove(
                EligibilityPredicate(attribute="age", threshold=5), template, issue(clock), attestation
            )
        assert not isinstance(excinfo.value, PredicateNotSatisfied)

    @pytest.mark.slow
    def test_default_width_covers_large_attributes(self, signatures, issuer, clock):
        engine = ZKProofEngine(SecurityLevel.LEVEL_128, clock=clock, signature_module=signatures)
        assert engine.range_bits == 32
        template = Template(os.urandom(32), attributes={"age": 300})
        attestation = attest(engine, signatures, issuer, template, BANK)
        statement = EligibilityPredicate(attribute="age", threshold=18)
        challenge = issue(clock)
        proof = engine.prove(statement, template, challenge, attestation)
        context = PublicContext(BANK, trusted_issuers=(issuer.public_key,))
        assert engine.verify(proof, statement, challenge, context)


class TestResponseBinding:
    """Proofs commit to the response fields sent with them."""

    def test_binding_is_part_of_the_proof(self, engine, template, clock):
        challenge = issue(clock)
        binding = response_binding(clock.now(), [0.1, 0.2])
        proof = engine.prove(KnowledgeOfTemplate(), template, challenge, binding=binding)
        assert proof.binding == binding
        assert ZKProof.from_bytes(proof.to_bytes()) == proof
        assert engine.verify(proof, KnowledgeOfTemplate(), challenge, PublicContext(BANK))

        rebound = replace(proof, binding=response_binding(clock.now() + 1.0, [0.1, 0.2]))
        assert not engine.verify(rebound, KnowledgeOfTemplate(), challenge, PublicContext(BANK))

    def test_binding_covers_timestamp_and_sample(self):
        base = response_binding(1000.0, [0.1, 0.2])
        assert response_binding(1000.0, [0.1, 0.2]) == base
        assert response_binding(1000.0000001, [0.1, 0.2]) != base
        assert response_binding(1000.0, [0.1, 0.3]) != base
        assert response_binding(1000.0) != base
