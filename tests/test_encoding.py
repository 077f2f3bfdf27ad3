"""Tests for the versioned binary envelope and data model serialization."""

import numpy as np
import pytest

from freeghost_core.data_models import (
    Challenge,
    SecurityLevel,
    Template,
    VerificationOutcome,
    RejectionReason,
)
from freeghost_core.encoding import (
    BinaryReader,
    BinaryWriter,
    ObjectType,
    decode_envelope,
    encode_envelope,
)
from freeghost_core.exceptions import EncodingError, UnsupportedStatement
from freeghost_core.statements import (
    EligibilityPredicate,
    KnowledgeOfTemplate,
    Statement,
    Uniqueness,
)


class TestEnvelope:
    """Envelope framing."""

    def test_header_carries_type_and_level(self):
        body = BinaryWriter().write_bytes(b"body").getvalue()
        blob = encode_envelope(ObjectType.SIGNATURE, 192, body)
        level, reader = decode_envelope(blob, ObjectType.SIGNATURE)
        assert blob[:2] == b"FG"
        assert level == 192
        assert reader.read_bytes() == b"body"
        reader.expect_end()

    def test_wrong_type_rejected(self):
        blob = encode_envelope(ObjectType.SIGNATURE, 128, b"")
        with pytest.raises(EncodingError):
            decode_envelope(blob, ObjectType.ZK_PROOF)

    def test_bad_magic_rejected(self):
        blob = b"XX" + encode_envelope(ObjectType.CHALLENGE, 0, b"abc")[2:]
        with pytest.raises(EncodingError):
            decode_envelope(blob, ObjectType.CHALLENGE)

    def test_truncated_and_trailing_bytes_rejected(self):
        blob = encode_envelope(ObjectType.CHALLENGE, 0, b"abcdef")
        with pytest.raises(EncodingError):
            decode_envelope(blob[:-1], ObjectType.CHALLENGE)
        with pytest.raises(EncodingError):
            decode_envelope(blob + b"\x00", ObjectType.CHALLENGE)

    def test_non_bytes_rejected(self):
        with pytest.raises(EncodingError):
            decode_envelope("not bytes", ObjectType.CHALLENGE)

    def test_unknown_version_rejected(self):
        blob = bytearray(encode_envelope(ObjectType.CHALLENGE, 0, b""))
        blob[3] = 99
        with pytest.raises(EncodingError):
            decode_envelope(bytes(blob), ObjectType.CHALLENGE)

    def test_unexpected_level_rejected(self):
        blob = encode_envelope(ObjectType.CHALLENGE, 192, b"")
        with pytest.raises(EncodingError):
            decode_envelope(blob, ObjectType.CHALLENGE, level_bits=0)
        assert decode_envelope(blob, ObjectType.CHALLENGE)[0] == 192


class TestBinaryReader:
    """Body reader strictness."""

    def test_integers_are_minimal(self):
        writer = BinaryWriter().write_bytes(b"\x00\x05")
        with pytest.raises(EncodingError):
            BinaryReader(writer.getvalue()).read_int()

    def test_negative_integer_not_encodable(self):
        with pytest.raises(EncodingError):
            BinaryWriter().write_int(-1)

    def test_expect_end(self):
        reader = BinaryReader(BinaryWriter().write_u8(1).write_u8(2).getvalue())
        reader.read_u8()
        with pytest.raises(EncodingError):
            reader.expect_end()

    def test_invalid_optional_flag(self):
        with pytest.raises(EncodingError):
            BinaryReader(b"\x07").read_optional_bytes()


class TestModelSerialization:
    """Models survive the envelope and reject tampering."""

    def test_challenge(self):
        challenge = Challenge(b"i" * 16, b"n" * 32, 1000.5, 60.0, b"bank-42")
        assert Challenge.from_bytes(challenge.to_bytes()) == challenge

    def test_levelless_models_require_zero_level(self):
        challenge = bytearray(Challenge(b"i" * 16, b"n" * 32, 1000.5, 60.0, b"bank-42").to_bytes())
        challenge[4] ^= 1
        with pytest.raises(EncodingError):
            Challenge.from_bytes(bytes(challenge))

        statement = bytearray(KnowledgeOfTemplate().to_bytes())
        statement[4] ^= 1
        with pytest.raises(UnsupportedStatement):
            Statement.from_bytes(bytes(statement))

    def test_template_keeps_attributes_and_epoch(self):
        template = Template(b"\x01" * 32, attributes={"age": 34, "tier": 2}, epoch=3)
        decoded = Template.from_bytes(template.to_bytes())
        assert bytes(decoded.value) == b"\x01" * 32
        assert decoded.attributes == {"age": 34, "tier": 2}
        assert decoded.epoch == 3

    def test_statements(self):
        for statement in (
            KnowledgeOfTemplate(),
            Uniqueness(context="election-2026"),
            EligibilityPredicate(attribute="age", threshold=18, behavior_class="typing"),
        ):
            assert Statement.from_bytes(statement.to_bytes()) == statement

    def test_unknown_statement_tag(self):
        blob = encode_envelope(ObjectType.STATEMENT, 0, BinaryWriter().write_u8(42).getvalue())
        with pytest.raises(UnsupportedStatement):
            Statement.from_bytes(blob)

    def test_security_level_lookup(self):
        assert SecurityLevel.from_bits(192).signature_scheme == "ml_dsa_65"
        assert SecurityLevel.LEVEL_256.group_bits == 8192
        with pytest.raises(ValueError):
            SecurityLevel.from_bits(100)


class TestVerificationOutcome:
    """Outcome rendering."""

    def test_str(self):
        assert str(VerificationOutcome.accept()) == "Accepted"
        rejected = VerificationOutcome.reject(RejectionReason.STALE_RESPONSE, "replay")
        assert str(rejected) == "Rejected(StaleResponse)"

    def test_public_view_hides_reason(self):
        rejected = VerificationOutcome.reject(RejectionReason.NOT_UNIQUE, "nullifier reused")
        assert rejected.public_view() == {"status": "rejected"}

    def test_template_wipe(self):
        template = Template(np.arange(1, 33, dtype=np.uint8).tobytes(), attributes={"age": 1})
        with template:
            assert not template.wiped
        assert template.wiped
        assert template.attributes == {}
