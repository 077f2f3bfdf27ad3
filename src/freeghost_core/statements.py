"""
Statements provable by the zero-knowledge proof engine.

The set is closed: `KnowledgeOfTemplate`, `Uniqueness` and
`EligibilityPredicate`. Each statement has a canonical binary encoding that
is hashed into the Fiat-Shamir transcript, so a proof for one statement can
never be presented for another.
"""

from dataclasses import dataclass
from typing import Optional

from .encoding import BinaryWriter, ObjectType, decode_envelope, encode_envelope
from .exceptions import EncodingError, UnsupportedStatement

TAG_KNOWLEDGE = 1
TAG_UNIQUENESS = 2
TAG_ELIGIBILITY = 3

MAX_LABEL_LENGTH = 256


class Statement:
    """Base class of provable statements."""

    tag: int = 0
    kind: str = "statement"

    def _write_body(self, writer: BinaryWriter) -> None:
        raise NotImplementedError

    def to_bytes(self) -> bytes:
        writer = BinaryWriter().write_u8(self.tag)
        self._write_body(writer)
        return encode_envelope(ObjectType.STATEMENT, 0, writer.getvalue())

    @staticmethod
    def from_bytes(data: bytes) -> "Statement":
        """
        Decode a statement.

        Raises
        ------
        UnsupportedStatement
            For unknown tags or malformed bodies.
        """
        try:
            _, reader = decode_envelope(data, ObjectType.STATEMENT, level_bits=0)
            tag = reader.read_u8()
            if tag == TAG_KNOWLEDGE:
                statement: Statement = KnowledgeOfTemplate()
            elif tag == TAG_UNIQUENESS:
                statement = Uniqueness(context=reader.read_str())
            elif tag == TAG_ELIGIBILITY:
                attribute = reader.read_str()
                threshold = reader.read_u32()
                behavior = reader.read_optional_bytes()
                statement = EligibilityPredicate(
                    attribute=attribute,
                    threshold=threshold,
                    behavior_class=behavior.decode("utf-8") if behavior is not None else None,
                )
            else:
                raise UnsupportedStatement(f"Unknown statement tag {tag}", statement_tag=tag)
            reader.expect_end()
        except (EncodingError, UnicodeDecodeError) as e:
            raise UnsupportedStatement(f"Malformed statement encoding: {e}") from e

        statement.validate()
        return statement

    def validate(self) -> None:
        """Raise `UnsupportedStatement` when the statement is ill-formed."""


@dataclass(frozen=True)
class KnowledgeOfTemplate(Statement):
    """Possession of the template behind a given service identifier."""

    tag = TAG_KNOWLEDGE
    kind = "knowledge_of_template"

    def _write_body(self, writer: BinaryWriter) -> None:
        pass


@dataclass(frozen=True)
class Uniqueness(Statement):
    """
    The identifier has not produced a valid proof for `context` before.

    Parameters
    ----------
    context : str
        Label of the one-per-person context, e.g. ``"election-2026"``.
    """

    context: str = ""
    tag = TAG_UNIQUENESS
    kind = "uniqueness"

    def _write_body(self, writer: BinaryWriter) -> None:
        writer.write_str(self.context)

    def validate(self) -> None:
        if not self.context or len(self.context) > MAX_LABEL_LENGTH:
            raise UnsupportedStatement("Uniqueness context must be 1-256 characters")


@dataclass(frozen=True)
class EligibilityPredicate(Statement):
    """
    A hidden attribute is at least `threshold`.

    Parameters
    ----------
    attribute : str
        Name of the hidden attribute captured at enrollment (e.g. ``"age"``).
    threshold : int
        Minimum value of the attribute.
    behavior_class : str, optional
        Expected behavioral pattern class the verifier checks the response's
        behavior sample against.
    """

    attribute: str = ""
    threshold: int = 0
    behavior_class: Optional[str] = None
    tag = TAG_ELIGIBILITY
    kind = "eligibility_predicate"

    def _write_body(self, writer: BinaryWriter) -> None:
        writer.write_str(self.attribute)
        writer.write_u32(self.threshold)
        writer.write_optional_bytes(
            self.behavior_class.encode("utf-8") if self.behavior_class is not None else None
        )

    def validate(self) -> None:
        if not self.attribute or len(self.attribute) > MAX_LABEL_LENGTH:
            raise UnsupportedStatement("Eligibility attribute must be 1-256 characters")
        if not isinstance(self.threshold, int) or not 0 <= self.threshold < 2**32:
            raise UnsupportedStatement("Eligibility threshold must be a 32-bit unsigned int")
        if self.behavior_class is not None and not self.behavior_class:
            raise UnsupportedStatement("Behavior class must not be empty")
