"""
Prover-side interface of the FREEGHOST identity core.

`IdentityCore` is what collaborators outside the core talk to on the
enrolling party's side. Templates never cross this boundary: enrollment
returns an opaque `TemplateHandle`, the template itself is sealed by the key
manager and only opened for the duration of a single derivation or proof.
"""

import threading
from contextlib import contextmanager
from typing import Any, Dict, FrozenSet, Iterator, List, Mapping, Optional, Set, Tuple

import structlog

from .audit import AuditEventType
from .context import CoreContext
from .data_models import (
    AttributeAttestation,
    Challenge,
    RotationOutcome,
    ServiceIdentifier,
    Template,
    TemplateHandle,
    VerificationResponse,
    ZKProof,
    response_binding,
)
from .exceptions import KeyRetiredError, RotationError, UnknownTemplateHandle
from .secure_memory import scoped_secret
from .statements import EligibilityPredicate, Statement
from .utils import generate_handle_id, timer
from .zk_prover import attestation_message

# Initialize structured logger
logger = structlog.get_logger(__name__)


class IdentityCore:
    """
    Enrollment, identifier derivation and proof generation.

    Parameters
    ----------
    context : CoreContext
        Shared components built at startup.

    Examples
    --------
    >>> core = IdentityCore(CoreContext.from_config())
    >>> handle = core.enroll(biometric, behavioral)
    >>> core.get_service_identifier(handle, b"bank-42").hex()[:8]
    '5c1e09ab'
    """

    def __init__(self, context: CoreContext) -> None:
        self.context = context
        self._lock = threading.Lock()
        self._handles: Dict[str, TemplateHandle] = {}
        self._derived: Dict[str, Set[bytes]] = {}
        self._revoked: Set[bytes] = set()
        self._attestations: Dict[Tuple[str, bytes, str, int], AttributeAttestation] = {}

    # ------------------------------------------------------------------
    # Template lifecycle
    # ------------------------------------------------------------------

    def _seal(self, handle_id: str, template: Template) -> None:
        key_manager = self.context.key_manager
        with scoped_secret(bytearray(template.to_bytes())) as encoded:
            # A rotation committing mid-seal retires the captured key version
            for attempt in range(2):
                try:
                    key_manager.protect(handle_id, bytes(encoded))
                    return
                except KeyRetiredError:
                    if attempt:
                        raise

    @timer
    def enroll(
        self,
        biometric: Any,
        behavioral: Any,
        attributes: Optional[Mapping[str, int]] = None,
    ) -> TemplateHandle:
        """
        Enroll a person and return an opaque handle to the sealed template.

        Parameters
        ----------
        biometric : FeatureVector or array-like
            Biometric features from the external extractor.
        behavioral : FeatureVector or array-like
            Behavioral features from the external extractor.
        attributes : Mapping[str, int], optional
            Hidden attributes for eligibility proofs.

        Returns
        -------
        TemplateHandle
            Opaque handle; the template never leaves the core.

        Raises
        ------
        InvalidFeatureDimension
            On malformed feature vectors.
        InsufficientEntropy
            If fresh noise cannot be drawn; enrollment is aborted.
        """
        return self._enroll(biometric, behavioral, attributes, epoch=1)

    def _enroll(
        self,
        biometric: Any,
        behavioral: Any,
        attributes: Optional[Mapping[str, int]],
        epoch: int,
    ) -> TemplateHandle:
        template = self.context.template_generator.generate(
            biometric, behavioral, attributes=attributes, epoch=epoch
        )
        handle = TemplateHandle(
            handle_id=generate_handle_id(),
            epoch=epoch,
            created_at=self.context.clock.now(),
        )
        with template:
            self._seal(handle.handle_id, template)

        with self._lock:
            self._handles[handle.handle_id] = handle
            self._derived[handle.handle_id] = set()

        self.context.audit.record(
            AuditEventType.TEMPLATE_GENERATION, handle_id=handle.handle_id, epoch=epoch
        )
        return handle

    def _check_handle(self, handle: TemplateHandle) -> None:
        with self._lock:
            active = self._handles.get(handle.handle_id)
        if active is None or active.epoch != handle.epoch:
            raise UnknownTemplateHandle(handle.handle_id)

    @contextmanager
    def _template(self, handle: TemplateHandle) -> Iterator[Template]:
        """Open the sealed template for one operation and wipe it afterwards."""
        self._check_handle(handle)
        key_manager = self.context.key_manager

        # A rotation between fetching and opening retires the fetched copy
        for attempt in range(2):
            key_handle = key_manager.current
            artifact = key_manager.artifact(handle.handle_id)
            if artifact is None:
                raise UnknownTemplateHandle(handle.handle_id)
            try:
                plaintext = key_manager.unprotect(artifact, key_handle)
                break
            except KeyRetiredError:
                if attempt:
                    raise

        with scoped_secret(plaintext):
            template = Template.from_bytes(bytes(plaintext))
        with template:
            yield template

    def _remember(self, handle: TemplateHandle, identifier: bytes) -> None:
        with self._lock:
            derived = self._derived.get(handle.handle_id)
            if derived is not None:
                derived.add(bytes(identifier))

    def re_enroll(
        self,
        handle: TemplateHandle,
        biometric: Any,
        behavioral: Any,
        attributes: Optional[Mapping[str, int]] = None,
    ) -> TemplateHandle:
        """
        Supersede a template with a fresh enrollment.

        The old template is destroyed and every identifier derived from it
        is added to the revocation list.
        """
        self._check_handle(handle)
        new_handle = self._enroll(biometric, behavioral, attributes, epoch=handle.epoch + 1)

        with self._lock:
            self._handles.pop(handle.handle_id, None)
            revoked = self._derived.pop(handle.handle_id, set())
            self._revoked.update(revoked)
            self._attestations = {
                k: v for k, v in self._attestations.items() if k[0] != handle.handle_id
            }
        self.context.key_manager.forget(handle.handle_id)

        self.context.audit.record(
            AuditEventType.TEMPLATE_REVOCATION,
            handle_id=handle.handle_id,
            superseded_by=new_handle.handle_id,
            revoked_identifiers=len(revoked),
        )
        logger.info(
            "Template superseded",
            old_epoch=handle.epoch,
            new_epoch=new_handle.epoch,
            revoked_identifiers=len(revoked),
        )
        return new_handle

    def revoked_identifiers(self) -> FrozenSet[bytes]:
        with self._lock:
            return frozenset(self._revoked)

    def handles(self) -> List[TemplateHandle]:
        with self._lock:
            return list(self._handles.values())

    # ------------------------------------------------------------------
    # Identifiers, attestations and proofs
    # ------------------------------------------------------------------

    def get_service_identifier(self, handle: TemplateHandle, service_salt: bytes) -> ServiceIdentifier:
        """
        Identifier of the enrolled person at one service.

        Raises
        ------
        UnknownTemplateHandle
            If the handle is unknown or superseded.
        EmptySalt
            If the salt is zero-length.
        """
        with self._template(handle) as template:
            identifier = self.context.deriver.derive(template, service_salt)
        self._remember(handle, identifier.value)
        return identifier

    def attest_attribute(
        self, handle: TemplateHandle, service_salt: bytes, attribute: str
    ) -> AttributeAttestation:
        """
        Commit to a hidden attribute at one service and sign the commitment.

        The node's active key acts as issuer; verifiers list its public key
        among their trusted issuers.
        """
        key_handle = self.context.key_manager.current
        cache_key = (handle.handle_id, bytes(service_salt), attribute, key_handle.version)
        with self._lock:
            cached = self._attestations.get(cache_key)
        if cached is not None:
            return cached

        with self._template(handle) as template:
            identifier = self.context.deriver.derive(template, service_salt)
            commitment = self.context.engine.commit_attribute(template, service_salt, attribute)

        signature = self.context.key_manager.sign(
            attestation_message(identifier.value, attribute, commitment), key_handle
        )
        attestation = AttributeAttestation(
            attribute=attribute,
            identifier=identifier.value,
            commitment=commitment,
            signature=signature,
            issuer_key=key_handle.keypair.public_key,
        )
        with self._lock:
            self._attestations[cache_key] = attestation
        self._remember(handle, identifier.value)
        return attestation

    @property
    def issuer_key(self):
        return self.context.key_manager.current.keypair.public_key

    def prove_statement(
        self,
        handle: TemplateHandle,
        statement: Statement,
        challenge: Challenge,
        binding: bytes = b"",
    ) -> ZKProof:
        """
        Prove a statement about the handle's template, bound to a challenge.

        A non-empty `binding` commits the proof to the response fields it
        will travel with (see `response_binding`).

        Raises
        ------
        UnknownTemplateHandle
            If the handle is unknown or superseded.
        UnsupportedStatement
            If the statement is unsupported or malformed.
        StaleChallenge
            If the challenge has expired.
        PredicateNotSatisfied
            If an eligibility predicate does not hold.
        """
        attestation = None
        if isinstance(statement, EligibilityPredicate):
            statement.validate()
            with self._template(handle) as template:
                has_attribute = statement.attribute in template.attributes
            if has_attribute:
                attestation = self.attest_attribute(
                    handle, challenge.service_salt, statement.attribute
                )

        with self._template(handle) as template:
            proof = self.context.engine.prove(
                statement, template, challenge, attestation, binding=binding
            )
        self._remember(handle, proof.identifier)
        return proof

    def build_response(
        self,
        handle: TemplateHandle,
        statement: Statement,
        challenge: Challenge,
        behavior_sample: Any = None,
    ) -> VerificationResponse:
        """Prove a statement and wrap it into a timestamped response."""
        timestamp = self.context.clock.now()
        binding = response_binding(timestamp, behavior_sample)
        proof = self.prove_statement(handle, statement, challenge, binding)
        return VerificationResponse(
            proof=proof,
            identifier=proof.identifier,
            behavior_sample=behavior_sample,
            timestamp=timestamp,
        )

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def rotate_keys(self) -> RotationOutcome:
        """
        Rotate the node key and re-protect every sealed template.

        Returns
        -------
        RotationOutcome
            ``rotated=False`` with the error message when the rotation was
            aborted with the old state intact.

        Raises
        ------
        ConsistencyError
            If the rotation could not be rolled back; the key manager halts.
        """
        key_manager = self.context.key_manager
        old = key_manager.current
        reprotected = len(key_manager.artifacts())
        try:
            key_manager.rotate(old.keypair)
        except RotationError as e:
            logger.warning("Key rotation aborted", key_version=old.version, error=e.message)
            return RotationOutcome(
                rotated=False, old_version=old.version, new_version=old.version, error=e.message
            )

        with self._lock:
            self._attestations.clear()
        return RotationOutcome(
            rotated=True,
            old_version=old.version,
            new_version=key_manager.current.version,
            reprotected=reprotected,
        )
