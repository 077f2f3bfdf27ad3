"""
Long-term key management for the FREEGHOST identity core.

The `KeyManager` owns the node's ML-DSA signing key pair behind an immutable,
versioned `KeyHandle`. Callers capture the handle at the start of an
operation, so an in-flight sign or unprotect finishes on the version it
started with while new calls pick up a rotated key.

Artifacts (sealed templates, for instance) are protected with AES-256-GCM
under a key derived from the active secret key and signed with it. Rotation
re-protects every dependent artifact all-or-nothing: re-protected copies are
staged and self-checked first, then handle and registry are swapped together
under the write lock. A failed swap is rolled back; a failed rollback halts
the manager with `ConsistencyError` until resolved manually.
"""

import threading
import time
from dataclasses import dataclass
from typing import Any, Collection, Dict, Iterable, List, Optional, Set, Union

import structlog
from argon2.exceptions import HashingError
from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .audit import AuditEventType, AuditTrail
from .constants import (
    ARGON2_MEMORY_COST,
    ARGON2_PARALLELISM,
    ARGON2_TIME_COST,
    ARTIFACT_KEY_LENGTH,
    ARTIFACT_NONCE_LENGTH,
    ARTIFACT_PROTECTION_INFO,
    BACKUP_SALT_LENGTH,
    DEFAULT_KEY_ROTATION_DAYS,
)
from .data_models import EncryptedArtifact, KeyHandle, KeyPair, SecurityLevel, Signature
from .encoding import BinaryWriter, ObjectType, decode_envelope, encode_envelope
from .entropy import SystemRandomSource
from .exceptions import (
    BackupError,
    ConsistencyError,
    CryptoError,
    EncodingError,
    FreeghostError,
    KeyRetiredError,
    RotationError,
)
from .secure_memory import scoped_secret, wipe
from .signatures import QuantumSignatureModule
from .utils import ReadWriteLock, timer

# Initialize structured logger
logger = structlog.get_logger(__name__)

SECONDS_PER_DAY = 86400.0
BACKUP_AAD = b"freeghost/key-backup/v1"


@dataclass(frozen=True)
class KeyPolicy:
    """
    Rotation and backup policy of the managed key.

    Attributes
    ----------
    rotation_period : float
        Seconds after which `rotation_due` reports True.
    require_backup : bool
        When True, `status()` flags keys that were never backed up.
    """

    rotation_period: float = DEFAULT_KEY_ROTATION_DAYS * SECONDS_PER_DAY
    require_backup: bool = False


class KeyManager:
    """
    Versioned signing key with atomic rotation and encrypted backup.

    Parameters
    ----------
    signature_module : QuantumSignatureModule
        Generates keys and signs artifacts.
    random_source : RandomSource, optional
        Source of nonces and backup salts.
    clock : Clock, optional
        Time source for activation and rotation policy.
    audit : AuditTrail, optional
        Receives key generation, rotation and backup events.
    policy : KeyPolicy, optional
        Rotation policy.
    initial_keypair : KeyPair, optional
        Key to start from instead of generating one.
    backup_time_cost, backup_memory_cost : int
        Argon2id cost of the backup key derivation.
    """

    def __init__(
        self,
        signature_module: QuantumSignatureModule,
        random_source: Any = None,
        clock: Any = None,
        audit: Optional[AuditTrail] = None,
        policy: Optional[KeyPolicy] = None,
        initial_keypair: Optional[KeyPair] = None,
        backup_time_cost: int = ARGON2_TIME_COST,
        backup_memory_cost: int = ARGON2_MEMORY_COST,
    ) -> None:
        self.signatures = signature_module
        self.random_source = random_source or SystemRandomSource()
        self.clock = clock
        self.audit = audit
        self.policy = policy or KeyPolicy()
        self.backup_time_cost = backup_time_cost
        self.backup_memory_cost = backup_memory_cost

        self._lock = ReadWriteLock()
        self._rotation_mutex = threading.Lock()
        self._halted = False
        self._retired: Set[int] = set()
        self._artifacts: Dict[str, EncryptedArtifact] = {}
        self.rotation_count = 0
        self.last_backup_at: Optional[float] = None

        keypair = initial_keypair or self.signatures.keygen()
        self._handle = KeyHandle(version=1, keypair=keypair, activated_at=self._now())
        self._record(AuditEventType.KEY_GENERATION, key_version=1, key_id=keypair.key_id)

        logger.info(
            "KeyManager initialized",
            key_version=1,
            scheme=keypair.level.signature_scheme,
            rotation_period_days=self.policy.rotation_period / SECONDS_PER_DAY,
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _now(self) -> float:
        return self.clock.now() if self.clock is not None else time.time()

    def _record(self, event_type: AuditEventType, **details: Any) -> None:
        if self.audit is not None:
            self.audit.record(event_type, **details)

    @property
    def halted(self) -> bool:
        return self._halted

    @property
    def current(self) -> KeyHandle:
        """The active key handle; capture it once per operation."""
        with self._lock.read_locked():
            return self._handle

    @property
    def level(self) -> SecurityLevel:
        return self.current.keypair.level

    def _ensure_running(self) -> None:
        if self._halted:
            raise ConsistencyError(
                "Key manager halted after a failed rotation rollback",
                context={"key_version": self._handle.version},
            )

    def resolve_halt(self) -> None:
        """Clear the halted state once an operator has restored consistency."""
        with self._lock.write_locked():
            self._halted = False
        logger.warning("Key manager halt resolved manually")

    def rotation_due(self, now: Optional[float] = None) -> bool:
        now = self._now() if now is None else now
        return now - self.current.activated_at >= self.policy.rotation_period

    def status(self) -> Dict[str, Any]:
        handle = self.current
        return {
            "key_version": handle.version,
            "key_id": handle.keypair.key_id,
            "scheme": handle.keypair.level.signature_scheme,
            "fingerprint": handle.keypair.public_key.fingerprint(),
            "activated_at": handle.activated_at,
            "rotation_count": self.rotation_count,
            "rotation_due": self.rotation_due(),
            "artifacts": len(self._artifacts),
            "halted": self._halted,
            "backup_missing": self.policy.require_backup and self.last_backup_at is None,
        }

    # ------------------------------------------------------------------
    # Signing and artifact protection
    # ------------------------------------------------------------------

    def sign(self, message: bytes, handle: Optional[KeyHandle] = None) -> Signature:
        self._ensure_running()
        handle = handle or self.current
        return self.signatures.sign(message, handle.keypair.secret_key)

    @staticmethod
    def _artifact_key(handle: KeyHandle) -> bytearray:
        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=ARTIFACT_KEY_LENGTH,
            salt=None,
            info=ARTIFACT_PROTECTION_INFO + handle.version.to_bytes(4, "big"),
        )
        return bytearray(hkdf.derive(bytes(handle.keypair.secret_key.data)))

    def _seal(self, artifact_id: str, data: bytes, handle: KeyHandle) -> EncryptedArtifact:
        nonce = self.random_source.read(ARTIFACT_NONCE_LENGTH)
        aad = BinaryWriter().write_str(artifact_id).write_u32(handle.version).getvalue()
        with scoped_secret(self._artifact_key(handle)) as key:
            ciphertext = AESGCM(bytes(key)).encrypt(nonce, bytes(data), aad)
        unsigned = EncryptedArtifact(
            artifact_id=artifact_id,
            key_version=handle.version,
            nonce=nonce,
            ciphertext=ciphertext,
            signature=Signature(handle.keypair.level, b""),
        )
        signature = self.signatures.sign(unsigned.signed_payload(), handle.keypair.secret_key)
        return EncryptedArtifact(
            artifact_id=artifact_id,
            key_version=handle.version,
            nonce=nonce,
            ciphertext=ciphertext,
            signature=signature,
        )

    def _open(self, artifact: EncryptedArtifact, handle: KeyHandle) -> bytearray:
        if artifact.key_version != handle.version:
            raise KeyRetiredError(artifact.key_version)
        self.signatures.verify_or_raise(
            artifact.signed_payload(), artifact.signature, handle.keypair.public_key
        )
        with scoped_secret(self._artifact_key(handle)) as key:
            try:
                plaintext = AESGCM(bytes(key)).decrypt(
                    artifact.nonce, artifact.ciphertext, artifact.associated_data()
                )
            except InvalidTag as e:
                raise CryptoError(
                    "Artifact authentication failed", operation="unprotect"
                ) from e
        return bytearray(plaintext)

    def protect(
        self,
        artifact_id: str,
        data: bytes,
        handle: Optional[KeyHandle] = None,
        register: bool = True,
    ) -> EncryptedArtifact:
        """
        Seal data under the active key version.

        Parameters
        ----------
        artifact_id : str
            Identifier bound into the ciphertext as associated data.
        data : bytes
            Plaintext to protect.
        handle : KeyHandle, optional
            Key version captured by the caller. Defaults to the current one.
        register : bool, default=True
            Track the artifact so rotation re-protects it.

        Returns
        -------
        EncryptedArtifact
            Signed ciphertext.
        """
        self._ensure_running()
        handle = handle or self.current
        artifact = self._seal(artifact_id, data, handle)
        if register:
            with self._lock.write_locked():
                if self._handle.version != handle.version:
                    raise KeyRetiredError(handle.version)
                self._artifacts[artifact_id] = artifact
        return artifact

    def unprotect(self, artifact: EncryptedArtifact, handle: Optional[KeyHandle] = None) -> bytearray:
        """
        Open a sealed artifact; the caller must wipe the returned buffer.

        Raises
        ------
        KeyRetiredError
            If the artifact was sealed under a retired key version.
        SignatureVerificationFailed
            If the artifact signature does not verify.
        CryptoError
            If the ciphertext fails authentication.
        """
        self._ensure_running()
        if artifact.key_version in self._retired:
            raise KeyRetiredError(artifact.key_version)
        return self._open(artifact, handle or self.current)

    def artifact(self, artifact_id: str) -> Optional[EncryptedArtifact]:
        with self._lock.read_locked():
            return self._artifacts.get(artifact_id)

    def artifacts(self) -> List[EncryptedArtifact]:
        with self._lock.read_locked():
            return list(self._artifacts.values())

    def forget(self, artifact_id: str) -> None:
        with self._lock.write_locked():
            self._artifacts.pop(artifact_id, None)

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    def _stage(
        self, dependents: Iterable[EncryptedArtifact], old: KeyHandle, new: KeyHandle
    ) -> Dict[str, EncryptedArtifact]:
        staged: Dict[str, EncryptedArtifact] = {}
        for artifact in dependents:
            with scoped_secret(self._open(artifact, old)) as plaintext:
                resealed = self._seal(artifact.artifact_id, plaintext, new)
                with scoped_secret(self._open(resealed, new)) as check:
                    if bytes(check) != bytes(plaintext):
                        raise CryptoError(
                            "Re-protected artifact failed self-check",
                            operation="rotate",
                        )
            staged[artifact.artifact_id] = resealed
        return staged

    def _commit(self, handle: KeyHandle, artifacts: Dict[str, EncryptedArtifact]) -> None:
        self._handle = handle
        self._artifacts = artifacts

    def _restore(self, handle: KeyHandle, artifacts: Dict[str, EncryptedArtifact]) -> None:
        self._handle = handle
        self._artifacts = artifacts

    def _reconcile(
        self,
        snapshot: Dict[str, EncryptedArtifact],
        staged: Dict[str, EncryptedArtifact],
        old: KeyHandle,
        new: KeyHandle,
    ) -> Dict[str, EncryptedArtifact]:
        """
        Fold registry changes made while staging ran into the staged set.

        Must be called with the write lock held. Artifacts registered or
        replaced after `snapshot` was taken are re-protected under `new`;
        artifacts forgotten in the meantime are dropped.
        """
        late = [
            artifact
            for artifact_id, artifact in self._artifacts.items()
            if snapshot.get(artifact_id) is not artifact
        ]
        reconciled = dict(staged)
        for artifact_id in snapshot:
            if artifact_id not in self._artifacts:
                reconciled.pop(artifact_id, None)
        if late:
            reconciled.update(self._stage(late, old, new))
            logger.debug("Re-protected artifacts registered during staging", count=len(late))
        return reconciled

    @timer
    def rotate(
        self,
        old: KeyPair,
        data_dependents: Optional[Collection[EncryptedArtifact]] = None,
    ) -> KeyPair:
        """
        Replace the active key and re-protect every dependent artifact.

        Parameters
        ----------
        old : KeyPair
            The key pair being retired; must be the active one.
        data_dependents : Collection[EncryptedArtifact], optional
            Extra artifacts to re-protect in addition to the registered ones.

        Returns
        -------
        KeyPair
            The new active key pair.

        Raises
        ------
        RotationError
            If `old` is not the active key or staging fails. The pre-rotation
            state is fully intact.
        ConsistencyError
            If the manager is halted, or a failed commit could not be rolled
            back (the manager halts).
        """
        with self._rotation_mutex:
            self._ensure_running()
            old_handle = self.current
            if old.key_id != old_handle.keypair.key_id:
                raise RotationError(
                    "Only the active key pair can be rotated", key_version=old_handle.version
                )

            with self._lock.read_locked():
                registered: Dict[str, EncryptedArtifact] = dict(self._artifacts)
            dependents = dict(registered)
            for artifact in data_dependents or ():
                dependents[artifact.artifact_id] = artifact

            try:
                new_keypair = self.signatures.keygen(old.level)
            except CryptoError as e:
                raise RotationError(
                    f"Key generation failed: {e}", key_version=old_handle.version
                ) from e
            new_handle = KeyHandle(
                version=old_handle.version + 1, keypair=new_keypair, activated_at=self._now()
            )

            try:
                staged = self._stage(dependents.values(), old_handle, new_handle)
            except FreeghostError as e:
                new_keypair.secret_key.wipe()
                logger.error(
                    "Rotation aborted during staging",
                    key_version=old_handle.version,
                    error_type=type(e).__name__,
                )
                raise RotationError(
                    f"Re-protection failed, rotation aborted: {e.message}",
                    key_version=old_handle.version,
                ) from e

            with self._lock.write_locked():
                previous_artifacts = self._artifacts
                try:
                    staged = self._reconcile(registered, staged, old_handle, new_handle)
                except FreeghostError as e:
                    new_keypair.secret_key.wipe()
                    logger.error(
                        "Rotation aborted while re-protecting late artifacts",
                        key_version=old_handle.version,
                        error_type=type(e).__name__,
                    )
                    raise RotationError(
                        f"Re-protection failed, rotation aborted: {e.message}",
                        key_version=old_handle.version,
                    ) from e
                try:
                    self._commit(new_handle, staged)
                except Exception as commit_error:
                    try:
                        self._restore(old_handle, previous_artifacts)
                    except Exception as rollback_error:
                        self._halted = True
                        logger.critical(
                            "Rotation rollback failed, key manager halted",
                            key_version=old_handle.version,
                            error_type=type(rollback_error).__name__,
                        )
                        raise ConsistencyError(
                            "Rotation left a partial state; manual resolution required",
                            context={"key_version": old_handle.version},
                        ) from rollback_error
                    new_keypair.secret_key.wipe()
                    raise RotationError(
                        f"Rotation commit failed and was rolled back: {commit_error}",
                        key_version=old_handle.version,
                    ) from commit_error
                self._retired.add(old_handle.version)

            # Old key material stays reachable from in-flight handles until they finish
            self.rotation_count += 1
            self._record(
                AuditEventType.KEY_ROTATION,
                old_version=old_handle.version,
                new_version=new_handle.version,
                reprotected=len(staged),
            )
            logger.info(
                "Key rotated",
                old_version=old_handle.version,
                new_version=new_handle.version,
                reprotected=len(staged),
            )
            return new_keypair

    # ------------------------------------------------------------------
    # Backup
    # ------------------------------------------------------------------

    def _backup_key(self, backup_key: Union[str, bytes], salt: bytes) -> bytearray:
        secret = backup_key.encode("utf-8") if isinstance(backup_key, str) else bytes(backup_key)
        try:
            return bytearray(
                hash_secret_raw(
                    secret=secret,
                    salt=salt,
                    time_cost=self.backup_time_cost,
                    memory_cost=self.backup_memory_cost,
                    parallelism=ARGON2_PARALLELISM,
                    hash_len=ARTIFACT_KEY_LENGTH,
                    type=Type.ID,
                )
            )
        except HashingError as e:
            raise BackupError(f"Backup key derivation failed: {e}") from e

    @staticmethod
    def _backup_aad(level_bits: int, version: int, activated_at: float) -> bytes:
        return (
            BinaryWriter()
            .write_bytes(BACKUP_AAD)
            .write_u32(level_bits)
            .write_u32(version)
            .write_f64(activated_at)
            .getvalue()
        )

    def backup(self, dest: Any, backup_key: Union[str, bytes, None]) -> None:
        """
        Export the active key pair, encrypted under a separate backup key.

        Parameters
        ----------
        dest : SecureSink
            Destination of the encrypted blob.
        backup_key : str or bytes
            Passphrase or key the backup is encrypted under.

        Raises
        ------
        BackupError
            If the backup key is missing or the sink fails. Never skipped silently.
        """
        self._ensure_running()
        handle = self.current
        if not backup_key:
            raise BackupError("A backup key is required", key_version=handle.version)
        if dest is None:
            raise BackupError("A backup destination is required", key_version=handle.version)

        salt = self.random_source.read(BACKUP_SALT_LENGTH)
        nonce = self.random_source.read(ARTIFACT_NONCE_LENGTH)
        aad = self._backup_aad(handle.keypair.level.bits, handle.version, handle.activated_at)
        with scoped_secret(self._backup_key(backup_key, salt)) as key:
            with scoped_secret(bytearray(handle.keypair.to_bytes())) as plaintext:
                ciphertext = AESGCM(bytes(key)).encrypt(nonce, bytes(plaintext), aad)

        body = (
            BinaryWriter()
            .write_u32(handle.version)
            .write_f64(handle.activated_at)
            .write_bytes(salt)
            .write_bytes(nonce)
            .write_bytes(ciphertext)
            .getvalue()
        )
        blob = encode_envelope(ObjectType.KEY_BACKUP, handle.keypair.level.bits, body)

        try:
            dest.write(blob)
        except Exception as e:
            logger.error(
                "Key backup sink failed",
                key_version=handle.version,
                error_type=type(e).__name__,
            )
            raise BackupError(
                f"Backup destination failed: {type(e).__name__}", key_version=handle.version
            ) from e

        self.last_backup_at = self._now()
        self._record(AuditEventType.KEY_BACKUP, key_version=handle.version)
        logger.info("Key backup written", key_version=handle.version, blob_size=len(blob))

    def restore_backup(self, blob: bytes, backup_key: Union[str, bytes]) -> KeyHandle:
        """
        Decrypt a backup produced by `backup`.

        Raises
        ------
        BackupError
            If the key is missing or wrong, or the blob is corrupted.
        """
        if not backup_key:
            raise BackupError("A backup key is required")
        try:
            bits, reader = decode_envelope(blob, ObjectType.KEY_BACKUP)
            version = reader.read_u32()
            activated_at = reader.read_f64()
            salt = reader.read_bytes()
            nonce = reader.read_bytes()
            ciphertext = reader.read_bytes()
            reader.expect_end()
        except EncodingError as e:
            raise BackupError(f"Malformed backup: {e.message}") from e

        with scoped_secret(self._backup_key(backup_key, salt)) as key:
            try:
                plaintext = bytearray(
                    AESGCM(bytes(key)).decrypt(
                        nonce, ciphertext, self._backup_aad(bits, version, activated_at)
                    )
                )
            except InvalidTag as e:
                raise BackupError("Wrong backup key or corrupted backup", key_version=version) from e

        try:
            keypair = KeyPair.from_bytes(bytes(plaintext))
        except EncodingError as e:
            raise BackupError("Backup payload is malformed", key_version=version) from e
        finally:
            wipe(plaintext)
        if keypair.level.bits != bits:
            keypair.secret_key.wipe()
            raise BackupError("Backup level does not match its key pair", key_version=version)

        self._record(AuditEventType.KEY_RESTORE, key_version=version)
        return KeyHandle(version=version, keypair=keypair, activated_at=activated_at)
