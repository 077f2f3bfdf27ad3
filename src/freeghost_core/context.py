"""
The single context object every core operation runs against.

`CoreContext.from_config` is called once at startup: it validates the
configuration, resolves collaborator capabilities from the registry and
builds the shared components. The context is immutable afterwards; the only
state that changes is the key manager's versioned key handle.
"""

from dataclasses import dataclass
from typing import Any, Optional

import structlog

from .audit import AuditEventType, AuditTrail
from .capabilities import CapabilityRegistry, InMemoryStore, SystemClock
from .config import CoreConfig, load_core_config, validate_configuration
from .data_models import SecurityLevel
from .entropy import SystemRandomSource
from .key_manager import SECONDS_PER_DAY, KeyManager, KeyPolicy
from .service_identifier import ServiceIdentifierDeriver
from .signatures import QuantumSignatureModule
from .template_generator import TemplateGenerator
from .zk_prover import ZKProofEngine

# Initialize structured logger
logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CoreContext:
    """
    Components and collaborators shared by prover and verifier operations.

    Build it with `CoreContext.from_config`.
    """

    config: CoreConfig
    level: SecurityLevel
    registry: CapabilityRegistry
    random_source: Any
    clock: Any
    store: Any
    audit: AuditTrail
    signatures: QuantumSignatureModule
    key_manager: KeyManager
    template_generator: TemplateGenerator
    deriver: ServiceIdentifierDeriver
    engine: ZKProofEngine

    @classmethod
    def from_config(
        cls,
        config: Optional[CoreConfig] = None,
        registry: Optional[CapabilityRegistry] = None,
    ) -> "CoreContext":
        """
        Validate configuration and build the context.

        Parameters
        ----------
        config : CoreConfig, optional
            Settings. Defaults to `load_core_config()`.
        registry : CapabilityRegistry, optional
            Registered collaborators. Missing ``random``, ``clock`` and
            ``store`` capabilities fall back to the system CSPRNG, the wall
            clock and an in-memory append-only store.

        Raises
        ------
        ConfigurationError
            If the configuration is invalid.
        """
        config = config or load_core_config()
        validate_configuration(config)
        registry = registry or CapabilityRegistry()

        level = SecurityLevel.from_bits(config.security_level)
        random_source = registry.resolve("random", SystemRandomSource())
        clock = registry.resolve("clock", SystemClock())
        store = registry.resolve("store", InMemoryStore())

        audit = AuditTrail(clock=clock)
        signatures = QuantumSignatureModule(level)
        key_manager = KeyManager(
            signatures,
            random_source=random_source,
            clock=clock,
            audit=audit,
            policy=KeyPolicy(rotation_period=config.key_rotation_days * SECONDS_PER_DAY),
            backup_time_cost=config.argon2_time_cost,
            backup_memory_cost=config.argon2_memory_cost,
        )
        template_generator = TemplateGenerator(
            random_source=random_source,
            biometric_dim=config.biometric_dim,
            behavioral_dim=config.behavioral_dim,
            noise_length=config.noise_length,
            time_cost=config.argon2_time_cost,
            memory_cost=config.argon2_memory_cost,
            parallelism=config.argon2_parallelism,
        )
        deriver = ServiceIdentifierDeriver(level)
        engine = ZKProofEngine(
            level,
            random_source=random_source,
            clock=clock,
            signature_module=signatures,
            range_bits=config.range_proof_bits,
            deriver=deriver,
        )

        context = cls(
            config=config,
            level=level,
            registry=registry,
            random_source=random_source,
            clock=clock,
            store=store,
            audit=audit,
            signatures=signatures,
            key_manager=key_manager,
            template_generator=template_generator,
            deriver=deriver,
            engine=engine,
        )
        audit.record(AuditEventType.SYSTEM_STARTUP, security_level=level.bits)
        logger.info("Core context built", security_level=level.bits)
        return context
