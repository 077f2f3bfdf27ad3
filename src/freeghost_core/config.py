"""
Configuration management for the FREEGHOST identity core.

Settings are read from environment variables and ``.env`` files. The
module-level constants give the process defaults; `load_core_config()`
re-reads the environment into an immutable `CoreConfig` that the core
context is built from once at startup.
"""

import logging
import os
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

import structlog
from dotenv import load_dotenv

from .constants import (
    ARGON2_MEMORY_COST,
    ARGON2_PARALLELISM,
    ARGON2_TIME_COST,
    BEHAVIORAL_FEATURE_DIM,
    BIOMETRIC_FEATURE_DIM,
    DEFAULT_BEHAVIOR_THRESHOLD,
    DEFAULT_CHALLENGE_TTL,
    DEFAULT_CLOCK_SKEW,
    DEFAULT_KEY_ROTATION_DAYS,
    DEFAULT_REPLAY_CAPACITY,
    DEFAULT_REPLAY_WINDOW,
    RANGE_PROOF_BITS,
    TEMPLATE_NOISE_LENGTH,
)
from .exceptions import ConfigurationError

# Load environment variables from .env file if it exists
load_dotenv()

ENV_PREFIX = "FREEGHOST_"

# =============================================================================
# Logging Configuration
# =============================================================================
# Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

# Render logs as JSON lines instead of console output
STRUCTURED_LOGGING: bool = os.getenv("STRUCTURED_LOGGING", "true").lower() == "true"

# =============================================================================
# Development and Debugging Configuration
# =============================================================================
# Enable debug mode (more verbose output, additional checks)
DEBUG_MODE: bool = os.getenv("DEBUG_MODE", "false").lower() == "true"

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Log keys whose values are replaced before rendering
SENSITIVE_LOG_FIELDS = frozenset(
    {
        "template",
        "template_value",
        "secret",
        "secret_key",
        "service_secret",
        "backup_key",
        "password",
        "noise",
        "biometric",
        "behavioral",
        "attributes_values",
        "plaintext",
    }
)
REDACTED = "[REDACTED]"


@dataclass(frozen=True)
class CoreConfig:
    """
    Validated, immutable settings of one core instance.

    Examples
    --------
    >>> config = CoreConfig(security_level=192)
    >>> validate_configuration(config)
    True
    """

    security_level: int = 128
    biometric_dim: int = BIOMETRIC_FEATURE_DIM
    behavioral_dim: int = BEHAVIORAL_FEATURE_DIM
    noise_length: int = TEMPLATE_NOISE_LENGTH
    argon2_time_cost: int = ARGON2_TIME_COST
    argon2_memory_cost: int = ARGON2_MEMORY_COST
    argon2_parallelism: int = ARGON2_PARALLELISM
    challenge_ttl: float = DEFAULT_CHALLENGE_TTL
    replay_window: float = DEFAULT_REPLAY_WINDOW
    clock_skew: float = DEFAULT_CLOCK_SKEW
    replay_capacity: int = DEFAULT_REPLAY_CAPACITY
    behavior_threshold: float = DEFAULT_BEHAVIOR_THRESHOLD
    range_proof_bits: int = RANGE_PROOF_BITS
    key_rotation_days: int = DEFAULT_KEY_ROTATION_DAYS
    log_level: str = LOG_LEVEL
    structured_logging: bool = STRUCTURED_LOGGING
    debug_mode: bool = DEBUG_MODE


def _env(name: str) -> Optional[str]:
    return os.getenv(ENV_PREFIX + name)


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(
            f"{ENV_PREFIX}{name} must be an integer", config_key=ENV_PREFIX + name, config_value=raw
        ) from e


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(
            f"{ENV_PREFIX}{name} must be a number", config_key=ENV_PREFIX + name, config_value=raw
        ) from e


def load_core_config() -> CoreConfig:
    """
    Read a `CoreConfig` from the environment.

    Variables are named ``FREEGHOST_<FIELD>`` in upper case, e.g.
    ``FREEGHOST_SECURITY_LEVEL=192``. Logging follows ``LOG_LEVEL``,
    ``STRUCTURED_LOGGING`` and ``DEBUG_MODE`` as everywhere else.

    Raises
    ------
    ConfigurationError
        If a numeric variable cannot be parsed.
    """
    return CoreConfig(
        security_level=_env_int("SECURITY_LEVEL", 128),
        biometric_dim=_env_int("BIOMETRIC_DIM", BIOMETRIC_FEATURE_DIM),
        behavioral_dim=_env_int("BEHAVIORAL_DIM", BEHAVIORAL_FEATURE_DIM),
        noise_length=_env_int("NOISE_LENGTH", TEMPLATE_NOISE_LENGTH),
        argon2_time_cost=_env_int("ARGON2_TIME_COST", ARGON2_TIME_COST),
        argon2_memory_cost=_env_int("ARGON2_MEMORY_COST", ARGON2_MEMORY_COST),
        argon2_parallelism=_env_int("ARGON2_PARALLELISM", ARGON2_PARALLELISM),
        challenge_ttl=_env_float("CHALLENGE_TTL", DEFAULT_CHALLENGE_TTL),
        replay_window=_env_float("REPLAY_WINDOW", DEFAULT_REPLAY_WINDOW),
        clock_skew=_env_float("CLOCK_SKEW", DEFAULT_CLOCK_SKEW),
        replay_capacity=_env_int("REPLAY_CAPACITY", DEFAULT_REPLAY_CAPACITY),
        behavior_threshold=_env_float("BEHAVIOR_THRESHOLD", DEFAULT_BEHAVIOR_THRESHOLD),
        range_proof_bits=_env_int("RANGE_PROOF_BITS", RANGE_PROOF_BITS),
        key_rotation_days=_env_int("KEY_ROTATION_DAYS", DEFAULT_KEY_ROTATION_DAYS),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        structured_logging=os.getenv("STRUCTURED_LOGGING", "true").lower() == "true",
        debug_mode=os.getenv("DEBUG_MODE", "false").lower() == "true",
    )


# =============================================================================
# Configuration Validation
# =============================================================================
def validate_configuration(config: Optional[CoreConfig] = None) -> bool:
    """
    Validate configuration settings.

    Parameters
    ----------
    config : CoreConfig, optional
        Settings to check. Defaults to `load_core_config()`.

    Returns
    -------
    bool
        True if the configuration is valid.

    Raises
    ------
    ConfigurationError
        Listing every invalid parameter.
    """
    config = config or load_core_config()
    errors = []

    if config.security_level not in (128, 192, 256):
        errors.append("security_level must be one of 128, 192, 256")

    if config.biometric_dim < 1:
        errors.append("biometric_dim must be at least 1")

    if config.behavioral_dim < 1:
        errors.append("behavioral_dim must be at least 1")

    if config.noise_length < 16:
        errors.append("noise_length must be at least 16 bytes")

    if config.argon2_time_cost < 1:
        errors.append("argon2_time_cost must be at least 1")

    if config.argon2_parallelism < 1:
        errors.append("argon2_parallelism must be at least 1")

    if config.argon2_memory_cost < 8 * max(config.argon2_parallelism, 1):
        errors.append("argon2_memory_cost must be at least 8 KiB per lane")

    if config.challenge_ttl <= 0:
        errors.append("challenge_ttl must be positive")

    if config.replay_window < config.challenge_ttl:
        errors.append("replay_window must not be shorter than challenge_ttl")

    if config.clock_skew < 0:
        errors.append("clock_skew cannot be negative")

    if config.replay_capacity < 1:
        errors.append("replay_capacity must be at least 1")

    if not 0.0 < config.behavior_threshold <= 1.0:
        errors.append("behavior_threshold must lie in (0, 1]")

    if not 1 <= config.range_proof_bits <= 32:
        errors.append("range_proof_bits must lie in [1, 32]")

    if config.key_rotation_days < 1:
        errors.append("key_rotation_days must be at least 1")

    if config.log_level not in VALID_LOG_LEVELS:
        errors.append(f"log_level must be one of {list(VALID_LOG_LEVELS)}")

    if errors:
        raise ConfigurationError(
            "Configuration validation failed:\n" + "\n".join(f"- {error}" for error in errors),
            context={"errors": errors},
        )

    return True


def get_config_summary(config: Optional[CoreConfig] = None) -> Dict[str, Any]:
    """
    Get a summary of the configuration.

    Returns
    -------
    dict
        Key configuration parameters grouped by concern.
    """
    config = config or load_core_config()
    values = asdict(config)
    return {
        "security": {
            "security_level": config.security_level,
            "range_proof_bits": config.range_proof_bits,
            "key_rotation_days": config.key_rotation_days,
        },
        "template": {
            key: values[key]
            for key in (
                "biometric_dim",
                "behavioral_dim",
                "noise_length",
                "argon2_time_cost",
                "argon2_memory_cost",
                "argon2_parallelism",
            )
        },
        "freshness": {
            "challenge_ttl": config.challenge_ttl,
            "replay_window": config.replay_window,
            "clock_skew": config.clock_skew,
            "replay_capacity": config.replay_capacity,
            "behavior_threshold": config.behavior_threshold,
        },
        "logging": {
            "level": config.log_level,
            "structured": config.structured_logging,
            "debug_mode": config.debug_mode,
        },
    }


# =============================================================================
# Logging Setup
# =============================================================================
def redact_sensitive_fields(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """structlog processor replacing secret-bearing values."""
    for key in SENSITIVE_LOG_FIELDS.intersection(event_dict):
        event_dict[key] = REDACTED
    return event_dict


def configure_logging(level: Optional[str] = None, structured: Optional[bool] = None) -> None:
    """
    Configure structlog for the process.

    Parameters
    ----------
    level : str, optional
        Minimum level. Defaults to `LOG_LEVEL`.
    structured : bool, optional
        JSON output when True, console output otherwise. Defaults to
        `STRUCTURED_LOGGING`.
    """
    level = (level or LOG_LEVEL).upper()
    if level not in VALID_LOG_LEVELS:
        raise ConfigurationError(
            f"LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}",
            config_key="LOG_LEVEL",
            config_value=level,
        )
    structured = STRUCTURED_LOGGING if structured is None else structured

    renderer = (
        structlog.processors.JSONRenderer()
        if structured
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            redact_sensitive_fields,
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level)),
        cache_logger_on_first_use=False,
    )
