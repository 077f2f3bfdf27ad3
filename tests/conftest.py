"""
Pytest configuration and shared fixtures for FREEGHOST core tests.

This module provides shared fixtures and test configuration including:
- A controllable clock for freshness and expiry tests
- A core configuration with cheap Argon2 costs and a short range proof
- Prover (`IdentityCore`) and verifier (`Verifier`) sides sharing a context
- Synthetic feature vectors of the configured dimensions
"""

import numpy as np
import pytest

from freeghost_core.capabilities import CapabilityRegistry, InMemoryStore
from freeghost_core.config import CoreConfig
from freeghost_core.context import CoreContext
from freeghost_core.core import IdentityCore
from freeghost_core.verifier import Verifier

START_TIME = 1_700_000_000.0


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: float = START_TIME) -> None:
        self.current = start

    def now(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


class SequenceRandom:
    """Random source replaying a fixed byte string, for entropy failure tests."""

    def __init__(self, data: bytes) -> None:
        self.data = data

    def read(self, n: int) -> bytes:
        return (self.data * (n // max(len(self.data), 1) + 1))[:n]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fast_config():
    """Configuration with minimal Argon2 costs and a 4-bit range proof."""
    return CoreConfig(
        security_level=128,
        biometric_dim=16,
        behavioral_dim=8,
        argon2_time_cost=1,
        argon2_memory_cost=1024,
        argon2_parallelism=1,
        challenge_ttl=60.0,
        replay_window=300.0,
        clock_skew=5.0,
        range_proof_bits=4,
        log_level="WARNING",
    )


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def context(fast_config, clock, store):
    registry = CapabilityRegistry()
    registry.register("clock", clock)
    registry.register("store", store)
    return CoreContext.from_config(fast_config, registry)


@pytest.fixture
def core(context):
    return IdentityCore(context)


@pytest.fixture
def verifier(context):
    return Verifier(context)


@pytest.fixture
def rng():
    return np.random.default_rng(2024)


@pytest.fixture
def biometric(rng, fast_config):
    return rng.random(fast_config.biometric_dim)


@pytest.fixture
def behavioral(rng, fast_config):
    return rng.random(fast_config.behavioral_dim)


@pytest.fixture
def template_generator(context):
    return context.template_generator
