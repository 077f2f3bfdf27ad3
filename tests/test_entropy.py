"""Tests for the random source health checks and randomness statistics."""

import os

import pytest

from freeghost_core.entropy import (
    SystemRandomSource,
    assess_randomness,
    random_scalar,
)
from freeghost_core.exceptions import InsufficientEntropy


class TestSystemRandomSource:
    """CSPRNG wrapper."""

    def test_returns_requested_length(self):
        source = SystemRandomSource()
        assert len(source.read(32)) == 32
        assert source.read(0) == b""

    def test_stuck_generator_fails_health_test(self):
        source = SystemRandomSource(generator=lambda n: b"\x00" * n)
        with pytest.raises(InsufficientEntropy):
            source.read(32)

    def test_short_read(self):
        source = SystemRandomSource(generator=lambda n: b"\x01\x02")
        with pytest.raises(InsufficientEntropy):
            source.read(16)

    def test_generator_failure(self):
        def broken(n):
            raise OSError("no entropy")

        with pytest.raises(InsufficientEntropy):
            SystemRandomSource(generator=broken).read(8)

    def test_random_scalar_in_range(self):
        source = SystemRandomSource()
        for _ in range(20):
            assert 0 <= random_scalar(source, 1009) < 1009


class TestAssessRandomness:
    """Offline statistics."""

    def test_uniform_bytes_pass(self):
        report = assess_randomness(os.urandom(32) for _ in range(512))
        assert report.total_bytes == 512 * 32
        assert report.passes()
        assert report.shannon_entropy_per_byte > 7.9

    def test_constant_bytes_fail(self):
        report = assess_randomness([b"\x41" * 32] * 64)
        assert not report.passes()
        assert report.shannon_entropy_per_byte == pytest.approx(0.0, abs=1e-9)

    def test_empty_input(self):
        with pytest.raises(ValueError):
            assess_randomness([])
