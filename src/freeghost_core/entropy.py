"""
Randomness source and randomness health checks for the FREEGHOST core.

`SystemRandomSource` draws from the operating system CSPRNG and runs a
continuous repetition-count test (NIST SP 800-90B, section 4.4.1) on its
output. Any failure surfaces as `InsufficientEntropy`; the core never
degrades to a weaker source.

`assess_randomness` computes offline statistics over a batch of samples
(Shannon entropy per byte, chi-square uniformity of byte values, bit
balance). It backs the self-test command and the statistical tests of
template and identifier outputs.
"""

import math
import secrets
import threading
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

import numpy as np
import structlog
from scipy import stats

from .exceptions import InsufficientEntropy

# Initialize structured logger
logger = structlog.get_logger(__name__)

# Consecutive identical output bytes tolerated before the source is declared
# broken (cutoff for H=8 bits/byte and alpha=2^-40 is 1 + ceil(40/8) = 6).
REPETITION_CUTOFF = 6


class SystemRandomSource:
    """
    CSPRNG-backed random source with a continuous health test.

    Parameters
    ----------
    generator : Callable[[int], bytes], optional
        Underlying byte generator. Defaults to `secrets.token_bytes`.
    repetition_cutoff : int, default=REPETITION_CUTOFF
        Run length of identical bytes that trips the health test.
    """

    def __init__(
        self,
        generator: Optional[Callable[[int], bytes]] = None,
        repetition_cutoff: int = REPETITION_CUTOFF,
    ) -> None:
        self._generator = generator or secrets.token_bytes
        self._cutoff = repetition_cutoff
        self._lock = threading.Lock()
        self._last_byte: Optional[int] = None
        self._run_length = 0

    def read(self, n: int) -> bytes:
        """
        Return `n` random bytes.

        Raises
        ------
        InsufficientEntropy
            If the generator fails, returns a short read, or trips the
            repetition-count test.
        """
        if n <= 0:
            return b""

        try:
            data = self._generator(n)
        except Exception as e:
            raise InsufficientEntropy(
                f"Random source failed: {type(e).__name__}", requested=n
            ) from e

        if data is None or len(data) != n:
            raise InsufficientEntropy(
                "Random source returned a short read",
                requested=n,
                received=0 if data is None else len(data),
            )

        self._repetition_count_test(data)
        return bytes(data)

    def _repetition_count_test(self, data: bytes) -> None:
        with self._lock:
            for value in data:
                if value == self._last_byte:
                    self._run_length += 1
                    if self._run_length >= self._cutoff:
                        logger.error(
                            "Random source failed repetition count test",
                            run_length=self._run_length,
                        )
                        raise InsufficientEntropy(
                            "Random source failed health test", requested=len(data)
                        )
                else:
                    self._last_byte = value
                    self._run_length = 1


def random_scalar(source, modulus: int) -> int:
    """
    Draw an integer uniform in [0, modulus) from a random source.

    Sixteen extra bytes keep the modular bias below 2^-128.
    """
    length = (modulus.bit_length() + 7) // 8 + 16
    return int.from_bytes(source.read(length), "big") % modulus


@dataclass
class RandomnessReport:
    """
    Statistics over a batch of random-looking byte strings.

    Attributes
    ----------
    sample_count : int
        Number of samples analyzed.
    total_bytes : int
        Total number of bytes analyzed.
    shannon_entropy_per_byte : float
        Empirical entropy of byte values in bits (8.0 is ideal).
    chi_square_p_value : float
        p-value of a chi-square test of uniform byte values.
    bit_balance : float
        Fraction of one bits (0.5 is ideal).
    """

    sample_count: int
    total_bytes: int
    shannon_entropy_per_byte: float
    chi_square_p_value: float
    bit_balance: float

    def passes(self, alpha: float = 1e-4, min_entropy: float = 7.5) -> bool:
        """Return True when the batch looks uniformly random."""
        return (
            self.chi_square_p_value > alpha
            and self.shannon_entropy_per_byte >= min_entropy
            and abs(self.bit_balance - 0.5) < 0.02
        )

    def to_dict(self) -> dict:
        return {
            "sample_count": self.sample_count,
            "total_bytes": self.total_bytes,
            "shannon_entropy_per_byte": self.shannon_entropy_per_byte,
            "chi_square_p_value": self.chi_square_p_value,
            "bit_balance": self.bit_balance,
        }


def assess_randomness(samples: Iterable[bytes]) -> RandomnessReport:
    """
    Compute uniformity statistics over a batch of byte strings.

    Parameters
    ----------
    samples : Iterable[bytes]
        Byte strings to analyze, e.g. template hashes or identifiers.

    Returns
    -------
    RandomnessReport
        Entropy, chi-square and bit-balance statistics.

    Raises
    ------
    ValueError
        If no bytes were supplied.
    """
    samples = [bytes(s) for s in samples]
    data = np.frombuffer(b"".join(samples), dtype=np.uint8)
    if data.size == 0:
        raise ValueError("No bytes supplied for randomness assessment")

    counts = np.bincount(data, minlength=256)
    probabilities = counts[counts > 0] / data.size
    entropy = float(-np.sum(probabilities * np.log2(probabilities)))

    _, p_value = stats.chisquare(counts)

    ones = int(np.unpackbits(data).sum())
    bit_balance = ones / (data.size * 8)

    report = RandomnessReport(
        sample_count=len(samples),
        total_bytes=int(data.size),
        shannon_entropy_per_byte=entropy,
        chi_square_p_value=float(p_value) if not math.isnan(p_value) else 0.0,
        bit_balance=bit_balance,
    )

    logger.debug("Randomness assessment completed", **report.to_dict())
    return report
