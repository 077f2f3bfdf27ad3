"""
Verifier-side freshness, replay and behavioral-consistency checks.

`ReplayGuard` keeps a bounded, time-windowed record of accepted
``(identifier, challenge_id)`` pairs and consumed challenge ids. Membership
checks take a shared lock; commits and prunes take an exclusive one.
`exclusive(challenge_id)` serializes check, verify and commit for a single
challenge so two concurrent submissions cannot both pass before either is
recorded.

Behavioral consistency uses cosine similarity between the response's
behavior sample and the centroid of the behavior class named by an
`EligibilityPredicate`.
"""

import threading
from collections import OrderedDict
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Mapping, Optional, Sequence, Tuple

import numpy as np
import structlog
from scipy.spatial import distance

from .constants import (
    DEFAULT_BEHAVIOR_THRESHOLD,
    DEFAULT_CLOCK_SKEW,
    DEFAULT_REPLAY_CAPACITY,
    DEFAULT_REPLAY_WINDOW,
)
from .data_models import VerificationResponse
from .exceptions import (
    BehavioralMismatch,
    FutureTimestamp,
    ReplayCapacityExceeded,
    ReplayedResponse,
    StaleResponse,
)
from .statements import EligibilityPredicate
from .utils import ReadWriteLock, preview

# Initialize structured logger
logger = structlog.get_logger(__name__)

SEEN_NAMESPACE = "seen"


class BehaviorProfile:
    """
    Expected behavioral pattern classes and their acceptance threshold.

    Parameters
    ----------
    centroids : Mapping[str, array-like], optional
        Class name to centroid vector.
    threshold : float, default=DEFAULT_BEHAVIOR_THRESHOLD
        Minimum cosine similarity between sample and centroid.

    Examples
    --------
    >>> profile = BehaviorProfile({"typing": [0.3, 0.9, 0.5]})
    >>> profile.score("typing", [0.31, 0.88, 0.52]) > 0.99
    True
    """

    def __init__(
        self,
        centroids: Optional[Mapping[str, Any]] = None,
        threshold: float = DEFAULT_BEHAVIOR_THRESHOLD,
    ) -> None:
        if not -1.0 <= threshold <= 1.0:
            raise ValueError(f"threshold must lie in [-1, 1], got {threshold}")
        self.threshold = threshold
        self._centroids: Dict[str, np.ndarray] = {}
        for name, centroid in (centroids or {}).items():
            self.register(name, centroid)

    def register(self, name: str, centroid: Any) -> None:
        vector = np.asarray(centroid, dtype=np.float64)
        if vector.ndim != 1 or vector.size == 0 or not np.isfinite(vector).all():
            raise ValueError(f"Centroid of class '{name}' must be a finite 1-D vector")
        if not np.any(vector):
            raise ValueError(f"Centroid of class '{name}' must be non-zero")
        self._centroids[name] = vector

    @classmethod
    def from_samples(
        cls,
        samples: Mapping[str, Sequence[Any]],
        threshold: float = DEFAULT_BEHAVIOR_THRESHOLD,
    ) -> "BehaviorProfile":
        """Build a profile whose centroids are per-class sample means."""
        return cls(
            {name: np.mean(np.asarray(rows, dtype=np.float64), axis=0) for name, rows in samples.items()},
            threshold=threshold,
        )

    @property
    def classes(self) -> Tuple[str, ...]:
        return tuple(sorted(self._centroids))

    def score(self, name: str, sample: Any) -> float:
        """
        Cosine similarity of a sample to a class centroid.

        Raises
        ------
        BehavioralMismatch
            For an unknown class or a malformed sample.
        """
        centroid = self._centroids.get(name)
        if centroid is None:
            raise BehavioralMismatch(f"Unknown behavior class '{name}'", behavior_class=name)
        if sample is None:
            raise BehavioralMismatch("Behavior sample missing", behavior_class=name)

        vector = np.asarray(sample, dtype=np.float64)
        if vector.shape != centroid.shape:
            raise BehavioralMismatch(
                f"Behavior sample has shape {vector.shape}, expected {centroid.shape}",
                behavior_class=name,
            )
        if not np.isfinite(vector).all() or not np.any(vector):
            raise BehavioralMismatch("Behavior sample is degenerate", behavior_class=name)
        return float(1.0 - distance.cosine(vector, centroid))

    def check(self, name: str, sample: Any) -> float:
        score = self.score(name, sample)
        if score < self.threshold:
            raise BehavioralMismatch(
                "Behavior sample inconsistent with its class",
                behavior_class=name,
                score=score,
            )
        return score


class ReplayGuard:
    """
    Freshness window, duplicate detection and behavioral consistency.

    Parameters
    ----------
    clock : Clock
        Source of the verifier's current time.
    window : float, default=DEFAULT_REPLAY_WINDOW
        Default freshness window in seconds.
    clock_skew : float, default=DEFAULT_CLOCK_SKEW
        Tolerated lead of response timestamps over the local clock.
    capacity : int, default=DEFAULT_REPLAY_CAPACITY
        Maximum number of live accepted pairs.
    behavior_profile : BehaviorProfile, optional
        Behavior classes eligibility statements may name.
    store : Store, optional
        Append-only audit of accepted identifiers.
    """

    def __init__(
        self,
        clock: Any,
        window: float = DEFAULT_REPLAY_WINDOW,
        clock_skew: float = DEFAULT_CLOCK_SKEW,
        capacity: int = DEFAULT_REPLAY_CAPACITY,
        behavior_profile: Optional[BehaviorProfile] = None,
        store: Any = None,
    ) -> None:
        if window <= 0 or clock_skew < 0 or capacity < 1:
            raise ValueError("window must be positive, clock_skew non-negative, capacity >= 1")

        self.clock = clock
        self.window = window
        self.clock_skew = clock_skew
        self.capacity = capacity
        self.behavior_profile = behavior_profile or BehaviorProfile()
        self.store = store

        self._lock = ReadWriteLock()
        self._seen: "OrderedDict[Tuple[bytes, bytes], float]" = OrderedDict()
        self._consumed: Dict[bytes, float] = {}

        self._challenge_locks: Dict[bytes, Tuple[threading.Lock, int]] = {}
        self._challenge_locks_guard = threading.Lock()

        logger.info(
            "ReplayGuard initialized",
            window=window,
            clock_skew=clock_skew,
            capacity=capacity,
            behavior_classes=list(self.behavior_profile.classes),
        )

    def __len__(self) -> int:
        with self._lock.read_locked():
            return len(self._seen)

    def is_consumed(self, challenge_id: bytes) -> bool:
        with self._lock.read_locked():
            return bytes(challenge_id) in self._consumed

    @contextmanager
    def exclusive(self, challenge_id: bytes) -> Iterator[None]:
        """Serialize verification of one challenge across threads."""
        key = bytes(challenge_id)
        with self._challenge_locks_guard:
            lock, users = self._challenge_locks.get(key, (threading.Lock(), 0))
            self._challenge_locks[key] = (lock, users + 1)
        try:
            with lock:
                yield
        finally:
            with self._challenge_locks_guard:
                lock, users = self._challenge_locks[key]
                if users <= 1:
                    del self._challenge_locks[key]
                else:
                    self._challenge_locks[key] = (lock, users - 1)

    def _prune(self, now: float, window: float) -> int:
        cutoff = now - window
        with self._lock.read_locked():
            if not self._seen or next(iter(self._seen.values())) >= cutoff:
                return 0

        removed = 0
        with self._lock.write_locked():
            while self._seen:
                pair, accepted_at = next(iter(self._seen.items()))
                if accepted_at >= cutoff:
                    break
                del self._seen[pair]
                if self._consumed.get(pair[1]) == accepted_at:
                    del self._consumed[pair[1]]
                removed += 1
        if removed:
            logger.debug("Replay entries pruned", removed=removed)
        return removed

    def check(self, response: VerificationResponse, window: Optional[float] = None) -> None:
        """
        Check freshness, duplicates and behavioral consistency of a response.

        Parameters
        ----------
        response : VerificationResponse
            Response under verification.
        window : float, optional
            Freshness window in seconds. Defaults to the guard's window.

        Raises
        ------
        StaleResponse
            If the timestamp is older than ``now - window``.
        FutureTimestamp
            If the timestamp is beyond ``now + clock_skew``.
        ReplayedResponse
            If the pair or the challenge was already accepted.
        BehavioralMismatch
            If the behavior sample does not match the asserted class.
        """
        window = self.window if window is None else window
        now = self.clock.now()
        self._prune(now, window)

        if response.timestamp < now - window:
            raise StaleResponse(
                "Response timestamp is outside the freshness window",
                context={"timestamp": response.timestamp, "now": now, "window": window},
            )
        if response.timestamp > now + self.clock_skew:
            raise FutureTimestamp(response.timestamp, now, self.clock_skew)

        challenge_id = bytes(response.proof.challenge_id)
        pair = (bytes(response.identifier), challenge_id)
        with self._lock.read_locked():
            duplicate = pair in self._seen or challenge_id in self._consumed
        if duplicate:
            logger.warning(
                "Replayed response rejected",
                identifier_preview=preview(response.identifier),
                challenge_id=challenge_id.hex(),
            )
            raise ReplayedResponse(challenge_id.hex())

        statement = response.proof.statement
        if isinstance(statement, EligibilityPredicate) and statement.behavior_class:
            score = self.behavior_profile.check(statement.behavior_class, response.behavior_sample)
            logger.debug(
                "Behavioral consistency accepted",
                behavior_class=statement.behavior_class,
                score=score,
            )

    def commit(self, response: VerificationResponse, challenge_id: bytes) -> None:
        """
        Record an accepted response so later submissions are rejected.

        Raises
        ------
        ReplayedResponse
            If another thread committed the same challenge first.
        ReplayCapacityExceeded
            If the guard holds `capacity` live entries.
        """
        now = self.clock.now()
        self._prune(now, self.window)

        challenge_id = bytes(challenge_id)
        pair = (bytes(response.identifier), challenge_id)
        with self._lock.write_locked():
            if pair in self._seen or challenge_id in self._consumed:
                raise ReplayedResponse(challenge_id.hex())
            if len(self._seen) >= self.capacity:
                logger.error("Replay guard full", capacity=self.capacity)
                raise ReplayCapacityExceeded(self.capacity)
            self._seen[pair] = now
            self._consumed[challenge_id] = now

        if self.store is not None:
            self.store.append(SEEN_NAMESPACE, pair[0] + pair[1], repr(now).encode("ascii"))

        logger.debug(
            "Response committed",
            identifier_preview=preview(response.identifier),
            challenge_id=challenge_id.hex(),
            live_entries=len(self),
        )
