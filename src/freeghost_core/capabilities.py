"""
Collaborator capabilities consumed by the FREEGHOST identity core.

The core never talks to a concrete network, storage or sensor plugin. It
depends only on the small interfaces below, each with a fixed method set.
Providers are registered in an ordered `CapabilityRegistry` at startup; the
first registered provider is the default and `first_success` walks the list
as a fallback chain.
"""

import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol, Tuple, TypeVar, runtime_checkable

import structlog

from .exceptions import ConfigurationError

# Initialize structured logger
logger = structlog.get_logger(__name__)

T = TypeVar("T")


@runtime_checkable
class RandomSource(Protocol):
    """Cryptographically secure random byte source."""

    def read(self, n: int) -> bytes: ...


@runtime_checkable
class Clock(Protocol):
    """Synchronized wall clock returning seconds since the epoch."""

    def now(self) -> float: ...


@runtime_checkable
class Store(Protocol):
    """Append-only key/value store provided by the storage layer."""

    def append(self, namespace: str, key: bytes, value: bytes) -> None: ...

    def contains(self, namespace: str, key: bytes) -> bool: ...


@runtime_checkable
class SecureSink(Protocol):
    """Destination for encrypted key backups."""

    def write(self, blob: bytes) -> None: ...


@runtime_checkable
class Transport(Protocol):
    """Transport-agnostic channel delivering proof and response bytes."""

    def send(self, destination: str, payload: bytes) -> None: ...


@runtime_checkable
class FeatureExtractor(Protocol):
    """Turns a raw capture into a fixed-length feature sequence."""

    def extract(self, raw: Any) -> List[float]: ...


class SystemClock:
    """Wall clock backed by `time.time`."""

    def now(self) -> float:
        return time.time()


class InMemoryStore:
    """
    Thread-safe append-only store kept in process memory.

    Appending a key twice in the same namespace is rejected, matching the
    append-only contract of the storage layer.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._namespaces: Dict[str, "OrderedDict[bytes, bytes]"] = {}

    def append(self, namespace: str, key: bytes, value: bytes) -> None:
        with self._lock:
            entries = self._namespaces.setdefault(namespace, OrderedDict())
            if key in entries:
                raise KeyError(f"Key already present in namespace '{namespace}'")
            entries[bytes(key)] = bytes(value)

    def contains(self, namespace: str, key: bytes) -> bool:
        with self._lock:
            return bytes(key) in self._namespaces.get(namespace, {})

    def items(self, namespace: str) -> Iterator[Tuple[bytes, bytes]]:
        with self._lock:
            return iter(list(self._namespaces.get(namespace, {}).items()))

    def count(self, namespace: str) -> int:
        with self._lock:
            return len(self._namespaces.get(namespace, {}))


class MemorySink:
    """Secure sink collecting backup blobs in memory."""

    def __init__(self) -> None:
        self.blobs: List[bytes] = []

    def write(self, blob: bytes) -> None:
        self.blobs.append(bytes(blob))


class CapabilityRegistry:
    """
    Ordered registry of capability providers resolved at startup.

    Examples
    --------
    >>> registry = CapabilityRegistry()
    >>> registry.register("clock", SystemClock())
    >>> registry.resolve("clock").now() > 0
    True
    """

    def __init__(self) -> None:
        self._providers: Dict[str, List[Any]] = {}

    def register(self, capability: str, provider: Any) -> None:
        self._providers.setdefault(capability, []).append(provider)
        logger.debug(
            "Capability provider registered",
            capability=capability,
            provider=type(provider).__name__,
            position=len(self._providers[capability]) - 1,
        )

    def providers(self, capability: str) -> List[Any]:
        return list(self._providers.get(capability, []))

    def resolve(self, capability: str, default: Optional[Any] = None) -> Any:
        """Return the first registered provider for a capability."""
        providers = self._providers.get(capability)
        if providers:
            return providers[0]
        if default is not None:
            return default
        raise ConfigurationError(
            f"No provider registered for capability '{capability}'",
            config_key=capability,
        )

    def first_success(self, capability: str, operation: Callable[[Any], T]) -> T:
        """
        Run an operation against each provider in order until one succeeds.

        Raises
        ------
        ConfigurationError
            If no provider is registered.
        Exception
            The last provider's error when every provider fails.
        """
        providers = self._providers.get(capability)
        if not providers:
            raise ConfigurationError(
                f"No provider registered for capability '{capability}'",
                config_key=capability,
            )

        last_error: Optional[Exception] = None
        for provider in providers:
            try:
                return operation(provider)
            except Exception as e:
                last_error = e
                logger.warning(
                    "Capability provider failed, trying next",
                    capability=capability,
                    provider=type(provider).__name__,
                    error_type=type(e).__name__,
                )
        raise last_error
