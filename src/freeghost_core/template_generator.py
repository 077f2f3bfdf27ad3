"""
Non-reversible template generation for the FREEGHOST identity core.

A template fuses a biometric feature vector ``B``, a behavioral feature
vector ``C`` and fresh random noise ``R`` into ``T = H(B || R || C)``, with
``H`` the Argon2id memory-hard hash. Argon2id makes brute-forcing the
feature space expensive even for an adversary who guesses ``R`` was leaked,
and the fresh noise makes two enrollments of the same person unrelated.

All intermediate buffers are wiped once ``T`` is computed.
"""

import hashlib
import threading
from collections import deque
from typing import Any, Deque, Mapping, Optional, Set

import numpy as np
import structlog
from argon2.exceptions import HashingError
from argon2.low_level import Type, hash_secret_raw

from .capabilities import RandomSource
from .constants import (
    ARGON2_MEMORY_COST,
    ARGON2_PARALLELISM,
    ARGON2_TIME_COST,
    BEHAVIORAL_FEATURE_DIM,
    BIOMETRIC_FEATURE_DIM,
    NOISE_HISTORY_SIZE,
    TEMPLATE_DOMAIN_SALT,
    TEMPLATE_HASH_LENGTH,
    TEMPLATE_NOISE_LENGTH,
)
from .data_models import FeatureVector, Template, as_feature_vector
from .entropy import SystemRandomSource
from .exceptions import (
    ConfigurationError,
    CryptoError,
    InputError,
    InsufficientEntropy,
    InvalidFeatureDimension,
)
from .secure_memory import scoped_secret, wipe
from .utils import timer

# Initialize structured logger
logger = structlog.get_logger(__name__)

MAX_ATTRIBUTE_VALUE = 2**32


class TemplateGenerator:
    """
    Fuse feature vectors and random noise into a non-reversible template.

    Parameters
    ----------
    random_source : RandomSource, optional
        Source of the noise ``R``. Defaults to `SystemRandomSource`.
    biometric_dim : int, default=BIOMETRIC_FEATURE_DIM
        Expected length of biometric vectors.
    behavioral_dim : int, default=BEHAVIORAL_FEATURE_DIM
        Expected length of behavioral vectors.
    noise_length : int, default=TEMPLATE_NOISE_LENGTH
        Number of noise bytes drawn per template.
    time_cost : int, default=ARGON2_TIME_COST
        Argon2id iterations.
    memory_cost : int, default=ARGON2_MEMORY_COST
        Argon2id memory in KiB.
    parallelism : int, default=ARGON2_PARALLELISM
        Argon2id lanes.
    hash_length : int, default=TEMPLATE_HASH_LENGTH
        Template length in bytes.

    Examples
    --------
    >>> generator = TemplateGenerator()
    >>> template = generator.generate(np.random.rand(16), np.random.rand(8))
    >>> len(template.value)
    32
    """

    def __init__(
        self,
        random_source: Optional[RandomSource] = None,
        biometric_dim: int = BIOMETRIC_FEATURE_DIM,
        behavioral_dim: int = BEHAVIORAL_FEATURE_DIM,
        noise_length: int = TEMPLATE_NOISE_LENGTH,
        time_cost: int = ARGON2_TIME_COST,
        memory_cost: int = ARGON2_MEMORY_COST,
        parallelism: int = ARGON2_PARALLELISM,
        hash_length: int = TEMPLATE_HASH_LENGTH,
    ) -> None:
        self.random_source = random_source or SystemRandomSource()
        self.biometric_dim = biometric_dim
        self.behavioral_dim = behavioral_dim
        self.noise_length = noise_length
        self.time_cost = time_cost
        self.memory_cost = memory_cost
        self.parallelism = parallelism
        self.hash_length = hash_length

        self._validate_parameters()

        self._noise_lock = threading.Lock()
        self._noise_order: Deque[bytes] = deque()
        self._noise_seen: Set[bytes] = set()

        logger.info(
            "TemplateGenerator initialized",
            biometric_dim=biometric_dim,
            behavioral_dim=behavioral_dim,
            noise_length=noise_length,
            time_cost=time_cost,
            memory_cost=memory_cost,
        )

    def _validate_parameters(self) -> None:
        """
        Validate dimensions and Argon2 parameters.

        Raises
        ------
        ConfigurationError
            If any parameter is out of range.
        """
        checks = [
            ("biometric_dim", self.biometric_dim, 1),
            ("behavioral_dim", self.behavioral_dim, 1),
            ("noise_length", self.noise_length, 16),
            ("time_cost", self.time_cost, 1),
            ("memory_cost", self.memory_cost, 8 * self.parallelism),
            ("parallelism", self.parallelism, 1),
            ("hash_length", self.hash_length, 16),
        ]
        for name, value, minimum in checks:
            if value < minimum:
                raise ConfigurationError(
                    f"{name} must be at least {minimum}, got {value}",
                    config_key=name,
                    config_value=str(value),
                )

    def _check_vector(self, vector: FeatureVector, expected: int) -> None:
        values = vector.values
        if values.ndim != 1 or values.size == 0:
            raise InvalidFeatureDimension(
                f"{vector.kind} features must be a non-empty 1-D vector",
                kind=vector.kind,
                actual=list(values.shape),
                expected=expected,
            )
        if values.size != expected:
            raise InvalidFeatureDimension(
                f"{vector.kind} features have dimension {values.size}, expected {expected}",
                kind=vector.kind,
                actual=int(values.size),
                expected=expected,
            )
        if not np.isfinite(values).all():
            raise InvalidFeatureDimension(
                f"{vector.kind} features contain non-finite values",
                kind=vector.kind,
                actual=int(values.size),
                expected=expected,
            )

    @staticmethod
    def _check_attributes(attributes: Optional[Mapping[str, int]]) -> None:
        for name, value in (attributes or {}).items():
            if not isinstance(name, str) or not name:
                raise InputError("Attribute names must be non-empty strings", parameter="attributes")
            if isinstance(value, bool) or not isinstance(value, (int, np.integer)):
                raise InputError(
                    f"Attribute '{name}' must be an integer", parameter="attributes"
                )
            if not 0 <= int(value) < MAX_ATTRIBUTE_VALUE:
                raise InputError(
                    f"Attribute '{name}' must lie in [0, 2^32)", parameter="attributes"
                )

    def _draw_noise(self) -> bytearray:
        """
        Draw fresh noise ``R`` and reject any repeat of recent noise.

        Raises
        ------
        InsufficientEntropy
            On a source failure, a short read, or repeated output.
        """
        noise = bytearray(self.random_source.read(self.noise_length))
        if len(noise) != self.noise_length:
            received = len(noise)
            wipe(noise)
            raise InsufficientEntropy(
                "Random source returned a short read",
                requested=self.noise_length,
                received=received,
            )

        fingerprint = hashlib.sha3_256(bytes(noise)).digest()
        with self._noise_lock:
            if fingerprint in self._noise_seen:
                wipe(noise)
                logger.error("Template noise repeated, random source is broken")
                raise InsufficientEntropy(
                    "Random source repeated template noise", requested=self.noise_length
                )
            self._noise_seen.add(fingerprint)
            self._noise_order.append(fingerprint)
            if len(self._noise_order) > NOISE_HISTORY_SIZE:
                self._noise_seen.discard(self._noise_order.popleft())
        return noise

    @timer
    def generate(
        self,
        biometric: Any,
        behavioral: Any,
        attributes: Optional[Mapping[str, int]] = None,
        epoch: int = 1,
    ) -> Template:
        """
        Generate a template ``T = Argon2id(B || R || C)``.

        Parameters
        ----------
        biometric : FeatureVector or array-like
            Biometric feature vector ``B``.
        behavioral : FeatureVector or array-like
            Behavioral feature vector ``C``.
        attributes : Mapping[str, int], optional
            Hidden attributes to carry inside the template (e.g. ``{"age": 34}``).
        epoch : int, default=1
            Enrollment generation.

        Returns
        -------
        Template
            The new template. Callers must wipe it (or use it as a context
            manager) once done.

        Raises
        ------
        InvalidFeatureDimension
            If a vector is empty, multi-dimensional, non-finite or of the wrong length.
        InsufficientEntropy
            If the random source cannot supply fresh noise.

        Notes
        -----
        `FeatureVector` inputs are wiped. Plain sequences are copied into a
        wiped buffer, but the caller's own copy is out of reach.
        """
        b_vector = as_feature_vector(biometric, "biometric")
        c_vector = as_feature_vector(behavioral, "behavioral")

        try:
            self._check_vector(b_vector, self.biometric_dim)
            self._check_vector(c_vector, self.behavioral_dim)
            self._check_attributes(attributes)

            with scoped_secret(self._draw_noise()) as noise:
                b_len = b_vector.dimension * 8
                c_len = c_vector.dimension * 8
                with scoped_secret(bytearray(b_len + len(noise) + c_len)) as secret:
                    b_vector.write_into(secret, 0)
                    secret[b_len : b_len + len(noise)] = noise
                    c_vector.write_into(secret, b_len + len(noise))
                    value = self._hash(secret)

            template = Template(
                value,
                attributes={k: int(v) for k, v in (attributes or {}).items()},
                epoch=epoch,
            )
        finally:
            b_vector.wipe()
            c_vector.wipe()

        logger.info(
            "Template generated",
            template_length=len(template.value),
            attribute_names=sorted(template.attributes),
            epoch=epoch,
        )
        return template

    def _hash(self, secret: bytearray) -> bytes:
        try:
            return hash_secret_raw(
                secret=bytes(secret),
                salt=TEMPLATE_DOMAIN_SALT,
                time_cost=self.time_cost,
                memory_cost=self.memory_cost,
                parallelism=self.parallelism,
                hash_len=self.hash_length,
                type=Type.ID,
            )
        except HashingError as e:
            raise CryptoError(
                f"Argon2id template hashing failed: {e}", operation="template_hash"
            ) from e
