"""
Best-effort wiping of secret material held in Python memory.

CPython gives no guarantee that immutable `bytes` or `int` objects are ever
erased, so secrets in this package live in mutable `bytearray` buffers or
writeable numpy arrays and are overwritten in place once they are no longer
needed. Intermediate immutable copies handed to C libraries (argon2,
cryptography, pqcrypto) are kept as short-lived as possible.
"""

from contextlib import contextmanager
from typing import Iterator, Union

import numpy as np

Wipeable = Union[bytearray, memoryview, np.ndarray]


def wipe(buffer: Wipeable) -> None:
    """
    Overwrite a mutable buffer with zeros.

    Parameters
    ----------
    buffer : bytearray, memoryview or np.ndarray
        Buffer to clear. Read-only numpy arrays are made writeable first
        when they own their memory.
    """
    if buffer is None:
        return

    if isinstance(buffer, np.ndarray):
        if not buffer.flags.writeable:
            if not buffer.flags.owndata:
                return
            buffer.flags.writeable = True
        buffer.fill(0)
        buffer.flags.writeable = False
        return

    if isinstance(buffer, memoryview):
        if buffer.readonly:
            return
        buffer[:] = b"\x00" * buffer.nbytes
        return

    buffer[:] = b"\x00" * len(buffer)


@contextmanager
def scoped_secret(buffer: Wipeable) -> Iterator[Wipeable]:
    """
    Yield a buffer and wipe it when the block exits, even on error.

    Examples
    --------
    >>> with scoped_secret(bytearray(b"secret")) as buf:
    ...     digest = hashlib.sha3_256(buf).digest()
    """
    try:
        yield buffer
    finally:
        wipe(buffer)


def is_wiped(buffer: Wipeable) -> bool:
    """Return True when every byte of the buffer is zero."""
    if isinstance(buffer, np.ndarray):
        return not np.any(buffer)
    return not any(bytes(buffer))
