"""
Utility Functions

Input normalization and limit checks shared by every store operation.
"""

from datetime import timedelta
from typing import Union

from sqlkv.common.errors import InvalidKeyError, InvalidTtlError, ValueTooLargeError
from sqlkv.common.time import TtlLike, to_timedelta

ValueLike = Union[bytes, bytearray, memoryview, str]


def to_bytes(value: ValueLike) -> bytes:
    """
    Normalize a value to bytes

    Strings are encoded as UTF-8; bytes-like objects are copied.
    """
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        return value.encode("utf-8")
    if isinstance(value, (bytearray, memoryview)):
        return bytes(value)
    raise TypeError(f"value must be bytes-like or str, got {type(value).__name__}")


def validate_key(key: str, max_length: int) -> None:
    """
    Check a key against the configured limits

    Raises:
        InvalidKeyError: If the key is empty or longer than max_length bytes
    """
    if not isinstance(key, str):
        raise InvalidKeyError(f"key must be a string, got {type(key).__name__}")
    if not key:
        raise InvalidKeyError("key cannot be empty")
    length = len(key.encode("utf-8"))
    if length > max_length:
        raise InvalidKeyError(
            f"key length {length} exceeds maximum {max_length}",
            details={"length": length, "max_length": max_length},
        )


def validate_value(value: bytes, max_size: int) -> None:
    """
    Check a value against the configured size limit

    Raises:
        ValueTooLargeError: If the value is larger than max_size bytes
    """
    if len(value) > max_size:
        raise ValueTooLargeError(len(value), max_size)


def validate_ttl(ttl: TtlLike) -> timedelta:
    """
    Normalize a TTL and check that it is positive

    Raises:
        InvalidTtlError: If the TTL is zero, negative or not a duration
    """
    try:
        delta = to_timedelta(ttl)
    except TypeError as e:
        raise InvalidTtlError(str(e)) from e
    if delta <= timedelta(0):
        raise InvalidTtlError(f"ttl must be positive, got {delta.total_seconds()}s")
    return delta
