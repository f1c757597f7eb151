"""
Utility Function Unit Tests
"""

from datetime import timedelta

import pytest

from sqlkv.common.errors import InvalidKeyError, InvalidTtlError, InvalidValueError, ValueTooLargeError
from sqlkv.common.utils import to_bytes, validate_key, validate_ttl, validate_value


class TestToBytes:
    """Value normalization tests"""

    def test_bytes_unchanged(self):
        """Test bytes pass through"""
        assert to_bytes(b"\x00\xff") == b"\x00\xff"

    def test_str_encoded_as_utf8(self):
        """Test strings are UTF-8 encoded"""
        assert to_bytes("héllo") == "héllo".encode("utf-8")

    def test_bytes_like(self):
        """Test bytearray and memoryview are copied to bytes"""
        assert to_bytes(bytearray(b"abc")) == b"abc"
        assert to_bytes(memoryview(b"abc")) == b"abc"

    def test_rejects_other_types(self):
        """Test non bytes-like values are rejected"""
        with pytest.raises(TypeError):
            to_bytes(42)


class TestValidateKey:
    """Key limit tests"""

    def test_valid_key(self):
        validate_key("user:1", 1024)

    def test_empty_key(self):
        """Test empty keys are rejected"""
        with pytest.raises(InvalidKeyError) as exc_info:
            validate_key("", 1024)
        assert exc_info.value.code == "invalid_key"

    def test_length_counted_in_bytes(self):
        """Test multi-byte characters count by their UTF-8 size"""
        validate_key("é" * 4, 8)
        with pytest.raises(InvalidKeyError) as exc_info:
            validate_key("é" * 5, 8)
        assert exc_info.value.details == {"length": 10, "max_length": 8}

    def test_non_string_key(self):
        with pytest.raises(InvalidKeyError):
            validate_key(b"bytes-key", 1024)


class TestValidateValue:
    """Value size tests"""

    def test_at_limit(self):
        validate_value(b"x" * 10, 10)

    def test_over_limit(self):
        """Test oversized values raise a value error"""
        with pytest.raises(ValueTooLargeError) as exc_info:
            validate_value(b"x" * 11, 10)
        assert isinstance(exc_info.value, InvalidValueError)
        assert exc_info.value.details == {"size": 11, "max_size": 10}

    def test_empty_value_allowed(self):
        validate_value(b"", 10)


class TestValidateTtl:
    """TTL normalization tests"""

    def test_seconds(self):
        assert validate_ttl(30) == timedelta(seconds=30)
        assert validate_ttl(0.5) == timedelta(milliseconds=500)

    def test_timedelta(self):
        assert validate_ttl(timedelta(minutes=1)) == timedelta(minutes=1)

    @pytest.mark.parametrize("ttl", [0, -1, timedelta(0), timedelta(seconds=-5)])
    def test_non_positive(self, ttl):
        """Test zero and negative TTLs are rejected"""
        with pytest.raises(InvalidTtlError):
            validate_ttl(ttl)

    @pytest.mark.parametrize("ttl", ["10", None, True])
    def test_wrong_type(self, ttl):
        with pytest.raises(InvalidTtlError):
            validate_ttl(ttl)
