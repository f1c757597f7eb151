"""
Key-Value Store Domain Model

Defines KV Store related value objects and configuration enums.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from sqlkv.common.time import ensure_utc, utc_now


class TableType(str, Enum):
    """Durability mode of the backing table"""

    # Non-durable: PostgreSQL UNLOGGED table, faster writes, lost after a crash
    UNLOGGED = "unlogged"
    # Durable: regular WAL-logged table
    REGULAR = "regular"


class TtlCleanupStrategy(str, Enum):
    """How and when expired keys become invisible and get purged"""

    # Expired keys are hidden and deleted by the read that finds them
    ON_READ = "on_read"
    # Expired keys stay visible until cleanup_expired() is called
    MANUAL = "manual"
    # Expiry is stored but never consulted
    DISABLED = "disabled"


class KeyValue(BaseModel):
    """Key-Value Pair"""

    key: str = Field(..., description="Key")
    value: bytes = Field(..., description="Raw value")

    model_config = ConfigDict(frozen=True)

    def value_str(self) -> Optional[str]:
        """Return the value decoded as UTF-8, or None if it is not valid UTF-8"""
        try:
            return self.value.decode("utf-8")
        except UnicodeDecodeError:
            return None


class Entry(BaseModel):
    """Key-Value Complete Model"""

    key: str = Field(..., description="Key")
    value: bytes = Field(..., description="Raw value")
    expires_at: Optional[datetime] = Field(None, description="Expiration Time")
    created_at: datetime = Field(..., description="Creation Time")
    updated_at: datetime = Field(..., description="Update Time")

    model_config = ConfigDict(from_attributes=True, frozen=True)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Whether the entry's expiry lies in the past"""
        if self.expires_at is None:
            return False
        return ensure_utc(self.expires_at) <= (now or utc_now())

    def ttl(self, now: Optional[datetime] = None) -> Optional[timedelta]:
        """Time remaining until expiry, None if persistent or already expired"""
        if self.expires_at is None:
            return None
        remaining = ensure_utc(self.expires_at) - (now or utc_now())
        return remaining if remaining > timedelta(0) else None

    def value_str(self) -> Optional[str]:
        """Return the value decoded as UTF-8, or None if it is not valid UTF-8"""
        try:
            return self.value.decode("utf-8")
        except UnicodeDecodeError:
            return None


class ScanOptions(BaseModel):
    """
    Scan Request

    Prefix filter and pagination window for keys/scan/count.
    """

    prefix: Optional[str] = Field(None, description="Only match keys starting with this prefix")
    limit: Optional[int] = Field(None, ge=0, description="Maximum number of results")
    offset: Optional[int] = Field(None, ge=0, description="Number of matches to skip")
    include_expired: bool = Field(
        False, description="Include logically expired keys (on_read strategy only)"
    )

    model_config = ConfigDict(frozen=True)


class CasStatus(str, Enum):
    """Outcome of a compare-and-swap"""

    SUCCESS = "success"
    MISMATCH = "mismatch"
    NOT_FOUND = "not_found"


class CasResult(BaseModel):
    """
    Compare-And-Swap Result

    `current` carries the authoritative stored value on a mismatch
    (None when the key does not exist).
    """

    status: CasStatus
    current: Optional[bytes] = None

    model_config = ConfigDict(frozen=True)

    @classmethod
    def success(cls) -> "CasResult":
        return cls(status=CasStatus.SUCCESS)

    @classmethod
    def mismatch(cls, current: Optional[bytes]) -> "CasResult":
        return cls(status=CasStatus.MISMATCH, current=current)

    @classmethod
    def not_found(cls) -> "CasResult":
        return cls(status=CasStatus.NOT_FOUND)

    @property
    def is_success(self) -> bool:
        return self.status is CasStatus.SUCCESS

    @property
    def is_mismatch(self) -> bool:
        return self.status is CasStatus.MISMATCH

    @property
    def is_not_found(self) -> bool:
        return self.status is CasStatus.NOT_FOUND


class Stats(BaseModel):
    """Store Statistics"""

    # Total number of rows, expired ones included
    total_keys: int = 0
    # Rows whose expiry has passed but that are still present
    expired_keys: int = 0
    total_value_bytes: int = 0
    avg_value_bytes: float = 0.0
    max_value_bytes: int = 0
    # On-disk size of the table with its indexes and TOAST data (PostgreSQL only)
    table_size_bytes: Optional[int] = None
    # On-disk size of the table's indexes (PostgreSQL only)
    index_size_bytes: Optional[int] = None
