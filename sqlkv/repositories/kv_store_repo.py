"""
Key-Value Store Repository Interface

Defines the statement-level data access interface for the KV Store. Inputs are
assumed validated; callers run each method inside a transaction.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Optional, Sequence

from sqlkv.domain.kv_store import CasResult, Entry, KeyValue, ScanOptions, Stats


class KVStoreRepository(ABC):
    """Key-Value Store Repository Interface"""

    # ==================== Single Records ====================

    @abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        """
        Get value by key

        Returns None if key doesn't exist or is invisible under the TTL policy.

        Args:
            key: The key to look up

        Returns:
            The stored bytes if visible, None otherwise
        """
        pass

    @abstractmethod
    def get_entry(self, key: str) -> Optional[Entry]:
        """Get value and metadata by key, None if absent or invisible"""
        pass

    @abstractmethod
    def set(self, key: str, value: bytes, expires_at: Optional[datetime] = None) -> None:
        """
        Insert or replace a key-value pair

        If the key already exists it is overwritten, including its expiry.

        Args:
            key: The key to set
            value: The value to store
            expires_at: Naive UTC expiry (None means never expires)
        """
        pass

    @abstractmethod
    def set_if_absent(self, key: str, value: bytes, expires_at: Optional[datetime] = None) -> bool:
        """
        Insert a key-value pair only if no visible record exists

        Returns:
            True if the pair was stored
        """
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        """
        Delete a key

        Returns:
            True if deleted, False if key didn't exist
        """
        pass

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Whether a visible record exists for the key"""
        pass

    # ==================== Atomic Operations ====================

    @abstractmethod
    def increment(self, key: str, delta: int) -> int:
        """
        Add delta to an integer counter in one statement

        An absent key is created with value delta.

        Returns:
            The new counter value
        """
        pass

    @abstractmethod
    def compare_and_swap(self, key: str, expected: Optional[bytes], new_value: bytes) -> CasResult:
        """
        Replace the value only if it currently equals expected

        expected=None means the key must not exist.
        """
        pass

    @abstractmethod
    def get_and_set(self, key: str, value: bytes) -> Optional[bytes]:
        """Install a new value and return the previous visible one"""
        pass

    @abstractmethod
    def get_and_delete(self, key: str) -> Optional[bytes]:
        """Remove a key and return its visible value"""
        pass

    # ==================== TTL Operations ====================

    @abstractmethod
    def expire(self, key: str, expires_at: datetime) -> bool:
        """Set the expiry of an existing key, False if absent"""
        pass

    @abstractmethod
    def persist(self, key: str) -> bool:
        """Clear the expiry of a key, True if it had one"""
        pass

    @abstractmethod
    def ttl(self, key: str) -> Optional[timedelta]:
        """Remaining time to live, None if persistent, absent or expired"""
        pass

    @abstractmethod
    def cleanup_expired(self) -> int:
        """
        Delete all expired keys

        Returns:
            Number of deleted keys
        """
        pass

    # ==================== Batch Operations ====================

    @abstractmethod
    def get_many(self, keys: Sequence[str]) -> list[KeyValue]:
        """Visible pairs for the given keys, in input order, absent keys omitted"""
        pass

    @abstractmethod
    def set_many(self, items: Sequence[tuple[str, bytes]], expires_at: Optional[datetime] = None) -> None:
        """Insert or replace several pairs"""
        pass

    @abstractmethod
    def delete_many(self, keys: Sequence[str]) -> int:
        """Delete several keys, returning the number of rows removed"""
        pass

    # ==================== Scanning ====================

    @abstractmethod
    def keys(self, options: ScanOptions) -> list[str]:
        """Matching keys ordered by key"""
        pass

    @abstractmethod
    def scan(self, options: ScanOptions) -> list[KeyValue]:
        """Matching pairs ordered by key"""
        pass

    @abstractmethod
    def count(self, options: ScanOptions) -> int:
        """Number of matching keys"""
        pass

    @abstractmethod
    def delete_prefix(self, prefix: str) -> int:
        """Delete every key starting with prefix, returning the count"""
        pass

    # ==================== Maintenance ====================

    @abstractmethod
    def clear(self) -> int:
        """Delete every row"""
        pass

    @abstractmethod
    def truncate(self) -> None:
        """Remove every row as fast as the backend allows"""
        pass

    @abstractmethod
    def stats(self) -> Stats:
        """Aggregate statistics over the table"""
        pass
