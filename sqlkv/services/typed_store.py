"""
Typed Store Module

JSON-serializing adapter over a KV store or transaction handle. Values are
encoded with a pydantic TypeAdapter, so models, dataclasses, dicts and plain
scalars all round-trip through the byte store.
"""

from typing import TYPE_CHECKING, Any, Generic, Iterable, Mapping, Optional, TypeVar, Union

from pydantic import TypeAdapter, ValidationError
from pydantic_core import PydanticSerializationError

from sqlkv.common.errors import KVStoreError, NotFoundError
from sqlkv.common.time import TtlLike
from sqlkv.domain.kv_store import ScanOptions

if TYPE_CHECKING:
    from sqlkv.store import _KVOperations

T = TypeVar("T")


class SerializationError(KVStoreError):
    """Value could not be encoded to or decoded from JSON"""

    error_type = "serialization_error"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(
            message=f"serialization failed: {message}",
            code="serialization_error",
            details=details,
        )


class TypedKVStore(Generic[T]):
    """
    Typed Key-Value Store

    Example:
        users = store.typed(User)
        users.set("user:1", User(name="ada"))
        users.get("user:1")
    """

    def __init__(self, store: "_KVOperations", value_type: Any):
        self.store = store
        self.value_type = value_type
        self._adapter: TypeAdapter[T] = TypeAdapter(value_type)

    def _encode(self, value: T) -> bytes:
        try:
            return self._adapter.dump_json(value)
        except PydanticSerializationError as e:
            raise SerializationError(str(e)) from e

    def _decode(self, key: str, raw: Optional[bytes]) -> Optional[T]:
        if raw is None:
            return None
        try:
            return self._adapter.validate_json(raw)
        except ValidationError as e:
            raise SerializationError(
                f"stored value does not match {self._type_name}",
                details={"key": key, "errors": e.error_count()},
            ) from e

    @property
    def _type_name(self) -> str:
        return getattr(self.value_type, "__name__", repr(self.value_type))

    def get(self, key: str) -> Optional[T]:
        return self._decode(key, self.store.get(key))

    def get_or_raise(self, key: str) -> T:
        value = self.get(key)
        if value is None:
            raise NotFoundError(key)
        return value

    def set(self, key: str, value: T) -> None:
        self.store.set(key, self._encode(value))

    def set_ex(self, key: str, value: T, ttl: TtlLike) -> None:
        self.store.set_ex(key, self._encode(value), ttl)

    def set_nx(self, key: str, value: T) -> bool:
        return self.store.set_nx(key, self._encode(value))

    def set_nx_ex(self, key: str, value: T, ttl: TtlLike) -> bool:
        return self.store.set_nx_ex(key, self._encode(value), ttl)

    def get_and_set(self, key: str, value: T) -> Optional[T]:
        return self._decode(key, self.store.get_and_set(key, self._encode(value)))

    def get_and_delete(self, key: str) -> Optional[T]:
        return self._decode(key, self.store.get_and_delete(key))

    def delete(self, key: str) -> bool:
        return self.store.delete(key)

    def get_many(self, keys: Iterable[str]) -> list[tuple[str, T]]:
        """Decoded pairs in input order, missing keys omitted"""
        return [(kv.key, self._decode(kv.key, kv.value)) for kv in self.store.get_many(keys)]

    def set_many(
        self,
        items: Union[Mapping[str, T], Iterable[tuple[str, T]]],
        ttl: Optional[TtlLike] = None,
    ) -> None:
        pairs = items.items() if isinstance(items, Mapping) else items
        self.store.set_many([(key, self._encode(value)) for key, value in pairs], ttl=ttl)

    def scan(self, options: Optional[ScanOptions] = None) -> list[tuple[str, T]]:
        return [(kv.key, self._decode(kv.key, kv.value)) for kv in self.store.scan(options)]
