"""Browser-style key-value stores.

Synchronous ``get_item/set_item/remove_item`` over string keys and values,
with an optional byte quota. Used directly by LocalBackend and read by the
migration coordinator for legacy keys.
"""

import logging
from typing import Dict, List, Optional, Protocol, runtime_checkable

from sqlalchemy import LargeBinary, cast, func, select
from sqlalchemy.exc import SQLAlchemyError

from notestore.exceptions import ErrorCode, QuotaExceededError, StorageError
from notestore.models.db_models import DBKeyValue, get_session_factory, init_db

logger = logging.getLogger(__name__)


def _encoded_size(key: str, value: str) -> int:
    return len(key.encode("utf-8")) + len(value.encode("utf-8"))


# Byte size of one row, as SQLite counts it
_ROW_BYTES = func.length(cast(DBKeyValue.key, LargeBinary)) + func.length(
    cast(DBKeyValue.value, LargeBinary)
)


@runtime_checkable
class KeyValueStore(Protocol):
    """Interface of the synchronous key-value store."""

    def get_item(self, key: str) -> Optional[str]: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...

    def keys(self) -> List[str]: ...

    def usage_bytes(self) -> int: ...


class MemoryKeyValueStore:
    """Dict-backed store for tests and throwaway sessions."""

    def __init__(self, quota_bytes: int = 0, initial: Optional[Dict[str, str]] = None):
        self.quota_bytes = quota_bytes
        self._items: Dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        if self.quota_bytes:
            others = sum(
                _encoded_size(k, v) for k, v in self._items.items() if k != key
            )
            requested = others + _encoded_size(key, value)
            if requested > self.quota_bytes:
                raise QuotaExceededError(
                    key=key, requested_bytes=requested, quota_bytes=self.quota_bytes
                )
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._items)

    def usage_bytes(self) -> int:
        return sum(_encoded_size(k, v) for k, v in self._items.items())


class SqliteKeyValueStore:
    """Durable key-value store in a single SQLite table.

    Each ``set_item`` is its own transaction, so a blob is replaced
    atomically or not at all.
    """

    def __init__(
        self,
        db_url: Optional[str] = None,
        quota_bytes: int = 0,
        engine=None,
    ):
        """Initialize the store.

        Args:
            db_url: SQLAlchemy URL; defaults to the configured key-value database.
            quota_bytes: Total size limit across all keys (0 disables the check).
            engine: Pre-configured engine to share instead of creating one.
        """
        self.engine = engine if engine is not None else init_db(db_url)
        self.session_factory = get_session_factory(self.engine)
        self.quota_bytes = quota_bytes
        logger.debug(f"SqliteKeyValueStore initialized: url={self.engine.url}, quota={quota_bytes}")

    def get_item(self, key: str) -> Optional[str]:
        try:
            with self.session_factory() as session:
                row = session.get(DBKeyValue, key)
                return row.value if row is not None else None
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to read key '{key}'",
                operation="get_item",
                code=ErrorCode.STORAGE_READ_FAILED,
                original_error=e,
            ) from e

    def set_item(self, key: str, value: str) -> None:
        try:
            with self.session_factory() as session:
                if self.quota_bytes:
                    others = session.execute(
                        select(
                            func.coalesce(func.sum(_ROW_BYTES), 0)
                        ).where(DBKeyValue.key != key)
                    ).scalar_one()
                    requested = int(others) + _encoded_size(key, value)
                    if requested > self.quota_bytes:
                        raise QuotaExceededError(
                            key=key,
                            requested_bytes=requested,
                            quota_bytes=self.quota_bytes,
                        )
                row = session.get(DBKeyValue, key)
                if row is None:
                    session.add(DBKeyValue(key=key, value=value))
                else:
                    row.value = value
                session.commit()
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to write key '{key}'",
                operation="set_item",
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e

    def remove_item(self, key: str) -> None:
        try:
            with self.session_factory() as session:
                row = session.get(DBKeyValue, key)
                if row is not None:
                    session.delete(row)
                    session.commit()
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to remove key '{key}'",
                operation="remove_item",
                code=ErrorCode.STORAGE_DELETE_FAILED,
                original_error=e,
            ) from e

    def keys(self) -> List[str]:
        with self.session_factory() as session:
            return list(session.execute(select(DBKeyValue.key)).scalars())

    def usage_bytes(self) -> int:
        with self.session_factory() as session:
            total = session.execute(
                select(
                    func.coalesce(func.sum(_ROW_BYTES), 0)
                )
            ).scalar_one()
            return int(total)

    def close(self) -> None:
        self.engine.dispose()
