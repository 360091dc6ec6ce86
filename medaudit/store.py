"""
External collaborators -- record store, blob storage and pub/sub channel.

The workflow core never talks to infrastructure directly.  It consumes the
three narrow async interfaces below.  The in-memory implementations are
complete reference bindings used by the test suite, the example
walkthrough and local development; production bindings (a hosted
Postgres/REST backend, an object store, a realtime channel) implement the
same protocols.

**Ordering:**  ``InMemoryRecordStore`` returns records of a collection in
insertion order and stores each aggregate whole, so a protocol's history
is always read back in the order it was written.

**Optimistic concurrency:**  ``update(..., expected_version=n)`` rejects the
write with ``ConflictError`` when the stored record's ``version`` is not
``n``; successful writes bump the version.
"""

from __future__ import annotations

import copy
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

from medaudit.models import FileMetadata

logger = logging.getLogger(__name__)

Record = dict[str, Any]
Handler = Callable[[Any], Union[None, Awaitable[None]]]


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class PersistenceError(Exception):
    """Store, storage or network failure.  Surfaced to the actor verbatim."""


class ConflictError(PersistenceError):
    """Raised when a record changed since the caller read it."""


class UploadError(PersistenceError):
    """Raised when every file of an upload batch failed."""


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------

class RecordStore(Protocol):
    async def get(self, collection: str, filters: Optional[Record] = None) -> list[Record]: ...

    async def insert(self, collection: str, record: Record) -> Record: ...

    async def update(
        self, collection: str, record: Record, expected_version: Optional[int] = None
    ) -> Record: ...

    async def upsert(self, collection: str, record: Record) -> Record: ...

    async def delete(self, collection: str, record_id: str) -> None: ...

    async def generate_auth_code(self) -> str: ...


class BlobStorage(Protocol):
    async def upload(
        self, data: bytes, name: str, content_type: Optional[str] = None
    ) -> FileMetadata: ...


class Subscription(Protocol):
    def unsubscribe(self) -> None: ...


class PubSubChannel(Protocol):
    async def publish(self, topic: str, event: Any) -> None: ...

    def subscribe(self, topic: str, handler: Handler) -> Subscription: ...


# ---------------------------------------------------------------------------
# In-memory record store
# ---------------------------------------------------------------------------

def _matches(record: Record, filters: Optional[Record]) -> bool:
    if not filters:
        return True
    for key, expected in filters.items():
        value = record.get(key)
        if isinstance(expected, (set, frozenset, list, tuple)):
            if value not in expected:
                return False
        elif value != expected:
            return False
    return True


class InMemoryRecordStore:
    """Dict-of-collections record store.

    Records are deep-copied on every read and write.  ``fail_next(op)``
    makes the next call of operation ``op`` raise ``PersistenceError``.
    """

    def __init__(self, auth_code_prefix: str = "AUT") -> None:
        self._collections: dict[str, dict[str, Record]] = {}
        self._auth_code_prefix = auth_code_prefix
        self._auth_sequence = 0
        self._failures: dict[str, str] = {}

    def fail_next(self, operation: str, message: str = "simulated store failure") -> None:
        self._failures[operation] = message

    def _maybe_fail(self, operation: str) -> None:
        message = self._failures.pop(operation, None)
        if message is not None:
            raise PersistenceError(message)

    def _collection(self, name: str) -> dict[str, Record]:
        return self._collections.setdefault(name, {})

    async def get(self, collection: str, filters: Optional[Record] = None) -> list[Record]:
        self._maybe_fail("get")
        return [
            copy.deepcopy(r)
            for r in self._collection(collection).values()
            if _matches(r, filters)
        ]

    async def insert(self, collection: str, record: Record) -> Record:
        self._maybe_fail("insert")
        stored = copy.deepcopy(record)
        stored.setdefault("id", str(uuid.uuid4()))
        stored.setdefault("created_at", datetime.now(timezone.utc).isoformat())
        rows = self._collection(collection)
        if stored["id"] in rows:
            raise PersistenceError(f"Duplicate id '{stored['id']}' in '{collection}'")
        rows[stored["id"]] = stored
        return copy.deepcopy(stored)

    async def update(
        self, collection: str, record: Record, expected_version: Optional[int] = None
    ) -> Record:
        self._maybe_fail("update")
        rows = self._collection(collection)
        record_id = record.get("id")
        if record_id not in rows:
            raise PersistenceError(f"No record '{record_id}' in '{collection}'")
        current = rows[record_id]
        current_version = current.get("version", 0)
        if expected_version is not None and current_version != expected_version:
            logger.warning(
                "Version conflict on %s/%s: stored %d, expected %d",
                collection, record_id, current_version, expected_version,
            )
            raise ConflictError(
                f"Record '{record_id}' in '{collection}' is at version {current_version}, "
                f"expected {expected_version}. Reload and retry."
            )
        stored = copy.deepcopy(record)
        if "created_at" in current:
            stored.setdefault("created_at", current["created_at"])
        stored["version"] = current_version + 1
        rows[record_id] = stored
        return copy.deepcopy(stored)

    async def upsert(self, collection: str, record: Record) -> Record:
        self._maybe_fail("upsert")
        if record.get("id") in self._collection(collection):
            return await self.update(collection, record)
        return await self.insert(collection, record)

    async def delete(self, collection: str, record_id: str) -> None:
        self._maybe_fail("delete")
        rows = self._collection(collection)
        if record_id not in rows:
            raise PersistenceError(f"No record '{record_id}' in '{collection}'")
        del rows[record_id]

    async def generate_auth_code(self) -> str:
        """Sequential human-readable code, e.g. ``AUT-2026-000001``."""
        self._maybe_fail("generate_auth_code")
        self._auth_sequence += 1
        year = datetime.now(timezone.utc).year
        return f"{self._auth_code_prefix}-{year}-{self._auth_sequence:06d}"


# ---------------------------------------------------------------------------
# In-memory blob storage
# ---------------------------------------------------------------------------

class InMemoryBlobStorage:
    """Keeps uploaded bytes in memory under ``audit_docs/<random>.<ext>``.

    Names listed in ``fail_names`` fail to upload.
    """

    def __init__(
        self,
        base_url: str = "https://storage.local/medical-documents",
        fail_names: Optional[set[str]] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.fail_names = set(fail_names or ())
        self.objects: dict[str, bytes] = {}

    async def upload(
        self, data: bytes, name: str, content_type: Optional[str] = None
    ) -> FileMetadata:
        if name in self.fail_names:
            raise PersistenceError(f"Upload of '{name}' failed")
        extension = name.rsplit(".", 1)[-1] if "." in name else "bin"
        path = f"audit_docs/{uuid.uuid4().hex}.{extension}"
        self.objects[path] = bytes(data)
        return FileMetadata(
            name=name,
            size=len(data),
            type=content_type or "application/octet-stream",
            url=f"{self.base_url}/{path}",
        )


# ---------------------------------------------------------------------------
# In-memory pub/sub
# ---------------------------------------------------------------------------

class _InMemorySubscription:
    def __init__(self, channel: "InMemoryPubSub", topic: str, handler: Handler) -> None:
        self._channel = channel
        self.topic = topic
        self.handler = handler
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._channel._remove(self)
            self.active = False


class InMemoryPubSub:
    """Fan-out to every subscriber of a topic, in subscription order.

    Handlers may be plain callables or coroutine functions.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[_InMemorySubscription]] = {}
        self.published: list[tuple[str, Any]] = []

    def subscribe(self, topic: str, handler: Handler) -> _InMemorySubscription:
        subscription = _InMemorySubscription(self, topic, handler)
        self._subscribers.setdefault(topic, []).append(subscription)
        return subscription

    def _remove(self, subscription: _InMemorySubscription) -> None:
        subscribers = self._subscribers.get(subscription.topic, [])
        if subscription in subscribers:
            subscribers.remove(subscription)

    async def publish(self, topic: str, event: Any) -> None:
        self.published.append((topic, copy.deepcopy(event)))
        for subscription in list(self._subscribers.get(topic, [])):
            result = subscription.handler(copy.deepcopy(event))
            if result is not None and hasattr(result, "__await__"):
                await result

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, []))
