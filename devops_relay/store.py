"""
Per-user record stores on top of a KV backend.

Stores:
- linked_projects:<userID> → JSON list of LinkedProject
- subscriptions:<userID>   → JSON list of Subscription

The per-user list is the unit of read and write. Stores persist and
retrieve only; duplicate checks and cascades belong to the Reconciler,
which holds the user's lock around every read-modify-write.
"""

from __future__ import annotations

import json
from typing import Generic, Optional, TypeVar

from pydantic import BaseModel, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from devops_relay.core.errors import StorageError
from devops_relay.core.kvstore import KVStore
from devops_relay.schemas import LinkedProject, Subscription

RecordT = TypeVar("RecordT", LinkedProject, Subscription)


class _RecordStore(Generic[RecordT]):
    prefix: str
    model: type[BaseModel]

    def __init__(self, kv: KVStore):
        self._kv = kv
        self._adapter = TypeAdapter(list[self.model])  # type: ignore[name-defined]

    def _key(self, user_id: str) -> str:
        return f"{self.prefix}:{user_id}"

    async def get_all(self, user_id: str) -> list[RecordT]:
        key = self._key(user_id)
        raw = await self._kv.get(key)
        if not raw:
            return []
        try:
            return self._adapter.validate_json(raw)
        except PydanticValidationError as exc:
            raise StorageError(f"Corrupt record under {key}: {exc}") from exc

    async def _save(self, user_id: str, records: list[RecordT]) -> None:
        key = self._key(user_id)
        if not records:
            await self._kv.delete(key)
            return
        payload = json.dumps([r.model_dump(by_alias=True) for r in records])
        await self._kv.set(key, payload.encode())

    async def put(self, record: RecordT) -> None:
        records = await self.get_all(record.owner_user_id)
        records.append(record)
        await self._save(record.owner_user_id, records)

    async def delete(self, record: RecordT) -> None:
        """Remove every entry sharing the record's identity key. Absent entries are ignored."""
        records = await self.get_all(record.owner_user_id)
        kept = [r for r in records if r.identity != record.identity]
        if len(kept) == len(records):
            return
        await self._save(record.owner_user_id, kept)


class LinkedProjectStore(_RecordStore[LinkedProject]):
    prefix = "linked_projects"
    model = LinkedProject


class SubscriptionStore(_RecordStore[Subscription]):
    prefix = "subscriptions"
    model = Subscription

    async def get_all(self, user_id: str, project_name: Optional[str] = None) -> list[Subscription]:
        subscriptions = await super().get_all(user_id)
        if project_name:
            subscriptions = [s for s in subscriptions if s.project_name == project_name]
        return subscriptions
