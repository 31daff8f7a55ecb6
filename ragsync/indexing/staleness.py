"""
Staleness check run before every non-forced reindex.

Re-delivering the same settle event, or retrying a job that already wrote
its chunks, is a no-op: the indexed copy already carries the document's
current ``updatedAt``.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from ragsync.schemas import HostDocument
from ragsync.utils.helpers import parse_timestamp
from ragsync.vectorstore.base import VectorStore


def needs_reindex(existing_metadata: Optional[dict[str, Any]], updated_at: datetime) -> bool:
    if not existing_metadata:
        return True
    indexed_at = parse_timestamp(existing_metadata.get("updatedAt"))
    if indexed_at is None:
        return True
    return indexed_at < parse_timestamp(updated_at)


class StalenessResolver:
    def __init__(self, store: VectorStore) -> None:
        self.store = store

    async def is_stale(self, document: HostDocument) -> bool:
        existing = await self.store.find_one_where({"documentId": document.id})
        return needs_reindex(existing, document.updated_at)
