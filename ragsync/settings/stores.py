"""
Tenant settings stores
-----------------------
Persistence of per-tenant overrides belongs to the host; ragsync only reads.

  InMemoryTenantSettingsStore   -- dict-backed, for tests and single-node dev
  PostgresTenantSettingsStore   -- reads the ``settings`` JSONB column of the
                                   team's RAG integration row
"""
from __future__ import annotations

from typing import Any, Optional, Protocol

import asyncpg
import orjson


class TenantSettingsStore(Protocol):
    async def get(self, tenant_id: str) -> Optional[dict[str, Any]]:
        ...


class InMemoryTenantSettingsStore:
    def __init__(self, settings: Optional[dict[str, dict[str, Any]]] = None) -> None:
        self._settings: dict[str, dict[str, Any]] = dict(settings or {})

    async def get(self, tenant_id: str) -> Optional[dict[str, Any]]:
        settings = self._settings.get(tenant_id)
        return dict(settings) if settings is not None else None

    def set(self, tenant_id: str, settings: dict[str, Any]) -> None:
        self._settings[tenant_id] = dict(settings)


class PostgresTenantSettingsStore:
    """Looks up ``integrations(team_id, service='rag', type='post')``."""

    def __init__(
        self,
        pool: asyncpg.Pool,
        table_name: str = "integrations",
        service: str = "rag",
        integration_type: str = "post",
    ) -> None:
        self._pool = pool
        self._table = table_name
        self._service = service
        self._type = integration_type

    async def get(self, tenant_id: str) -> Optional[dict[str, Any]]:
        async with self._pool.acquire() as conn:
            value = await conn.fetchval(
                f'SELECT settings FROM {self._table} '
                f'WHERE "teamId" = $1 AND service = $2 AND type = $3 LIMIT 1',
                tenant_id,
                self._service,
                self._type,
            )
        if value is None:
            return None
        if isinstance(value, (str, bytes)):
            value = orjson.loads(value)
        return dict(value)
