"""
Scope resolution: scope name → scope id.

Scopes are administered elsewhere; this layer only looks them up. An unknown
name is an error, never an unscoped search.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Mapping, Optional
from uuid import UUID

from sqlalchemy import select

from ragcore.core.exceptions import ScopeNotFoundError
from ragcore.db.session import get_session
from ragcore.models.documents import Scope
from ragcore.registry.sql import SessionFactory

logger = logging.getLogger(__name__)


class ScopeResolver(ABC):

    @abstractmethod
    async def lookup(self, name: str) -> Optional[UUID]:
        ...

    async def resolve(self, name: str) -> UUID:
        scope_id = await self.lookup(name.strip())
        if scope_id is None:
            logger.info("Unknown scope | name=%s", name)
            raise ScopeNotFoundError(name)
        return scope_id


class SqlScopeResolver(ScopeResolver):

    def __init__(self, session_factory: SessionFactory = get_session) -> None:
        self._session = session_factory

    async def lookup(self, name: str) -> Optional[UUID]:
        async with self._session() as session:
            return await session.scalar(select(Scope.id).where(Scope.name == name))


class MappingScopeResolver(ScopeResolver):
    """Static name → id table (tests, single-tenant deployments)."""

    def __init__(self, scopes: Optional[Mapping[str, UUID]] = None) -> None:
        self._scopes = dict(scopes or {})

    async def lookup(self, name: str) -> Optional[UUID]:
        return self._scopes.get(name)
