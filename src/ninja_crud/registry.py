"""Service routing: maps entity names to configured CRUD services.

Optional wiring over :class:`ConnectionManager`; services built here behave
exactly like ones constructed by hand from a repository and a config.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from ninja_crud.config import ServiceConfig
from ninja_crud.connections import ConnectionManager
from ninja_crud.interceptors import WriteInterceptor
from ninja_crud.repository import MongoRepository
from ninja_crud.schema import EntitySchema
from ninja_crud.service import CrudService

logger = logging.getLogger(__name__)


class ServiceRegistry:
    """Builds and holds one :class:`CrudService` per entity.

    Repositories are created over the database of the requested connection
    profile; services registered directly act as overrides.
    """

    def __init__(self, connection_manager: ConnectionManager) -> None:
        self._connection_manager = connection_manager
        self._services: dict[str, CrudService] = {}

    def __contains__(self, entity_name: str) -> bool:
        return entity_name in self._services

    def __len__(self) -> int:
        return len(self._services)

    @property
    def entity_names(self) -> list[str]:
        return sorted(self._services)

    def register(
        self,
        entity: EntitySchema,
        config: ServiceConfig | Mapping[str, Any] | None = None,
        *,
        profile_name: str = "default",
        interceptors: Sequence[WriteInterceptor] | None = None,
    ) -> CrudService:
        """Create a repository and service for *entity* and register them."""
        if entity.name in self._services:
            raise ValueError(f"A service for entity '{entity.name}' is already registered.")
        database = self._connection_manager.get_mongo_database(profile_name)
        repository = MongoRepository(entity, database, interceptors=interceptors)
        service = CrudService(repository, entity, config)
        self._services[entity.name] = service
        logger.debug("Registered service for %s on profile %s", entity.name, profile_name)
        return service

    def register_service(self, service: CrudService) -> None:
        """Register a pre-built service, replacing any existing one for its entity."""
        self._services[service.entity.name] = service

    def get(self, entity_name: str) -> CrudService:
        if entity_name not in self._services:
            raise KeyError(f"No service registered for entity '{entity_name}'. Available: {self.entity_names}")
        return self._services[entity_name]

    async def ensure_indexes(self) -> dict[str, list[str]]:
        """Create indexes for every registered entity backed by a Mongo repository."""
        created: dict[str, list[str]] = {}
        for name, service in self._services.items():
            repository = service.repository
            if isinstance(repository, MongoRepository):
                created[name] = await repository.ensure_indexes()
        return created
