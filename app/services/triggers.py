"""Maps external events onto exclusion engine operations. No logic of its own."""

import logging

from app.core.entities import EntityType
from app.services.exclusion_service import (
    ExclusionComputationService, HideResult, RecomputeAllReport, RecomputeResult,
    get_exclusion_service,
)

logger = logging.getLogger(__name__)


class TriggerDispatcher:
    def __init__(self, service: ExclusionComputationService | None = None):
        self._service = service

    @property
    def service(self) -> ExclusionComputationService:
        return self._service or get_exclusion_service()

    async def on_sync_completed(self) -> RecomputeAllReport:
        logger.info("Library sync completed; recomputing exclusions for all users")
        return await self.service.recompute_all_users()

    async def on_restriction_changed(self, user_id: int) -> RecomputeResult:
        logger.info(f"Restrictions changed for user {user_id}")
        return await self.service.recompute_for_user(user_id)

    async def on_entity_hidden(self, user_id: int, entity_type: "EntityType | str", entity_id: str) -> HideResult:
        return await self.service.add_hidden_entity(user_id, entity_type, entity_id)

    async def on_entity_unhidden(self, user_id: int, entity_type: "EntityType | str", entity_id: str) -> bool:
        return await self.service.remove_hidden_entity(user_id, entity_type, entity_id)
