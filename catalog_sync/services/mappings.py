"""Admin overrides for ingestion entity to canonical record mappings."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)

MAPPABLE_ENTITY_TYPES = frozenset({"product", "plant", "offer"})
ADMIN_MANUAL_MATCH_METHOD = "admin_manual"
ADMIN_MANUAL_CONFIDENCE = 100


class MappingError(Exception):
    """Raised when a mapping change is not allowed."""


class MappingNotFoundError(MappingError):
    """Raised when the entity, the canonical record, or the mapping is missing."""


@dataclass(slots=True)
class MappingChange:
    entity_id: str
    mapping: dict[str, Any] | None
    previous_mapping: dict[str, Any] | None
    admin_action: dict[str, Any]


async def map_ingestion_entity_to_canonical(
    store: Any,
    *,
    entity_id: str,
    canonical_type: str,
    canonical_id: str,
    actor_user_id: str,
    reason: str | None = None,
    now: datetime | None = None,
) -> MappingChange:
    now = now or datetime.now(timezone.utc)
    entity = await _load_mappable_entity(store, entity_id, actor_user_id)
    if canonical_type != entity["entity_type"]:
        raise MappingError(
            f"canonical type {canonical_type} does not match entity type {entity['entity_type']}"
        )
    if not await store.canonical_record_exists(canonical_type, canonical_id):
        raise MappingNotFoundError(f"canonical {canonical_type} not found")

    previous = await store.get_canonical_mapping(entity_id)
    mapping = await store.upsert_canonical_mapping(
        entity_id=entity_id,
        canonical_type=canonical_type,
        canonical_id=canonical_id,
        match_method=ADMIN_MANUAL_MATCH_METHOD,
        confidence=ADMIN_MANUAL_CONFIDENCE,
        notes={"source": ADMIN_MANUAL_MATCH_METHOD, "reason": reason},
        now=now,
    )
    action = await store.insert_admin_action(
        actor_user_id=actor_user_id,
        action="ingestion.mapping.map",
        target_type="ingestion_entity",
        target_id=entity_id,
        meta={
            "entity_type": entity["entity_type"],
            "canonical_type": canonical_type,
            "canonical_id": canonical_id,
            "previous_mapping": _mapping_snapshot(previous),
            "reason": reason,
        },
        now=now,
    )
    logger.info(
        "mapping set entity_id=%s canonical_type=%s canonical_id=%s actor=%s",
        entity_id,
        canonical_type,
        canonical_id,
        actor_user_id,
    )
    return MappingChange(entity_id=entity_id, mapping=mapping, previous_mapping=previous, admin_action=action)


async def unmap_ingestion_entity(
    store: Any,
    *,
    entity_id: str,
    actor_user_id: str,
    reason: str | None = None,
    now: datetime | None = None,
) -> MappingChange:
    now = now or datetime.now(timezone.utc)
    entity = await _load_mappable_entity(store, entity_id, actor_user_id)
    previous = await store.delete_canonical_mapping(entity_id)
    if previous is None:
        raise MappingNotFoundError("mapping not found")

    action = await store.insert_admin_action(
        actor_user_id=actor_user_id,
        action="ingestion.mapping.unmap",
        target_type="ingestion_entity",
        target_id=entity_id,
        meta={
            "entity_type": entity["entity_type"],
            "previous_mapping": _mapping_snapshot(previous),
            "reason": reason,
        },
        now=now,
    )
    logger.info("mapping removed entity_id=%s actor=%s", entity_id, actor_user_id)
    return MappingChange(entity_id=entity_id, mapping=None, previous_mapping=previous, admin_action=action)


async def _load_mappable_entity(store: Any, entity_id: str, actor_user_id: str) -> dict[str, Any]:
    if not actor_user_id or not actor_user_id.strip():
        raise MappingError("actor is required")
    entity = await store.get_ingestion_entity(entity_id)
    if entity is None:
        raise MappingNotFoundError("ingestion entity not found")
    if entity.get("entity_type") not in MAPPABLE_ENTITY_TYPES:
        raise MappingError(f"entity type {entity.get('entity_type')} cannot be mapped")
    return entity


def _mapping_snapshot(mapping: Mapping[str, Any] | None) -> dict[str, Any] | None:
    if mapping is None:
        return None
    return {
        "canonical_type": mapping.get("canonical_type"),
        "canonical_id": mapping.get("canonical_id"),
        "match_method": mapping.get("match_method"),
        "confidence": mapping.get("confidence"),
    }
