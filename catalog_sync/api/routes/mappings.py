from dataclasses import asdict

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status

from catalog_sync.schemas.mappings import MappingChangeOut, MappingRequest
from catalog_sync.services.mappings import (
    MappingError,
    MappingNotFoundError,
    map_ingestion_entity_to_canonical,
    unmap_ingestion_entity,
)
from catalog_sync.services.repository import RepositoryUnavailableError, get_repository

router = APIRouter()


def get_actor_id(x_actor_id: str | None = Header(default=None, alias="X-Actor-Id")) -> str:
    if not x_actor_id or not x_actor_id.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-Actor-Id header is required")
    return x_actor_id.strip()


@router.post("/{entity_id}", response_model=MappingChangeOut)
async def map_entity(
    entity_id: str,
    payload: MappingRequest,
    actor_id: str = Depends(get_actor_id),
    repository=Depends(get_repository),
) -> MappingChangeOut:
    try:
        change = await map_ingestion_entity_to_canonical(
            repository,
            entity_id=entity_id,
            canonical_type=payload.canonical_type,
            canonical_id=payload.canonical_id,
            actor_user_id=actor_id,
            reason=payload.reason,
        )
    except MappingNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except MappingError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return MappingChangeOut(**asdict(change))


@router.delete("/{entity_id}", response_model=MappingChangeOut)
async def unmap_entity(
    entity_id: str,
    actor_id: str = Depends(get_actor_id),
    repository=Depends(get_repository),
    reason: str | None = Query(default=None, max_length=2000),
) -> MappingChangeOut:
    try:
        change = await unmap_ingestion_entity(
            repository,
            entity_id=entity_id,
            actor_user_id=actor_id,
            reason=reason,
        )
    except MappingNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except MappingError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return MappingChangeOut(**asdict(change))
