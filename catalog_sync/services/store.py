from __future__ import annotations

import copy
import threading
from collections import Counter
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from catalog_sync.schemas.jobs import ACTIVE_JOB_STATUSES
from catalog_sync.services.repository import RepositoryConflictError, RepositoryNotFoundError


class InMemoryRepository:
    """Process-local repository used by the memory storage backend and tests.

    Mutations run under one lock with no awaits inside, which keeps the job
    claim atomic across coroutines and threads alike.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.jobs: dict[str, dict[str, Any]] = {}
        self.categories: dict[str, dict[str, Any]] = {}
        self.products: dict[str, dict[str, Any]] = {}
        self.plants: dict[str, dict[str, Any]] = {}
        self.offers: dict[str, dict[str, Any]] = {}
        self.offer_summaries: dict[str, dict[str, Any]] = {}
        self.price_history: list[dict[str, Any]] = []
        self.ingestion_entities: dict[str, dict[str, Any]] = {}
        self.canonical_mappings: dict[str, dict[str, Any]] = {}
        self.admin_actions: list[dict[str, Any]] = []

    async def close(self) -> None:
        return None

    def add_category(self, slug: str, *, name: str | None = None) -> dict[str, Any]:
        category = {"id": str(uuid4()), "slug": slug, "name": name or slug.title()}
        self.categories[category["id"]] = category
        return category

    def add_product(self, slug: str, *, category_slug: str, **fields: Any) -> dict[str, Any]:
        product = {
            "id": str(uuid4()),
            "slug": slug,
            "name": slug.replace("-", " ").title(),
            "category_slug": category_slug,
            "status": "inactive",
            "specs": {},
            "image_url": None,
            "image_urls": [],
            "description": None,
            "updated_at": _utcnow(),
        }
        product.update(fields)
        self.products[product["id"]] = product
        return product

    def add_plant(self, slug: str, **fields: Any) -> dict[str, Any]:
        plant = {
            "id": str(uuid4()),
            "slug": slug,
            "common_name": slug.replace("-", " ").title(),
            "status": "inactive",
            "image_url": None,
            "image_urls": [],
            "sources": [],
            "description": None,
            "notes": None,
            "updated_at": _utcnow(),
        }
        plant.update(fields)
        self.plants[plant["id"]] = plant
        return plant

    def add_offer(self, product_id: str, *, retailer_id: str, url: str, **fields: Any) -> dict[str, Any]:
        now = _utcnow()
        offer = {
            "id": str(uuid4()),
            "product_id": product_id,
            "retailer_id": retailer_id,
            "url": url,
            "price_cents": None,
            "currency": "USD",
            "in_stock": None,
            "last_checked_at": None,
            "created_at": now,
            "updated_at": now,
        }
        offer.update(fields)
        self.offers[offer["id"]] = offer
        return offer

    async def insert_job(
        self,
        *,
        kind: str,
        payload: dict[str, Any],
        idempotency_key: str | None,
        priority: int,
        run_after: datetime,
        max_attempts: int,
        now: datetime,
    ) -> tuple[dict[str, Any], bool]:
        with self._lock:
            if idempotency_key is not None:
                for job in self.jobs.values():
                    if job["idempotency_key"] == idempotency_key and job["status"] in ACTIVE_JOB_STATUSES:
                        return copy.deepcopy(job), True

            job = {
                "id": str(uuid4()),
                "kind": kind,
                "payload": copy.deepcopy(payload),
                "idempotency_key": idempotency_key,
                "priority": priority,
                "status": "queued",
                "run_after": run_after,
                "locked_at": None,
                "locked_by": None,
                "attempts": 0,
                "max_attempts": max_attempts,
                "last_error": None,
                "result": None,
                "created_at": now,
                "updated_at": now,
            }
            self.jobs[job["id"]] = job
            return copy.deepcopy(job), False

    async def claim_next_job(self, *, worker_id: str, now: datetime) -> dict[str, Any] | None:
        with self._lock:
            eligible = [job for job in self.jobs.values() if job["status"] == "queued" and job["run_after"] <= now]
            if not eligible:
                return None
            # min() keeps the first of equal keys, and dict order is insertion order.
            job = min(eligible, key=lambda row: (row["priority"], row["run_after"], row["created_at"]))
            job["status"] = "running"
            job["locked_at"] = now
            job["locked_by"] = worker_id
            job["attempts"] += 1
            job["updated_at"] = now
            return copy.deepcopy(job)

    async def get_job(self, job_id: str) -> dict[str, Any]:
        job = self.jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        return copy.deepcopy(job)

    async def mark_job_succeeded(self, job_id: str, *, result: dict[str, Any] | None, now: datetime) -> dict[str, Any]:
        return self._finish_running_job(job_id, now=now, status="succeeded", result=copy.deepcopy(result))

    async def mark_job_failed(self, job_id: str, *, error: str, now: datetime) -> dict[str, Any]:
        return self._finish_running_job(job_id, now=now, status="failed", last_error=error)

    async def mark_job_retry(
        self,
        job_id: str,
        *,
        error: str,
        run_after: datetime,
        now: datetime,
    ) -> dict[str, Any]:
        return self._finish_running_job(job_id, now=now, status="queued", last_error=error, run_after=run_after)

    async def list_jobs(self, *, statuses: Iterable[str], limit: int) -> list[dict[str, Any]]:
        wanted = set(statuses)
        rows = [job for job in self.jobs.values() if job["status"] in wanted]
        rows.sort(key=lambda row: (row["locked_at"] or row["run_after"], row["created_at"]))
        return [copy.deepcopy(row) for row in rows[: max(1, limit)]]

    async def requeue_jobs(
        self,
        job_ids: Iterable[str],
        *,
        from_status: str,
        now: datetime,
        reset_attempts: bool = False,
    ) -> list[str]:
        requeued: list[str] = []
        with self._lock:
            for job_id in job_ids:
                job = self.jobs.get(job_id)
                if job is None or job["status"] != from_status:
                    continue
                job["status"] = "queued"
                job["run_after"] = now
                job["locked_at"] = None
                job["locked_by"] = None
                if reset_attempts:
                    job["attempts"] = 0
                job["updated_at"] = now
                requeued.append(job_id)
        return requeued

    async def find_job_by_idempotency_key(self, idempotency_key: str) -> dict[str, Any] | None:
        with self._lock:
            matches = [job for job in self.jobs.values() if job["idempotency_key"] == idempotency_key]
            if not matches:
                return None
            return copy.deepcopy(max(matches, key=lambda row: row["created_at"]))

    async def count_jobs_by_status(self) -> dict[str, int]:
        return dict(Counter(job["status"] for job in self.jobs.values()))

    async def count_queue_health(
        self,
        *,
        now: datetime,
        stale_before: datetime,
        stuck_before: datetime,
    ) -> dict[str, int]:
        counts = {"ready_now": 0, "stale_queued": 0, "stuck_running": 0}
        with self._lock:
            for job in self.jobs.values():
                if job["status"] == "queued":
                    if job["run_after"] <= now:
                        counts["ready_now"] += 1
                    if job["run_after"] < stale_before:
                        counts["stale_queued"] += 1
                elif job["status"] == "running" and job["locked_at"] is not None and job["locked_at"] < stuck_before:
                    counts["stuck_running"] += 1
        return counts

    async def list_categories(self) -> list[dict[str, Any]]:
        return sorted((dict(row) for row in self.categories.values()), key=lambda row: row["slug"])

    async def list_products(self) -> list[dict[str, Any]]:
        return sorted((copy.deepcopy(row) for row in self.products.values()), key=lambda row: row["slug"])

    async def get_product(self, product_id: str) -> dict[str, Any] | None:
        product = self.products.get(product_id)
        return copy.deepcopy(product) if product is not None else None

    async def list_plants(self) -> list[dict[str, Any]]:
        return sorted((copy.deepcopy(row) for row in self.plants.values()), key=lambda row: row["slug"])

    async def list_offers(
        self,
        *,
        product_id: str | None = None,
        retailer_id: str | None = None,
    ) -> list[dict[str, Any]]:
        return [
            dict(row)
            for row in self.offers.values()
            if (product_id is None or row["product_id"] == product_id)
            and (retailer_id is None or row["retailer_id"] == retailer_id)
        ]

    async def get_offer(self, offer_id: str) -> dict[str, Any] | None:
        offer = self.offers.get(offer_id)
        return dict(offer) if offer is not None else None

    async def list_offers_for_refresh(self, *, checked_before: datetime, limit: int) -> list[dict[str, Any]]:
        rows = [
            row
            for row in self.offers.values()
            if (row["last_checked_at"] or row["updated_at"]) < checked_before
        ]
        rows.sort(key=lambda row: (row["last_checked_at"] or row["updated_at"], row["created_at"]))
        return [dict(row) for row in rows[: max(1, limit)]]

    async def update_offer(self, offer_id: str, changes: Mapping[str, Any]) -> None:
        with self._lock:
            offer = self.offers.get(offer_id)
            if offer is not None:
                offer.update(changes)

    async def insert_price_history(
        self,
        *,
        offer_id: str,
        price_cents: int,
        in_stock: bool,
        recorded_at: datetime,
    ) -> None:
        self.price_history.append(
            {"offer_id": offer_id, "price_cents": price_cents, "in_stock": in_stock, "recorded_at": recorded_at}
        )

    async def update_product_image(self, product_id: str, *, image_url: str, now: datetime) -> None:
        product = self.products.get(product_id)
        if product is None:
            return
        current = product.get("image_url")
        if isinstance(current, str) and current.strip():
            return
        product["image_url"] = image_url
        product["updated_at"] = now

    async def set_product_statuses(self, statuses: Mapping[str, str], *, now: datetime) -> int:
        return self._set_statuses(self.products, statuses, now=now)

    async def set_plant_statuses(self, statuses: Mapping[str, str], *, now: datetime) -> int:
        return self._set_statuses(self.plants, statuses, now=now)

    async def get_offer_summary(self, product_id: str) -> dict[str, Any] | None:
        summary = self.offer_summaries.get(product_id)
        return dict(summary) if summary is not None else None

    async def upsert_offer_summary(self, summary: Mapping[str, Any]) -> None:
        self.offer_summaries[summary["product_id"]] = dict(summary)

    async def delete_catalog_rows(
        self,
        *,
        product_ids: list[str],
        plant_ids: list[str],
        offer_ids: list[str],
    ) -> dict[str, int]:
        doomed = {
            "offer": set(offer_ids),
            "product": set(product_ids),
            "plant": set(plant_ids),
        }
        with self._lock:
            self.price_history = [row for row in self.price_history if row["offer_id"] not in doomed["offer"]]
            mapping_ids = [
                entity_id
                for entity_id, mapping in self.canonical_mappings.items()
                if mapping["canonical_id"] in doomed.get(mapping["canonical_type"], set())
            ]
            for entity_id in mapping_ids:
                del self.canonical_mappings[entity_id]
            deleted_offers = _pop_many(self.offers, doomed["offer"])
            for product_id in doomed["product"]:
                self.offer_summaries.pop(product_id, None)
            deleted_products = _pop_many(self.products, doomed["product"])
            deleted_plants = _pop_many(self.plants, doomed["plant"])
        return {
            "mappings": len(mapping_ids),
            "offers": deleted_offers,
            "products": deleted_products,
            "plants": deleted_plants,
        }

    async def upsert_ingestion_entity(
        self,
        *,
        source_slug: str,
        entity_type: str,
        source_entity_id: str,
        url: str | None,
        now: datetime,
    ) -> dict[str, Any]:
        with self._lock:
            for entity in self.ingestion_entities.values():
                if (
                    entity["source_slug"] == source_slug
                    and entity["entity_type"] == entity_type
                    and entity["source_entity_id"] == source_entity_id
                ):
                    if url is not None:
                        entity["url"] = url
                    entity["last_seen_at"] = now
                    return dict(entity)

            entity = {
                "id": str(uuid4()),
                "source_slug": source_slug,
                "entity_type": entity_type,
                "source_entity_id": source_entity_id,
                "url": url,
                "last_seen_at": now,
            }
            self.ingestion_entities[entity["id"]] = entity
            return dict(entity)

    async def get_ingestion_entity(self, entity_id: str) -> dict[str, Any] | None:
        entity = self.ingestion_entities.get(entity_id)
        return dict(entity) if entity is not None else None

    async def get_canonical_mapping(self, entity_id: str) -> dict[str, Any] | None:
        mapping = self.canonical_mappings.get(entity_id)
        if mapping is None:
            return None
        return self._with_entity_type(mapping)

    async def list_canonical_mappings(self) -> list[dict[str, Any]]:
        return [self._with_entity_type(mapping) for mapping in self.canonical_mappings.values()]

    async def upsert_canonical_mapping(
        self,
        *,
        entity_id: str,
        canonical_type: str,
        canonical_id: str,
        match_method: str,
        confidence: int,
        notes: dict[str, Any] | None,
        now: datetime,
    ) -> dict[str, Any]:
        if entity_id not in self.ingestion_entities:
            raise RepositoryNotFoundError("ingestion entity not found")
        mapping = {
            "entity_id": entity_id,
            "canonical_type": canonical_type,
            "canonical_id": canonical_id,
            "match_method": match_method,
            "confidence": confidence,
            "notes": copy.deepcopy(notes) if notes is not None else {},
            "updated_at": now,
        }
        self.canonical_mappings[entity_id] = mapping
        return self._with_entity_type(mapping)

    async def delete_canonical_mapping(self, entity_id: str) -> dict[str, Any] | None:
        mapping = self.canonical_mappings.pop(entity_id, None)
        if mapping is None:
            return None
        return self._with_entity_type(mapping)

    async def canonical_record_exists(self, canonical_type: str, canonical_id: str) -> bool:
        tables = {"product": self.products, "plant": self.plants, "offer": self.offers}
        table = tables.get(canonical_type)
        return table is not None and canonical_id in table

    async def insert_admin_action(
        self,
        *,
        actor_user_id: str,
        action: str,
        target_type: str,
        target_id: str,
        meta: dict[str, Any],
        now: datetime,
    ) -> dict[str, Any]:
        record = {
            "id": len(self.admin_actions) + 1,
            "actor_user_id": actor_user_id,
            "action": action,
            "target_type": target_type,
            "target_id": target_id,
            "meta": copy.deepcopy(meta),
            "created_at": now,
        }
        self.admin_actions.append(record)
        return dict(record)

    def _finish_running_job(self, job_id: str, *, now: datetime, status: str, **changes: Any) -> dict[str, Any]:
        with self._lock:
            job = self.jobs.get(job_id)
            if job is None:
                raise RepositoryNotFoundError("job not found")
            if job["status"] != "running":
                raise RepositoryConflictError("job is not running")
            job.update(changes)
            job["status"] = status
            job["locked_at"] = None
            job["locked_by"] = None
            job["updated_at"] = now
            return copy.deepcopy(job)

    def _with_entity_type(self, mapping: Mapping[str, Any]) -> dict[str, Any]:
        entity = self.ingestion_entities.get(mapping["entity_id"], {})
        return {**copy.deepcopy(dict(mapping)), "entity_type": entity.get("entity_type")}

    def _set_statuses(
        self,
        table: dict[str, dict[str, Any]],
        statuses: Mapping[str, str],
        *,
        now: datetime,
    ) -> int:
        changed = 0
        with self._lock:
            for record_id, status in statuses.items():
                record = table.get(record_id)
                if record is None or record["status"] == status:
                    continue
                record["status"] = status
                record["updated_at"] = now
                changed += 1
        return changed


def _pop_many(table: dict[str, dict[str, Any]], ids: set[str]) -> int:
    removed = 0
    for record_id in ids:
        if table.pop(record_id, None) is not None:
            removed += 1
    return removed


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)
