from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from datetime import datetime
from functools import lru_cache
from typing import TYPE_CHECKING, Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from catalog_sync.core.config import get_settings

if TYPE_CHECKING:
    from catalog_sync.services.store import InMemoryRepository


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


CANONICAL_TABLES = {"product": "products", "plant": "plants", "offer": "offers"}

_JOB_COLUMNS = (
    "id::text as id",
    "kind",
    "payload",
    "idempotency_key",
    "priority",
    "status",
    "run_after",
    "locked_at",
    "locked_by",
    "attempts",
    "max_attempts",
    "last_error",
    "result",
    "created_at",
    "updated_at",
)
_OFFER_COLUMNS = """
  id::text as id,
  product_id::text as product_id,
  retailer_id,
  url,
  price_cents,
  currency,
  in_stock,
  last_checked_at,
  created_at,
  updated_at
"""


def _job_columns(alias: str | None = None) -> str:
    if alias is None:
        return ",\n  ".join(_JOB_COLUMNS)
    return ",\n  ".join(f"{alias}.{column}" for column in _JOB_COLUMNS)


class PostgresRepository:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

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
        pool = await self._get_pool()

        # A concurrent completion can retire the conflicting row between the
        # insert and the lookup, so retry a few times before giving up.
        for _ in range(3):
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    insert into ingestion_jobs (
                      kind,
                      payload,
                      idempotency_key,
                      priority,
                      status,
                      run_after,
                      max_attempts,
                      created_at,
                      updated_at
                    )
                    values ($1, $2::jsonb, $3, $4, 'queued', $5, $6, $7, $7)
                    on conflict (idempotency_key)
                      where idempotency_key is not null and status in ('queued', 'running')
                      do nothing
                    returning
                      {_job_columns()}
                    """,
                    kind,
                    json.dumps(payload),
                    idempotency_key,
                    priority,
                    run_after,
                    max_attempts,
                    now,
                )
                if row is not None:
                    return self._job_row_to_dict(row), False

                existing = await conn.fetchrow(
                    f"""
                    select
                      {_job_columns()}
                    from ingestion_jobs
                    where idempotency_key = $1
                      and status in ('queued', 'running')
                    order by created_at asc
                    limit 1
                    """,
                    idempotency_key,
                )
                if existing is not None:
                    return self._job_row_to_dict(existing), True

        raise RepositoryConflictError("idempotency key is contended")

    async def claim_next_job(self, *, worker_id: str, now: datetime) -> dict[str, Any] | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    with next_job as (
                      select id
                      from ingestion_jobs
                      where status = 'queued'
                        and run_after <= $2
                      order by priority asc, run_after asc, created_at asc
                      limit 1
                      for update skip locked
                    )
                    update ingestion_jobs j
                    set
                      status = 'running',
                      locked_at = $2,
                      locked_by = $1,
                      attempts = j.attempts + 1,
                      updated_at = $2
                    from next_job
                    where j.id = next_job.id
                    returning
                      {_job_columns("j")}
                    """,
                    worker_id,
                    now,
                )
        if row is None:
            return None
        return self._job_row_to_dict(row)

    async def get_job(self, job_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                select
                  {_job_columns()}
                from ingestion_jobs
                where id = $1::uuid
                """,
                job_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        if row is None:
            raise RepositoryNotFoundError("job not found")
        return self._job_row_to_dict(row)

    async def mark_job_succeeded(self, job_id: str, *, result: dict[str, Any] | None, now: datetime) -> dict[str, Any]:
        return await self._finish_running_job(
            job_id,
            """
            status = 'succeeded',
            locked_at = null,
            locked_by = null,
            result = $2::jsonb,
            updated_at = $3
            """,
            json.dumps(result) if result is not None else None,
            now,
        )

    async def mark_job_failed(self, job_id: str, *, error: str, now: datetime) -> dict[str, Any]:
        return await self._finish_running_job(
            job_id,
            """
            status = 'failed',
            locked_at = null,
            locked_by = null,
            last_error = $2,
            updated_at = $3
            """,
            error,
            now,
        )

    async def mark_job_retry(
        self,
        job_id: str,
        *,
        error: str,
        run_after: datetime,
        now: datetime,
    ) -> dict[str, Any]:
        return await self._finish_running_job(
            job_id,
            """
            status = 'queued',
            locked_at = null,
            locked_by = null,
            last_error = $2,
            updated_at = $3,
            run_after = $4
            """,
            error,
            now,
            run_after,
        )

    async def list_jobs(self, *, statuses: Iterable[str], limit: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select
              {_job_columns()}
            from ingestion_jobs
            where status = any($1::text[])
            order by coalesce(locked_at, run_after) asc, created_at asc
            limit $2
            """,
            list(statuses),
            max(1, limit),
        )
        return [self._job_row_to_dict(row) for row in rows]

    async def requeue_jobs(
        self,
        job_ids: Iterable[str],
        *,
        from_status: str,
        now: datetime,
        reset_attempts: bool = False,
    ) -> list[str]:
        ids = list(job_ids)
        if not ids:
            return []
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            update ingestion_jobs
            set
              status = 'queued',
              run_after = $3,
              locked_at = null,
              locked_by = null,
              attempts = case when $4::boolean then 0 else attempts end,
              updated_at = $3
            where id = any($1::uuid[])
              and status = $2
            returning id::text as id
            """,
            ids,
            from_status,
            now,
            reset_attempts,
        )
        return [row["id"] for row in rows]

    async def find_job_by_idempotency_key(self, idempotency_key: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select
              {_job_columns()}
            from ingestion_jobs
            where idempotency_key = $1
            order by created_at desc
            limit 1
            """,
            idempotency_key,
        )
        return self._job_row_to_dict(row) if row is not None else None

    async def count_jobs_by_status(self) -> dict[str, int]:
        pool = await self._get_pool()
        rows = await pool.fetch("select status, count(*)::int as c from ingestion_jobs group by status")
        return {row["status"]: int(row["c"]) for row in rows}

    async def count_queue_health(
        self,
        *,
        now: datetime,
        stale_before: datetime,
        stuck_before: datetime,
    ) -> dict[str, int]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select
              count(*) filter (where status = 'queued' and run_after <= $1)::int as ready_now,
              count(*) filter (where status = 'queued' and run_after < $2)::int as stale_queued,
              count(*) filter (where status = 'running' and locked_at < $3)::int as stuck_running
            from ingestion_jobs
            where status in ('queued', 'running')
            """,
            now,
            stale_before,
            stuck_before,
        )
        return {
            "ready_now": int(row["ready_now"]),
            "stale_queued": int(row["stale_queued"]),
            "stuck_running": int(row["stuck_running"]),
        }

    async def list_categories(self) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch("select id::text as id, slug, name from categories order by slug asc")
        return [dict(row) for row in rows]

    async def list_products(self) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              id::text as id,
              slug,
              name,
              category_slug,
              status,
              specs,
              image_url,
              image_urls,
              description,
              updated_at
            from products
            order by slug asc
            """
        )
        return [self._product_row_to_dict(row) for row in rows]

    async def get_product(self, product_id: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                select
                  id::text as id,
                  slug,
                  name,
                  category_slug,
                  status,
                  specs,
                  image_url,
                  image_urls,
                  description,
                  updated_at
                from products
                where id = $1::uuid
                """,
                product_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return self._product_row_to_dict(row) if row is not None else None

    async def list_plants(self) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              id::text as id,
              slug,
              common_name,
              status,
              image_url,
              image_urls,
              sources,
              description,
              notes,
              updated_at
            from plants
            order by slug asc
            """
        )
        return [self._plant_row_to_dict(row) for row in rows]

    async def list_offers(
        self,
        *,
        product_id: str | None = None,
        retailer_id: str | None = None,
    ) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select
              {_OFFER_COLUMNS}
            from offers
            where ($1::uuid is null or product_id = $1::uuid)
              and ($2::text is null or retailer_id = $2::text)
            order by created_at asc
            """,
            product_id,
            retailer_id,
        )
        return [dict(row) for row in rows]

    async def get_offer(self, offer_id: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                select
                  {_OFFER_COLUMNS}
                from offers
                where id = $1::uuid
                """,
                offer_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return dict(row) if row is not None else None

    async def list_offers_for_refresh(self, *, checked_before: datetime, limit: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select
              {_OFFER_COLUMNS}
            from offers
            where coalesce(last_checked_at, updated_at) < $1
            order by coalesce(last_checked_at, updated_at) asc, created_at asc
            limit $2
            """,
            checked_before,
            max(1, limit),
        )
        return [dict(row) for row in rows]

    async def update_offer(self, offer_id: str, changes: Mapping[str, Any]) -> None:
        allowed = {"price_cents", "currency", "in_stock", "last_checked_at", "updated_at"}
        columns = [column for column in changes if column in allowed]
        if not columns:
            return
        assignments = ", ".join(f"{column} = ${index + 2}" for index, column in enumerate(columns))
        pool = await self._get_pool()
        await pool.execute(
            f"update offers set {assignments} where id = $1::uuid",
            offer_id,
            *[changes[column] for column in columns],
        )

    async def insert_price_history(
        self,
        *,
        offer_id: str,
        price_cents: int,
        in_stock: bool,
        recorded_at: datetime,
    ) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into price_history (offer_id, price_cents, in_stock, recorded_at)
            values ($1::uuid, $2, $3, $4)
            """,
            offer_id,
            price_cents,
            in_stock,
            recorded_at,
        )

    async def update_product_image(self, product_id: str, *, image_url: str, now: datetime) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update products
            set image_url = $2, updated_at = $3
            where id = $1::uuid
              and (image_url is null or btrim(image_url) = '')
            """,
            product_id,
            image_url,
            now,
        )

    async def set_product_statuses(self, statuses: Mapping[str, str], *, now: datetime) -> int:
        return await self._set_statuses("products", statuses, now=now)

    async def set_plant_statuses(self, statuses: Mapping[str, str], *, now: datetime) -> int:
        return await self._set_statuses("plants", statuses, now=now)

    async def get_offer_summary(self, product_id: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select
              product_id::text as product_id,
              min_price_cents,
              in_stock_count,
              checked_at,
              stale_flag,
              updated_at
            from offer_summaries
            where product_id = $1::uuid
            """,
            product_id,
        )
        return dict(row) if row is not None else None

    async def upsert_offer_summary(self, summary: Mapping[str, Any]) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into offer_summaries (
              product_id,
              min_price_cents,
              in_stock_count,
              checked_at,
              stale_flag,
              updated_at
            )
            values ($1::uuid, $2, $3, $4, $5, $6)
            on conflict (product_id) do update
            set
              min_price_cents = excluded.min_price_cents,
              in_stock_count = excluded.in_stock_count,
              checked_at = excluded.checked_at,
              stale_flag = excluded.stale_flag,
              updated_at = excluded.updated_at
            """,
            summary["product_id"],
            summary["min_price_cents"],
            summary["in_stock_count"],
            summary["checked_at"],
            summary["stale_flag"],
            summary["updated_at"],
        )

    async def delete_catalog_rows(
        self,
        *,
        product_ids: list[str],
        plant_ids: list[str],
        offer_ids: list[str],
    ) -> dict[str, int]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("delete from price_history where offer_id = any($1::uuid[])", offer_ids)
                mappings = await conn.fetch(
                    """
                    delete from canonical_entity_mappings
                    where (canonical_type = 'offer' and canonical_id = any($1::uuid[]))
                       or (canonical_type = 'product' and canonical_id = any($2::uuid[]))
                       or (canonical_type = 'plant' and canonical_id = any($3::uuid[]))
                    returning entity_id
                    """,
                    offer_ids,
                    product_ids,
                    plant_ids,
                )
                offers = await conn.fetch(
                    "delete from offers where id = any($1::uuid[]) returning id",
                    offer_ids,
                )
                await conn.execute("delete from offer_summaries where product_id = any($1::uuid[])", product_ids)
                products = await conn.fetch(
                    "delete from products where id = any($1::uuid[]) returning id",
                    product_ids,
                )
                plants = await conn.fetch(
                    "delete from plants where id = any($1::uuid[]) returning id",
                    plant_ids,
                )
        return {
            "mappings": len(mappings),
            "offers": len(offers),
            "products": len(products),
            "plants": len(plants),
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
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            insert into ingestion_entities (source_slug, entity_type, source_entity_id, url, last_seen_at, created_at)
            values ($1, $2, $3, $4, $5, $5)
            on conflict (source_slug, entity_type, source_entity_id) do update
            set url = coalesce(excluded.url, ingestion_entities.url), last_seen_at = excluded.last_seen_at
            returning
              id::text as id,
              source_slug,
              entity_type,
              source_entity_id,
              url,
              last_seen_at
            """,
            source_slug,
            entity_type,
            source_entity_id,
            url,
            now,
        )
        return dict(row)

    async def get_ingestion_entity(self, entity_id: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                select
                  id::text as id,
                  source_slug,
                  entity_type,
                  source_entity_id,
                  url,
                  last_seen_at
                from ingestion_entities
                where id = $1::uuid
                """,
                entity_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return dict(row) if row is not None else None

    async def get_canonical_mapping(self, entity_id: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                select
                  m.entity_id::text as entity_id,
                  e.entity_type,
                  m.canonical_type,
                  m.canonical_id::text as canonical_id,
                  m.match_method,
                  m.confidence,
                  m.notes,
                  m.updated_at
                from canonical_entity_mappings m
                join ingestion_entities e on e.id = m.entity_id
                where m.entity_id = $1::uuid
                """,
                entity_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return self._mapping_row_to_dict(row) if row is not None else None

    async def list_canonical_mappings(self) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              m.entity_id::text as entity_id,
              e.entity_type,
              m.canonical_type,
              m.canonical_id::text as canonical_id,
              m.match_method,
              m.confidence,
              m.notes,
              m.updated_at
            from canonical_entity_mappings m
            join ingestion_entities e on e.id = m.entity_id
            """
        )
        return [self._mapping_row_to_dict(row) for row in rows]

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
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into canonical_entity_mappings (
              entity_id,
              canonical_type,
              canonical_id,
              match_method,
              confidence,
              notes,
              updated_at
            )
            values ($1::uuid, $2, $3::uuid, $4, $5, $6::jsonb, $7)
            on conflict (entity_id) do update
            set
              canonical_type = excluded.canonical_type,
              canonical_id = excluded.canonical_id,
              match_method = excluded.match_method,
              confidence = excluded.confidence,
              notes = excluded.notes,
              updated_at = excluded.updated_at
            """,
            entity_id,
            canonical_type,
            canonical_id,
            match_method,
            confidence,
            json.dumps(notes) if notes is not None else None,
            now,
        )
        mapping = await self.get_canonical_mapping(entity_id)
        if mapping is None:
            raise RepositoryNotFoundError("mapping not found")
        return mapping

    async def delete_canonical_mapping(self, entity_id: str) -> dict[str, Any] | None:
        previous = await self.get_canonical_mapping(entity_id)
        if previous is None:
            return None
        pool = await self._get_pool()
        await pool.execute("delete from canonical_entity_mappings where entity_id = $1::uuid", entity_id)
        return previous

    async def canonical_record_exists(self, canonical_type: str, canonical_id: str) -> bool:
        table = CANONICAL_TABLES.get(canonical_type)
        if table is None:
            return False
        pool = await self._get_pool()
        try:
            exists = await pool.fetchval(f"select 1 from {table} where id = $1::uuid", canonical_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return False
        return bool(exists)

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
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            insert into admin_actions (actor_user_id, action, target_type, target_id, meta, created_at)
            values ($1, $2, $3, $4, $5::jsonb, $6)
            returning id, actor_user_id, action, target_type, target_id, meta, created_at
            """,
            actor_user_id,
            action,
            target_type,
            target_id,
            json.dumps(meta),
            now,
        )
        record = dict(row)
        record["meta"] = self._coerce_json_dict(record.get("meta"))
        return record

    async def _finish_running_job(self, job_id: str, assignments: str, *args: Any) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    update ingestion_jobs
                    set
                      {assignments}
                    where id = $1::uuid and status = 'running'
                    returning
                      {_job_columns()}
                    """,
                    job_id,
                    *args,
                )
                if row is None:
                    exists = await conn.fetchval("select 1 from ingestion_jobs where id = $1::uuid", job_id)
                    if not exists:
                        raise RepositoryNotFoundError("job not found")
                    raise RepositoryConflictError("job is not running")
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        return self._job_row_to_dict(row)

    async def _set_statuses(self, table: str, statuses: Mapping[str, str], *, now: datetime) -> int:
        if not statuses:
            return 0
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            update {table} t
            set status = s.status, updated_at = $3
            from unnest($1::uuid[], $2::text[]) as s(id, status)
            where t.id = s.id and t.status <> s.status
            returning t.id
            """,
            list(statuses.keys()),
            list(statuses.values()),
            now,
        )
        return len(rows)

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("CS_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @classmethod
    def _job_row_to_dict(cls, row: asyncpg.Record) -> dict[str, Any]:
        job = dict(row)
        job["payload"] = cls._coerce_json_dict(job.get("payload"))
        result = job.get("result")
        job["result"] = cls._coerce_json_dict(result) if result is not None else None
        return job

    @classmethod
    def _product_row_to_dict(cls, row: asyncpg.Record) -> dict[str, Any]:
        product = dict(row)
        product["specs"] = cls._coerce_json_dict(product.get("specs"))
        product["image_urls"] = cls._coerce_json_list(product.get("image_urls"))
        return product

    @classmethod
    def _plant_row_to_dict(cls, row: asyncpg.Record) -> dict[str, Any]:
        plant = dict(row)
        plant["image_urls"] = cls._coerce_json_list(plant.get("image_urls"))
        plant["sources"] = cls._coerce_json_list(plant.get("sources"))
        return plant

    @classmethod
    def _mapping_row_to_dict(cls, row: asyncpg.Record) -> dict[str, Any]:
        mapping = dict(row)
        mapping["notes"] = cls._coerce_json_dict(mapping.get("notes"))
        return mapping

    @staticmethod
    def _coerce_json_list(value: Any) -> list[Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return []
        if isinstance(value, list):
            return value
        return []

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}


@lru_cache
def get_repository() -> PostgresRepository | InMemoryRepository:
    settings = get_settings()
    if settings.storage_backend == "memory":
        from catalog_sync.services.store import InMemoryRepository

        return InMemoryRepository()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
