import asyncio
from datetime import datetime, timezone

from catalog_sync.services.legacy_prune import (
    LegacyPruneTargets,
    build_legacy_catalog_prune_plan,
    detect_legacy_catalog_prune_targets,
    prune_legacy_catalog_rows,
)
from catalog_sync.services.store import InMemoryRepository

NOW = datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)

OFFER_ROWS = [
    {"id": "offer-direct", "product_id": "product-keep"},
    {"id": "offer-linked", "product_id": "product-legacy"},
    {"id": "offer-untouched", "product_id": "product-keep"},
]


def test_prune_plan_cascades_offers_and_refreshes_surviving_products() -> None:
    plan = build_legacy_catalog_prune_plan(
        targets=LegacyPruneTargets(product_ids=["product-legacy"], offer_ids=["offer-direct"]),
        offer_rows=OFFER_ROWS,
    )

    assert plan.product_ids_to_delete == ["product-legacy"]
    assert plan.offer_ids_to_delete == ["offer-direct", "offer-linked"]
    assert plan.refresh_offer_summary_product_ids == ["product-keep"]
    assert not plan.is_empty


def test_prune_plan_skips_summary_refresh_for_deleted_products() -> None:
    plan = build_legacy_catalog_prune_plan(
        targets=LegacyPruneTargets(product_ids=["product-legacy", "product-keep"], offer_ids=["offer-direct"]),
        offer_rows=OFFER_ROWS,
    )

    assert plan.product_ids_to_delete == ["product-keep", "product-legacy"]
    assert plan.offer_ids_to_delete == ["offer-direct", "offer-linked", "offer-untouched"]
    assert plan.refresh_offer_summary_product_ids == []


def test_prune_plan_dedupes_and_drops_blank_ids() -> None:
    plan = build_legacy_catalog_prune_plan(
        targets=LegacyPruneTargets(plant_ids=["plant-b", "plant-a", "plant-b", ""], offer_ids=[]),
        offer_rows=[],
    )
    assert plan.plant_ids_to_delete == ["plant-a", "plant-b"]
    assert plan.offer_ids_to_delete == []

    empty = build_legacy_catalog_prune_plan(targets=LegacyPruneTargets(), offer_rows=OFFER_ROWS)
    assert empty.is_empty


def _seed_repository() -> tuple[InMemoryRepository, dict[str, dict]]:
    repo = InMemoryRepository()
    backed = repo.add_product("nano-tank", category_slug="tank")
    legacy = repo.add_product("old-tank", category_slug="tank")
    backed_offer = repo.add_offer(backed["id"], retailer_id="r1", url="https://shop.example.com/nano", price_cents=100)
    stray_offer = repo.add_offer(backed["id"], retailer_id="r2", url="https://other.example.com/nano", price_cents=90)
    legacy_offer = repo.add_offer(legacy["id"], retailer_id="r1", url="https://shop.example.com/old")
    plant = repo.add_plant("anubias")

    async def map_rows() -> None:
        for entity_type, row in (("product", backed), ("offer", backed_offer)):
            entity = await repo.upsert_ingestion_entity(
                source_slug="seed",
                entity_type=entity_type,
                source_entity_id=row["id"],
                url=None,
                now=NOW,
            )
            await repo.upsert_canonical_mapping(
                entity_id=entity["id"],
                canonical_type=entity_type,
                canonical_id=row["id"],
                match_method="identifier_exact",
                confidence=100,
                notes=None,
                now=NOW,
            )

    asyncio.run(map_rows())
    return repo, {
        "backed": backed,
        "legacy": legacy,
        "backed_offer": backed_offer,
        "stray_offer": stray_offer,
        "legacy_offer": legacy_offer,
        "plant": plant,
    }


def test_detect_targets_finds_rows_without_provenance() -> None:
    repo, rows = _seed_repository()

    targets = asyncio.run(detect_legacy_catalog_prune_targets(repo))

    assert targets.product_ids == [rows["legacy"]["id"]]
    assert targets.plant_ids == [rows["plant"]["id"]]
    assert sorted(targets.offer_ids) == sorted([rows["stray_offer"]["id"], rows["legacy_offer"]["id"]])


def test_prune_dry_run_leaves_rows_in_place() -> None:
    repo, _ = _seed_repository()

    result = asyncio.run(prune_legacy_catalog_rows(repo, now=NOW))

    assert result.dry_run is True
    assert result.deleted == {}
    assert len(repo.products) == 2
    assert len(repo.offers) == 3


def test_prune_apply_deletes_rows_and_refreshes_summaries() -> None:
    repo, rows = _seed_repository()
    repo.price_history.append(
        {"offer_id": rows["stray_offer"]["id"], "price_cents": 90, "in_stock": True, "recorded_at": NOW}
    )

    result = asyncio.run(prune_legacy_catalog_rows(repo, dry_run=False, now=NOW))

    assert result.deleted == {"mappings": 0, "offers": 2, "products": 1, "plants": 1}
    assert set(repo.products) == {rows["backed"]["id"]}
    assert set(repo.offers) == {rows["backed_offer"]["id"]}
    assert repo.plants == {}
    assert repo.price_history == []
    assert result.refreshed_summaries == 1
    assert rows["backed"]["id"] in repo.offer_summaries
