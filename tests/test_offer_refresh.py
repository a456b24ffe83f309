import asyncio
from datetime import datetime, timedelta, timezone

from catalog_sync.schemas.jobs import OfferObservation
from catalog_sync.services.offer_refresh import (
    apply_offer_observations,
    resolve_refresh_window_hours,
    select_refresh_targets,
)
from catalog_sync.services.store import InMemoryRepository

NOW = datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)


def test_resolve_refresh_window_hours() -> None:
    assert resolve_refresh_window_hours({"older_than_hours": 6, "older_than_days": 3}) == 6
    assert resolve_refresh_window_hours({"older_than_hours": None, "older_than_days": 2}) == 48
    assert resolve_refresh_window_hours({}) == 20
    assert resolve_refresh_window_hours({}, default=12) == 12
    assert resolve_refresh_window_hours({"older_than_hours": 0}) == 0


def test_select_refresh_targets_for_bulk_and_single_jobs() -> None:
    repo = InMemoryRepository()
    product = repo.add_product("nano-tank", category_slug="tank")
    stale = repo.add_offer(
        product["id"], retailer_id="r1", url="https://a.example.com/nano", last_checked_at=NOW - timedelta(hours=30)
    )
    repo.add_offer(
        product["id"], retailer_id="r2", url="https://b.example.com/nano", last_checked_at=NOW - timedelta(hours=2)
    )
    never = repo.add_offer(
        product["id"], retailer_id="r3", url="https://c.example.com/nano", updated_at=NOW - timedelta(hours=48)
    )

    async def run():
        bulk = await select_refresh_targets(
            repo, {"kind": "offers.head_refresh.bulk", "payload": {"older_than_hours": 20, "limit": 30}}, now=NOW
        )
        limited = await select_refresh_targets(
            repo, {"kind": "offers.detail_refresh.bulk", "payload": {"older_than_days": 1, "limit": 1}}, now=NOW
        )
        single = await select_refresh_targets(
            repo, {"kind": "offers.head_refresh.one", "payload": {"offer_id": stale["id"]}}, now=NOW
        )
        missing = await select_refresh_targets(
            repo, {"kind": "offers.detail_refresh.one", "payload": {"offer_id": "gone"}}, now=NOW
        )
        return bulk, limited, single, missing

    bulk, limited, single, missing = asyncio.run(run())
    assert [target["offer_id"] for target in bulk] == [never["id"], stale["id"]]
    assert [target["offer_id"] for target in limited] == [never["id"]]
    assert single == [
        {
            "offer_id": stale["id"],
            "url": "https://a.example.com/nano",
            "product_id": product["id"],
            "retailer_id": "r1",
            "currency": "USD",
        }
    ]
    assert missing == []


def _seed() -> tuple[InMemoryRepository, dict[str, dict]]:
    repo = InMemoryRepository()
    tank = repo.add_product("nano-tank", category_slug="tank", specs={"volume_l": 30})
    light = repo.add_product("clip-light", category_slug="light", status="active", specs={"watts": 10})
    changed = repo.add_offer(
        tank["id"],
        retailer_id="r1",
        url="https://shop.example.com/nano",
        price_cents=4999,
        in_stock=False,
        last_checked_at=NOW - timedelta(days=3),
    )
    errored = repo.add_offer(
        tank["id"],
        retailer_id="r2",
        url="https://other.example.com/nano",
        price_cents=5200,
        in_stock=True,
        last_checked_at=NOW - timedelta(days=3),
    )
    ambiguous = repo.add_offer(
        light["id"],
        retailer_id="r1",
        url="https://shop.example.com/clip",
        price_cents=2500,
        in_stock=True,
        last_checked_at=NOW - timedelta(days=3),
    )
    return repo, {"tank": tank, "light": light, "changed": changed, "errored": errored, "ambiguous": ambiguous}


def test_apply_offer_observations_updates_offers_summaries_and_status() -> None:
    repo, rows = _seed()
    observations = [
        OfferObservation(
            offer_id=rows["changed"]["id"],
            checked_url="https://Shop.Example.com//nano/#specs",
            status_code=200,
            in_stock=True,
            price_cents=3999,
            image_url="https://cdn.example.com/nano.jpg",
        ),
        OfferObservation(offer_id=rows["errored"]["id"], error="ReadTimeout"),
        OfferObservation(offer_id=rows["ambiguous"]["id"], status_code=503),
        OfferObservation(offer_id="missing-offer", status_code=200),
    ]

    result = asyncio.run(apply_offer_observations(repo, observations, source_slug="offers-detail", now=NOW))

    assert (result.scanned, result.updated, result.unchanged, result.missing, result.errors) == (4, 1, 1, 1, 1)
    assert result.summaries_refreshed == 2

    changed = repo.offers[rows["changed"]["id"]]
    assert changed["price_cents"] == 3999
    assert changed["in_stock"] is True
    assert changed["last_checked_at"] == NOW
    assert repo.price_history == [
        {"offer_id": changed["id"], "price_cents": 3999, "in_stock": True, "recorded_at": NOW}
    ]

    errored = repo.offers[rows["errored"]["id"]]
    assert errored["last_checked_at"] == NOW - timedelta(days=3)

    ambiguous = repo.offers[rows["ambiguous"]["id"]]
    assert ambiguous["in_stock"] is True
    assert ambiguous["last_checked_at"] == NOW

    tank = repo.products[rows["tank"]["id"]]
    assert tank["image_url"] == "https://cdn.example.com/nano.jpg"
    assert tank["status"] == "active"

    summary = repo.offer_summaries[rows["tank"]["id"]]
    assert summary["min_price_cents"] == 3999
    assert summary["in_stock_count"] == 2

    mappings = list(repo.canonical_mappings.values())
    assert len(mappings) == 2
    by_canonical = {mapping["canonical_id"]: mapping for mapping in mappings}
    assert by_canonical[changed["id"]]["match_method"] == "product_retailer_url_fingerprint"
    assert by_canonical[changed["id"]]["notes"]["source"] == "offers-detail"


def test_apply_offer_observations_keeps_placeholder_images_out() -> None:
    repo, rows = _seed()
    observation = OfferObservation(
        offer_id=rows["changed"]["id"],
        status_code=200,
        image_url="https://cdn.example.com/images/aquascape-hero-2400.jpg",
    )

    asyncio.run(apply_offer_observations(repo, [observation], source_slug="offers-head", now=NOW))

    assert repo.products[rows["tank"]["id"]]["image_url"] is None


def test_apply_offer_observations_never_overwrites_admin_mappings() -> None:
    repo, rows = _seed()
    offer_id = rows["changed"]["id"]

    async def run() -> dict:
        entity = await repo.upsert_ingestion_entity(
            source_slug="offers-head",
            entity_type="offer",
            source_entity_id=offer_id,
            url=None,
            now=NOW,
        )
        await repo.upsert_canonical_mapping(
            entity_id=entity["id"],
            canonical_type="offer",
            canonical_id=rows["errored"]["id"],
            match_method="admin_manual",
            confidence=100,
            notes={"source": "admin_manual"},
            now=NOW,
        )
        await apply_offer_observations(
            repo,
            [OfferObservation(offer_id=offer_id, status_code=404)],
            source_slug="offers-head",
            now=NOW + timedelta(hours=1),
        )
        return entity

    entity = asyncio.run(run())
    mapping = repo.canonical_mappings[entity["id"]]
    assert mapping["match_method"] == "admin_manual"
    assert mapping["canonical_id"] == rows["errored"]["id"]
    assert repo.ingestion_entities[entity["id"]]["url"] == "https://shop.example.com/nano"
    assert repo.offers[offer_id]["in_stock"] is False
