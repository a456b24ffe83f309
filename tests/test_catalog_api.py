from __future__ import annotations

import asyncio
from datetime import datetime, timezone

from fastapi.testclient import TestClient

from catalog_sync.main import app
from catalog_sync.services.repository import get_repository
from catalog_sync.services.store import InMemoryRepository

NOW = datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)


def _repository_with_entity() -> tuple[InMemoryRepository, dict, dict]:
    repo = InMemoryRepository()
    product = repo.add_product("nano-tank", category_slug="tank", specs={"volume_l": 30})
    offer = repo.add_offer(product["id"], retailer_id="r1", url="https://shop.example.com/nano")
    entity = asyncio.run(
        repo.upsert_ingestion_entity(
            source_slug="feed",
            entity_type="offer",
            source_entity_id="sku-1",
            url="https://shop.example.com/nano",
            now=NOW,
        )
    )
    return repo, offer, entity


def test_mapping_endpoints_require_an_actor() -> None:
    repo, offer, entity = _repository_with_entity()
    app.dependency_overrides[get_repository] = lambda: repo
    try:
        client = TestClient(app)
        response = client.post(
            f"/mappings/{entity['id']}",
            json={"canonical_type": "offer", "canonical_id": offer["id"]},
        )
        assert response.status_code == 401
        assert client.delete(f"/mappings/{entity['id']}").status_code == 401
        assert repo.canonical_mappings == {}
    finally:
        app.dependency_overrides.clear()


def test_map_and_unmap_entity() -> None:
    repo, offer, entity = _repository_with_entity()
    app.dependency_overrides[get_repository] = lambda: repo
    headers = {"X-Actor-Id": "admin-1"}
    try:
        client = TestClient(app)

        mapped = client.post(
            f"/mappings/{entity['id']}",
            json={"canonical_type": "offer", "canonical_id": offer["id"], "reason": "same listing"},
            headers=headers,
        )
        assert mapped.status_code == 200
        body = mapped.json()
        assert body["mapping"]["match_method"] == "admin_manual"
        assert body["mapping"]["entity_type"] == "offer"
        assert body["previous_mapping"] is None
        assert body["admin_action"]["action"] == "ingestion.mapping.map"
        assert body["admin_action"]["actor_user_id"] == "admin-1"

        mismatched = client.post(
            f"/mappings/{entity['id']}",
            json={"canonical_type": "product", "canonical_id": offer["product_id"]},
            headers=headers,
        )
        assert mismatched.status_code == 422

        missing_entity = client.post(
            "/mappings/no-such-entity",
            json={"canonical_type": "offer", "canonical_id": offer["id"]},
            headers=headers,
        )
        assert missing_entity.status_code == 404

        unmapped = client.delete(f"/mappings/{entity['id']}", params={"reason": "wrong"}, headers=headers)
        assert unmapped.status_code == 200
        assert unmapped.json()["mapping"] is None
        assert unmapped.json()["previous_mapping"]["canonical_id"] == offer["id"]
        assert unmapped.json()["admin_action"]["meta"]["reason"] == "wrong"

        again = client.delete(f"/mappings/{entity['id']}", headers=headers)
        assert again.status_code == 404
    finally:
        app.dependency_overrides.clear()


def test_catalog_audit_endpoint() -> None:
    repo = InMemoryRepository()
    app.dependency_overrides[get_repository] = lambda: repo
    try:
        client = TestClient(app)

        quality = client.get("/catalog/audits/quality")
        assert quality.status_code == 200
        body = quality.json()
        assert body["name"] == "quality"
        assert body["has_violations"] is True
        assert "focus_category_missing" in {finding["code"] for finding in body["findings"]}

        provenance = client.get("/catalog/audits/provenance")
        assert provenance.status_code == 200
        assert provenance.json()["findings"] == []

        assert client.get("/catalog/audits/everything").status_code == 422
    finally:
        app.dependency_overrides.clear()


def test_activation_endpoint_supports_dry_run() -> None:
    repo = InMemoryRepository()
    product = repo.add_product("nano-tank", category_slug="tank", specs={"volume_l": 30})
    repo.add_offer(product["id"], retailer_id="r1", url="https://shop.example.com/nano", price_cents=100, in_stock=True)
    app.dependency_overrides[get_repository] = lambda: repo
    try:
        client = TestClient(app)

        dry = client.post("/catalog/activation", json={"dry_run": True})
        assert dry.status_code == 200
        assert dry.json()["dry_run"] is True
        assert dry.json()["products"]["activated"] == 1
        assert dry.json()["products"]["sample_activated_slugs"] == ["nano-tank"]
        assert repo.products[product["id"]]["status"] == "inactive"

        applied = client.post("/catalog/activation")
        assert applied.status_code == 200
        assert applied.json()["dry_run"] is False
        assert repo.products[product["id"]]["status"] == "active"
    finally:
        app.dependency_overrides.clear()


def test_legacy_prune_endpoint_defaults_to_dry_run() -> None:
    repo = InMemoryRepository()
    product = repo.add_product("old-tank", category_slug="tank")
    offer = repo.add_offer(product["id"], retailer_id="r1", url="https://shop.example.com/old")
    app.dependency_overrides[get_repository] = lambda: repo
    try:
        client = TestClient(app)

        planned = client.post("/catalog/legacy-prune")
        assert planned.status_code == 200
        assert planned.json()["dry_run"] is True
        assert planned.json()["plan"]["product_ids_to_delete"] == [product["id"]]
        assert planned.json()["plan"]["offer_ids_to_delete"] == [offer["id"]]
        assert planned.json()["deleted"] == {}
        assert product["id"] in repo.products

        applied = client.post("/catalog/legacy-prune", json={"dry_run": False, "offer_ids": [offer["id"]]})
        assert applied.status_code == 200
        assert applied.json()["deleted"]["offers"] == 1
        assert applied.json()["plan"]["refresh_offer_summary_product_ids"] == [product["id"]]
        assert applied.json()["refreshed_summaries"] == 1
        assert product["id"] in repo.products
        assert repo.offers == {}
    finally:
        app.dependency_overrides.clear()
