"""
test_main.py
============
API tests for the Discount Resolution service.

Covers:
- Price tiers, user categories and product prices
- CRUD operations for discount groups and discounts
- Tree assembly (nesting, tier filtering, cycle handling)
- Stateless evaluation and the stored price check
- Error cases: not found, invalid nesting, validation failures
"""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import models
import repository
from database import Base
from main import app, get_db

# ── Throwaway SQLite file for tests ──
TEST_DATABASE_URL = "sqlite:///./test_discounts.db"

test_engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

NOW = "2024-06-01T12:00:00Z"


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(autouse=True)
def setup_db():
    """Create fresh tables before each test and drop them after."""
    Base.metadata.create_all(bind=test_engine)
    app.dependency_overrides[get_db] = override_get_db
    yield
    Base.metadata.drop_all(bind=test_engine)
    app.dependency_overrides.clear()


client = TestClient(app)


# ══════════════════════════════════════════════
#  Helper functions
# ══════════════════════════════════════════════

def create_price_type(name="Retail", is_default=False):
    return client.post("/price-types", json={"name": name, "is_default": is_default})


def create_group(name="Sale", operator="and", priority=0, parent_group_id=None, **extra):
    payload = {"name": name, "operator": operator, "priority": priority, "parent_group_id": parent_group_id}
    payload.update(extra)
    return client.post("/discount-groups", json=payload)


def create_discount(group_id, name="Ten off", discount_type="fixed_amount", discount_value=10, **extra):
    payload = {
        "group_id": group_id,
        "name": name,
        "discount_type": discount_type,
        "discount_value": discount_value,
    }
    payload.update(extra)
    return client.post("/discounts", json=payload)


def setup_catalog():
    """Retail (default) and wholesale tiers, a wholesale category, and prices for product 1."""
    retail = create_price_type("Retail", is_default=True).json()
    wholesale = create_price_type("Wholesale").json()
    category = client.post("/user-categories", json={"name": "Dealers", "price_type_id": wholesale["id"]}).json()
    client.post("/product-prices", json={"product_id": 1, "price_type_id": retail["id"], "price": 500, "old_price": 600})
    client.post("/product-prices", json={"product_id": 1, "price_type_id": wholesale["id"], "price": 400})
    return retail, wholesale, category


# ══════════════════════════════════════════════
#  Prices
# ══════════════════════════════════════════════

class TestPrices:

    def test_only_one_default_price_type(self):
        create_price_type("Retail", is_default=True)
        create_price_type("Outlet", is_default=True)
        types = client.get("/price-types").json()
        assert [t["is_default"] for t in types] == [False, True]

    def test_user_category_unknown_price_type(self):
        resp = client.post("/user-categories", json={"name": "VIP", "price_type_id": 999})
        assert resp.status_code == 404

    def test_product_prices_listed(self):
        setup_catalog()
        resp = client.get("/products/1/prices")
        assert resp.status_code == 200
        assert sorted(p["price"] for p in resp.json()) == [400.0, 500.0]

    def test_price_must_be_positive(self):
        retail = create_price_type().json()
        resp = client.post("/product-prices", json={"product_id": 1, "price_type_id": retail["id"], "price": 0})
        assert resp.status_code == 422


# ══════════════════════════════════════════════
#  Discount group CRUD
# ══════════════════════════════════════════════

class TestDiscountGroupCRUD:

    def test_create_group(self):
        resp = create_group(operator="max")
        assert resp.status_code == 201
        body = resp.json()
        assert body["operator"] == "max"
        assert body["is_active"] is True
        assert body["parent_group_id"] is None

    def test_invalid_operator(self):
        assert create_group(operator="xor").status_code == 422

    def test_window_must_be_ordered(self):
        resp = create_group(starts_at="2024-02-01T00:00:00", ends_at="2024-01-01T00:00:00")
        assert resp.status_code == 422

    def test_aware_datetimes_stored_as_utc(self):
        body = create_group(starts_at="2024-01-01T02:00:00+02:00").json()
        assert body["starts_at"].startswith("2024-01-01T00:00:00")

    def test_unknown_parent(self):
        assert create_group(parent_group_id=999).status_code == 404

    def test_get_and_list(self):
        created = create_group().json()
        create_group(name="Other")
        assert client.get(f"/discount-groups/{created['id']}").json()["name"] == "Sale"
        assert len(client.get("/discount-groups").json()) == 2

    def test_get_not_found(self):
        assert client.get("/discount-groups/9999").status_code == 404

    def test_update_group(self):
        created = create_group().json()
        resp = client.put(f"/discount-groups/{created['id']}", json={"operator": "or", "is_active": False})
        assert resp.status_code == 200
        assert resp.json()["operator"] == "or"
        assert resp.json()["is_active"] is False

    def test_move_to_root_with_explicit_null(self):
        parent = create_group(name="Parent").json()
        child = create_group(name="Child", parent_group_id=parent["id"]).json()
        resp = client.put(f"/discount-groups/{child['id']}", json={"parent_group_id": None})
        assert resp.json()["parent_group_id"] is None

    def test_cannot_nest_inside_descendant(self):
        top = create_group(name="Top").json()
        middle = create_group(name="Middle", parent_group_id=top["id"]).json()
        bottom = create_group(name="Bottom", parent_group_id=middle["id"]).json()
        resp = client.put(f"/discount-groups/{top['id']}", json={"parent_group_id": bottom["id"]})
        assert resp.status_code == 400
        resp = client.put(f"/discount-groups/{top['id']}", json={"parent_group_id": top["id"]})
        assert resp.status_code == 400

    def test_clear_schedule_with_explicit_null(self):
        created = create_group(
            description="Winter", starts_at="2024-01-01T00:00:00", ends_at="2024-02-01T00:00:00"
        ).json()
        resp = client.put(f"/discount-groups/{created['id']}", json={
            "starts_at": None, "ends_at": None, "description": None,
        })
        assert resp.status_code == 200
        body = resp.json()
        assert body["starts_at"] is None
        assert body["ends_at"] is None
        assert body["description"] is None

    def test_omitted_schedule_is_kept(self):
        created = create_group(ends_at="2024-02-01T00:00:00").json()
        resp = client.put(f"/discount-groups/{created['id']}", json={"priority": 3})
        assert resp.json()["ends_at"].startswith("2024-02-01")

    def test_update_window_conflict(self):
        created = create_group(ends_at="2024-01-01T00:00:00").json()
        resp = client.put(f"/discount-groups/{created['id']}", json={"starts_at": "2024-06-01T00:00:00"})
        assert resp.status_code == 400

    def test_delete_group_removes_discounts(self):
        group = create_group().json()
        discount = create_discount(group["id"]).json()
        assert client.delete(f"/discount-groups/{group['id']}").status_code == 204
        assert client.get(f"/discounts/{discount['id']}").status_code == 404

    def test_delete_group_with_children(self):
        parent = create_group(name="Parent").json()
        create_group(name="Child", parent_group_id=parent["id"])
        assert client.delete(f"/discount-groups/{parent['id']}").status_code == 409


# ══════════════════════════════════════════════
#  Discount CRUD
# ══════════════════════════════════════════════

class TestDiscountCRUD:

    def test_create_with_targets_and_conditions(self):
        group = create_group().json()
        resp = create_discount(
            group["id"],
            discount_type="percent",
            discount_value=15,
            targets=[{"target_type": "product", "target_id": 1}, {"target_type": "all"}],
            conditions=[{"condition_type": "min_quantity", "operator": ">=", "value": 3}],
        )
        assert resp.status_code == 201
        body = resp.json()
        assert body["discount_type"] == "percent"
        assert len(body["targets"]) == 2
        assert body["conditions"][0]["value"] == 3

    def test_unknown_group(self):
        assert create_discount(999).status_code == 404

    def test_percent_over_100(self):
        group = create_group().json()
        assert create_discount(group["id"], discount_type="percent", discount_value=110).status_code == 422

    def test_negative_value(self):
        group = create_group().json()
        assert create_discount(group["id"], discount_value=-5).status_code == 422

    def test_target_without_id(self):
        group = create_group().json()
        resp = create_discount(group["id"], targets=[{"target_type": "section"}])
        assert resp.status_code == 422

    def test_category_ids_stored_as_integers(self):
        group = create_group().json()
        resp = create_discount(group["id"], conditions=[
            {"condition_type": "user_category", "operator": "in", "value": ["2", 3]},
        ])
        assert resp.status_code == 201
        assert resp.json()["conditions"][0]["value"] == [2, 3]

    def test_category_ids_must_be_numeric(self):
        group = create_group().json()
        resp = create_discount(group["id"], conditions=[
            {"condition_type": "user_category", "operator": "in", "value": ["vip"]},
        ])
        assert resp.status_code == 422

    def test_unknown_condition_type_rejected_by_api(self):
        group = create_group().json()
        resp = create_discount(group["id"], conditions=[{"condition_type": "birthday", "value": True}])
        assert resp.status_code == 422

    def test_list_by_group(self):
        first = create_group().json()
        second = create_group(name="Other").json()
        create_discount(first["id"])
        create_discount(second["id"])
        resp = client.get("/discounts", params={"group_id": first["id"]})
        assert len(resp.json()) == 1

    def test_update_replaces_conditions(self):
        group = create_group().json()
        created = create_discount(group["id"], conditions=[
            {"condition_type": "min_quantity", "value": 3},
            {"condition_type": "user_logged_in", "value": True},
        ]).json()
        resp = client.put(f"/discounts/{created['id']}", json={
            "discount_value": 25,
            "conditions": [{"condition_type": "min_order_amount", "value": 1000}],
        })
        assert resp.status_code == 200
        body = resp.json()
        assert body["discount_value"] == 25
        assert [c["condition_type"] for c in body["conditions"]] == ["min_order_amount"]

    def test_clear_discount_schedule_and_tier(self):
        retail = create_price_type().json()
        group = create_group().json()
        created = create_discount(
            group["id"], price_type_id=retail["id"], description="Old",
            starts_at="2024-01-01T00:00:00", ends_at="2024-02-01T00:00:00",
        ).json()
        resp = client.put(f"/discounts/{created['id']}", json={
            "starts_at": None, "ends_at": None, "description": None, "price_type_id": None,
        })
        assert resp.status_code == 200
        body = resp.json()
        assert body["starts_at"] is None
        assert body["ends_at"] is None
        assert body["description"] is None
        assert body["price_type_id"] is None

    def test_update_unknown_price_type(self):
        group = create_group().json()
        created = create_discount(group["id"]).json()
        resp = client.put(f"/discounts/{created['id']}", json={"price_type_id": 999})
        assert resp.status_code == 404
        assert client.get(f"/discounts/{created['id']}").json()["price_type_id"] is None

    def test_update_percent_over_100(self):
        group = create_group().json()
        created = create_discount(group["id"], discount_type="percent", discount_value=50).json()
        resp = client.put(f"/discounts/{created['id']}", json={"discount_value": 150})
        assert resp.status_code == 400

    def test_delete_discount(self):
        group = create_group().json()
        created = create_discount(group["id"]).json()
        assert client.delete(f"/discounts/{created['id']}").status_code == 204
        assert client.delete(f"/discounts/{created['id']}").status_code == 404


# ══════════════════════════════════════════════
#  Tree assembly
# ══════════════════════════════════════════════

class TestDiscountTree:

    def test_children_nested_under_parent(self):
        parent = create_group(name="Parent", operator="max").json()
        child = create_group(name="Child", parent_group_id=parent["id"]).json()
        create_discount(child["id"], name="Nested")
        tree = client.get("/discount-groups/tree").json()
        assert len(tree) == 1
        assert tree[0]["operator"] == "max"
        assert tree[0]["children"][0]["discounts"][0]["name"] == "Nested"

    def test_tier_filter_keeps_untiered_discounts(self):
        retail = create_price_type("Retail").json()
        wholesale = create_price_type("Wholesale").json()
        group = create_group().json()
        create_discount(group["id"], name="Retail only", price_type_id=retail["id"])
        create_discount(group["id"], name="Wholesale only", price_type_id=wholesale["id"])
        create_discount(group["id"], name="Everyone")
        tree = client.get("/discount-groups/tree", params={"price_type_id": wholesale["id"]}).json()
        assert [d["name"] for d in tree[0]["discounts"]] == ["Wholesale only", "Everyone"]

    def test_cyclic_rows_are_dropped(self):
        db = TestingSessionLocal()
        try:
            first = models.DiscountGroup(name="A", operator="and")
            second = models.DiscountGroup(name="B", operator="and")
            root = models.DiscountGroup(name="Root", operator="and")
            db.add_all([first, second, root])
            db.flush()
            first.parent_group_id = second.id
            second.parent_group_id = first.id
            db.commit()
            forest = repository.load_discount_forest(db)
        finally:
            db.close()
        assert [g.name for g in forest] == ["Root"]

    def test_would_create_cycle(self):
        db = TestingSessionLocal()
        try:
            parent = models.DiscountGroup(name="Parent", operator="and")
            db.add(parent)
            db.flush()
            child = models.DiscountGroup(name="Child", operator="and", parent_group_id=parent.id)
            db.add(child)
            db.commit()
            assert repository.would_create_cycle(db, parent.id, child.id) is True
            assert repository.would_create_cycle(db, child.id, parent.id) is False
            assert repository.would_create_cycle(db, child.id, None) is False
        finally:
            db.close()


# ══════════════════════════════════════════════
#  Stateless evaluation
# ══════════════════════════════════════════════

class TestEvaluate:

    def test_evaluate_supplied_tree(self):
        resp = client.post("/evaluate", json={
            "base_price": 1000,
            "groups": [{
                "id": 1,
                "name": "Promo",
                "operator": "and",
                "discounts": [
                    {"id": 1, "name": "Ten percent", "discount_type": "percent", "discount_value": 10},
                    {"id": 2, "name": "Fixed 700", "discount_type": "fixed_price", "discount_value": 700},
                ],
            }],
            "context": {"product_id": 5, "now": NOW},
        })
        assert resp.status_code == 200
        body = resp.json()
        assert body["final_price"] == 700
        assert body["total_discount"] == 300
        assert [a["name"] for a in body["applied_discounts"]] == ["Fixed 700"]
        assert body["rejected_discounts"][0]["name"] == "Ten percent"

    def test_unknown_condition_type_is_a_rejection(self):
        resp = client.post("/evaluate", json={
            "base_price": 100,
            "groups": [{
                "id": 1,
                "name": "Promo",
                "discounts": [{
                    "id": 1,
                    "name": "Birthday",
                    "discount_type": "fixed_amount",
                    "discount_value": 10,
                    "conditions": [{"condition_type": "birthday", "operator": "=", "value": True}],
                }],
            }],
            "context": {"product_id": 5, "now": NOW},
        })
        assert resp.status_code == 200
        body = resp.json()
        assert body["final_price"] == 100
        assert "birthday" in body["rejected_discounts"][0]["reason"]

    def test_empty_forest(self):
        resp = client.post("/evaluate", json={"base_price": 42, "context": {"product_id": 5}})
        assert resp.json()["final_price"] == 42


# ══════════════════════════════════════════════
#  Stored price check
# ══════════════════════════════════════════════

class TestPriceCheck:

    def test_guest_gets_default_tier(self):
        setup_catalog()
        group = create_group().json()
        create_discount(group["id"], discount_value=50)
        resp = client.post("/price-check", json={"product_id": 1, "now": NOW})
        assert resp.status_code == 200
        body = resp.json()
        assert body["base_price"] == 500
        assert body["old_price"] == 600
        assert body["result"]["final_price"] == 450

    def test_category_tier_and_tier_discounts(self):
        retail, wholesale, category = setup_catalog()
        group = create_group(operator="or").json()
        create_discount(group["id"], name="Retail promo", discount_value=100, price_type_id=retail["id"])
        create_discount(group["id"], name="Dealer promo", discount_value=40, price_type_id=wholesale["id"])
        resp = client.post("/price-check", json={
            "product_id": 1,
            "user_category_id": category["id"],
            "is_logged_in": True,
            "now": NOW,
        })
        body = resp.json()
        assert body["price_type_id"] == wholesale["id"]
        assert body["base_price"] == 400
        assert [a["name"] for a in body["result"]["applied_discounts"]] == ["Dealer promo"]
        assert body["result"]["final_price"] == 360

    def test_conditions_use_request_context(self):
        setup_catalog()
        group = create_group().json()
        create_discount(group["id"], discount_value=100, conditions=[
            {"condition_type": "min_quantity", "operator": ">=", "value": 3},
        ])
        few = client.post("/price-check", json={"product_id": 1, "quantity": 1, "now": NOW}).json()
        many = client.post("/price-check", json={"product_id": 1, "quantity": 3, "now": NOW}).json()
        assert few["result"]["final_price"] == 500
        assert many["result"]["final_price"] == 400

    def test_no_price(self):
        setup_catalog()
        resp = client.post("/price-check", json={"product_id": 77})
        assert resp.status_code == 404

    def test_unknown_category(self):
        setup_catalog()
        resp = client.post("/price-check", json={"product_id": 1, "user_category_id": 999})
        assert resp.status_code == 404

    def test_invalid_quantity(self):
        assert client.post("/price-check", json={"product_id": 1, "quantity": 0}).status_code == 422


# ══════════════════════════════════════════════
#  Health
# ══════════════════════════════════════════════

def test_health_check():
    resp = client.get("/")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
