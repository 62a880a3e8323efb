"""
Order engine: placement rules, pricing, status machine, listings.
"""

import pytest

from orders import MAX_PAGE_SIZE, VALID_TRANSITIONS, can_transition, order_total, page_window


@pytest.fixture
def shop(client, admin, auth):
    """A public catalog with one 100.00 ring, plus a second catalog with a bracelet."""
    catalog = client.post("/api/catalogs", json={"name": "Bagues"}, headers=auth(admin)).json()
    other = client.post("/api/catalogs", json={"name": "Bracelets"}, headers=auth(admin)).json()
    ring = client.post(f"/api/catalogs/{catalog['id']}/products", json={
        "name": "Bague Solitaire", "serialNumber": "BG-100", "price": 100.0, "size": "52", "weight": 3.2,
    }, headers=auth(admin)).json()["products"][0]
    bracelet = client.post(f"/api/catalogs/{other['id']}/products", json={
        "name": "Bracelet Jonc", "serialNumber": "BR-200", "price": 45.5,
    }, headers=auth(admin)).json()["products"][0]
    return {"catalog": catalog, "other": other, "ring": ring, "bracelet": bracelet}


def place(client, headers, catalog_id, product_id, quantity=1, **extra):
    item = {"productId": product_id, "quantity": quantity}
    item.update(extra)
    return client.post("/api/orders", json={"catalogId": catalog_id, "items": [item]}, headers=headers)


def set_status(client, headers, order_id, status):
    return client.put(f"/api/orders/{order_id}/status", json={"status": status}, headers=headers)


# ============================================================================
# Pure helpers
# ============================================================================

class TestHelpers:

    def test_forward_transitions(self):
        assert can_transition("pending", "confirmed")
        assert can_transition("confirmed", "shipped")
        assert can_transition("shipped", "delivered")

    def test_no_skipping_or_going_back(self):
        assert not can_transition("pending", "shipped")
        assert not can_transition("delivered", "pending")
        assert not can_transition("shipped", "confirmed")

    def test_terminal_states(self):
        for status in ("delivered", "cancelled"):
            assert VALID_TRANSITIONS[status] == set()

    def test_order_total_rounds_to_cents(self):
        assert order_total([{"price": 19.99, "quantity": 3}, {"price": 0.1, "quantity": 2}]) == 60.17

    def test_page_window_clamps(self):
        assert page_window(0, 0) == (1, 20, 0)
        assert page_window(3, 500) == (3, MAX_PAGE_SIZE, 2 * MAX_PAGE_SIZE)


# ============================================================================
# Placement
# ============================================================================

class TestPlaceOrder:

    def test_total_comes_from_product_price(self, client, alice, auth, shop):
        response = place(client, auth(alice), shop["catalog"]["id"], shop["ring"]["id"], 3, price=1)
        assert response.status_code == 201
        order = response.json()
        assert order["totalAmount"] == 300.0
        assert order["status"] == "pending"
        assert order["userId"] == str(alice["_id"])
        assert order["catalog"] == {"id": shop["catalog"]["id"], "name": "Bagues"}
        assert order["user"]["email"] == "alice@bijoux.fr"

    def test_items_snapshot_product_details(self, client, alice, auth, shop):
        order = place(client, auth(alice), shop["catalog"]["id"], shop["ring"]["id"], 1, clasp="mousqueton").json()
        item = order["items"][0]
        assert item["name"] == "Bague Solitaire"
        assert item["size"] == "52"
        assert item["clasp"] == "mousqueton"
        assert item["weight"] == 3.2

    def test_product_from_another_catalog(self, client, alice, auth, shop):
        response = place(client, auth(alice), shop["catalog"]["id"], shop["bracelet"]["id"])
        assert response.status_code == 400
        assert response.json()["message"] == "Product Bracelet Jonc is not in this catalog"

    def test_inactive_product_cannot_be_ordered(self, client, db, alice, auth, shop):
        db["product"].update_one({"serialNumber": "BG-100"}, {"$set": {"isActive": False}})
        response = place(client, auth(alice), shop["catalog"]["id"], shop["ring"]["id"])
        assert response.status_code == 404
        assert response.json()["message"] == f"Product {shop['ring']['id']} not found"
        assert db["order"].count_documents({}) == 0

    def test_admin_may_order_inactive_product(self, client, db, admin, auth, shop):
        db["product"].update_one({"serialNumber": "BG-100"}, {"$set": {"isActive": False}})
        response = place(client, auth(admin), shop["catalog"]["id"], shop["ring"]["id"])
        assert response.status_code == 201

    def test_later_price_change_keeps_order_snapshot(self, client, admin, alice, auth, shop):
        order = place(client, auth(alice), shop["catalog"]["id"], shop["ring"]["id"], 3).json()
        response = client.put(f"/api/products/{shop['ring']['id']}", json={"price": 999}, headers=auth(admin))
        assert response.json()["price"] == 999

        stored = client.get(f"/api/orders/{order['id']}", headers=auth(alice)).json()
        assert stored["items"][0]["price"] == 100.0
        assert stored["totalAmount"] == 300.0

    def test_inaccessible_catalog(self, client, admin, alice, auth):
        catalog = client.post("/api/catalogs", json={"name": "Privé", "isPublic": False}, headers=auth(admin)).json()
        product = client.post(f"/api/catalogs/{catalog['id']}/products",
                              json={"name": "Secret", "serialNumber": "S-1"}, headers=auth(admin)).json()["products"][0]
        response = place(client, auth(alice), catalog["id"], product["id"])
        assert response.status_code == 403
        assert response.json()["message"] == "Access denied to catalog"

    def test_items_required(self, client, alice, auth, shop):
        response = client.post("/api/orders", json={"catalogId": shop["catalog"]["id"], "items": []},
                               headers=auth(alice))
        assert response.status_code == 400
        assert response.json()["message"] == "Order items are required"

    def test_quantity_must_be_positive(self, client, alice, auth, shop):
        response = place(client, auth(alice), shop["catalog"]["id"], shop["ring"]["id"], 0)
        assert response.status_code == 400
        assert response.json()["message"] == "Each item must have productId and quantity >= 1"

    def test_catalog_required(self, client, alice, auth, shop):
        response = client.post("/api/orders", json={"items": [{"productId": shop["ring"]["id"], "quantity": 1}]},
                               headers=auth(alice))
        assert response.status_code == 400
        assert response.json()["message"] == "Catalog ID is required"

    def test_admins_notified(self, client, db, admin, alice, auth, shop):
        order = place(client, auth(alice), shop["catalog"]["id"], shop["ring"]["id"], 2).json()
        notification = db["notification"].find_one({"user": str(admin["_id"]), "data.type": "order"})
        assert notification["title"] == "New order"
        assert notification["data"]["orderId"] == order["id"]


# ============================================================================
# Status machine
# ============================================================================

class TestStatus:

    @pytest.fixture
    def order(self, client, alice, auth, shop):
        return place(client, auth(alice), shop["catalog"]["id"], shop["ring"]["id"]).json()

    def test_full_lifecycle(self, client, admin, auth, order):
        for status in ("confirmed", "shipped", "delivered"):
            response = set_status(client, auth(admin), order["id"], status)
            assert response.status_code == 200
            assert response.json()["status"] == status

    def test_cannot_skip_confirmation(self, client, admin, auth, order):
        response = set_status(client, auth(admin), order["id"], "shipped")
        assert response.status_code == 400
        assert response.json()["message"] == "Cannot change order status from pending to shipped"

    def test_delivered_is_final(self, client, admin, auth, order):
        for status in ("confirmed", "shipped", "delivered"):
            set_status(client, auth(admin), order["id"], status)
        assert set_status(client, auth(admin), order["id"], "pending").status_code == 400

    def test_unknown_status(self, client, admin, auth, order):
        response = set_status(client, auth(admin), order["id"], "lost")
        assert response.status_code == 400
        assert response.json()["message"] == "Valid status is required"

    def test_only_admins_change_status(self, client, alice, auth, order):
        response = set_status(client, auth(alice), order["id"], "confirmed")
        assert response.status_code == 403

    def test_owner_notified_of_status_change(self, client, db, admin, alice, auth, order):
        set_status(client, auth(admin), order["id"], "confirmed")
        notification = db["notification"].find_one({"user": str(alice["_id"]), "data.type": "order"})
        assert notification["title"] == "Order updated"
        assert notification["data"]["status"] == "confirmed"


class TestCancel:

    @pytest.fixture
    def order(self, client, alice, auth, shop):
        return place(client, auth(alice), shop["catalog"]["id"], shop["ring"]["id"]).json()

    def test_owner_cancels(self, client, alice, auth, order):
        response = client.put(f"/api/orders/{order['id']}/cancel", headers=auth(alice))
        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"

        response = client.put(f"/api/orders/{order['id']}/cancel", headers=auth(alice))
        assert response.status_code == 400
        assert response.json()["message"] == "Order is already cancelled"

    def test_other_user_cannot_cancel(self, client, bob, auth, order):
        assert client.put(f"/api/orders/{order['id']}/cancel", headers=auth(bob)).status_code == 403

    def test_delivered_cannot_be_cancelled(self, client, admin, alice, auth, order):
        for status in ("confirmed", "shipped", "delivered"):
            set_status(client, auth(admin), order["id"], status)
        response = client.put(f"/api/orders/{order['id']}/cancel", headers=auth(alice))
        assert response.status_code == 400
        assert response.json()["message"] == "Delivered orders cannot be cancelled"


# ============================================================================
# Reads
# ============================================================================

class TestListing:

    def test_my_orders_and_privacy(self, client, alice, bob, auth, shop):
        order = place(client, auth(alice), shop["catalog"]["id"], shop["ring"]["id"]).json()
        place(client, auth(bob), shop["catalog"]["id"], shop["ring"]["id"])

        mine = client.get("/api/orders/my", headers=auth(alice)).json()
        assert [o["id"] for o in mine] == [order["id"]]
        assert client.get(f"/api/orders/{order['id']}", headers=auth(alice)).status_code == 200
        assert client.get(f"/api/orders/{order['id']}", headers=auth(bob)).status_code == 403

    def test_admin_pagination_and_filters(self, client, admin, alice, bob, auth, shop):
        for _ in range(2):
            place(client, auth(alice), shop["catalog"]["id"], shop["ring"]["id"])
        place(client, auth(bob), shop["catalog"]["id"], shop["ring"]["id"])

        body = client.get("/api/orders", params={"page": 1, "limit": 2}, headers=auth(admin)).json()
        assert len(body["orders"]) == 2
        assert body["pagination"] == {"page": 1, "limit": 2, "total": 3, "pages": 2}

        body = client.get("/api/orders", params={"userId": str(bob["_id"])}, headers=auth(admin)).json()
        assert body["pagination"]["total"] == 1
        assert body["orders"][0]["user"]["name"] == "Bob Durand"

    def test_admin_listing_requires_admin(self, client, alice, auth):
        assert client.get("/api/orders", headers=auth(alice)).status_code == 403

    def test_delete(self, client, db, admin, alice, auth, shop):
        order = place(client, auth(alice), shop["catalog"]["id"], shop["ring"]["id"]).json()
        assert client.delete(f"/api/orders/{order['id']}", headers=auth(alice)).status_code == 403
        assert client.delete(f"/api/orders/{order['id']}", headers=auth(admin)).status_code == 200
        assert db["order"].count_documents({}) == 0
