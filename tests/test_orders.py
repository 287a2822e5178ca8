import pytest
from bson import ObjectId
from fastapi import BackgroundTasks
from pymongo.errors import PyMongoError

import inventory
import notifications
import orders
from conftest import auth_header, line, order_body, shipping
from errors import ConflictError
from schemas import CartLine, OrderCreateRequest


def stock_of(db, product_id):
    return db["product"].find_one({"_id": ObjectId(product_id)})["stock"]


def test_order_totals_and_stock(client, db, make_product):
    a = make_product(name="A", price=25, cost_price=10, stock=5)
    b = make_product(name="B", price=15, cost_price=5, stock=3)

    res = client.post("/api/orders", json=order_body(
        [line(a, 2, 25), line(b, 1, 15)], delivery_price=3, items_price=65,
    ))

    assert res.status_code == 201
    order = res.json()
    assert order["items_price"] == 65
    assert order["delivery_price"] == 3
    assert order["total_price"] == 68
    assert order["total_cost"] == 25
    assert order["total_profit"] == 40
    assert order["order_status"] == "pending"
    assert order["total_profit"] == sum(i["profit"] for i in order["order_items"])
    revenue = sum(i["price"] * i["quantity"] for i in order["order_items"])
    assert order["total_cost"] + order["total_profit"] == pytest.approx(revenue)
    assert stock_of(db, a) == 3
    assert stock_of(db, b) == 2


def test_line_snapshot_uses_product_name_and_cost(client, make_product):
    pid = make_product(name="Linen Shirt", price=40, cost_price=None, stock=2, sizes=["M", "L"])

    res = client.post("/api/orders", json=order_body(
        [line(pid, 1, 40, name="whatever the cart said", selected_size="M")], delivery_price=0,
    ))

    item = res.json()["order_items"][0]
    assert item["name"] == "Linen Shirt"
    assert item["cost_price"] == 0
    assert item["profit"] == 40
    assert item["selected_size"] == "M"
    assert item["selected_color"] is None


def test_delivery_price_falls_back_to_default_only_when_omitted(client, db, make_product):
    db["settings"].insert_one({"_id": "global", "default_delivery_price": 4})
    pid = make_product(stock=10)

    omitted = client.post("/api/orders", json=order_body([line(pid)])).json()
    explicit_zero = client.post("/api/orders", json=order_body([line(pid)], delivery_price=0)).json()

    assert omitted["delivery_price"] == 4
    assert omitted["total_price"] == 29
    assert explicit_zero["delivery_price"] == 0
    assert explicit_zero["total_price"] == 25


def test_insufficient_stock_leaves_everything_untouched(client, db, make_product):
    pid = make_product(stock=2)

    res = client.post("/api/orders", json=order_body([line(pid, 3)]))

    assert res.status_code == 409
    assert "Insufficient stock" in res.json()["detail"]
    assert stock_of(db, pid) == 2
    assert db["order"].count_documents({}) == 0
    assert db["guest_user"].count_documents({}) == 0


def test_repeated_product_lines_are_checked_against_combined_quantity(client, db, make_product):
    pid = make_product(stock=3, sizes=["S", "M"])

    res = client.post("/api/orders", json=order_body([
        line(pid, 2, selected_size="S"),
        line(pid, 2, selected_size="M"),
    ]))

    assert res.status_code == 409
    assert stock_of(db, pid) == 3


def test_missing_variant_fails_whole_cart(client, db, make_product):
    plain = make_product(name="Socks", stock=5)
    sized = make_product(name="Jacket", stock=5, colors=["red", "blue"])

    res = client.post("/api/orders", json=order_body([line(plain, 1), line(sized, 1, selected_color="")]))

    assert res.status_code == 422
    assert res.json()["detail"] == "Color is required for product: Jacket"
    assert res.json()["errors"][0]["field"] == "selected_color"
    assert stock_of(db, plain) == 5
    assert db["order"].count_documents({}) == 0


def test_unknown_product(client, make_product):
    pid = make_product()

    missing = client.post("/api/orders", json=order_body([line(pid), line(str(ObjectId()))]))
    malformed = client.post("/api/orders", json=order_body([line("not-an-id")]))

    assert missing.status_code == 404
    assert malformed.status_code == 404


def test_cart_payload_is_validated_at_the_boundary(client, make_product):
    pid = make_product()

    unknown_field = client.post("/api/orders", json=order_body([{**line(pid), "discount": 5}]))
    zero_qty = client.post("/api/orders", json=order_body([line(pid, 0)]))
    empty = client.post("/api/orders", json=order_body([]))
    no_email = client.post("/api/orders", json={
        "order_items": [line(pid)],
        "shipping_info": {k: v for k, v in shipping().items() if k != "email"},
    })

    for res in (unknown_field, zero_qty, empty, no_email):
        assert res.status_code == 422
        assert res.json()["detail"] == "Validation failed"
    assert any(e["field"].endswith("quantity") for e in zero_qty.json()["errors"])


def test_items_price_must_match_lines(client, db, make_product):
    pid = make_product(stock=5)

    res = client.post("/api/orders", json=order_body([line(pid, 2, 25)], items_price=10))

    assert res.status_code == 422
    assert res.json()["errors"][0]["field"] == "items_price"
    assert stock_of(db, pid) == 5


def test_cost_price_change_does_not_rewrite_history(client, db, make_product, admin):
    pid = make_product(price=25, cost_price=10, stock=5)
    order = client.post("/api/orders", json=order_body([line(pid, 1)], delivery_price=0)).json()

    res = client.put(f"/api/profit/products/{pid}/cost", json={"cost_price": 20}, headers=auth_header(admin))
    assert res.status_code == 200

    stored = db["order"].find_one({"_id": ObjectId(order["id"])})
    assert stored["total_profit"] == 15
    assert stored["order_items"][0]["cost_price"] == 10


def test_last_unit_race_only_one_reservation_wins(db, make_product):
    pid = make_product(stock=1)
    cart = [CartLine(product_id=pid, quantity=1, price=25)]

    # Both checkouts pass validation before either reserves.
    first = inventory.validate_cart(db, cart)
    second = inventory.validate_cart(db, cart)

    inventory.reserve_stock(db, first)
    with pytest.raises(ConflictError):
        inventory.reserve_stock(db, second)
    assert stock_of(db, pid) == 0


def test_failed_reservation_returns_earlier_lines(db, make_product):
    a = make_product(name="A", stock=4)
    b = make_product(name="B", stock=1)
    validated = inventory.validate_cart(db, [
        CartLine(product_id=a, quantity=2, price=25),
        CartLine(product_id=b, quantity=1, price=25),
    ])
    db["product"].update_one({"_id": ObjectId(b)}, {"$set": {"stock": 0}})

    with pytest.raises(ConflictError):
        inventory.reserve_stock(db, validated)
    assert stock_of(db, a) == 4
    assert stock_of(db, b) == 0


def test_insert_failure_rolls_back_stock_and_guest(db, make_product, monkeypatch):
    pid = make_product(stock=3)
    payload = OrderCreateRequest(**order_body([line(pid, 2)], email="new@mail.com"))

    def broken_insert(*args, **kwargs):
        raise RuntimeError("write concern timeout")
    monkeypatch.setattr(orders, "create_document", broken_insert)

    with pytest.raises(RuntimeError):
        orders.create_order(db, payload)
    assert stock_of(db, pid) == 3
    assert db["guest_user"].find_one({"email": "new@mail.com"}) is None


def test_notifications_are_sent_after_checkout(client, make_product, admin, notifier):
    pid = make_product()

    res = client.post("/api/orders", json=order_body([line(pid)]))

    assert res.status_code == 201
    assert sorted(notifier.kinds()) == ["admin_alert", "confirmation"]
    alert = next(s for s in notifier.sent if s[0] == "admin_alert")
    assert alert[2] == ["admin@mail.com"]


def test_notification_failure_does_not_fail_the_order(client, db, make_product, notifier):
    notifier.fail = True
    pid = make_product(stock=2)

    res = client.post("/api/orders", json=order_body([line(pid)]))

    assert res.status_code == 201
    assert db["order"].count_documents({}) == 1
    assert stock_of(db, pid) == 1


def test_paid_at_checkout_is_stamped(client, make_product):
    pid = make_product()

    order = client.post("/api/orders", json=order_body(
        [line(pid)], payment_info={"method": "card", "status": "paid"},
    )).json()

    assert order["payment_info"]["method"] == "card"
    assert order["payment_info"]["paid_at"] is not None


def test_admin_recipients_are_resolved_before_queueing(db, admin, notifier):
    tasks = BackgroundTasks()

    notifications.order_created(tasks, notifier, db, {"id": "abc", "shipping_info": {"email": "buyer@mail.com"}})

    alert = tasks.tasks[1]
    assert alert.args[1] == notifier.send_admin_new_order_alert
    assert alert.args[-1] == ["admin@mail.com"]


def test_admin_lookup_failure_still_confirms_to_customer(db, notifier):
    class BrokenUsers:
        def find(self, *args, **kwargs):
            raise PyMongoError("users unavailable")

    class Db:
        def __getitem__(self, name):
            return BrokenUsers() if name == "user" else db[name]

    tasks = BackgroundTasks()

    notifications.order_created(tasks, notifier, Db(), {"id": "abc", "shipping_info": {"email": "buyer@mail.com"}})

    assert len(tasks.tasks) == 1
    assert tasks.tasks[0].args[1] == notifier.send_order_confirmation
