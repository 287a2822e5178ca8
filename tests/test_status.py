import pytest
from bson import ObjectId

import orders
from conftest import auth_header, line, order_body
from errors import ConflictError, ValidationError
from schemas import OrderUpdateRequest


@pytest.fixture
def placed(client, make_product):
    pid = make_product(stock=10)
    return client.post("/api/orders", json=order_body([line(pid, 2)], delivery_price=5)).json()


def put(client, admin, order_id, **body):
    return client.put(f"/api/orders/{order_id}", json=body, headers=auth_header(admin))


def test_full_lifecycle(client, admin, placed, notifier):
    notifier.sent.clear()

    processing = put(client, admin, placed["id"], order_status="processing")
    delivered = put(client, admin, placed["id"], order_status="delivered")

    assert processing.json()["order_status"] == "processing"
    assert processing.json()["delivered_at"] is None
    assert delivered.json()["order_status"] == "delivered"
    assert delivered.json()["delivered_at"] is not None
    assert notifier.kinds() == ["status", "status"]
    assert [s[2] for s in notifier.sent] == ["pending", "processing"]


def test_terminal_status_cannot_be_reopened(client, admin, placed):
    put(client, admin, placed["id"], order_status="cancelled")

    res = put(client, admin, placed["id"], order_status="processing")

    assert res.status_code == 422
    assert res.json()["errors"][0]["field"] == "order_status"


def test_pending_cannot_jump_to_delivered(client, admin, placed):
    res = put(client, admin, placed["id"], order_status="delivered")

    assert res.status_code == 422


def test_same_status_is_a_quiet_no_op(client, admin, placed, notifier):
    notifier.sent.clear()

    res = put(client, admin, placed["id"], order_status="pending")

    assert res.status_code == 200
    assert res.json()["order_status"] == "pending"
    assert notifier.sent == []


def test_unknown_status_is_rejected_by_schema(client, admin, placed):
    res = put(client, admin, placed["id"], order_status="shipped")

    assert res.status_code == 422


def test_payment_status_paid_stamps_paid_at(client, admin, placed, notifier):
    notifier.sent.clear()

    res = put(client, admin, placed["id"], payment_status="paid")

    assert res.json()["payment_info"]["status"] == "paid"
    assert res.json()["payment_info"]["paid_at"] is not None
    assert notifier.sent == []


def test_delivery_price_edit_recomputes_total(client, admin, placed):
    res = put(client, admin, placed["id"], delivery_price=0)

    order = res.json()
    assert order["delivery_price"] == 0
    assert order["total_price"] == order["items_price"] == 50
    assert order["total_profit"] == placed["total_profit"]


def test_update_requires_admin(client, make_user, placed):
    customer = make_user(email="buyer@mail.com")

    res = client.put(f"/api/orders/{placed['id']}", json={"order_status": "cancelled"}, headers=auth_header(customer))

    assert res.status_code == 403


def test_update_missing_order(client, admin):
    res = put(client, admin, str(ObjectId()), order_status="processing")

    assert res.status_code == 404


def test_stale_status_edit_is_refused(db, placed, monkeypatch):
    real_find_one = db["order"].find_one

    # Another admin cancels the order between our read and our write.
    def read_then_cancel(*args, **kwargs):
        doc = real_find_one(*args, **kwargs)
        db["order"].update_one({"_id": ObjectId(placed["id"])}, {"$set": {"order_status": "cancelled"}})
        return doc

    class Orders:
        def __getattr__(self, name):
            return read_then_cancel if name == "find_one" else getattr(db["order"], name)

    class Db:
        def __getitem__(self, name):
            return Orders() if name == "order" else db[name]

    with pytest.raises(ConflictError):
        orders.update_order(Db(), placed["id"], OrderUpdateRequest(order_status="processing"))
    assert db["order"].find_one({"_id": ObjectId(placed["id"])})["order_status"] == "cancelled"


def test_check_transition():
    orders.check_transition("pending", "processing")
    orders.check_transition("processing", "cancelled")
    with pytest.raises(ValidationError):
        orders.check_transition("delivered", "cancelled")


def test_admin_order_listing(client, admin, placed, make_product):
    pid = make_product(stock=3)
    second = client.post("/api/orders", json=order_body([line(pid)], delivery_price=2)).json()
    put(client, admin, second["id"], order_status="cancelled")

    everything = client.get("/api/orders", headers=auth_header(admin)).json()
    cancelled = client.get("/api/orders", params={"status": "cancelled"}, headers=auth_header(admin)).json()

    assert everything["total_orders"] == 2
    assert everything["total_amount"] == 55 + 27
    assert everything["total_delivery_revenue"] == 7
    assert [o["id"] for o in cancelled["orders"]] == [second["id"]]


def test_delete_order(client, admin, db, placed):
    res = client.delete(f"/api/orders/{placed['id']}", headers=auth_header(admin))

    assert res.status_code == 200
    assert db["order"].count_documents({}) == 0
    assert client.delete(f"/api/orders/{placed['id']}", headers=auth_header(admin)).status_code == 404


def test_repeated_paid_keeps_first_paid_at(client, admin, db, placed):
    first = put(client, admin, placed["id"], payment_status="paid").json()["payment_info"]["paid_at"]
    stamped = db["order"].find_one({"_id": ObjectId(placed["id"])})["payment_info"]["paid_at"]

    again = put(client, admin, placed["id"], payment_status="paid")

    assert again.json()["payment_info"]["paid_at"] == first
    assert db["order"].find_one({"_id": ObjectId(placed["id"])})["payment_info"]["paid_at"] == stamped
