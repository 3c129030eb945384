import threading

import pytest
from bson import ObjectId

from conftest import ADDRESS, auth_header
from errors import ConflictError, InsufficientStockError, NotFoundError, ValidationError
from schemas import PlaceOrderRequest


def order_body(*lines, **extra):
    body = {
        "items": [{"variantId": str(v["_id"]), "quantity": q} for v, q in lines],
        "address": dict(ADDRESS),
        "paymentMethod": "COD",
    }
    body.update(extra)
    return body


def guest_request(*lines, **extra):
    body = order_body(*lines, guestEmail="guest@example.com")
    body.update(extra)
    return PlaceOrderRequest(**body)


def test_cod_order_then_insufficient_stock(client, database, make_variant, customer):
    variant = make_variant(stock=5, price=100)

    res = client.post(
        "/api/orders",
        json=order_body((variant, 2), shippingFee=10, tax=5),
        headers=auth_header(customer),
    )
    assert res.status_code == 201
    order = res.json()
    assert order["subtotal"] == 200
    assert order["total"] == 215
    assert order["status"] == "Created"
    assert order["payment_status"] == "Pending"
    assert order["payment_method"] == "COD"
    stored = database["variant"].find_one({"_id": variant["_id"]})
    assert stored["stock"] == 3
    assert stored["availability"] == "InStock"

    res = client.post("/api/orders", json=order_body((variant, 4)), headers=auth_header(customer))
    assert res.status_code == 400
    assert res.json()["error"] == "InsufficientStockError"
    assert database["variant"].find_one({"_id": variant["_id"]})["stock"] == 3
    assert database["order"].count_documents({}) == 1


def test_missing_postal_code_is_named(client, database, make_variant, customer):
    variant = make_variant(stock=5)
    body = order_body((variant, 1))
    del body["address"]["postalCode"]

    res = client.post("/api/orders", json=body, headers=auth_header(customer))

    assert res.status_code == 400
    assert "postalCode" in res.json()["detail"]
    assert res.json()["fields"] == ["postalCode"]
    assert database["variant"].find_one({"_id": variant["_id"]})["stock"] == 5
    assert database["order"].count_documents({}) == 0


def test_total_is_sum_of_parts(workflow, database, make_variant):
    shirt = make_variant(stock=4, price=349.5, size="S")
    other = make_variant(stock=9, price=120.25, size="L")

    order, payment = workflow.place_order(guest_request((shirt, 2), (other, 3), shippingFee=49, tax=18.9))

    assert order["subtotal"] == pytest.approx(1059.75)
    assert order["total"] == order["subtotal"] + order["shipping_fee"] + order["tax"]
    assert payment["amount"] == order["total"]
    assert payment["status"] == "Pending"
    assert payment["order_id"] == order["_id"]
    assert database["payment"].count_documents({"order_id": order["_id"]}) == 1


@pytest.mark.parametrize("mutate, field", [
    (lambda b: b.update(items=[]), "items"),
    (lambda b: b.update(paymentMethod="paypal"), "paymentMethod"),
    (lambda b: b.pop("address"), "address"),
    (lambda b: b["address"].update(city="  "), "city"),
])
def test_invalid_requests_are_rejected(client, database, make_variant, customer, mutate, field):
    variant = make_variant(stock=5)
    body = order_body((variant, 1))
    mutate(body)

    res = client.post("/api/orders", json=body, headers=auth_header(customer))

    assert res.status_code == 400
    assert field in res.json()["fields"]
    assert database["order"].count_documents({}) == 0


def test_duplicate_or_unknown_variants_are_invalid(workflow, database, make_variant):
    variant = make_variant(stock=5)
    ghost = {"_id": ObjectId()}

    with pytest.raises(ValidationError):
        workflow.place_order(guest_request((variant, 1), (variant, 1)))
    with pytest.raises(ValidationError):
        workflow.place_order(guest_request((variant, 1), (ghost, 1)))
    assert database["variant"].find_one({"_id": variant["_id"]})["stock"] == 5


def test_guest_checkout_requires_valid_email(client, make_variant):
    variant = make_variant(stock=5)

    res = client.post("/api/orders", json=order_body((variant, 1)))
    assert res.status_code == 400
    assert res.json()["fields"] == ["guestEmail"]

    res = client.post("/api/orders", json=order_body((variant, 1), guestEmail="not-an-email"))
    assert res.status_code == 400
    assert "guestEmail" in res.json()["fields"]

    res = client.post("/api/orders", json=order_body((variant, 1), guestEmail="Guest@Example.com"))
    assert res.status_code == 201
    assert res.json()["user_id"] is None
    assert res.json()["guest"]["name"] == ADDRESS["name"]


def test_order_clears_cart_but_keeps_document(client, database, product, make_variant, customer):
    variant = make_variant(stock=5)
    client.post(
        "/api/cart",
        json={"productId": str(product["_id"]), "variantId": str(variant["_id"]), "quantity": 2},
        headers=auth_header(customer),
    )

    res = client.post("/api/orders", json=order_body((variant, 2)), headers=auth_header(customer))

    assert res.status_code == 201
    cart = database["cart"].find_one({"user_id": customer["_id"]})
    assert cart is not None
    assert cart["items"] == []


def test_side_effects_follow_commit(client, database, make_variant, customer, sink, mailer):
    first = make_variant(stock=2, size="S")
    second = make_variant(stock=3, size="M")

    res = client.post("/api/orders", json=order_body((first, 2), (second, 1)), headers=auth_header(customer))

    assert res.status_code == 201
    order_id = ObjectId(res.json()["id"])
    assert [o["_id"] for o in sink.orders] == [order_id]
    assert {v["_id"]: v["stock"] for v in sink.stock} == {first["_id"]: 0, second["_id"]: 2}
    assert [v["availability"] for v in sink.stock if v["_id"] == first["_id"]] == ["OutOfStock"]
    assert mailer.sent == [order_id]


def test_gateway_order_skips_invoice(client, make_variant, customer, mailer):
    variant = make_variant(stock=2)

    res = client.post(
        "/api/orders", json=order_body((variant, 1), paymentMethod="razorpay"), headers=auth_header(customer)
    )

    assert res.status_code == 201
    assert res.json()["payment_method"] == "Razorpay"
    assert mailer.sent == []


def test_failing_notifications_do_not_fail_order(workflow, database, make_variant):
    def boom(*args):
        raise RuntimeError("socket down")

    workflow.notifier.publish_order_update = boom
    workflow.mailer.send_order_invoice = boom
    variant = make_variant(stock=2)

    order, _ = workflow.place_order(guest_request((variant, 1)))

    assert database["order"].find_one({"_id": order["_id"]}) is not None


def test_crash_before_payment_leaves_no_trace(workflow, database, make_variant, sink):
    first = make_variant(stock=3, size="S")
    second = make_variant(stock=3, size="M")

    def crash(order, session):
        raise RuntimeError("process died")

    workflow._insert_payment = crash

    with pytest.raises(RuntimeError):
        workflow.place_order(guest_request((first, 2), (second, 1)))

    assert database["variant"].find_one({"_id": first["_id"]})["stock"] == 3
    assert database["variant"].find_one({"_id": second["_id"]})["stock"] == 3
    assert database["order"].count_documents({}) == 0
    assert database["payment"].count_documents({}) == 0
    assert sink.orders == []


def test_cart_clear_failure_rolls_back_order(workflow, database, make_variant, customer):
    variant = make_variant(stock=3)
    database["cart"].insert_one({"user_id": customer["_id"], "items": [{"variant_id": variant["_id"]}]})

    def fail(user_id, session=None):
        raise RuntimeError("cart unavailable")

    workflow.carts.clear = fail

    with pytest.raises(RuntimeError):
        workflow.place_order(PlaceOrderRequest(**order_body((variant, 1))), customer)

    assert database["variant"].find_one({"_id": variant["_id"]})["stock"] == 3
    assert database["order"].count_documents({}) == 0
    assert database["payment"].count_documents({}) == 0
    assert len(database["cart"].find_one({"user_id": customer["_id"]})["items"]) == 1


def test_racing_checkouts_for_last_unit(workflow, database, make_variant):
    variant = make_variant(stock=1)
    # Both pass validation before either reserves.
    first = workflow.validate(guest_request((variant, 1)), None)
    second = workflow.validate(guest_request((variant, 1)), None)

    workflow._commit_with_compensation(first)
    with pytest.raises(InsufficientStockError):
        workflow._commit_with_compensation(second)

    stored = database["variant"].find_one({"_id": variant["_id"]})
    assert stored["stock"] == 0
    assert stored["availability"] == "OutOfStock"
    assert database["order"].count_documents({}) == 1


def test_second_order_for_last_unit_fails(client, database, make_variant):
    variant = make_variant(stock=1)
    body = order_body((variant, 1), guestEmail="guest@example.com")

    assert client.post("/api/orders", json=body).status_code == 201
    res = client.post("/api/orders", json=body)

    assert res.status_code == 400
    assert res.json()["error"] == "InsufficientStockError"
    assert database["variant"].find_one({"_id": variant["_id"]})["stock"] == 0


def test_partial_reservation_is_released(workflow, database, make_variant):
    plenty = make_variant(stock=5, size="S")
    scarce = make_variant(stock=1, size="M")
    plan = workflow.validate(guest_request((plenty, 2), (scarce, 1)), None)
    database["variant"].update_one({"_id": scarce["_id"]}, {"$set": {"stock": 0}})

    with pytest.raises(InsufficientStockError):
        workflow._commit_with_compensation(plan)

    assert database["variant"].find_one({"_id": plenty["_id"]})["stock"] == 5
    assert database["order"].count_documents({}) == 0


def test_vanished_variant_is_reported(workflow, database, make_variant):
    variant = make_variant(stock=2)
    plan = workflow.validate(guest_request((variant, 1)), None)
    database["variant"].delete_one({"_id": variant["_id"]})

    with pytest.raises(NotFoundError):
        workflow._commit_with_compensation(plan)
    assert database["order"].count_documents({}) == 0


def test_price_snapshot_survives_price_change(workflow, database, make_variant):
    variant = make_variant(stock=5, price=100)
    order, _ = workflow.place_order(guest_request((variant, 1)))

    database["variant"].update_one({"_id": variant["_id"]}, {"$set": {"price": 999}})

    stored = database["order"].find_one({"_id": order["_id"]})
    assert stored["items"][0]["price_snapshot"] == 100
    assert stored["total"] == 100


def test_guest_order_tracking(client, make_variant):
    variant = make_variant(stock=5)
    res = client.post("/api/orders", json=order_body((variant, 1), guestEmail="guest@example.com"))
    order_id = res.json()["id"]

    wrong = client.post("/api/orders/track", json={"orderId": order_id, "email": "someone@example.com"})
    assert wrong.status_code == 404

    right = client.post("/api/orders/track", json={"orderId": order_id, "email": "GUEST@example.com"})
    assert right.status_code == 200
    assert right.json()["id"] == order_id
    assert "guest" not in right.json()

    bogus = client.post("/api/orders/track", json={"orderId": "nope", "email": "guest@example.com"})
    assert bogus.status_code == 404


def test_user_orders_are_not_trackable_as_guest(client, make_variant, customer):
    variant = make_variant(stock=5)
    res = client.post("/api/orders", json=order_body((variant, 1)), headers=auth_header(customer))

    res = client.post("/api/orders/track", json={"orderId": res.json()["id"], "email": customer["email"]})

    assert res.status_code == 404


def test_list_own_orders_populated(client, make_variant, customer, other_customer):
    variant = make_variant(stock=5, sku="LINEN-M")
    client.post("/api/orders", json=order_body((variant, 1)), headers=auth_header(customer))
    client.post("/api/orders", json=order_body((variant, 1)), headers=auth_header(other_customer))

    res = client.get("/api/orders", headers=auth_header(customer))

    assert res.status_code == 200
    orders = res.json()
    assert len(orders) == 1
    item = orders[0]["items"][0]
    assert item["product"]["title"] == "Linen Shirt"
    assert item["variant"]["sku"] == "LINEN-M"
    assert client.get("/api/orders").status_code == 401


def test_admin_list_hides_unpaid_gateway_orders(client, database, make_variant, customer, admin):
    variant = make_variant(stock=5)
    cod = client.post("/api/orders", json=order_body((variant, 1)), headers=auth_header(customer)).json()
    online = client.post(
        "/api/orders", json=order_body((variant, 1), paymentMethod="RAZORPAY"), headers=auth_header(customer)
    ).json()

    ids = [o["id"] for o in client.get("/api/orders/admin/all", headers=auth_header(admin)).json()]
    assert ids == [cod["id"]]

    database["order"].update_one({"_id": ObjectId(online["id"])}, {"$set": {"payment_status": "Paid"}})
    ids = {o["id"] for o in client.get("/api/orders/admin/all", headers=auth_header(admin)).json()}
    assert ids == {cod["id"], online["id"]}

    assert client.get("/api/orders/admin/all", headers=auth_header(customer)).status_code == 403


def test_status_update_is_admin_only_and_cannot_cancel(client, database, make_variant, customer, admin, sink):
    variant = make_variant(stock=5)
    order = client.post("/api/orders", json=order_body((variant, 2)), headers=auth_header(customer)).json()
    url = f"/api/orders/{order['id']}/status"

    assert client.put(url, json={"status": "Packed"}, headers=auth_header(customer)).status_code == 403

    res = client.put(url, json={"status": "Packed"}, headers=auth_header(admin))
    assert res.status_code == 200
    assert res.json()["status"] == "Packed"
    assert sink.orders[-1]["status"] == "Packed"

    assert client.put(url, json={"status": "Created"}, headers=auth_header(admin)).status_code == 409
    assert client.put(url, json={"status": "Bogus"}, headers=auth_header(admin)).status_code == 400

    res = client.put(url, json={"status": "Cancelled"}, headers=auth_header(admin))
    assert res.status_code == 409
    assert "/cancel" in res.json()["detail"]
    assert database["order"].find_one({"_id": ObjectId(order["id"])})["status"] == "Packed"

    res = client.post(f"/api/orders/{order['id']}/cancel", headers=auth_header(admin))
    assert res.status_code == 200
    assert res.json()["restocked"] is True
    assert database["variant"].find_one({"_id": variant["_id"]})["stock"] == 5


def test_delivered_orders_cannot_be_cancelled(workflow, make_variant):
    variant = make_variant(stock=5)
    order, _ = workflow.place_order(guest_request((variant, 1)))
    for status in ("Paid", "Shipped", "Delivered"):
        workflow.update_status(order["_id"], status)

    with pytest.raises(ConflictError):
        workflow.cancel_order(order["_id"])


def test_cancel_restocks_once_before_shipping(client, database, make_variant, customer, admin):
    variant = make_variant(stock=5)
    order = client.post("/api/orders", json=order_body((variant, 2)), headers=auth_header(customer)).json()
    url = f"/api/orders/{order['id']}/cancel"

    res = client.post(url, headers=auth_header(admin))
    assert res.status_code == 200
    assert res.json()["status"] == "Cancelled"
    assert res.json()["restocked"] is True
    assert database["variant"].find_one({"_id": variant["_id"]})["stock"] == 5

    client.post(url, headers=auth_header(admin))
    assert database["variant"].find_one({"_id": variant["_id"]})["stock"] == 5


def test_cancel_after_shipping_keeps_stock(workflow, database, make_variant):
    variant = make_variant(stock=5)
    order, _ = workflow.place_order(guest_request((variant, 2)))
    workflow.update_status(order["_id"], "Shipped")

    cancelled = workflow.cancel_order(order["_id"])

    assert cancelled["status"] == "Cancelled"
    assert cancelled["restocked"] is False
    assert database["variant"].find_one({"_id": variant["_id"]})["stock"] == 3


def flaky_release(workflow, fail_on):
    """Makes the ``fail_on``-th release call raise, once."""
    release = workflow.variants.release
    calls = []

    def wrapper(variant_id, quantity, session=None):
        calls.append(variant_id)
        if len(calls) == fail_on:
            raise RuntimeError("connection reset")
        return release(variant_id, quantity, session=session)

    workflow.variants.release = wrapper


def test_failed_restock_leaves_order_cancellable(workflow, database, make_variant):
    first = make_variant(stock=5, size="S")
    second = make_variant(stock=5, size="M")
    order, _ = workflow.place_order(guest_request((first, 2), (second, 2)))
    flaky_release(workflow, fail_on=2)

    with pytest.raises(RuntimeError):
        workflow.cancel_order(order["_id"])

    stored = database["order"].find_one({"_id": order["_id"]})
    assert stored["status"] == "Created"
    assert stored["restocked"] is False
    assert database["variant"].find_one({"_id": first["_id"]})["stock"] == 3
    assert database["variant"].find_one({"_id": second["_id"]})["stock"] == 3

    cancelled = workflow.cancel_order(order["_id"])

    assert cancelled["status"] == "Cancelled"
    assert cancelled["restocked"] is True
    assert database["variant"].find_one({"_id": first["_id"]})["stock"] == 5
    assert database["variant"].find_one({"_id": second["_id"]})["stock"] == 5


def test_cancel_losing_status_race_returns_stock(workflow, database, make_variant):
    variant = make_variant(stock=5)
    order, _ = workflow.place_order(guest_request((variant, 2)))
    stale = workflow.get_order(order["_id"])
    database["order"].update_one({"_id": order["_id"]}, {"$set": {"status": "Shipped"}})
    workflow.get_order = lambda order_id: stale

    with pytest.raises(ConflictError):
        workflow.cancel_order(order["_id"])

    assert database["variant"].find_one({"_id": variant["_id"]})["stock"] == 3
    assert database["order"].find_one({"_id": order["_id"]})["restocked"] is False


def test_transactional_placement(tx_workflow, recorder, database, make_variant, sink):
    variant = make_variant(stock=3)

    def no_compensation(journal):
        raise AssertionError("compensation must not run inside a transaction")

    tx_workflow._compensate = no_compensation
    order, payment = tx_workflow.place_order(guest_request((variant, 2)))

    assert len(recorder.calls) == 1
    assert recorder.calls[0]["read_concern"].level == "snapshot"
    assert recorder.calls[0]["write_concern"].document == {"w": "majority"}
    assert database["order"].count_documents({"_id": order["_id"]}) == 1
    assert payment["order_id"] == order["_id"]
    assert [(v["_id"], v["stock"]) for v in sink.stock] == [(variant["_id"], 1)]


def test_transaction_aborts_on_insufficient_stock(tx_workflow, recorder, database, make_variant, sink):
    plenty = make_variant(stock=5, size="S")
    scarce = make_variant(stock=1, size="M")
    plan = tx_workflow.validate(guest_request((plenty, 2), (scarce, 1)), None)
    database["variant"].update_one({"_id": scarce["_id"]}, {"$set": {"stock": 0}})

    with pytest.raises(InsufficientStockError):
        tx_workflow._commit_in_transaction(plan)

    assert len(recorder.calls) == 1
    assert database["variant"].find_one({"_id": plenty["_id"]})["stock"] == 5
    assert database["order"].count_documents({}) == 0
    assert database["payment"].count_documents({}) == 0
    assert sink.stock == []


def test_transactional_cancel_is_all_or_nothing(tx_workflow, recorder, database, make_variant, sink):
    first = make_variant(stock=5, size="S")
    second = make_variant(stock=5, size="M")
    order, _ = tx_workflow.place_order(guest_request((first, 2), (second, 2)))
    published = len(sink.stock)
    flaky_release(tx_workflow, fail_on=2)

    with pytest.raises(RuntimeError):
        tx_workflow.cancel_order(order["_id"])

    assert database["order"].find_one({"_id": order["_id"]})["status"] == "Created"
    assert database["variant"].find_one({"_id": first["_id"]})["stock"] == 3
    assert len(sink.stock) == published

    cancelled = tx_workflow.cancel_order(order["_id"])

    assert cancelled["restocked"] is True
    assert database["variant"].find_one({"_id": first["_id"]})["stock"] == 5
    assert database["variant"].find_one({"_id": second["_id"]})["stock"] == 5
    assert len(recorder.calls) == 3


def test_simultaneous_checkouts_for_last_unit(workflow, database, make_variant):
    variant = make_variant(stock=1)
    barrier = threading.Barrier(2)
    lock = threading.Lock()
    reserve = workflow.variants.reserve

    def atomic_reserve(*args, **kwargs):
        # mongomock runs find_one_and_update as separate Python steps; a server applies it atomically.
        with lock:
            return reserve(*args, **kwargs)

    workflow.variants.reserve = atomic_reserve
    outcomes = []

    def checkout():
        barrier.wait()
        try:
            workflow.place_order(guest_request((variant, 1)))
            outcomes.append("placed")
        except InsufficientStockError:
            outcomes.append("rejected")

    workers = [threading.Thread(target=checkout) for _ in range(2)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=10)

    assert sorted(outcomes) == ["placed", "rejected"]
    stored = database["variant"].find_one({"_id": variant["_id"]})
    assert stored["stock"] == 0
    assert stored["availability"] == "OutOfStock"
    assert database["order"].count_documents({}) == 1
