import hashlib
import hmac
import json
import logging

import httpx
import pytest
from fastapi import HTTPException
from sqlmodel import Session, select

import d2bcart.main as main_module
import d2bcart.payments as payments
from d2bcart.attribution import ConversionsClient, hash_identifier
from d2bcart.database import add_item_to_cart, add_product, engine, get_cart_lines, update_product_details
from d2bcart.db_models import ATTEMPT_FAILED, ATTEMPT_PENDING, ATTEMPT_PROCESSING, Order, PaymentAttempt, Product
from d2bcart.payments import (
    ALREADY_PROCESSED,
    FAILED,
    IN_PROGRESS,
    PROCESSED,
    RazorpayClient,
    RazorpayError,
    _split_proportionally,
    build_checkout,
    materialize_orders,
    start_payment,
    verify_payment_signature,
    verify_webhook_signature,
)
from d2bcart.schemas import ProductCreate, ProductUpdate
from d2bcart.shipping import rank_couriers

from conftest import COURIERS, FakeRazorpay, auth_headers


ADDRESS = {"address": "Shop 3, Laxmi Nagar Market", "city": "New Delhi", "state": "Delhi", "pincode": "110092"}


def _sign(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def _fill_cart(world):
    add_item_to_cart(world.retailer.id, world.cover.id, 10)
    add_item_to_cart(world.retailer.id, world.glass.id, 20)


def _quotes(*manufacturers):
    return {m.id: rank_couriers(COURIERS) for m in manufacturers}


def _post_webhook(client, event: dict, secret: str = "rzp_webhook_secret"):
    body = json.dumps(event).encode()
    headers = {"Content-Type": "application/json", "X-Razorpay-Signature": _sign(secret, body)}
    return client.post("/payments/webhook", content=body, headers=headers)


def _order_paid_event(order_id: str, payment_id: str = "pay_1", amount: int = 269600) -> dict:
    return {
        "event": "order.paid",
        "payload": {
            "order": {"entity": {"id": order_id}},
            "payment": {"entity": {"id": payment_id, "order_id": order_id, "amount": amount}},
        },
    }


def _start_checkout(client, world, **body) -> dict:
    _fill_cart(world)
    res = client.post("/checkout/razorpay-order", json=body, headers=auth_headers(world.retailer_token))
    assert res.status_code == 200, res.text
    return res.json()


def _orders_for(razorpay_order_id: str):
    with Session(engine) as session:
        return session.exec(
            select(Order).where(Order.razorpay_order_id == razorpay_order_id).order_by(Order.id)
        ).all()


def _attempt(razorpay_order_id: str) -> PaymentAttempt:
    with Session(engine) as session:
        return session.exec(
            select(PaymentAttempt).where(PaymentAttempt.razorpay_order_id == razorpay_order_id)
        ).first()


# -----------------------------
# Signatures
# -----------------------------

def test_payment_signature_uses_order_and_payment_ids():
    signature = _sign("rzp_test_secret", b"order_1|pay_1")

    assert verify_payment_signature("order_1", "pay_1", signature)
    assert not verify_payment_signature("order_1", "pay_2", signature)
    assert not verify_payment_signature("order_1", "pay_1", "")
    assert verify_payment_signature("order_1", "pay_1", _sign("other", b"order_1|pay_1"), secret="other")


def test_webhook_signature_covers_raw_body():
    body = b'{"event": "order.paid"}'
    signature = _sign("rzp_webhook_secret", body)

    assert verify_webhook_signature(body, signature)
    assert not verify_webhook_signature(body + b" ", signature)
    assert not verify_webhook_signature(body, signature, secret="wrong")


# -----------------------------
# Checkout math
# -----------------------------

def test_split_proportionally_last_share_absorbs_remainder():
    assert _split_proportionally(100, [1, 1, 1]) == [33.33, 33.33, 33.34]
    assert _split_proportionally(90, [1298, 1298]) == [45.0, 45.0]
    assert _split_proportionally(0, [5, 5]) == [0.0, 0.0]
    assert _split_proportionally(10, []) == []


def test_build_checkout_full_payment(world):
    _fill_cart(world)
    lines = get_cart_lines(world.retailer.id)

    checkout = build_checkout(world.retailer, lines, ADDRESS, _quotes(world.manufacturer))
    breakdown = checkout["payment_breakdown"]
    cover_line, glass_line = checkout["cart_payload"]

    assert cover_line["tax_type"] == "CGST_SGST"
    assert cover_line["gross_amount"] == 1298.0
    assert cover_line["ship_cost"] == 50.0
    assert glass_line["ship_cost"] == 50.0
    assert cover_line["courier_name"] == "Delhivery Surface"
    assert cover_line["courier_company_id"] == "10"

    assert breakdown["total_product_amount"] == 2596.0
    assert breakdown["total_tax_amount"] == 396.0
    assert breakdown["total_shipping_amount"] == 100.0
    assert breakdown["payable_amount"] == 2696.0
    assert breakdown["remaining_balance"] == 0.0


def test_build_checkout_advance_payment(world):
    _fill_cart(world)
    lines = get_cart_lines(world.retailer.id)

    checkout = build_checkout(world.retailer, lines, ADDRESS, _quotes(world.manufacturer), payment_option="advance", advance_percent=25)
    breakdown = checkout["payment_breakdown"]

    assert breakdown["payable_amount"] == 749.0
    assert breakdown["remaining_balance"] == 1947.0
    assert breakdown["payment_option"] == "advance"


def test_build_checkout_honours_courier_choice(world):
    _fill_cart(world)
    lines = get_cart_lines(world.retailer.id)

    checkout = build_checkout(world.retailer, lines, ADDRESS, _quotes(world.manufacturer), courier_choice={world.manufacturer.id: "20"})

    assert [line["ship_cost"] for line in checkout["cart_payload"]] == [90.0, 90.0]
    assert checkout["cart_payload"][0]["courier_name"] == "Blue Dart Air"


def test_build_checkout_inter_state_is_igst(world):
    add_item_to_cart(world.retailer.id, world.cover.id, 10)
    lines = get_cart_lines(world.retailer.id)

    pune = {"address": "FC Road", "city": "Pune", "state": "Maharashtra", "pincode": "411004"}
    checkout = build_checkout(world.retailer, lines, pune, _quotes(world.manufacturer))

    assert checkout["cart_payload"][0]["tax_type"] == "IGST"


def test_build_checkout_rejects_below_moq(world):
    add_item_to_cart(world.retailer.id, world.cover.id, 5)

    with pytest.raises(HTTPException) as exc:
        build_checkout(world.retailer, get_cart_lines(world.retailer.id), ADDRESS, _quotes(world.manufacturer))
    assert exc.value.status_code == 400
    assert "Minimum order quantity" in exc.value.detail


def test_build_checkout_rejects_inactive_product(world):
    add_item_to_cart(world.retailer.id, world.cover.id, 10)
    update_product_details(world.cover.id, ProductUpdate(is_active=False), world.manufacturer.id)

    with pytest.raises(HTTPException) as exc:
        build_checkout(world.retailer, get_cart_lines(world.retailer.id), ADDRESS, _quotes(world.manufacturer))
    assert exc.value.status_code == 400


def test_build_checkout_empty_cart(world):
    with pytest.raises(HTTPException) as exc:
        build_checkout(world.retailer, [], ADDRESS, {})
    assert exc.value.detail == "Cart is empty"


# -----------------------------
# Razorpay client
# -----------------------------

def test_razorpay_create_order_sends_paise_with_basic_auth():
    seen = {}

    def handler(request: httpx.Request):
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "order_abc", "amount": seen["body"]["amount"], "currency": "INR"})

    client = RazorpayClient("key", "secret", transport=httpx.MockTransport(handler))
    order = client.create_order(1234.56, "rcpt_1")

    assert order["id"] == "order_abc"
    assert seen["body"]["amount"] == 123456
    assert seen["body"]["currency"] == "INR"
    assert seen["auth"].startswith("Basic ")


def test_razorpay_error_response_raises():
    def handler(request):
        return httpx.Response(400, json={"error": {"description": "Amount too low"}})

    client = RazorpayClient("key", "secret", transport=httpx.MockTransport(handler))
    with pytest.raises(RazorpayError, match="Amount too low"):
        client.create_order(0.5, "rcpt_1")


def test_razorpay_without_keys_is_not_configured():
    assert not RazorpayClient(None, None).configured


# -----------------------------
# Order materialization
# -----------------------------

def test_webhook_creates_orders_once(client, world, fakes):
    rp = _start_checkout(client, world, utm_source="facebook", utm_campaign="diwali", fbclid="fb.1")
    assert rp["razorpay_order_id"] == "order_test1"
    assert rp["amount"] == 269600

    res = _post_webhook(client, _order_paid_event("order_test1"))
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["status"] == PROCESSED
    assert body["orders_created"] == 2
    assert len(body["order_numbers"]) == 1

    # Redelivery is a no-op
    res = _post_webhook(client, _order_paid_event("order_test1"))
    assert res.status_code == 200
    assert res.json()["status"] == ALREADY_PROCESSED

    orders = _orders_for("order_test1")
    assert len(orders) == 2
    cover_order = orders[0]
    assert cover_order.status == "paid"
    assert cover_order.payment_id == "pay_1"
    assert cover_order.total_amount == 1348.0
    assert cover_order.paid_amount == 1348.0
    assert cover_order.pending_amount == 0.0
    assert cover_order.manufacturer_payout == 1000.0
    assert cover_order.platform_profit == 105.0
    assert cover_order.utm_source == "facebook"
    assert cover_order.utm_campaign == "diwali"
    assert cover_order.fbclid == "fb.1"

    assert _attempt("order_test1").status == "completed"

    with Session(engine) as session:
        assert session.get(Product, world.cover.id).stock == 490

    cart = client.get("/cart", headers=auth_headers(world.retailer_token)).json()
    assert cart["items"] == []

    assert len(fakes.whatsapp.templates) == 1
    assert fakes.whatsapp.templates[0]["mobile"] == "919999900000"
    assert fakes.whatsapp.templates[0]["template"] == "d2b_new_order_admin"
    assert fakes.capi.events[0]["event_name"] == "Purchase"
    assert fakes.capi.events[0]["custom_data"]["value"] == 2696.0


def test_verify_after_webhook_reports_already_processed(client, world):
    _start_checkout(client, world)
    _post_webhook(client, _order_paid_event("order_test1"))

    res = client.post(
        "/checkout/verify",
        json={
            "razorpay_order_id": "order_test1",
            "razorpay_payment_id": "pay_1",
            "razorpay_signature": _sign("rzp_test_secret", b"order_test1|pay_1"),
        },
        headers=auth_headers(world.retailer_token),
    )
    assert res.status_code == 200, res.text
    assert res.json()["status"] == ALREADY_PROCESSED
    assert len(_orders_for("order_test1")) == 2


def test_verify_creates_orders_when_first(client, world):
    _start_checkout(client, world)

    res = client.post(
        "/checkout/verify",
        json={
            "razorpay_order_id": "order_test1",
            "razorpay_payment_id": "pay_9",
            "razorpay_signature": _sign("rzp_test_secret", b"order_test1|pay_9"),
        },
        headers=auth_headers(world.retailer_token),
    )
    assert res.status_code == 200, res.text
    assert res.json()["status"] == PROCESSED

    res = _post_webhook(client, _order_paid_event("order_test1", payment_id="pay_9"))
    assert res.json()["status"] == ALREADY_PROCESSED


def test_verify_rejects_bad_signature(client, world):
    _start_checkout(client, world)

    res = client.post(
        "/checkout/verify",
        json={"razorpay_order_id": "order_test1", "razorpay_payment_id": "pay_1", "razorpay_signature": "forged"},
        headers=auth_headers(world.retailer_token),
    )
    assert res.status_code == 400
    assert _orders_for("order_test1") == []


def test_claimed_attempt_reports_in_progress(client, world):
    _start_checkout(client, world)

    with Session(engine) as session:
        attempt = session.exec(select(PaymentAttempt)).first()
        attempt.status = ATTEMPT_PROCESSING
        session.add(attempt)
        session.commit()

    result = materialize_orders("order_test1", "pay_1")

    assert result.status == IN_PROGRESS
    assert result.http_status == 409
    assert _orders_for("order_test1") == []


def test_failed_insert_releases_claim_for_retry(client, world, monkeypatch):
    _start_checkout(client, world)

    def broken(attempt, payment_id):
        raise RuntimeError("disk full")

    monkeypatch.setattr(payments, "build_orders", broken)
    result = materialize_orders("order_test1", "pay_1")

    assert result.status == FAILED
    assert result.http_status == 500
    assert _attempt("order_test1").status == ATTEMPT_PENDING
    assert _orders_for("order_test1") == []

    monkeypatch.undo()
    assert materialize_orders("order_test1", "pay_1").status == PROCESSED


def test_orders_split_per_manufacturer(world):
    pune_case = add_product(world.other_manufacturer.id, ProductCreate(
        name="Flip Cover", base_price=80, stock=100, category_id=world.category.id, moq=10,
    ))
    add_item_to_cart(world.retailer.id, world.cover.id, 10)
    add_item_to_cart(world.retailer.id, pune_case.id, 10)

    lines = get_cart_lines(world.retailer.id)
    checkout = build_checkout(world.retailer, lines, ADDRESS, _quotes(world.manufacturer, world.other_manufacturer))
    start_payment(FakeRazorpay(), world.retailer, checkout, ADDRESS, {})

    result = materialize_orders("order_test1", "pay_1")
    orders = _orders_for("order_test1")

    assert result.status == PROCESSED
    assert len(result.order_numbers) == 2
    assert {o.manufacturer_id for o in orders} == {world.manufacturer.id, world.other_manufacturer.id}
    assert orders[0].order_number != orders[1].order_number
    # Mumbai seller to a Delhi address
    assert orders[1].tax_type == "IGST"


def test_advance_orders_carry_pending_balance(world):
    _fill_cart(world)
    lines = get_cart_lines(world.retailer.id)
    checkout = build_checkout(world.retailer, lines, ADDRESS, _quotes(world.manufacturer), payment_option="advance", advance_percent=25)
    start_payment(FakeRazorpay(), world.retailer, checkout, ADDRESS, {})

    materialize_orders("order_test1", "pay_1")
    orders = _orders_for("order_test1")

    assert [o.pending_amount for o in orders] == [973.5, 973.5]
    assert sum(o.pending_amount for o in orders) == checkout["payment_breakdown"]["remaining_balance"]
    assert orders[0].paid_amount == 375.0
    assert orders[0].payment_type == "advance"


def test_amount_mismatch_is_logged(client, world, caplog):
    _start_checkout(client, world)
    caplog.set_level(logging.WARNING)

    res = _post_webhook(client, _order_paid_event("order_test1", amount=100))

    assert res.json()["status"] == PROCESSED
    assert "Amount mismatch" in caplog.text


def test_webhook_unknown_order_is_not_found(client, world):
    res = _post_webhook(client, _order_paid_event("order_missing"))
    assert res.status_code == 404
    assert res.json()["status"] == "not_found"


def test_webhook_payment_failed_marks_attempt(client, world):
    _start_checkout(client, world)

    event = {"event": "payment.failed", "payload": {"payment": {"entity": {"id": "pay_x", "order_id": "order_test1"}}}}
    res = _post_webhook(client, event)

    assert res.status_code == 200
    assert res.json()["status"] == "failed_recorded"
    assert _attempt("order_test1").status == ATTEMPT_FAILED


def test_webhook_ignores_other_events(client, world):
    res = _post_webhook(client, {"event": "refund.created", "payload": {}})
    assert res.status_code == 200
    assert res.json() == {"status": "ignored"}


@pytest.mark.parametrize("event", [[], "order.paid", 42])
def test_webhook_rejects_signed_non_object_body(client, world, event):
    res = _post_webhook(client, event)
    assert res.status_code == 400
    assert res.json() == {"error": "Invalid payload"}


def test_webhook_in_progress_asks_razorpay_to_retry(client, world):
    _start_checkout(client, world)

    with Session(engine) as session:
        attempt = session.exec(select(PaymentAttempt)).first()
        attempt.status = ATTEMPT_PROCESSING
        session.add(attempt)
        session.commit()

    res = _post_webhook(client, _order_paid_event("order_test1"))

    assert res.status_code == 409
    assert res.json()["status"] == IN_PROGRESS
    assert _orders_for("order_test1") == []

    # The storefront keeps polling instead of seeing an error
    res = client.post(
        "/checkout/verify",
        json={
            "razorpay_order_id": "order_test1",
            "razorpay_payment_id": "pay_1",
            "razorpay_signature": _sign("rzp_test_secret", b"order_test1|pay_1"),
        },
        headers=auth_headers(world.retailer_token),
    )
    assert res.status_code == 200
    assert res.json()["status"] == IN_PROGRESS


def test_webhook_signature_checks(client, world, monkeypatch):
    body = json.dumps(_order_paid_event("order_test1")).encode()

    res = client.post("/payments/webhook", content=body, headers={"Content-Type": "application/json"})
    assert res.status_code == 400

    res = _post_webhook(client, _order_paid_event("order_test1"), secret="attacker")
    assert res.status_code == 400

    monkeypatch.setattr(main_module, "RAZORPAY_WEBHOOK_SECRET", None)
    res = _post_webhook(client, _order_paid_event("order_test1"))
    assert res.status_code == 500


def test_razorpay_order_needs_configured_gateway(client, world, fakes):
    fakes.razorpay.configured = False
    _fill_cart(world)

    res = client.post("/checkout/razorpay-order", json={}, headers=auth_headers(world.retailer_token))
    assert res.status_code == 500


def test_checkout_quote_lists_courier_options(client, world, fakes):
    _fill_cart(world)

    res = client.post("/checkout/quote", json={"payment_option": "full"}, headers=auth_headers(world.retailer_token))
    assert res.status_code == 200, res.text
    quote = res.json()

    assert quote["payment_breakdown"]["payable_amount"] == 2696.0
    assert quote["shipping_address"]["pincode"] == "110092"
    assert [c["courier_name"] for c in quote["courier_options"][str(world.manufacturer.id)]] == ["Delhivery Surface", "Blue Dart Air"]
    assert fakes.shiprocket.estimates[0]["pickup"] == "110005"


# -----------------------------
# Conversions API
# -----------------------------

def test_identifiers_are_normalised_before_hashing():
    assert hash_identifier(" Shop@Example.com ") == hashlib.sha256(b"shop@example.com").hexdigest()
    assert hash_identifier(None) is None


def test_conversion_event_is_skipped_without_token():
    assert ConversionsClient(access_token=None).send_event("Purchase", {}, {}) is None


def test_conversion_event_payload():
    seen = {}

    def handler(request: httpx.Request):
        seen["params"] = dict(request.url.params)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"events_received": 1})

    capi = ConversionsClient(pixel_id="123", access_token="tok", transport=httpx.MockTransport(handler))
    result = capi.send_event("Purchase", {"value": 10, "currency": "INR"}, {"email": "A@b.com", "phone": "9198", "fbp": "fb.1.2"})

    event = seen["body"]["data"][0]
    assert result == {"events_received": 1}
    assert seen["params"]["access_token"] == "tok"
    assert event["event_name"] == "Purchase"
    assert event["user_data"]["em"] == [hashlib.sha256(b"a@b.com").hexdigest()]
    assert event["user_data"]["fbp"] == "fb.1.2"


def test_conversion_api_error_is_swallowed():
    def handler(request):
        return httpx.Response(400, json={"error": {"message": "Invalid pixel"}})

    capi = ConversionsClient(pixel_id="123", access_token="tok", transport=httpx.MockTransport(handler))
    assert capi.send_event("Purchase", {}, {}) is None
