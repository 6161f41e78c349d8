import json
from datetime import datetime, timedelta

import httpx
import pytest
from sqlmodel import Session, select

import d2bcart.marketing as marketing
from d2bcart.auth import create_access_token
from d2bcart.catalog import catalog_filename
from d2bcart.database import (
    add_item_to_cart,
    add_retailer,
    create_cart_for_retailer,
    engine,
    get_cart_by_retailer_id,
    get_retailer_by_id,
    log_catalog_download,
    log_interaction,
    update_retailer,
)
from d2bcart.db_models import CatalogDownload, Supplier, WhatsAppChat
from d2bcart.marketing import (
    SUPPLIER_FOLLOWUPS,
    abandoned_cart_job,
    catalog_followup_job,
    check_cron_auth,
    daily_remarketing_job,
    reactivation_job,
    run_unified,
    supplier_followup_job,
    weekly_catalog_job,
)
from d2bcart.messaging import WhatsAppClient, WhatsAppError

from conftest import FakeWhatsApp, auth_headers, make_order


def _downloads(retailer_id):
    with Session(engine) as session:
        return session.exec(select(CatalogDownload).where(CatalogDownload.retailer_id == retailer_id).order_by(CatalogDownload.id)).all()


# -----------------------------
# Cron endpoints
# -----------------------------

def test_cron_requires_secret(client, world):
    assert client.get("/marketing/cron/abandoned-cart").status_code == 401
    assert client.get("/marketing/cron/abandoned-cart", headers={"Authorization": "Bearer nope"}).status_code == 401

    res = client.get("/marketing/cron/abandoned-cart", headers={"Authorization": "Bearer cron-secret"})
    assert res.status_code == 200, res.text
    assert res.json() == {"processed": 0, "sent": 0, "errors": 0}


def test_unified_cron_runs_every_job(client, world):
    res = client.get("/marketing/cron/unified", headers={"Authorization": "Bearer cron-secret"})

    assert res.status_code == 200, res.text
    assert set(res.json()) == {"abandoned", "followup", "reactivation", "weekly", "remarketing"}


def test_cron_auth_is_open_without_secret(monkeypatch):
    monkeypatch.setattr(marketing, "CRON_SECRET", None)
    check_cron_auth(None)


# -----------------------------
# Jobs
# -----------------------------

def test_abandoned_cart_sends_once(world):
    add_item_to_cart(world.retailer.id, world.cover.id, 10)
    create_cart_for_retailer(world.other_retailer.id)  # empty carts are skipped
    whatsapp = FakeWhatsApp()
    later = datetime.utcnow() + timedelta(hours=2)

    report = abandoned_cart_job(whatsapp, now=later)

    assert report == {"processed": 1, "sent": 1, "errors": 0}
    assert whatsapp.templates[0]["mobile"] == "919876543210"
    assert whatsapp.templates[0]["template"] == "d2b_abandoned_cart"
    assert get_cart_by_retailer_id(world.retailer.id).recovery_sent_at is not None

    assert abandoned_cart_job(whatsapp, now=later)["processed"] == 0


def test_abandoned_cart_waits_an_hour(world):
    add_item_to_cart(world.retailer.id, world.cover.id, 10)
    assert abandoned_cart_job(FakeWhatsApp())["processed"] == 0


def test_abandoned_cart_failure_allows_retry(world):
    add_item_to_cart(world.retailer.id, world.cover.id, 10)

    report = abandoned_cart_job(FakeWhatsApp(success=False), now=datetime.utcnow() + timedelta(hours=2))

    assert report == {"processed": 1, "sent": 0, "errors": 1}
    assert get_cart_by_retailer_id(world.retailer.id).recovery_sent_at is None


def test_catalog_followup_skips_converted_retailers(world):
    log_catalog_download(world.retailer.id, world.category.id, "category_page")
    log_catalog_download(world.other_retailer.id, world.category.id, "category_page")
    make_order(world, retailer=world.other_retailer)
    whatsapp = FakeWhatsApp()
    later = datetime.utcnow() + timedelta(days=4)

    report = catalog_followup_job(whatsapp, now=later)

    assert report == {"processed": 2, "sent": 1, "errors": 0}
    assert whatsapp.templates[0]["mobile"] == "919876543210"
    assert whatsapp.templates[0]["components"]["button_1"]["value"] == f"catalog_{world.category.id}.pdf"
    assert all(d.followup_sent_at is not None for d in _downloads(world.other_retailer.id))

    assert catalog_followup_job(whatsapp, now=later)["processed"] == 0


def test_reactivation_targets_dormant_retailers(world):
    later = datetime.utcnow() + timedelta(days=31)
    make_order(world, retailer=world.other_retailer, created_at=later - timedelta(days=2))
    whatsapp = FakeWhatsApp()

    report = reactivation_job(whatsapp, now=later)

    assert report == {"processed": 1, "sent": 1, "errors": 0}
    assert whatsapp.templates[0]["template"] == "d2b_reactivation"
    assert get_retailer_by_id(world.retailer.id).reactivation_sent_at is not None
    assert get_retailer_by_id(world.other_retailer.id).reactivation_sent_at is None


def test_weekly_catalog_uses_cart_interest(world):
    add_item_to_cart(world.retailer.id, world.cover.id, 10)
    make_order(world, retailer=world.other_retailer)
    whatsapp = FakeWhatsApp()

    report = weekly_catalog_job(whatsapp)

    assert report == {"processed": 2, "sent": 1, "errors": 0}
    sent = whatsapp.templates[0]
    assert sent["template"] == "d2b_7_days_reminder"
    assert sent["components"]["button_1"]["value"] == catalog_filename(world.category.id)

    # Both are marked for the week
    assert weekly_catalog_job(whatsapp)["processed"] == 0


def test_weekly_catalog_without_interest_sends_browse_template(world):
    whatsapp = FakeWhatsApp()
    weekly_catalog_job(whatsapp)

    assert {t["template"] for t in whatsapp.templates} == {"d2b_product_browse"}


def test_daily_remarketing_sends_most_browsed_catalog(world):
    for _ in range(3):
        log_interaction(world.cover.id, "view", retailer_id=world.retailer.id)
    log_interaction(world.glass.id, "view", session_id="anon")
    whatsapp = FakeWhatsApp()
    later = datetime.utcnow() + timedelta(minutes=1)

    report = daily_remarketing_job(whatsapp, now=later)

    assert report == {"processed": 1, "sent": 1, "errors": 0}
    header = whatsapp.templates[0]["components"]["header_1"]
    assert header["document"]["link"].endswith(f"/downloads/{catalog_filename(world.category.id)}")
    assert [d.source_page for d in _downloads(world.retailer.id)] == ["auto_daily_remarketing"]

    # One send per 20h
    assert daily_remarketing_job(whatsapp, now=later)["sent"] == 0


# A batch of one must still reach the retailer behind rows the job can't use

def test_abandoned_cart_batch_skips_empty_carts(world):
    create_cart_for_retailer(world.other_retailer.id)
    add_item_to_cart(world.retailer.id, world.cover.id, 10)
    whatsapp = FakeWhatsApp()

    report = abandoned_cart_job(whatsapp, now=datetime.utcnow() + timedelta(hours=2), limit=1)

    assert report == {"processed": 1, "sent": 1, "errors": 0}
    assert whatsapp.templates[0]["mobile"] == "919876543210"


def test_catalog_followup_batch_skips_unreachable_retailers(world):
    update_retailer(world.retailer.id, {"phone_number": None})
    log_catalog_download(world.retailer.id, world.category.id, "category_page")
    log_catalog_download(world.other_retailer.id, world.category.id, "category_page")
    whatsapp = FakeWhatsApp()

    report = catalog_followup_job(whatsapp, now=datetime.utcnow() + timedelta(days=4), limit=1)

    assert report == {"processed": 1, "sent": 1, "errors": 0}
    assert whatsapp.templates[0]["mobile"] == "919812345678"


def test_reactivation_batch_skips_recent_buyers(world):
    later = datetime.utcnow() + timedelta(days=31)
    make_order(world, created_at=later - timedelta(days=1))
    whatsapp = FakeWhatsApp()

    report = reactivation_job(whatsapp, now=later, limit=1)

    assert report == {"processed": 1, "sent": 1, "errors": 0}
    assert whatsapp.templates[0]["mobile"] == "919812345678"
    assert get_retailer_by_id(world.other_retailer.id).reactivation_sent_at == later


def test_weekly_catalog_batch_skips_unreachable_retailers(world):
    update_retailer(world.retailer.id, {"phone_number": ""})
    whatsapp = FakeWhatsApp()

    report = weekly_catalog_job(whatsapp, limit=1)

    assert report == {"processed": 1, "sent": 1, "errors": 0}
    assert whatsapp.templates[0]["mobile"] == "919812345678"


def test_daily_remarketing_batch_skips_unreachable_retailers(world):
    update_retailer(world.retailer.id, {"phone_number": None})
    log_interaction(world.cover.id, "view", retailer_id=world.retailer.id)
    log_interaction(world.glass.id, "view", retailer_id=world.other_retailer.id)
    whatsapp = FakeWhatsApp()

    report = daily_remarketing_job(whatsapp, now=datetime.utcnow() + timedelta(minutes=1), limit=1)

    assert report == {"processed": 1, "sent": 1, "errors": 0}
    assert whatsapp.templates[0]["mobile"] == "919812345678"


def test_run_unified_reports_per_job(world):
    report = run_unified(FakeWhatsApp())
    assert report["abandoned"] == {"processed": 0, "sent": 0, "errors": 0}
    assert report["weekly"]["processed"] == 2


# -----------------------------
# Supplier sourcing
# -----------------------------

def _supplier(name, phone, **fields) -> Supplier:
    with Session(engine) as session:
        supplier = Supplier(name=name, phone=phone, **fields)
        session.add(supplier)
        session.commit()
        session.refresh(supplier)
        return supplier


def _reload(supplier_id) -> Supplier:
    with Session(engine) as session:
        return session.get(Supplier, supplier_id)


def _supplier_chats():
    with Session(engine) as session:
        return session.exec(select(WhatsAppChat).where(WhatsAppChat.line == "supplier").order_by(WhatsAppChat.id)).all()


def test_supplier_followup_uses_sourcing_line(world):
    fresh = _supplier("Shree Balaji Covers", "919810011111")
    pricing = _supplier("Gupta Glass House", "919810022222", negotiation_stage="pricing")
    whatsapp = FakeWhatsApp()
    now = datetime.utcnow()

    report = supplier_followup_job(whatsapp, now=now)

    assert report == {"processed": 2, "sent": 2, "errors": 0}
    assert {t["integrated_number"] for t in whatsapp.templates} == {"917557777998"}
    assert {t["template"] for t in whatsapp.templates} == {"d2b_ai_response"}
    by_mobile = {t["mobile"]: t["components"]["body_1"]["value"] for t in whatsapp.templates}
    assert by_mobile["919810011111"] == SUPPLIER_FOLLOWUPS["initial"]
    assert by_mobile["919810022222"] == SUPPLIER_FOLLOWUPS["pricing"]

    saved = _reload(fresh.id)
    assert saved.follow_up_count == 1
    assert saved.last_contacted_at == now
    assert saved.status == "contacted"

    chats = _supplier_chats()
    assert [(c.mobile, c.direction, c.status, c.source) for c in chats] == [
        ("919810011111", "outbound", "sent", "auto_followup"),
        ("919810022222", "outbound", "sent", "auto_followup"),
    ]
    assert _reload(pricing.id).negotiation_stage == "pricing"


def test_supplier_followup_waits_a_day_and_stops_after_three(world):
    supplier = _supplier("Shree Balaji Covers", "919810011111")
    whatsapp = FakeWhatsApp()
    start = datetime.utcnow()

    assert supplier_followup_job(whatsapp, now=start)["sent"] == 1
    assert supplier_followup_job(whatsapp, now=start + timedelta(hours=23))["processed"] == 0
    assert supplier_followup_job(whatsapp, now=start + timedelta(hours=25))["sent"] == 1
    assert supplier_followup_job(whatsapp, now=start + timedelta(hours=50))["sent"] == 1
    assert supplier_followup_job(whatsapp, now=start + timedelta(hours=75))["processed"] == 0

    assert _reload(supplier.id).follow_up_count == 3
    assert len(whatsapp.templates) == 3


def test_supplier_followup_skips_closed_suppliers(world):
    _supplier("Blocked Traders", "919810033333", status="blocked")
    _supplier("Verified Wholesale", "919810044444", is_verified=True)
    _supplier("Done Enterprises", "919810055555", follow_up_count=3)
    _supplier("Old Contact Mart", "919810066666", status="contacted", last_contacted_at=datetime.utcnow() - timedelta(days=2))
    whatsapp = FakeWhatsApp()

    report = supplier_followup_job(whatsapp)

    assert report == {"processed": 1, "sent": 1, "errors": 0}
    assert whatsapp.templates[0]["mobile"] == "919810066666"


def test_rejected_supplier_followup_still_counts(world):
    supplier = _supplier("Shree Balaji Covers", "919810011111")

    report = supplier_followup_job(FakeWhatsApp(success=False))

    assert report == {"processed": 1, "sent": 0, "errors": 1}
    assert _reload(supplier.id).follow_up_count == 1
    assert [c.status for c in _supplier_chats()] == ["failed"]


def test_supplier_followup_cron(client, world, fakes):
    _supplier("Shree Balaji Covers", "919810011111")

    assert client.get("/marketing/cron/supplier-followups").status_code == 401

    res = client.get("/marketing/cron/supplier-followups", headers={"Authorization": "Bearer cron-secret"})
    assert res.status_code == 200, res.text
    assert res.json() == {"processed": 1, "sent": 1, "errors": 0}
    assert fakes.whatsapp.templates[0]["integrated_number"] == "917557777998"


def test_admin_manages_suppliers(client, world):
    admin = auth_headers(world.admin_token)
    body = {"name": "Shree Balaji Covers", "phone": "+91 98100 11111", "category": "Cases & Covers", "city": "Delhi"}

    res = client.post("/admin/suppliers", json=body, headers=admin)
    assert res.status_code == 201, res.text
    created = res.json()
    assert created["phone"] == "919810011111"
    assert (created["status"], created["negotiation_stage"], created["follow_up_count"]) == ("new", "initial", 0)

    assert client.post("/admin/suppliers", json=body, headers=admin).status_code == 409
    assert client.post("/admin/suppliers", json={**body, "phone": "12345"}, headers=admin).status_code == 400

    res = client.patch(f"/admin/suppliers/{created['id']}", json={"status": "blocked"}, headers=admin)
    assert res.status_code == 200
    assert res.json()["status"] == "blocked"
    assert client.patch("/admin/suppliers/999", json={"status": "blocked"}, headers=admin).status_code == 404
    assert client.patch(f"/admin/suppliers/{created['id']}", json={"status": "gone"}, headers=admin).status_code == 422

    assert [s["id"] for s in client.get("/admin/suppliers?status=blocked", headers=admin).json()] == [created["id"]]
    assert client.get("/admin/suppliers?status=new", headers=admin).json() == []
    assert client.get("/admin/suppliers", headers=auth_headers(world.retailer_token)).status_code == 401


# -----------------------------
# Browse trigger
# -----------------------------

def test_browse_category_sends_catalog_with_cooldown(client, world, fakes):
    headers = auth_headers(world.retailer_token)
    event = {"eventType": "browse_category", "id": world.category.id}

    res = client.post("/marketing/event", json=event, headers=headers)
    assert res.status_code == 200, res.text
    assert res.json() == {"success": True}
    assert fakes.whatsapp.templates[0]["template"] == "d2b_category_browse"
    assert [d.source_page for d in _downloads(world.retailer.id)] == ["auto_browse_category"]

    res = client.post("/marketing/event", json=event, headers=headers)
    assert res.json() == {"skipped": True, "reason": "Cooldown active"}
    assert len(fakes.whatsapp.templates) == 1


def test_browse_product_names_the_product(client, world, fakes):
    res = client.post("/marketing/event", json={"eventType": "browse_product", "id": world.cover.id}, headers=auth_headers(world.retailer_token))

    assert res.status_code == 200, res.text
    sent = fakes.whatsapp.templates[0]
    assert sent["template"] == "d2b_product_browse"
    assert sent["components"]["body_1"]["value"] == "Silicone Back Cover"


def test_browse_event_errors(client, world, fakes):
    headers = auth_headers(world.retailer_token)

    assert client.post("/marketing/event", json={"eventType": "browse_product", "id": 999}, headers=headers).status_code == 404
    assert client.post("/marketing/event", json={"eventType": "checkout", "id": 1}, headers=headers).status_code == 400
    assert client.post("/marketing/event", json={"eventType": "browse_category"}, headers=headers).status_code == 400
    assert client.post("/marketing/event", json={"eventType": "browse_category", "id": 999}, headers=headers).status_code == 500

    fakes.whatsapp.success = False
    res = client.post("/marketing/event", json={"eventType": "browse_category", "id": world.category.id}, headers=headers)
    assert res.status_code == 502
    assert _downloads(world.retailer.id) == []


def test_browse_event_needs_phone(client, world):
    add_retailer(name="No Phone", mail="nophone@example.com", hashed_password="x", business_name="No Phone Traders", is_verified=True)
    token = create_access_token({"sub": "nophone@example.com", "role": "retailer"})

    res = client.post("/marketing/event", json={"eventType": "browse_category", "id": world.category.id}, headers=auth_headers(token))
    assert res.status_code == 401


# -----------------------------
# MSG91 client
# -----------------------------

def test_template_payload():
    seen = {}

    def handler(request: httpx.Request):
        seen["url"] = str(request.url)
        seen["authkey"] = request.headers["authkey"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"status": "success"})

    client = WhatsAppClient(auth_key="key", integrated_number="917500000000", namespace="ns", base_url="https://msg91.test/wa", transport=httpx.MockTransport(handler))
    result = client.send_template("+91 98765 43210", "d2b_reactivation", {"body_1": {"type": "text", "value": "Shop"}})

    template = seen["body"]["payload"]["template"]
    assert result == {"success": True, "data": {"status": "success"}}
    assert seen["url"] == "https://msg91.test/wa/whatsapp-outbound-message/bulk/"
    assert seen["authkey"] == "key"
    assert seen["body"]["integrated_number"] == "917500000000"
    assert template["name"] == "d2b_reactivation"
    assert template["namespace"] == "ns"
    assert template["to_and_components"][0]["to"] == ["919876543210"]


def test_session_message_payload():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"status": "success"})

    client = WhatsAppClient(auth_key="key", base_url="https://msg91.test/wa", transport=httpx.MockTransport(handler))
    client.send_session_message("919876543210", "Hello", integrated_number="917511111111")

    assert seen["body"] == {
        "integrated_number": "917511111111",
        "recipient_number": "919876543210",
        "content_type": "text",
        "text": "Hello",
    }


def test_rejected_message_is_not_an_exception():
    def handler(request):
        return httpx.Response(400, json={"error": "Template not approved"})

    client = WhatsAppClient(auth_key="key", base_url="https://msg91.test/wa", transport=httpx.MockTransport(handler))
    result = client.send_template("919876543210", "d2b_unknown", {})

    assert result == {"success": False, "error": {"error": "Template not approved"}}


def test_network_failure_raises():
    def handler(request):
        raise httpx.ConnectError("connection refused")

    client = WhatsAppClient(auth_key="key", base_url="https://msg91.test/wa", transport=httpx.MockTransport(handler))
    with pytest.raises(WhatsAppError):
        client.send_session_message("919876543210", "Hello")


def test_missing_auth_key():
    assert WhatsAppClient(auth_key=None).send_template("919876543210", "d2b_reactivation", {}) == {"success": False, "error": "Configuration missing"}
