import os
import tempfile

# Settings are read at import time, so they go in before the app is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["CATALOG_DIR"] = tempfile.mkdtemp(prefix="d2bcart-catalogs-")
os.environ["RAZORPAY_KEY_ID"] = "rzp_test_key"
os.environ["RAZORPAY_KEY_SECRET"] = "rzp_test_secret"
os.environ["RAZORPAY_WEBHOOK_SECRET"] = "rzp_webhook_secret"
os.environ["CRON_SECRET"] = "cron-secret"
os.environ["MAIL_SUPPRESS_SEND"] = "true"
os.environ["ADMIN_PHONE"] = "919999900000"
os.environ["ADVANCE_PAYMENT_PERCENT"] = "0"

from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlmodel import SQLModel, Session

from d2bcart.auth import create_access_token, hash_password
from d2bcart.database import engine, add_admin, add_category, add_manufacturer, add_product, add_retailer
from d2bcart.db_models import Order
from d2bcart.main import app, get_assistant, get_capi, get_razorpay, get_shiprocket, get_whatsapp
from d2bcart.schemas import CategoryCreate, ProductCreate
from d2bcart.shipping import rank_couriers


COURIERS = [
    {"courier_company_id": 10, "courier_name": "Delhivery Surface", "rate": 100.0, "etd": "Oct 25, 2026"},
    {"courier_company_id": 20, "courier_name": "Blue Dart Air", "rate": 180.0, "etd": "Oct 21, 2026"},
    {"courier_company_id": 30, "courier_name": "Local Express", "rate": 40.0, "etd": "Oct 30, 2026"},
]


# -----------------------------
# Fake integration clients
# -----------------------------

class FakeWhatsApp:
    def __init__(self, success=True):
        self.success = success
        self.templates = []
        self.sessions = []

    def send_template(self, mobile, template_name, components, namespace=None, integrated_number=None):
        self.templates.append({"mobile": mobile, "template": template_name, "components": components, "integrated_number": integrated_number})
        if self.success:
            return {"success": True, "data": {"status": "success"}}
        return {"success": False, "error": "rejected"}

    def send_session_message(self, mobile, message, integrated_number=None):
        self.sessions.append({"mobile": mobile, "message": message, "integrated_number": integrated_number})
        return {"success": self.success, "data": {}}


class FakeShiprocket:
    def __init__(self, couriers=None):
        self.couriers = COURIERS if couriers is None else couriers
        self.estimates = []

    def estimate(self, pickup_pincode, delivery_pincode, weight=0.5, length=10, breadth=10, height=10, cod=0):
        self.estimates.append({"pickup": pickup_pincode, "delivery": delivery_pincode, "weight": weight})
        return rank_couriers(self.couriers)

    def serviceability(self, pickup_pincode, delivery_pincode, weight=0.5, cod=0):
        return self.couriers


class FakeRazorpay:
    key_id = "rzp_test_key"
    configured = True

    def __init__(self):
        self.created = []

    def create_order(self, amount_rupees, receipt, notes=None):
        order_id = f"order_test{len(self.created) + 1}"
        self.created.append({"id": order_id, "amount": int(round(amount_rupees * 100)), "receipt": receipt})
        return {"id": order_id, "amount": int(round(amount_rupees * 100)), "currency": "INR"}


class FakeAssistant:
    def __init__(self, answer="We have cases for all models. Check d2bcart.com"):
        self.answer = answer
        self.calls = []

    def reply(self, message, context=None, history=None):
        self.calls.append({"message": message, "context": context, "history": history or []})
        return self.answer


class FakeCapi:
    def __init__(self):
        self.events = []

    def send_event(self, event_name, custom_data, user_data):
        self.events.append({"event_name": event_name, "custom_data": custom_data, "user_data": user_data})
        return {"events_received": 1}


# -----------------------------
# Fixtures
# -----------------------------

@pytest.fixture(autouse=True)
def reset_db():
    SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)
    yield


@pytest.fixture
def fakes():
    return SimpleNamespace(
        whatsapp=FakeWhatsApp(),
        shiprocket=FakeShiprocket(),
        razorpay=FakeRazorpay(),
        assistant=FakeAssistant(),
        capi=FakeCapi(),
    )


@pytest.fixture
def client(fakes):
    app.dependency_overrides[get_whatsapp] = lambda: fakes.whatsapp
    app.dependency_overrides[get_shiprocket] = lambda: fakes.shiprocket
    app.dependency_overrides[get_razorpay] = lambda: fakes.razorpay
    app.dependency_overrides[get_assistant] = lambda: fakes.assistant
    app.dependency_overrides[get_capi] = lambda: fakes.capi
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def auth_headers(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def world():
    """Delhi manufacturer + Delhi retailer, one category (10% markup) with two products."""
    category = add_category(CategoryCreate(name="Cases & Covers", markup_percentage=10.0))

    manufacturer = add_manufacturer(
        name="Ravi",
        mail="maker@example.com",
        hashed_password=hash_password("maker123"),
        business_name="Apex Mobile Gear",
        address="Shop 14, Gaffar Market",
        city="New Delhi",
        state="Delhi",
        pincode="110005",
        phone_number="9811111111",
        is_verified=True,
    )
    other_manufacturer = add_manufacturer(
        name="Meera",
        mail="other@example.com",
        hashed_password=hash_password("other123"),
        business_name="Summit Accessories",
        address="Manish Market, Lohar Chawl",
        city="Mumbai",
        state="Maharashtra",
        pincode="400002",
        phone_number="9822222222",
        is_verified=True,
    )

    retailer = add_retailer(
        name="Amit",
        mail="shop@example.com",
        hashed_password=hash_password("retail123"),
        business_name="Amit Mobile Point",
        phone_number="919876543210",
        address="Shop 3, Laxmi Nagar Market",
        city="New Delhi",
        state="Delhi",
        pincode="110092",
        is_verified=True,
    )
    other_retailer = add_retailer(
        name="Neha",
        mail="neha@example.com",
        hashed_password=hash_password("retail123"),
        business_name="Neha Telecom",
        phone_number="919812345678",
        address="FC Road",
        city="Pune",
        state="Maharashtra",
        pincode="411004",
        is_verified=True,
    )
    admin = add_admin(name="Admin", mail="admin@example.com", hashed_password=hash_password("admin123"))

    cover = add_product(manufacturer.id, ProductCreate(
        name="Silicone Back Cover", base_price=100, stock=500, category_id=category.id, moq=10,
        sku="SBC-001", weight=0.5, length=20, breadth=15, height=10, hsn_code="3926",
    ))
    glass = add_product(manufacturer.id, ProductCreate(
        name="Tempered Glass", base_price=50, stock=1000, category_id=category.id, moq=20,
        sku="TG-001", weight=0.4, length=20, breadth=15, height=5,
    ))

    return SimpleNamespace(
        category=category,
        manufacturer=manufacturer,
        other_manufacturer=other_manufacturer,
        retailer=retailer,
        other_retailer=other_retailer,
        admin=admin,
        cover=cover,
        glass=glass,
        retailer_token=create_access_token({"sub": retailer.mail, "role": "retailer"}),
        other_retailer_token=create_access_token({"sub": other_retailer.mail, "role": "retailer"}),
        manufacturer_token=create_access_token({"sub": manufacturer.mail, "role": "manufacturer"}),
        other_manufacturer_token=create_access_token({"sub": other_manufacturer.mail, "role": "manufacturer"}),
        admin_token=create_access_token({"sub": admin.mail, "role": "admin"}),
    )


def make_order(world, product=None, status="paid", retailer=None, **overrides) -> Order:
    product = product or world.cover
    retailer = retailer or world.retailer
    quantity = overrides.pop("quantity", product.moq)
    data = dict(
        order_number="D2B-TEST-001",
        retailer_id=retailer.id,
        manufacturer_id=product.manufacturer_id,
        product_id=product.id,
        quantity=quantity,
        unit_price=product.display_price,
        total_amount=round(product.display_price * quantity * 1.18 + 100, 2),
        tax_amount=round(product.display_price * quantity * 0.18, 2),
        tax_type="CGST_SGST",
        tax_rate_snapshot=18.0,
        manufacturer_payout=round(product.base_price * quantity, 2),
        platform_profit=round(product.your_margin * quantity + 10, 2),
        status=status,
        payment_type="full",
        paid_amount=round(product.display_price * quantity * 1.18 + 100, 2),
        shipping_address="Shop 3, Laxmi Nagar Market, New Delhi, Delhi - 110092",
        shipping_cost=100.0,
    )
    data.update(overrides)
    with Session(engine) as session:
        order = Order(**data)
        session.add(order)
        session.commit()
        session.refresh(order)
        return order
