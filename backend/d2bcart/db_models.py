# Database Models

# Here, we define all the database tables, attributes to each

from sqlmodel import SQLModel , Field, Column, JSON
from typing import Optional, List, Dict, Any   # To allow fields to be NULL
from datetime import datetime # Default timestamps
from pathlib import Path


# File paths for default images
STATIC_BASE = Path(".")

PRODUCT_IMG_DIR = STATIC_BASE / "product_images"
default_product_image = str(PRODUCT_IMG_DIR / "default.png")

CATEGORY_IMG_DIR = STATIC_BASE / "category_images"
default_category_image = str(CATEGORY_IMG_DIR / "default.png")


# Order lifecycle
ORDER_STATUSES = ["pending", "paid", "confirmed", "shipped", "delivered", "cancelled"]

# Payment attempt lifecycle
ATTEMPT_PENDING = "pending"
ATTEMPT_PROCESSING = "processing"
ATTEMPT_COMPLETED = "completed"
ATTEMPT_FAILED = "failed"


# --------------------------------------------------------------------------------------------------------------------
# Category Table Definition
# --------------------------------------------------------------------------------------------------------------------

class Category(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(unique=True, index=True)
    slug: str = Field(index=True)

    # Platform markup on top of the manufacturer's base price
    markup_percentage: float = 10.0
    image_url: Optional[str] = Field(default=default_category_image)

    # Tree structure (root categories have no parent)
    parent_id: Optional[int] = Field(default=None, foreign_key="category.id")
    level: int = 0

    created_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)


# --------------------------------------------------------------------------------------------------------------------
# Manufacturer Table Definition (Seller side)
# --------------------------------------------------------------------------------------------------------------------

class Manufacturer(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)

    name: str
    mail: str = Field(index=True)
    hashed_password: str
    phone_number: Optional[str] = Field(default=None, index=True)

    date_joined: datetime = Field(default_factory=datetime.utcnow, nullable=False)

    # Business
    business_name: str
    gst_number: Optional[str] = None

    # Address details (pickup address for shipments)
    address: str
    city: str
    state: str
    pincode: str

    # Payout details
    bank_account: Optional[str] = None
    ifsc_code: Optional[str] = None
    beneficiary_name: Optional[str] = None

    is_verified: bool = False
    is_active: bool = True

    # Registered pickup location at Shiprocket, changes when the address changes
    shiprocket_pickup_code: Optional[str] = None


# --------------------------------------------------------------------------------------------------------------------
# Retailer Table Definition (Buyer side)
# --------------------------------------------------------------------------------------------------------------------

class Retailer(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)

    name: str
    mail: str = Field(index=True)
    hashed_password: str
    phone_number: Optional[str] = Field(default=None, index=True)

    date_joined: datetime = Field(default_factory=datetime.utcnow, nullable=False)

    business_name: str
    gst_number: Optional[str] = None

    # Delivery address
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None

    is_verified: bool = False

    # Marketing automation bookkeeping
    reactivation_sent_at: Optional[datetime] = None
    last_weekly_catalog_sent_at: Optional[datetime] = None


# --------------------------------------------------------------------------------------------------------------------
# Admin Table Definition
# --------------------------------------------------------------------------------------------------------------------

class Admin(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    mail: str = Field(unique=True, index=True)
    hashed_password: str


# --------------------------------------------------------------------------------------------------------------------
# Product Table Definition
# --------------------------------------------------------------------------------------------------------------------

class Product(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)

    manufacturer_id: int = Field(foreign_key="manufacturer.id", index=True)
    category_id: Optional[int] = Field(default=None, foreign_key="category.id", index=True)

    # Variations point at their parent product
    parent_id: Optional[int] = Field(default=None, foreign_key="product.id")

    name: str
    slug: Optional[str] = None
    sku: Optional[str] = None
    description: Optional[str] = None

    # base_price -> manufacturer's price, display_price -> what retailers pay
    base_price: float
    display_price: float
    your_margin: float = 0.0

    moq: int = 1
    stock: int = 0

    image_url: Optional[str] = Field(default=default_product_image)

    # Shipping dimensions describe one MOQ set (kg / cm)
    weight: Optional[float] = None
    length: Optional[float] = None
    breadth: Optional[float] = None
    height: Optional[float] = None

    # GST
    hsn_code: Optional[str] = None
    tax_rate: float = 18.0

    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)


# --------------------------------------------------------------------------------------------------------------------
# Shopping Cart Table Definition
# --------------------------------------------------------------------------------------------------------------------

class ShoppingCart(SQLModel , table=True):

    id: Optional[int] = Field(default=None , primary_key=True)

    # One cart per retailer
    retailer_id: int = Field(foreign_key="retailer.id", unique=True)

    updated_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)

    # Set when the abandoned cart message went out, cleared on every sync
    recovery_sent_at: Optional[datetime] = None


class ShoppingCartItem(SQLModel , table = True):

    id: Optional[int] = Field(default=None , primary_key=True)
    product_id: int = Field(foreign_key="product.id")
    quantity: int

    cart_id: int = Field(foreign_key="shoppingcart.id", index=True)


# --------------------------------------------------------------------------------------------------------------------
# Wishlist Table Definition
# --------------------------------------------------------------------------------------------------------------------

class Wishlist(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    retailer_id: int = Field(foreign_key="retailer.id", index=True)
    product_id: int = Field(foreign_key="product.id")
    created_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)


# --------------------------------------------------------------------------------------------------------------------
# Payment Attempt Table Definition
# --------------------------------------------------------------------------------------------------------------------

# Snapshot of the checkout taken when the Razorpay order is created.
# The webhook (or the verify callback) turns it into orders exactly once.
class PaymentAttempt(SQLModel, table=True):

    __tablename__ = "payment_attempts"

    id: Optional[int] = Field(default=None, primary_key=True)
    razorpay_order_id: str = Field(unique=True, index=True)
    retailer_id: int = Field(foreign_key="retailer.id")

    cart_payload: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    payment_breakdown: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    shipping_address: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    attribution: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))

    payment_option: str = "full"  # "full" or "advance"
    status: str = Field(default=ATTEMPT_PENDING, index=True)
    payment_id: Optional[str] = None

    created_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)
    updated_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)


# --------------------------------------------------------------------------------------------------------------------
# Order Table Definition
# --------------------------------------------------------------------------------------------------------------------

# One row per purchased product. Rows of the same manufacturer share an order_number.
class Order(SQLModel, table=True):

    __tablename__ = "orders"

    id: Optional[int] = Field(default=None, primary_key=True)
    order_number: str = Field(index=True)

    retailer_id: int = Field(foreign_key="retailer.id", index=True)
    manufacturer_id: int = Field(foreign_key="manufacturer.id", index=True)
    product_id: int = Field(foreign_key="product.id")

    quantity: int
    unit_price: float
    total_amount: float

    # GST snapshot
    tax_amount: float = 0.0
    tax_type: Optional[str] = None
    tax_rate_snapshot: Optional[float] = None

    manufacturer_payout: float
    platform_profit: float

    status: str = Field(default="pending", index=True)

    # Payment
    payment_id: Optional[str] = None
    razorpay_order_id: Optional[str] = Field(default=None, index=True)
    payment_type: str = "full"
    paid_amount: float = 0.0
    pending_amount: float = 0.0

    # Shipping
    shipping_address: Optional[str] = None
    shipping_cost: float = 0.0
    courier_name: Optional[str] = None
    courier_company_id: Optional[str] = None
    shipment_id: Optional[str] = None
    awb_code: Optional[str] = Field(default=None, index=True)
    shipping_label_url: Optional[str] = None

    # Ad attribution
    utm_source: Optional[str] = None
    utm_campaign: Optional[str] = None
    fbclid: Optional[str] = None

    created_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)
    paid_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None


# --------------------------------------------------------------------------------------------------------------------
# Payout Table Definition
# --------------------------------------------------------------------------------------------------------------------

class Payout(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    manufacturer_id: int = Field(foreign_key="manufacturer.id", index=True)
    order_id: int = Field(foreign_key="orders.id", unique=True)

    amount: float
    status: str = "pending"
    payment_reference: Optional[str] = None

    created_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)
    completed_at: Optional[datetime] = None


# --------------------------------------------------------------------------------------------------------------------
# Marketing Tables
# --------------------------------------------------------------------------------------------------------------------

# Every catalog a retailer downloaded or was sent (source_page "auto_*" for automated sends)
class CatalogDownload(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    retailer_id: int = Field(foreign_key="retailer.id", index=True)
    category_id: Optional[int] = Field(default=None, foreign_key="category.id")
    source_page: Optional[str] = None

    created_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)
    followup_sent_at: Optional[datetime] = None


# Generated PDF cache
class CategoryCatalog(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    category_id: int = Field(foreign_key="category.id", unique=True)
    pdf_path: str
    updated_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)


# Browse tracking (logged in retailers or guest sessions)
class UserInteraction(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    retailer_id: Optional[int] = Field(default=None, foreign_key="retailer.id", index=True)
    session_id: Optional[str] = None
    product_id: int = Field(foreign_key="product.id")
    interaction_type: str  # "view", "time_spent", ...
    value: float = 1

    created_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)


# WhatsApp conversation log (drives the human takeover check)
class WhatsAppChat(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    mobile: str = Field(index=True)
    message: str
    direction: str  # "inbound" / "outbound"
    status: Optional[str] = None

    # "ai_assistant" for bot replies, anything else on an outbound message is a human
    source: Optional[str] = None
    line: str = "customer"

    created_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)


# --------------------------------------------------------------------------------------------------------------------
# Sourcing Tables
# --------------------------------------------------------------------------------------------------------------------

# Wholesalers the sourcing team is trying to onboard, contacted on the supplier WhatsApp line
class Supplier(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    phone: str = Field(index=True, unique=True)
    category: Optional[str] = None
    city: Optional[str] = None

    status: str = "new"  # "new" / "contacted" / "blocked"
    negotiation_stage: str = "initial"  # "initial" / "catalog_received" / "pricing" / "negotiating"
    is_verified: bool = False
    follow_up_count: int = 0
    last_contacted_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)


# --------------------------------------------------------------------------------------------------------------------
# OTP Tables
# --------------------------------------------------------------------------------------------------------------------

class VerificationOTP(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(index=True)
    otp: str
    expires_at: datetime


class PasswordReset(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(index=True)
    otp: str
    expires_at: datetime
