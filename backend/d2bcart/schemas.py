# Used for validating and structuring the data my API recieves and returns


    # BaseModel for defining request/response schemas
from pydantic import BaseModel , EmailStr, Field   # EmailStr helps validate proper email structure
from typing import Optional , List, Dict, Any, Literal
from datetime import datetime

# --------------------------------------------------------------------------------------------------------------------------------------------

# -----------------------------
# Retailer Schemas
# -----------------------------

# Scheme for new SignUp Retailers
class RetailerCreate(BaseModel):
    name: str
    mail: EmailStr
    password: str
    business_name: str
    phone_number: Optional[str] = None
    gst_number: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None


class RetailerRead(BaseModel):
    id: int
    name: str
    mail: str
    business_name: str
    phone_number: Optional[str] = None
    gst_number: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None
    is_verified: bool
    date_joined: datetime

    class Config:
        from_attributes = True    # Allows returning SQLModel objects directly


class RetailerUpdate(BaseModel):
    name: Optional[str] = None
    business_name: Optional[str] = None
    phone_number: Optional[str] = None
    gst_number: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None


# Checkout without an account: phone + address is enough
class GuestRegisterRequest(BaseModel):
    phone: str
    name: str
    address: str
    pincode: str
    email: Optional[EmailStr] = None
    business_name: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None

# --------------------------------------------------------------------------------------------------------------------------------------------

# Manufacturer Schemas

class ManufacturerCreate(BaseModel):
    name: str
    mail: EmailStr
    password: str
    business_name: str
    address: str
    city: str
    state: str
    pincode: str
    phone_number: Optional[str] = None
    gst_number: Optional[str] = None


class ManufacturerRead(BaseModel):
    id: int
    name: str
    mail: str
    business_name: str
    phone_number: Optional[str] = None
    gst_number: Optional[str] = None
    address: str
    city: str
    state: str
    pincode: str
    bank_account: Optional[str] = None
    ifsc_code: Optional[str] = None
    beneficiary_name: Optional[str] = None
    is_verified: bool
    is_active: bool
    date_joined: datetime

    class Config:
        from_attributes = True


class ManufacturerUpdate(BaseModel):
    name: Optional[str] = None
    business_name: Optional[str] = None
    phone_number: Optional[str] = None
    gst_number: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None
    bank_account: Optional[str] = None
    ifsc_code: Optional[str] = None
    beneficiary_name: Optional[str] = None

# --------------------------------------------------------------------------------------------------------------------------------------------

class LoginRequest(BaseModel):
    mail: EmailStr
    password: str


class Token(BaseModel):
    access_token: str
    token_type: str


class AccountVerificationRequest(BaseModel):
    email: EmailStr
    otp: str
    role: Optional[str] = None


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    email: EmailStr
    otp: str
    new_password: str


class OTPVerifyRequest(BaseModel):
    email: EmailStr
    otp: str

# --------------------------------------------------------------------------------------------------------------------------------------------

# Category Schemas

class CategoryCreate(BaseModel):
    name: str
    markup_percentage: float = 10.0
    parent_id: Optional[int] = None
    image_url: Optional[str] = None


class CategoryUpdate(BaseModel):
    name: Optional[str] = None
    markup_percentage: Optional[float] = None
    parent_id: Optional[int] = None
    image_url: Optional[str] = None


class CategoryRead(BaseModel):
    id: int
    name: str
    slug: str
    markup_percentage: float
    image_url: Optional[str] = None
    parent_id: Optional[int] = None
    level: int

    class Config:
        from_attributes = True


class CategoryDetail(CategoryRead):
    ancestors: List[CategoryRead] = []
    children: List[CategoryRead] = []

# --------------------------------------------------------------------------------------------------------------------------------------------

# Product Schemas

class ProductCreate(BaseModel):
    name: str
    base_price: float = Field(gt=0)
    stock: int = Field(ge=0)
    category_id: int
    moq: int = Field(default=1, ge=1)
    description: Optional[str] = None
    sku: Optional[str] = None
    image_url: Optional[str] = None
    parent_id: Optional[int] = None
    weight: Optional[float] = None
    length: Optional[float] = None
    breadth: Optional[float] = None
    height: Optional[float] = None
    hsn_code: Optional[str] = None
    tax_rate: float = 18.0


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    base_price: Optional[float] = Field(default=None, gt=0)
    stock: Optional[int] = Field(default=None, ge=0)
    moq: Optional[int] = Field(default=None, ge=1)
    description: Optional[str] = None
    image_url: Optional[str] = None
    weight: Optional[float] = None
    length: Optional[float] = None
    breadth: Optional[float] = None
    height: Optional[float] = None
    hsn_code: Optional[str] = None
    tax_rate: Optional[float] = None
    is_active: Optional[bool] = None


class ProductRead(BaseModel):
    id: int
    manufacturer_id: int
    category_id: Optional[int] = None
    parent_id: Optional[int] = None
    name: str
    slug: Optional[str] = None
    sku: Optional[str] = None
    description: Optional[str] = None
    display_price: float
    moq: int
    stock: int
    image_url: Optional[str] = None
    tax_rate: float
    is_active: bool

    class Config:
        from_attributes = True


# What the owning manufacturer sees
class ManufacturerProductRead(ProductRead):
    base_price: float
    your_margin: float
    weight: Optional[float] = None
    length: Optional[float] = None
    breadth: Optional[float] = None
    height: Optional[float] = None
    hsn_code: Optional[str] = None


class ProductDetail(ProductRead):
    variations: List[ProductRead] = []
    manufacturer_name: Optional[str] = None


class BulkUploadResult(BaseModel):
    created: int
    errors: List[str] = []

# --------------------------------------------------------------------------------------------------------------------------------------------

# Cart Schemas

class ShoppingCartItemCreate(BaseModel):
    product_id : int
    quantity: int


class CartItemRead(BaseModel):
    product_id: int
    name: str
    display_price: float
    image_url: Optional[str] = None
    manufacturer_id: int
    moq: int
    quantity: int
    total_price: float


class CartRead(BaseModel):
    items: List[CartItemRead]
    total_size: int
    total_price: float


class CartSyncItem(BaseModel):
    product_id: Optional[int] = None
    quantity: int = 0


class CartSyncRequest(BaseModel):
    items: List[CartSyncItem]

# --------------------------------------------------------------------------------------------------------------------------------------------

# Checkout Schemas

class ShippingAddress(BaseModel):
    address: str
    city: str
    state: str
    pincode: str


class CheckoutRequest(BaseModel):
    payment_option: Literal["full", "advance"] = "full"

    # Defaults to the retailer's profile address
    shipping_address: Optional[ShippingAddress] = None

    # manufacturer_id -> courier_company_id, otherwise the cheapest courier is used
    courier_choice: Dict[int, str] = {}

    # Ad attribution captured on the storefront
    utm_source: Optional[str] = None
    utm_campaign: Optional[str] = None
    fbclid: Optional[str] = None
    fbp: Optional[str] = None
    fbc: Optional[str] = None


class CheckoutQuote(BaseModel):
    cart_payload: List[Dict[str, Any]]
    payment_breakdown: Dict[str, Any]
    shipping_address: ShippingAddress
    courier_options: Dict[int, List[Dict[str, Any]]] = {}


class RazorpayOrderResponse(BaseModel):
    razorpay_order_id: str
    amount: int
    currency: str
    key_id: Optional[str] = None
    payment_breakdown: Dict[str, Any]


class PaymentVerifyRequest(BaseModel):
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str

# --------------------------------------------------------------------------------------------------------------------------------------------

# Order Schemas

class OrderRead(BaseModel):
    id: int
    order_number: str
    retailer_id: int
    manufacturer_id: int
    product_id: int
    quantity: int
    unit_price: float
    total_amount: float
    tax_amount: float
    tax_type: Optional[str] = None
    status: str
    payment_type: str
    paid_amount: float
    pending_amount: float
    shipping_address: Optional[str] = None
    shipping_cost: float
    courier_name: Optional[str] = None
    awb_code: Optional[str] = None
    shipment_id: Optional[str] = None
    shipping_label_url: Optional[str] = None
    created_at: datetime
    paid_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None

    # Not in the DB model, populated in the endpoint
    product_name: Optional[str] = None

    class Config:
        from_attributes = True


# Manufacturer / admin view also includes the money split
class OrderAdminRead(OrderRead):
    manufacturer_payout: float
    platform_profit: float
    utm_source: Optional[str] = None
    utm_campaign: Optional[str] = None


class OrderStatusUpdate(BaseModel):
    status: str

# --------------------------------------------------------------------------------------------------------------------------------------------

# Shipping Schemas

class ShippingEstimateRequest(BaseModel):
    manufacturer_id: Optional[int] = None
    delivery_pincode: Optional[str] = None
    weight: float = 0.5
    length: float = 10
    breadth: float = 10
    height: float = 10
    cod: int = 0


class ShipmentCreateRequest(BaseModel):
    order_id: Optional[int] = None
    order_ids: List[int] = []


class ShiprocketStatusWebhook(BaseModel):
    awb: Optional[str] = None
    current_status: Optional[str] = None
    current_status_id: Optional[int] = None

# --------------------------------------------------------------------------------------------------------------------------------------------

# Payout Schemas

class PayoutRead(BaseModel):
    id: int
    manufacturer_id: int
    order_id: int
    amount: float
    status: str
    payment_reference: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PayoutCreate(BaseModel):
    payment_reference: str = "MANUAL_ADMIN_TRANSFER"

# --------------------------------------------------------------------------------------------------------------------------------------------

# Admin / Marketing Schemas

class VerificationToggle(BaseModel):
    is_verified: bool


class AdminWhatsAppRequest(BaseModel):
    mobile: str
    message: str
    line: Literal["customer", "supplier"] = "customer"


SupplierStage = Literal["initial", "catalog_received", "pricing", "negotiating"]


class SupplierCreate(BaseModel):
    name: str
    phone: str
    category: Optional[str] = None
    city: Optional[str] = None
    negotiation_stage: SupplierStage = "initial"


class SupplierUpdate(BaseModel):
    status: Optional[Literal["new", "contacted", "blocked"]] = None
    negotiation_stage: Optional[SupplierStage] = None
    is_verified: Optional[bool] = None


class SupplierRead(BaseModel):
    id: int
    name: str
    phone: str
    category: Optional[str] = None
    city: Optional[str] = None
    status: str
    negotiation_stage: str
    is_verified: bool
    follow_up_count: int
    last_contacted_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class MarketingEventRequest(BaseModel):
    eventType: Optional[str] = None
    id: Optional[int] = None


class TrackingRequest(BaseModel):
    productId: Optional[int] = None
    interactionType: Optional[str] = None
    value: float = 1
