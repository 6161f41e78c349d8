# App


# Importing FastAPI
from fastapi import FastAPI, HTTPException, status, Depends, BackgroundTasks, UploadFile, File, Header, Query, Request, Response

from typing import List, Optional, Dict, Any
import csv
import io
import logging
import os
import re
import uuid

from sqlmodel import Session, select, or_, col
from contextlib import asynccontextmanager
from pydantic import ValidationError

from fastapi.concurrency import run_in_threadpool
from fastapi.responses import FileResponse, JSONResponse

from datetime import datetime, timedelta

from starlette.middleware.sessions import SessionMiddleware
from starlette.responses import RedirectResponse

from d2bcart.config import SECRET_KEY, RAZORPAY_WEBHOOK_SECRET, MSG91_INTEGRATED_NUMBER, SUPPLIER_WA_NUMBER

from d2bcart.auth import (
    hash_password,
    verify_password,
    create_access_token,
    get_current_retailer,
    get_current_manufacturer,
    get_current_admin,
    get_optional_retailer,

    oauth, # Google OAuth

    # SMTP OTP
    send_otp_email,
    send_verification_email,
    generate_otp
)

from d2bcart.database import (
    create_db_and_tables,
    engine,

    # Users
    add_retailer,
    add_manufacturer,
    get_retailer_by_email,
    get_retailer_by_phone,
    get_retailer_by_id,
    update_retailer,
    get_manufacturer_by_email,
    get_manufacturer_by_id,
    update_manufacturer,
    get_admin_by_email,
    list_users,
    set_user_verification,
    save_verification_otp,
    verify_user_account,

    # Catalogue
    add_category,
    get_all_categories,
    update_category,
    delete_category,
    get_category_ancestors,
    get_category_children,
    sync_category_prices,
    add_product,
    get_product_by_id,
    get_product_variations,
    get_products_by_manufacturer,
    update_product_details,

    # Cart
    get_detailed_cart_items,
    add_item_to_cart,
    sync_cart,
    get_cart_lines,
    toggle_wishlist,
    get_wishlist_products,

    # Orders
    get_orders_by_retailer,
    get_orders_by_manufacturer,
    get_all_orders,
    get_order_by_id,
    update_order_status,
    update_orders_by_awb,
    get_orders_by_shipment,
    save_shipping_label,

    # Payouts / admin
    get_pending_payouts,
    mark_payout_paid,
    get_manufacturer_earnings,
    get_admin_stats,
    get_recent_chats,
    add_supplier,
    list_suppliers,
    update_supplier,

    # Tracking
    log_catalog_download,
    log_interaction,
)

from d2bcart.db_models import Admin, Manufacturer, Retailer, PasswordReset, Product, Category

from d2bcart.schemas import *

from d2bcart.assistant import AssistantClient, AssistantError, handle_inbound, send_manual_message
from d2bcart.attribution import ConversionsClient, attribution_from_checkout
from d2bcart.catalog import CATALOG_FILENAME, catalog_filename, catalog_path, generate_catalog, generate_invoice, google_feed, facebook_feed
from d2bcart.marketing import (
    check_cron_auth,
    abandoned_cart_job,
    catalog_followup_job,
    reactivation_job,
    weekly_catalog_job,
    daily_remarketing_job,
    run_unified,
    supplier_followup_job,
    handle_browse_event,
)
from d2bcart.messaging import WhatsAppClient, WhatsAppError
from d2bcart.payments import (
    RazorpayClient,
    RazorpayError,
    IN_PROGRESS,
    build_checkout,
    mark_attempt_failed,
    materialize_orders,
    quote_shipping,
    start_payment,
    validate_cart_lines,
    verify_payment_signature,
    verify_webhook_signature,
)
from d2bcart.shipping import (
    ShiprocketClient,
    ShiprocketError,
    create_shipment,
    map_shiprocket_status,
    package_dimensions,
    rank_couriers,
    status_from_tracking,
)

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


# -----------------------------
# Building the App
# -----------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    create_db_and_tables()
    yield

app = FastAPI(
    title="D2B Cart",
    lifespan=lifespan
)

app.add_middleware(SessionMiddleware, secret_key=SECRET_KEY)


# -----------------------------
# Integration clients
# -----------------------------

# One client per process (Shiprocket caches its login token)
razorpay_client = RazorpayClient()
shiprocket_client = ShiprocketClient()
whatsapp_client = WhatsAppClient()
assistant_client = AssistantClient()
capi_client = ConversionsClient()


def get_razorpay() -> RazorpayClient:
    return razorpay_client

def get_shiprocket() -> ShiprocketClient:
    return shiprocket_client

def get_whatsapp() -> WhatsAppClient:
    return whatsapp_client

def get_assistant() -> AssistantClient:
    return assistant_client

def get_capi() -> ConversionsClient:
    return capi_client


# Root
@app.get("/")
def root():
    return {"message": "D2B Cart API"}


# Orders come back as (Order, product name) rows
def _order_dicts(rows) -> List[Dict[str, Any]]:
    return [{**order.model_dump(), "product_name": product_name} for order, product_name in rows]


def _order_dict(order) -> Dict[str, Any]:
    product = get_product_by_id(order.product_id)
    return {**order.model_dump(), "product_name": product.name if product else None}


# -------------------------------------------------------------------------------------------------------------------------------------------------
# --- Retailer Auth Endpoints ---
# -------------------------------------------------------------------------------------------------------------------------------------------------

@app.post("/signup/retailer", response_model=RetailerRead, status_code=status.HTTP_201_CREATED, tags=["Retailer Auth"])
async def signup_retailer(retailer: RetailerCreate, background_tasks: BackgroundTasks):

    exists = await run_in_threadpool(get_retailer_by_email, retailer.mail)
    if exists:
        raise HTTPException(status_code=400, detail="Email Already Registered")

    new_retailer = await run_in_threadpool(
        add_retailer,
        name=retailer.name,
        mail=retailer.mail,
        hashed_password=hash_password(retailer.password),
        business_name=retailer.business_name,
        phone_number=retailer.phone_number,
        gst_number=retailer.gst_number,
        address=retailer.address,
        city=retailer.city,
        state=retailer.state,
        pincode=retailer.pincode,
    )

    if not new_retailer:
        raise HTTPException(status_code=500, detail="Failed to create Retailer.")

    otp = generate_otp()
    await run_in_threadpool(save_verification_otp, retailer.mail, otp)
    await send_verification_email(retailer.mail, otp, background_tasks)

    return new_retailer


@app.post("/login/retailer", response_model=Token, tags=["Retailer Auth"])
async def login_retailer(req: LoginRequest):

    retailer = await run_in_threadpool(get_retailer_by_email, req.mail)
    if not retailer:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid Credentials")

    if not retailer.is_verified:
        raise HTTPException(status_code=403, detail="Account not verified. Please verify your email.")

    if not verify_password(req.password, retailer.hashed_password):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid Credentials")

    access_token = create_access_token(data={"sub": retailer.mail, "role": "retailer"})
    return {"access_token": access_token, "token_type": "bearer"}


@app.get("/retailer/me", response_model=RetailerRead, tags=["Retailer Auth"])
async def get_me(retailer: Retailer = Depends(get_current_retailer)):
    return retailer


@app.patch("/retailer/me", response_model=RetailerRead, tags=["Retailer Auth"])
async def update_me(update: RetailerUpdate, retailer: Retailer = Depends(get_current_retailer)):
    return await run_in_threadpool(update_retailer, retailer.id, update.model_dump(exclude_unset=True))


# Phone number + address checkout, no password
@app.post("/auth/guest-register", response_model=Token, status_code=status.HTTP_201_CREATED, tags=["Retailer Auth"])
async def guest_register(req: GuestRegisterRequest):

    phone = re.sub(r"\D", "", req.phone)
    if len(phone) < 10:
        raise HTTPException(status_code=400, detail="Invalid phone number")

    if await run_in_threadpool(get_retailer_by_phone, phone):
        raise HTTPException(status_code=409, detail="Phone number already registered. Please login.")

    mail = req.email or f"{phone}@d2bcart.guest"
    if await run_in_threadpool(get_retailer_by_email, mail):
        raise HTTPException(status_code=409, detail="Email Already Registered")

    guest = await run_in_threadpool(
        add_retailer,
        name=req.name,
        mail=mail,
        hashed_password="",
        business_name=req.business_name or req.name,
        phone_number=phone,
        address=req.address,
        city=req.city,
        state=req.state,
        pincode=req.pincode,
        is_verified=True,
    )
    logger.info(f"[Guest] Registered retailer {guest.id} ({phone})")

    access_token = create_access_token(data={"sub": guest.mail, "role": "retailer"})
    return {"access_token": access_token, "token_type": "bearer"}


# -------------------------------------------------------------------------------------------------------------------------------------------------
# --- Manufacturer Auth Endpoints ---
# -------------------------------------------------------------------------------------------------------------------------------------------------

@app.post("/signup/manufacturer", response_model=ManufacturerRead, status_code=status.HTTP_201_CREATED, tags=["Manufacturer Auth"])
async def signup_manufacturer(manufacturer: ManufacturerCreate, background_tasks: BackgroundTasks):

    exists = await run_in_threadpool(get_manufacturer_by_email, manufacturer.mail)
    if exists:
        raise HTTPException(status_code=400, detail="Email Already Registered")

    new_manufacturer = await run_in_threadpool(
        add_manufacturer,
        name=manufacturer.name,
        mail=manufacturer.mail,
        hashed_password=hash_password(manufacturer.password),
        business_name=manufacturer.business_name,
        address=manufacturer.address,
        city=manufacturer.city,
        state=manufacturer.state,
        pincode=manufacturer.pincode,
        phone_number=manufacturer.phone_number,
        gst_number=manufacturer.gst_number,
    )

    if not new_manufacturer:
        raise HTTPException(status_code=500, detail="Failed to create Manufacturer.")

    otp = generate_otp()
    await run_in_threadpool(save_verification_otp, manufacturer.mail, otp)
    await send_verification_email(manufacturer.mail, otp, background_tasks)

    return new_manufacturer


@app.post("/login/manufacturer", response_model=Token, tags=["Manufacturer Auth"])
async def login_manufacturer(req: LoginRequest):

    manufacturer = await run_in_threadpool(get_manufacturer_by_email, req.mail)
    if not manufacturer or not verify_password(req.password, manufacturer.hashed_password):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid Credentials")

    if not manufacturer.is_verified:
        raise HTTPException(status_code=403, detail="Account not verified. Please verify your email.")

    if not manufacturer.is_active:
        raise HTTPException(status_code=403, detail="Manufacturer account is deactivated")

    access_token = create_access_token(data={"sub": manufacturer.mail, "role": "manufacturer"})
    return {"access_token": access_token, "token_type": "bearer"}


@app.get("/manufacturer/me", response_model=ManufacturerRead, tags=["Manufacturer Auth"])
async def get_manufacturer_me(manufacturer: Manufacturer = Depends(get_current_manufacturer)):
    return manufacturer


# Profile and bank details for payouts
@app.patch("/manufacturer/me", response_model=ManufacturerRead, tags=["Manufacturer Auth"])
async def update_manufacturer_me(update: ManufacturerUpdate, manufacturer: Manufacturer = Depends(get_current_manufacturer)):
    return await run_in_threadpool(update_manufacturer, manufacturer.id, update.model_dump(exclude_unset=True))


# -------------------------------------------------------------------------------------------------------------------------------------------------
# Account Verification Endpoints
# -------------------------------------------------------------------------------------------------------------------------------------------------

@app.post("/auth/verify-account", status_code=status.HTTP_200_OK, tags=["Auth"])
async def verify_account_endpoint(req: AccountVerificationRequest):

    success = await run_in_threadpool(verify_user_account, req.email, req.otp)
    if not success:
        raise HTTPException(status_code=400, detail="Invalid or Expired OTP")

    role = req.role
    if not role:
        if await run_in_threadpool(get_retailer_by_email, req.email): role = "retailer"
        elif await run_in_threadpool(get_manufacturer_by_email, req.email): role = "manufacturer"

    if not role:
        raise HTTPException(status_code=404, detail="User verified but role not found.")

    access_token = create_access_token(data={"sub": req.email, "role": role})

    return {
        "message": "Verified",
        "access_token": access_token,
        "token_type": "bearer",
        "role": role
    }


@app.post("/auth/resend-verification", tags=["Auth"])
async def resend_verification(email: str, background_tasks: BackgroundTasks):
    retailer = await run_in_threadpool(get_retailer_by_email, email)
    manufacturer = await run_in_threadpool(get_manufacturer_by_email, email)

    user = retailer or manufacturer
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    if user.is_verified:
        return {"message": "Account already verified"}

    otp = generate_otp()
    await run_in_threadpool(save_verification_otp, email, otp)
    await send_verification_email(email, otp, background_tasks)

    return {"message": "Verification OTP Resent."}


@app.post("/login/admin", response_model=Token, tags=["Auth"])
async def login_admin(req: LoginRequest):
    admin = await run_in_threadpool(get_admin_by_email, req.mail)
    if not admin or not verify_password(req.password, admin.hashed_password):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid Credentials")

    access_token = create_access_token(data={"sub": admin.mail, "role": "admin"})
    return {"access_token": access_token, "token_type": "bearer"}


# Password Forgot Endpoint
@app.post("/auth/forgot-password", status_code=status.HTTP_200_OK, tags=["Auth"])
async def forgot_password(request: ForgotPasswordRequest, background_tasks: BackgroundTasks):

    email = request.email

    retailer = await run_in_threadpool(get_retailer_by_email, email)
    manufacturer = await run_in_threadpool(get_manufacturer_by_email, email)

    if not (retailer or manufacturer):
        raise HTTPException(status_code=404, detail="User with this mail does not exist")

    otp = generate_otp()
    expiration = datetime.utcnow() + timedelta(minutes=10) # OTP is valid for 10min

    with Session(engine) as session:
        # One live reset OTP per email
        for record in session.exec(select(PasswordReset).where(PasswordReset.email == email)).all():
            session.delete(record)

        session.add(PasswordReset(email=email, otp=otp, expires_at=expiration))
        session.commit()

    await send_otp_email(email, otp, background_tasks)

    return {"message": "OTP sent to your email."}


def _valid_reset_record(session: Session, email: str, otp: str) -> PasswordReset:
    statement = select(PasswordReset).where(
        (PasswordReset.email == email) &
        (PasswordReset.otp == otp)
    )
    reset_record = session.exec(statement).first()

    if not reset_record:
        raise HTTPException(status_code=400, detail="Invalid OTP.")

    if reset_record.expires_at < datetime.utcnow():
        session.delete(reset_record)
        session.commit()
        raise HTTPException(status_code=400, detail="OTP has expired.")

    return reset_record


# Password Reset Endpoint
@app.post("/auth/reset-password", status_code=status.HTTP_200_OK, tags=["Auth"])
def reset_password(request: ResetPasswordRequest):
    with Session(engine) as session:
        reset_record = _valid_reset_record(session, request.email, request.otp)

        new_hashed_password = hash_password(request.new_password)

        # The same email can hold a retailer and a manufacturer account
        user_found = False
        for model in (Retailer, Manufacturer):
            user = session.exec(select(model).where(model.mail == request.email)).first()
            if user:
                user.hashed_password = new_hashed_password
                session.add(user)
                user_found = True

        if not user_found:
            raise HTTPException(status_code=404, detail="User account not found.")

        session.delete(reset_record)
        session.commit()

        return {"message": "Password updated successfully. You can now login."}


# Checks the OTP without consuming it (the frontend 'Next' button)
@app.post("/auth/verify-otp-only", status_code=status.HTTP_200_OK, tags=["Auth"])
def verify_otp_only(request: OTPVerifyRequest):
    with Session(engine) as session:
        _valid_reset_record(session, request.email, request.otp)
        return {"message": "OTP is valid."}


# -------------------------------------------------------------------------------------------------------------------------------------------------
# --- Social Login Endpoints ---
# -------------------------------------------------------------------------------------------------------------------------------------------------

@app.get("/login/google", tags=["Auth"])
async def login_google(request: Request):
    redirect_uri = request.url_for('auth_google')
    return await oauth.google.authorize_redirect(request, redirect_uri)


@app.get("/auth/google", tags=["Auth"])
async def auth_google(request: Request):
    try:
        token = await oauth.google.authorize_access_token(request)
        user_info = token.get('userinfo') or await oauth.google.userinfo(token=token)
    except Exception as e:
        logger.error(f"[Google Auth] {e}")
        raise HTTPException(status_code=400, detail="Google Login Failed")

    email = user_info.get('email')
    if not email:
        raise HTTPException(status_code=400, detail="Google account has no email")
    name = user_info.get('name') or email.split('@')[0]

    manufacturer = await run_in_threadpool(get_manufacturer_by_email, email)
    if manufacturer:
        if not manufacturer.is_verified:
            await run_in_threadpool(update_manufacturer, manufacturer.id, {"is_verified": True})
        access_token = create_access_token(data={"sub": email, "role": "manufacturer"})
        return RedirectResponse(url=f"/manufacturer/dashboard?token={access_token}")

    # Unknown emails become retailers
    retailer = await run_in_threadpool(get_retailer_by_email, email)
    if not retailer:
        random_pass = hash_password(email + uuid.uuid4().hex)
        retailer = await run_in_threadpool(
            add_retailer, name=name, mail=email, hashed_password=random_pass, business_name=name, is_verified=True
        )
    elif not retailer.is_verified:
        await run_in_threadpool(update_retailer, retailer.id, {"is_verified": True})

    access_token = create_access_token(data={"sub": email, "role": "retailer"})
    return RedirectResponse(url=f"/?token={access_token}")


# -------------------------------------------------------------------------------------------------------------------------------------------------
# --- Category Endpoints ---
# -------------------------------------------------------------------------------------------------------------------------------------------------

@app.get("/categories", response_model=List[CategoryRead], tags=["Categories"])
async def list_categories():
    categories = await run_in_threadpool(get_all_categories)
    return sorted(categories, key=lambda c: (c.level, c.name))


@app.get("/categories/{category_id}", response_model=CategoryDetail, tags=["Categories"])
async def category_detail(category_id: int):
    categories = await run_in_threadpool(get_all_categories)
    category = next((c for c in categories if c.id == category_id), None)
    if not category:
        raise HTTPException(status_code=404, detail="Category not found")

    return {
        **category.model_dump(),
        "ancestors": get_category_ancestors(category_id, categories),
        "children": get_category_children(category_id, categories),
    }


def _category_with_descendants(category_id: int, categories: List[Category]) -> List[int]:
    ids = [category_id]
    for child in get_category_children(category_id, categories):
        ids.extend(_category_with_descendants(child.id, categories))
    return ids


# -------------------------------------------------------------------------------------------------------------------------------------------------
# --- Product Endpoints ---
# -------------------------------------------------------------------------------------------------------------------------------------------------

# Storefront listing: active parent products only, variations hang off the detail page
@app.get("/products", response_model=List[ProductRead], tags=["Products"])
def get_all_products(
    q: Optional[str] = None,
    category: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    sort_by: Optional[str] = "newest"
):
    categories = get_all_categories()

    with Session(engine) as session:
        query = select(Product).where(Product.is_active == True).where(Product.parent_id == None)

        if q:
            search_term = f"%{q}%"
            query = query.where(
                or_(
                    col(Product.name).ilike(search_term),
                    col(Product.description).ilike(search_term)
                )
            )

        # Category by id or slug, subcategories included
        if category and category.lower() != "all":
            match = next((c for c in categories if str(c.id) == category or c.slug == category.lower()), None)
            if not match:
                return []
            query = query.where(col(Product.category_id).in_(_category_with_descendants(match.id, categories)))

        if min_price is not None:
            query = query.where(Product.display_price >= min_price)
        if max_price is not None:
            query = query.where(Product.display_price <= max_price)

        if sort_by == "price_low":
            query = query.order_by(Product.display_price.asc())
        elif sort_by == "price_high":
            query = query.order_by(Product.display_price.desc())
        else:
            query = query.order_by(Product.id.desc())

        return session.exec(query).all()


@app.get("/products/{product_id}", response_model=ProductDetail, tags=["Products"])
async def get_product_detail(product_id: int):
    product = await run_in_threadpool(get_product_by_id, product_id)
    if not product or not product.is_active:
        raise HTTPException(status_code=404, detail="Product not found")

    variations = await run_in_threadpool(get_product_variations, product_id)
    manufacturer = await run_in_threadpool(get_manufacturer_by_id, product.manufacturer_id)

    return {
        **product.model_dump(),
        "variations": variations,
        "manufacturer_name": manufacturer.business_name if manufacturer else None,
    }


@app.get("/manufacturer/products", response_model=List[ManufacturerProductRead], tags=["Products"])
async def my_products(manufacturer: Manufacturer = Depends(get_current_manufacturer)):
    return await run_in_threadpool(get_products_by_manufacturer, manufacturer.id)


# Display price comes from the category markup
@app.post("/manufacturer/products", response_model=ManufacturerProductRead, status_code=status.HTTP_201_CREATED, tags=["Products"])
async def create_product(product: ProductCreate, manufacturer: Manufacturer = Depends(get_current_manufacturer)):
    return await run_in_threadpool(add_product, manufacturer.id, product)


@app.patch("/manufacturer/products/{product_id}", response_model=ManufacturerProductRead, tags=["Products"])
async def update_product(product_id: int, update: ProductUpdate, manufacturer: Manufacturer = Depends(get_current_manufacturer)):
    return await run_in_threadpool(update_product_details, product_id, update, manufacturer.id)


# Products are never hard deleted, orders keep pointing at them
@app.delete("/manufacturer/products/{product_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Products"])
async def deactivate_product(product_id: int, manufacturer: Manufacturer = Depends(get_current_manufacturer)):
    await run_in_threadpool(update_product_details, product_id, ProductUpdate(is_active=False), manufacturer.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/manufacturer/products/bulk", response_model=BulkUploadResult, tags=["Products"])
async def bulk_create_products(file: UploadFile = File(...), manufacturer: Manufacturer = Depends(get_current_manufacturer)):
    """
    CSV with a header row. Required columns: name, base_price, stock, category_id.
    Optional: moq, description, sku, image_url, weight, length, breadth, height, hsn_code, tax_rate.
    Bad rows are reported and skipped.
    """
    content = (await file.read()).decode("utf-8-sig")
    reader = csv.DictReader(io.StringIO(content))

    created = 0
    errors = []
    for row_number, row in enumerate(reader, start=2):
        data = {k.strip(): v.strip() for k, v in row.items() if k and v is not None and v.strip() != ""}
        try:
            product = ProductCreate(**data)
            await run_in_threadpool(add_product, manufacturer.id, product)
            created += 1
        except ValidationError as e:
            problems = "; ".join(f"{'.'.join(str(part) for part in err['loc'])} {err['msg']}" for err in e.errors())
            errors.append(f"Row {row_number}: {problems}")
        except HTTPException as e:
            errors.append(f"Row {row_number}: {e.detail}")

    logger.info(f"[Bulk Upload] Manufacturer {manufacturer.id}: {created} created, {len(errors)} errors")
    return {"created": created, "errors": errors}


# -------------------------------------------------------------------------------------------------------------------------------------------------
# --- Cart and Checkout Endpoints ---
# -------------------------------------------------------------------------------------------------------------------------------------------------

@app.get("/cart", response_model=CartRead, tags=["Cart & Checkout"])
async def get_cart(retailer: Retailer = Depends(get_current_retailer)):
    detailed_items = await run_in_threadpool(get_detailed_cart_items, retailer.id)

    total_size = sum(item['quantity'] for item in detailed_items)
    total_price = round(sum(item['total_price'] for item in detailed_items), 2)

    return {"items": detailed_items, "total_size": total_size, "total_price": total_price}


# A negative quantity takes units out, reaching 0 removes the item
@app.post("/cart/add", tags=["Cart & Checkout"])
async def add_to_cart(item: ShoppingCartItemCreate, retailer: Retailer = Depends(get_current_retailer)):
    cart_item = await run_in_threadpool(add_item_to_cart, retailer.id, item.product_id, item.quantity)
    if cart_item is None:
        return {"message": "Item removed", "product_id": item.product_id, "quantity": 0}
    return {"message": "Cart updated", "product_id": cart_item.product_id, "quantity": cart_item.quantity}


# Client side cart is the source of truth, the server copy feeds the abandoned cart job
@app.post("/cart/sync", tags=["Cart & Checkout"])
async def sync_cart_endpoint(req: CartSyncRequest, retailer: Retailer = Depends(get_current_retailer)):
    await run_in_threadpool(sync_cart, retailer.id, [item.model_dump() for item in req.items])
    return {"success": True}


@app.post("/wishlist/{product_id}", tags=["Cart & Checkout"])
async def wishlist_toggle(product_id: int, retailer: Retailer = Depends(get_current_retailer)):
    added = await run_in_threadpool(toggle_wishlist, retailer.id, product_id)
    return {"product_id": product_id, "in_wishlist": added}


@app.get("/wishlist", response_model=List[ProductRead], tags=["Cart & Checkout"])
async def wishlist(retailer: Retailer = Depends(get_current_retailer)):
    return await run_in_threadpool(get_wishlist_products, retailer.id)


def _shipping_address(retailer: Retailer, req: CheckoutRequest) -> Dict[str, str]:
    if req.shipping_address:
        return req.shipping_address.model_dump()
    if not (retailer.address and retailer.pincode and retailer.city and retailer.state):
        raise HTTPException(status_code=400, detail="Shipping address required")
    return {"address": retailer.address, "city": retailer.city, "state": retailer.state, "pincode": retailer.pincode}


async def _prepare_checkout(retailer: Retailer, req: CheckoutRequest, shiprocket: ShiprocketClient):
    shipping_address = _shipping_address(retailer, req)

    cart_lines = await run_in_threadpool(get_cart_lines, retailer.id)
    validate_cart_lines(cart_lines)

    try:
        quotes = await run_in_threadpool(quote_shipping, shiprocket, cart_lines, shipping_address["pincode"])
    except ShiprocketError as e:
        logger.error(f"[Checkout] Shipping quote failed for retailer {retailer.id}: {e}")
        raise HTTPException(status_code=502, detail=f"Shipping quote failed: {e}")

    checkout = build_checkout(
        retailer,
        cart_lines,
        shipping_address,
        quotes,
        payment_option=req.payment_option,
        courier_choice=req.courier_choice,
    )
    return shipping_address, quotes, checkout


@app.post("/checkout/quote", response_model=CheckoutQuote, tags=["Cart & Checkout"])
async def checkout_quote(
    req: CheckoutRequest,
    retailer: Retailer = Depends(get_current_retailer),
    shiprocket: ShiprocketClient = Depends(get_shiprocket),
):
    shipping_address, quotes, checkout = await _prepare_checkout(retailer, req, shiprocket)
    return {
        **checkout,
        "shipping_address": shipping_address,
        "courier_options": {mid: quote["couriers"] for mid, quote in quotes.items()},
    }


@app.post("/checkout/razorpay-order", response_model=RazorpayOrderResponse, tags=["Cart & Checkout"])
async def create_razorpay_order(
    req: CheckoutRequest,
    retailer: Retailer = Depends(get_current_retailer),
    razorpay: RazorpayClient = Depends(get_razorpay),
    shiprocket: ShiprocketClient = Depends(get_shiprocket),
):
    if not razorpay.configured:
        raise HTTPException(status_code=500, detail="Payment gateway configuration missing")

    shipping_address, _, checkout = await _prepare_checkout(retailer, req, shiprocket)
    attribution = attribution_from_checkout(req.utm_source, req.utm_campaign, req.fbclid, req.fbp, req.fbc)

    try:
        return await run_in_threadpool(start_payment, razorpay, retailer, checkout, shipping_address, attribution)
    except RazorpayError as e:
        raise HTTPException(status_code=502, detail=str(e))


# Client callback after the Razorpay popup. The webhook may have created the orders already.
@app.post("/checkout/verify", tags=["Cart & Checkout"])
async def verify_payment(
    req: PaymentVerifyRequest,
    retailer: Retailer = Depends(get_current_retailer),
    whatsapp: WhatsAppClient = Depends(get_whatsapp),
    capi: ConversionsClient = Depends(get_capi),
):
    if not verify_payment_signature(req.razorpay_order_id, req.razorpay_payment_id, req.razorpay_signature):
        logger.warning(f"[Verify] Invalid signature for {req.razorpay_order_id} (retailer {retailer.id})")
        raise HTTPException(status_code=400, detail="Invalid payment signature")

    result = await run_in_threadpool(
        materialize_orders,
        req.razorpay_order_id,
        req.razorpay_payment_id,
        whatsapp=whatsapp,
        capi=capi,
    )
    # The webhook holds the claim, the orders land once it finishes
    if result.http_status != 200 and result.status != IN_PROGRESS:
        raise HTTPException(status_code=result.http_status, detail=result.detail)

    return {"status": result.status, "order_numbers": result.order_numbers, "orders_created": result.orders_created}


# -------------------------------------------------------------------------------------------------------------------------------------------------
# --- Order Endpoints ---
# -------------------------------------------------------------------------------------------------------------------------------------------------

@app.get("/retailer/orders", response_model=List[OrderRead], tags=["Orders"])
async def retailer_orders(retailer: Retailer = Depends(get_current_retailer)):
    rows = await run_in_threadpool(get_orders_by_retailer, retailer.id)
    return _order_dicts(rows)


async def _retailer_order(order_id: int, retailer: Retailer):
    order = await run_in_threadpool(get_order_by_id, order_id)
    if not order or order.retailer_id != retailer.id:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


@app.get("/retailer/orders/{order_id}", response_model=OrderRead, tags=["Orders"])
async def retailer_order(order_id: int, retailer: Retailer = Depends(get_current_retailer)):
    order = await _retailer_order(order_id, retailer)
    return await run_in_threadpool(_order_dict, order)


@app.get("/retailer/orders/{order_id}/invoice", tags=["Orders"])
async def retailer_invoice(order_id: int, retailer: Retailer = Depends(get_current_retailer)):
    order = await _retailer_order(order_id, retailer)

    pdf = await run_in_threadpool(generate_invoice, order.id)
    if pdf is None:
        raise HTTPException(status_code=404, detail="Order not found")

    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="Invoice_{order.order_number}.pdf"'},
    )


@app.get("/manufacturer/orders", response_model=List[OrderAdminRead], tags=["Orders"])
async def manufacturer_orders(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    manufacturer: Manufacturer = Depends(get_current_manufacturer),
):
    rows = await run_in_threadpool(get_orders_by_manufacturer, manufacturer.id, status_filter)
    return _order_dicts(rows)


async def _manufacturer_order(order_id: int, manufacturer: Manufacturer):
    order = await run_in_threadpool(get_order_by_id, order_id)
    if not order or order.manufacturer_id != manufacturer.id:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


@app.get("/manufacturer/orders/{order_id}", response_model=OrderAdminRead, tags=["Orders"])
async def manufacturer_order(order_id: int, manufacturer: Manufacturer = Depends(get_current_manufacturer)):
    order = await _manufacturer_order(order_id, manufacturer)
    return await run_in_threadpool(_order_dict, order)


@app.put("/manufacturer/orders/{order_id}/status", response_model=OrderAdminRead, tags=["Orders"])
async def manufacturer_order_status(
    order_id: int,
    update: OrderStatusUpdate,
    manufacturer: Manufacturer = Depends(get_current_manufacturer),
):
    order = await run_in_threadpool(update_order_status, order_id, update.status, manufacturer.id)
    return await run_in_threadpool(_order_dict, order)


@app.get("/manufacturer/earnings", tags=["Orders"])
async def manufacturer_earnings(manufacturer: Manufacturer = Depends(get_current_manufacturer)):
    earnings = await run_in_threadpool(get_manufacturer_earnings, manufacturer.id)
    return {**earnings, "payouts": [PayoutRead.model_validate(p) for p in earnings["payouts"]]}


# -------------------------------------------------------------------------------------------------------------------------------------------------
# --- Shipping Endpoints ---
# -------------------------------------------------------------------------------------------------------------------------------------------------

@app.post("/shipping/estimate", tags=["Shipping"])
async def shipping_estimate(req: ShippingEstimateRequest, shiprocket: ShiprocketClient = Depends(get_shiprocket)):
    manufacturer = await run_in_threadpool(get_manufacturer_by_id, req.manufacturer_id) if req.manufacturer_id else None
    pickup_pincode = manufacturer.pincode if manufacturer else None

    if not req.delivery_pincode or not pickup_pincode:
        raise HTTPException(status_code=400, detail="Missing pincode details")

    try:
        return await run_in_threadpool(
            shiprocket.estimate,
            pickup_pincode,
            req.delivery_pincode,
            req.weight,
            req.length,
            req.breadth,
            req.height,
            req.cod,
        )
    except ShiprocketError as e:
        raise HTTPException(status_code=502, detail=str(e))


# Courier options for an order that is about to ship
@app.get("/shipping/serviceability/{order_id}", tags=["Shipping"])
async def order_serviceability(
    order_id: int,
    manufacturer: Manufacturer = Depends(get_current_manufacturer),
    shiprocket: ShiprocketClient = Depends(get_shiprocket),
):
    order = await _manufacturer_order(order_id, manufacturer)
    retailer = await run_in_threadpool(get_retailer_by_id, order.retailer_id)
    product = await run_in_threadpool(get_product_by_id, order.product_id)

    delivery_pincode = retailer.pincode if retailer else None
    if not delivery_pincode:
        raise HTTPException(status_code=400, detail="Missing pincode details")

    package = package_dimensions([{
        "quantity": order.quantity,
        "moq": product.moq,
        "weight": product.weight,
        "length": product.length,
        "breadth": product.breadth,
        "height": product.height,
    }])
    cod = 1 if (order.pending_amount or 0) > 0 else 0

    try:
        couriers = await run_in_threadpool(shiprocket.serviceability, manufacturer.pincode, delivery_pincode, package["weight"], cod)
    except ShiprocketError as e:
        raise HTTPException(status_code=502, detail=str(e))

    return {**rank_couriers(couriers), "package": package, "cod": cod}


@app.post("/shipping/create-shipment", tags=["Shipping"])
async def create_shipment_endpoint(
    req: ShipmentCreateRequest,
    manufacturer: Manufacturer = Depends(get_current_manufacturer),
    shiprocket: ShiprocketClient = Depends(get_shiprocket),
):
    order_ids = req.order_ids or ([req.order_id] if req.order_id else [])
    if not order_ids:
        raise HTTPException(status_code=400, detail="Order ID(s) required")

    for order_id in order_ids:
        await _manufacturer_order(order_id, manufacturer)

    try:
        return await run_in_threadpool(create_shipment, shiprocket, order_ids)
    except ShiprocketError as e:
        logger.error(f"[Shiprocket] Shipment for orders {order_ids} failed: {e}")
        raise HTTPException(status_code=502, detail=str(e))


@app.get("/shipping/track/{awb}", tags=["Shipping"])
async def track_shipment(
    awb: str,
    manufacturer: Manufacturer = Depends(get_current_manufacturer),
    shiprocket: ShiprocketClient = Depends(get_shiprocket),
):
    try:
        data = await run_in_threadpool(shiprocket.track, awb)
    except ShiprocketError as e:
        raise HTTPException(status_code=502, detail=str(e))

    new_status = status_from_tracking(data)
    if new_status:
        await run_in_threadpool(update_orders_by_awb, awb, new_status)

    return {"awb": awb, "status": new_status, "tracking": data.get("tracking_data")}


@app.post("/shipping/label/{shipment_id}", tags=["Shipping"])
async def shipping_label(
    shipment_id: str,
    manufacturer: Manufacturer = Depends(get_current_manufacturer),
    shiprocket: ShiprocketClient = Depends(get_shiprocket),
):
    orders = await run_in_threadpool(get_orders_by_shipment, shipment_id)
    if not orders or any(o.manufacturer_id != manufacturer.id for o in orders):
        raise HTTPException(status_code=404, detail="Shipment not found")

    try:
        label_url = await run_in_threadpool(shiprocket.generate_label, shipment_id)
    except ShiprocketError as e:
        raise HTTPException(status_code=502, detail=str(e))

    await run_in_threadpool(save_shipping_label, shipment_id, label_url)
    return {"label_url": label_url}


# Shiprocket status push
@app.post("/shipping/webhook", tags=["Shipping"])
async def shiprocket_webhook(payload: ShiprocketStatusWebhook):
    if not payload.awb:
        raise HTTPException(status_code=400, detail="AWB missing")

    new_status = map_shiprocket_status(payload.current_status, payload.current_status_id)
    logger.info(f"[Shiprocket] Webhook for AWB {payload.awb}: {payload.current_status} ({payload.current_status_id})")

    if not new_status:
        return {"status": "ignored"}

    updated = await run_in_threadpool(update_orders_by_awb, payload.awb, new_status)
    return {"status": new_status, "orders_updated": updated}


# -------------------------------------------------------------------------------------------------------------------------------------------------
# --- Payment Webhook ---
# -------------------------------------------------------------------------------------------------------------------------------------------------

@app.post("/payments/webhook", tags=["Payments"])
async def razorpay_webhook(
    request: Request,
    x_razorpay_signature: Optional[str] = Header(default=None),
    whatsapp: WhatsAppClient = Depends(get_whatsapp),
    capi: ConversionsClient = Depends(get_capi),
):
    # Signature is over the raw bytes, read them before any JSON parsing
    body = await request.body()

    if not x_razorpay_signature:
        logger.warning("[Webhook] Missing signature")
        return JSONResponse(status_code=400, content={"error": "Missing signature"})

    if not RAZORPAY_WEBHOOK_SECRET:
        logger.error("[Webhook] RAZORPAY_WEBHOOK_SECRET is not configured")
        return JSONResponse(status_code=500, content={"error": "Server configuration error"})

    if not verify_webhook_signature(body, x_razorpay_signature, RAZORPAY_WEBHOOK_SECRET):
        logger.error("[Webhook] Invalid signature")
        return JSONResponse(status_code=400, content={"error": "Invalid signature"})

    try:
        event = await request.json()
    except ValueError:
        return JSONResponse(status_code=400, content={"error": "Invalid payload"})
    if not isinstance(event, dict):
        return JSONResponse(status_code=400, content={"error": "Invalid payload"})

    event_type = event.get("event")
    payload = event.get("payload") or {}
    logger.info(f"[Webhook] Received event: {event_type}")

    if event_type == "order.paid":
        order_entity = (payload.get("order") or {}).get("entity") or {}
        payment_entity = (payload.get("payment") or {}).get("entity") or {}
        razorpay_order_id = order_entity.get("id") or payment_entity.get("order_id")
        if not razorpay_order_id:
            return JSONResponse(status_code=400, content={"error": "Order id missing"})

        result = await run_in_threadpool(
            materialize_orders,
            razorpay_order_id,
            payment_entity.get("id"),
            payment_entity.get("amount"),
            whatsapp,
            capi,
        )
        logger.info(f"[Webhook] {razorpay_order_id}: {result.status}")

        content = {"status": result.status, "orders_created": result.orders_created, "order_numbers": result.order_numbers}
        if result.detail:
            content["error"] = result.detail
        return JSONResponse(status_code=result.http_status, content=content)

    if event_type == "payment.failed":
        payment_entity = (payload.get("payment") or {}).get("entity") or {}
        razorpay_order_id = payment_entity.get("order_id")
        marked = False
        if razorpay_order_id:
            marked = await run_in_threadpool(mark_attempt_failed, razorpay_order_id, payment_entity.get("id"))
        logger.info(f"[Webhook] Payment failed for {razorpay_order_id} (attempt marked: {marked})")
        return {"status": "failed_recorded" if marked else "ignored"}

    return {"status": "ignored"}


# -------------------------------------------------------------------------------------------------------------------------------------------------
# --- Admin Endpoints ---
# -------------------------------------------------------------------------------------------------------------------------------------------------

@app.get("/admin/stats", tags=["Admin"])
async def admin_stats(admin: Admin = Depends(get_current_admin)):
    return await run_in_threadpool(get_admin_stats)


@app.get("/admin/users", tags=["Admin"])
async def admin_users(role: str = "retailer", admin: Admin = Depends(get_current_admin)):
    users = await run_in_threadpool(list_users, role)
    schema = RetailerRead if role == "retailer" else ManufacturerRead
    return [schema.model_validate(user) for user in users]


@app.patch("/admin/users/{role}/{user_id}/verification", tags=["Admin"])
async def admin_toggle_verification(role: str, user_id: int, req: VerificationToggle, admin: Admin = Depends(get_current_admin)):
    user = await run_in_threadpool(set_user_verification, role, user_id, req.is_verified)
    logger.info(f"[Admin] {admin.mail} set {role} {user_id} verified={req.is_verified}")
    return {"id": user.id, "role": role, "is_verified": user.is_verified}


@app.get("/admin/orders", response_model=List[OrderAdminRead], tags=["Admin"])
async def admin_orders(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    limit: int = 200,
    admin: Admin = Depends(get_current_admin),
):
    rows = await run_in_threadpool(get_all_orders, status_filter, limit)
    return _order_dicts(rows)


# Admin override, no transition rules
@app.put("/admin/orders/{order_id}/status", response_model=OrderAdminRead, tags=["Admin"])
async def admin_order_status(order_id: int, update: OrderStatusUpdate, admin: Admin = Depends(get_current_admin)):
    order = await run_in_threadpool(update_order_status, order_id, update.status)
    logger.info(f"[Admin] {admin.mail} moved order {order_id} to {update.status}")
    return await run_in_threadpool(_order_dict, order)


@app.post("/admin/categories", response_model=CategoryRead, status_code=status.HTTP_201_CREATED, tags=["Admin"])
async def admin_create_category(category: CategoryCreate, admin: Admin = Depends(get_current_admin)):
    return await run_in_threadpool(add_category, category)


@app.patch("/admin/categories/{category_id}", tags=["Admin"])
async def admin_update_category(category_id: int, update: CategoryUpdate, admin: Admin = Depends(get_current_admin)):
    category, markup_changed = await run_in_threadpool(update_category, category_id, update)

    synced = 0
    if markup_changed:
        synced = await run_in_threadpool(sync_category_prices, category.id, category.markup_percentage)

    return {"category": CategoryRead.model_validate(category), "products_repriced": synced}


@app.delete("/admin/categories/{category_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Admin"])
async def admin_delete_category(category_id: int, admin: Admin = Depends(get_current_admin)):
    await run_in_threadpool(delete_category, category_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get("/admin/payouts/pending", tags=["Admin"])
async def admin_pending_payouts(admin: Admin = Depends(get_current_admin)):
    rows = await run_in_threadpool(get_pending_payouts)
    return [
        {
            "order_id": order.id,
            "order_number": order.order_number,
            "amount": order.manufacturer_payout,
            "delivered_at": order.delivered_at,
            "manufacturer_id": manufacturer.id,
            "business_name": manufacturer.business_name,
            "bank_account": manufacturer.bank_account,
            "ifsc_code": manufacturer.ifsc_code,
            "beneficiary_name": manufacturer.beneficiary_name,
        }
        for order, manufacturer in rows
    ]


@app.post("/admin/payouts/{order_id}/mark-paid", response_model=PayoutRead, tags=["Admin"])
async def admin_mark_payout(order_id: int, req: Optional[PayoutCreate] = None, admin: Admin = Depends(get_current_admin)):
    reference = req.payment_reference if req else "MANUAL_ADMIN_TRANSFER"
    return await run_in_threadpool(mark_payout_paid, order_id, reference)


# Manual reply from the dashboard, pauses the AI assistant for that number
@app.post("/admin/send-whatsapp", tags=["Admin"])
async def admin_send_whatsapp(
    req: AdminWhatsAppRequest,
    admin: Admin = Depends(get_current_admin),
    whatsapp: WhatsAppClient = Depends(get_whatsapp),
):
    try:
        result = await run_in_threadpool(
            send_manual_message, whatsapp, req.mobile, req.message, req.line, MSG91_INTEGRATED_NUMBER, SUPPLIER_WA_NUMBER
        )
    except WhatsAppError as e:
        raise HTTPException(status_code=502, detail=f"Msg91 Failed: {e}")

    if not result.get("success"):
        raise HTTPException(status_code=502, detail={"error": "Msg91 Failed", "details": result.get("error")})
    return result


@app.get("/admin/whatsapp/{mobile}", tags=["Admin"])
async def admin_chat_history(mobile: str, limit: int = 50, admin: Admin = Depends(get_current_admin)):
    return await run_in_threadpool(get_recent_chats, mobile, limit)


@app.get("/admin/suppliers", response_model=List[SupplierRead], tags=["Admin"])
async def admin_list_suppliers(status_filter: Optional[str] = Query(default=None, alias="status"), admin: Admin = Depends(get_current_admin)):
    return await run_in_threadpool(list_suppliers, status_filter)


@app.post("/admin/suppliers", response_model=SupplierRead, status_code=status.HTTP_201_CREATED, tags=["Admin"])
async def admin_add_supplier(req: SupplierCreate, admin: Admin = Depends(get_current_admin)):
    return await run_in_threadpool(add_supplier, req)


@app.patch("/admin/suppliers/{supplier_id}", response_model=SupplierRead, tags=["Admin"])
async def admin_update_supplier(supplier_id: int, req: SupplierUpdate, admin: Admin = Depends(get_current_admin)):
    return await run_in_threadpool(update_supplier, supplier_id, req)


# -------------------------------------------------------------------------------------------------------------------------------------------------
# --- Marketing Endpoints ---
# -------------------------------------------------------------------------------------------------------------------------------------------------

@app.post("/marketing/event", tags=["Marketing"])
async def marketing_event(
    req: MarketingEventRequest,
    retailer: Retailer = Depends(get_current_retailer),
    whatsapp: WhatsAppClient = Depends(get_whatsapp),
):
    return await run_in_threadpool(handle_browse_event, whatsapp, retailer, req.eventType, req.id)


@app.get("/marketing/whatsapp-webhook", tags=["Marketing"])
async def whatsapp_webhook_health():
    return {"status": "Webhook Active"}


@app.post("/marketing/whatsapp-webhook", tags=["Marketing"])
async def whatsapp_webhook(
    request: Request,
    assistant: AssistantClient = Depends(get_assistant),
    whatsapp: WhatsAppClient = Depends(get_whatsapp),
):
    try:
        body = await request.json()
    except ValueError:
        return {"status": "ignored", "reason": "Invalid payload"}

    if not isinstance(body, dict):
        return {"status": "ignored", "reason": "Invalid payload"}

    try:
        return await run_in_threadpool(handle_inbound, body, assistant, whatsapp)
    except AssistantError as e:
        logger.error(f"[WhatsApp Webhook] Assistant failed: {e}")
        return JSONResponse(status_code=502, content={"error": "AI reply failed"})
    except WhatsAppError as e:
        logger.error(f"[WhatsApp Webhook] Reply failed: {e}")
        return JSONResponse(status_code=502, content={"error": "Msg91 Failed"})


@app.get("/marketing/cron/abandoned-cart", tags=["Marketing"])
async def cron_abandoned_cart(authorization: Optional[str] = Header(default=None), whatsapp: WhatsAppClient = Depends(get_whatsapp)):
    check_cron_auth(authorization)
    return await run_in_threadpool(abandoned_cart_job, whatsapp)


@app.get("/marketing/cron/follow-up", tags=["Marketing"])
async def cron_follow_up(authorization: Optional[str] = Header(default=None), whatsapp: WhatsAppClient = Depends(get_whatsapp)):
    check_cron_auth(authorization)
    return await run_in_threadpool(catalog_followup_job, whatsapp)


@app.get("/marketing/cron/reactivation", tags=["Marketing"])
async def cron_reactivation(authorization: Optional[str] = Header(default=None), whatsapp: WhatsAppClient = Depends(get_whatsapp)):
    check_cron_auth(authorization)
    return await run_in_threadpool(reactivation_job, whatsapp)


@app.get("/marketing/cron/weekly-catalog", tags=["Marketing"])
async def cron_weekly_catalog(authorization: Optional[str] = Header(default=None), whatsapp: WhatsAppClient = Depends(get_whatsapp)):
    check_cron_auth(authorization)
    return await run_in_threadpool(weekly_catalog_job, whatsapp)


@app.get("/marketing/cron/daily", tags=["Marketing"])
async def cron_daily(authorization: Optional[str] = Header(default=None), whatsapp: WhatsAppClient = Depends(get_whatsapp)):
    check_cron_auth(authorization)
    return await run_in_threadpool(daily_remarketing_job, whatsapp)


# Single scheduler slot runs every job with a smaller batch
@app.get("/marketing/cron/unified", tags=["Marketing"])
async def cron_unified(authorization: Optional[str] = Header(default=None), whatsapp: WhatsAppClient = Depends(get_whatsapp)):
    check_cron_auth(authorization)
    return await run_in_threadpool(run_unified, whatsapp)


# Sourcing line, kept out of the unified run
@app.get("/marketing/cron/supplier-followups", tags=["Marketing"])
async def cron_supplier_followups(authorization: Optional[str] = Header(default=None), whatsapp: WhatsAppClient = Depends(get_whatsapp)):
    check_cron_auth(authorization)
    return await run_in_threadpool(supplier_followup_job, whatsapp)


# -------------------------------------------------------------------------------------------------------------------------------------------------
# --- Catalog and Feed Endpoints ---
# -------------------------------------------------------------------------------------------------------------------------------------------------

@app.get("/catalog/{category_id}/download", tags=["Catalog & Feeds"])
async def download_catalog(
    category_id: int,
    source_page: Optional[str] = None,
    retailer: Optional[Retailer] = Depends(get_optional_retailer),
):
    path = await run_in_threadpool(generate_catalog, category_id)
    if not path:
        raise HTTPException(status_code=404, detail="Category not found")

    if retailer:
        await run_in_threadpool(log_catalog_download, retailer.id, category_id, source_page or "category_page")

    return FileResponse(path, media_type="application/pdf", filename=catalog_filename(category_id))


# Target of the WhatsApp catalog button
@app.get("/downloads/{filename}", tags=["Catalog & Feeds"])
async def download_file(filename: str):
    path = catalog_path(filename)
    if not path:
        raise HTTPException(status_code=404, detail="File not found")

    if not os.path.exists(path):
        category_id = int(CATALOG_FILENAME.match(filename).group(1))
        path = await run_in_threadpool(generate_catalog, category_id)
        if not path:
            raise HTTPException(status_code=404, detail="File not found")

    return FileResponse(path, media_type="application/pdf", filename=filename)


@app.get("/google-feed", tags=["Catalog & Feeds"])
async def google_merchant_feed():
    feed = await run_in_threadpool(google_feed)
    return Response(content=feed, media_type="application/xml")


@app.get("/facebook-catalog", tags=["Catalog & Feeds"])
async def facebook_catalog_feed():
    feed = await run_in_threadpool(facebook_feed)
    return Response(content=feed, media_type="application/xml")


@app.post("/tracking", tags=["Catalog & Feeds"])
async def track_interaction(
    req: TrackingRequest,
    request: Request,
    response: Response,
    retailer: Optional[Retailer] = Depends(get_optional_retailer),
):
    if not req.productId or not req.interactionType:
        raise HTTPException(status_code=400, detail="Missing fields")

    session_id = request.cookies.get("session_id")
    if not session_id:
        session_id = uuid.uuid4().hex
        response.set_cookie("session_id", session_id, max_age=60 * 60 * 24 * 30, httponly=True, samesite="lax")

    await run_in_threadpool(
        log_interaction,
        req.productId,
        req.interactionType,
        req.value,
        retailer.id if retailer else None,
        session_id,
    )
    return {"success": True}
