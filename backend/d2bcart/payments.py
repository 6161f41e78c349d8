# Checkout, Razorpay and order creation

# Flow:
#   1. build_checkout  -> priced snapshot of the cart (GST, shipping split, payable amount)
#   2. start_payment   -> Razorpay order + pending PaymentAttempt holding that snapshot
#   3. materialize_orders -> called by both the client verify callback and the
#      order.paid webhook, turns the attempt into orders exactly once

import hashlib
import hmac
import logging
import math
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import httpx
from fastapi import HTTPException
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from d2bcart.attribution import ConversionsClient
from d2bcart.config import (
    ADMIN_PHONE,
    ADVANCE_PAYMENT_PERCENT,
    MSG91_TEMPLATE_NEW_ORDER,
    RAZORPAY_KEY_ID,
    RAZORPAY_KEY_SECRET,
    RAZORPAY_WEBHOOK_SECRET,
    SHIPPING_PROFIT_SHARE,
)
from d2bcart.database import clear_cart_items, engine
from d2bcart.db_models import (
    ATTEMPT_COMPLETED,
    ATTEMPT_FAILED,
    ATTEMPT_PENDING,
    ATTEMPT_PROCESSING,
    Manufacturer,
    Order,
    PaymentAttempt,
    Product,
    Retailer,
    ShoppingCart,
    ShoppingCartItem,
)
from d2bcart.messaging import WhatsAppClient, WhatsAppError, new_order_components
from d2bcart.pricing import generate_order_number
from d2bcart.shipping import ShiprocketClient, package_dimensions
from d2bcart.tax import calculate_tax

logger = logging.getLogger(__name__)


RAZORPAY_API_URL = "https://api.razorpay.com/v1"

# Materialization outcomes
PROCESSED = "processed"
ALREADY_PROCESSED = "already_processed"
IN_PROGRESS = "in_progress"
NOT_FOUND = "not_found"
FAILED = "failed"


class RazorpayError(Exception):
    pass


# -----------------------------------------------------------------
# Razorpay
# -----------------------------------------------------------------

class RazorpayClient:

    def __init__(
        self,
        key_id: Optional[str] = RAZORPAY_KEY_ID,
        key_secret: Optional[str] = RAZORPAY_KEY_SECRET,
        base_url: str = RAZORPAY_API_URL,
        timeout: float = 15.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.key_id = key_id
        self.key_secret = key_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = httpx.Timeout(timeout)
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    def create_order(self, amount_rupees: float, receipt: str, notes: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        if not self.configured:
            raise RazorpayError("Payment gateway configuration missing")

        payload = {
            "amount": int(round(amount_rupees * 100)),  # paise
            "currency": "INR",
            "receipt": receipt,
        }
        if notes:
            payload["notes"] = notes

        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport, auth=(self.key_id, self.key_secret)) as client:
                response = client.post(f"{self.base_url}/orders", json=payload)
        except httpx.HTTPError as e:
            logger.error(f"Razorpay Order Creation Failed: {e}")
            raise RazorpayError(str(e)) from e

        data = response.json()
        if not response.is_success or "id" not in data:
            error = (data.get("error") or {}).get("description") if isinstance(data, dict) else None
            logger.error(f"Razorpay Order Creation Failed ({response.status_code}): {data}")
            raise RazorpayError(error or "Payment processing failed")
        return data


def _hmac_sha256(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_payment_signature(order_id: str, payment_id: str, signature: str, secret: Optional[str] = None) -> bool:
    secret = secret or RAZORPAY_KEY_SECRET
    if not secret or not signature:
        return False
    expected = _hmac_sha256(secret, f"{order_id}|{payment_id}".encode())
    return hmac.compare_digest(expected, signature)


def verify_webhook_signature(body: bytes, signature: str, secret: Optional[str] = None) -> bool:
    secret = secret or RAZORPAY_WEBHOOK_SECRET
    if not secret or not signature:
        return False
    return hmac.compare_digest(_hmac_sha256(secret, body), signature)


# -----------------------------------------------------------------
# Checkout
# -----------------------------------------------------------------

def _split_proportionally(total: float, weights: List[float]) -> List[float]:
    """Shares of `total` by weight, rounded to paise. The last share absorbs the remainder."""
    if not weights:
        return []
    weight_sum = sum(weights)
    shares = []
    for weight in weights[:-1]:
        shares.append(round(total * weight / weight_sum, 2) if weight_sum else 0.0)
    shares.append(round(total - sum(shares), 2))
    return shares


def _group_by_manufacturer(cart_lines) -> "OrderedDict[int, list]":
    groups = OrderedDict()
    for line in cart_lines:
        groups.setdefault(line[2].id, []).append(line)
    return groups


def validate_cart_lines(cart_lines: List[Tuple[ShoppingCartItem, Product, Manufacturer]]):
    if not cart_lines:
        raise HTTPException(status_code=400, detail="Cart is empty")

    for item, product, _ in cart_lines:
        if not product.is_active:
            raise HTTPException(status_code=400, detail=f"{product.name} is no longer available")
        if item.quantity < (product.moq or 1):
            raise HTTPException(status_code=400, detail=f"Minimum order quantity for {product.name} is {product.moq}")
        if item.quantity > product.stock:
            raise HTTPException(status_code=400, detail=f"Insufficient stock for {product.name}")


def quote_shipping(shiprocket: ShiprocketClient, cart_lines, delivery_pincode: str) -> Dict[int, Dict[str, Any]]:
    """One courier quote per manufacturer, for that manufacturer's whole package."""
    quotes = {}
    for manufacturer_id, lines in _group_by_manufacturer(cart_lines).items():
        manufacturer = lines[0][2]
        package = package_dimensions(
            {
                "quantity": item.quantity,
                "moq": product.moq,
                "weight": product.weight,
                "length": product.length,
                "breadth": product.breadth,
                "height": product.height,
            }
            for item, product, _ in lines
        )
        quote = shiprocket.estimate(manufacturer.pincode, delivery_pincode, **package)
        if not quote["cheapest"]:
            raise HTTPException(status_code=400, detail=f"No shipping available from {manufacturer.business_name} to {delivery_pincode}")
        quotes[manufacturer_id] = quote
    return quotes


def _pick_courier(quote: Dict[str, Any], chosen_id: Optional[str]) -> Dict[str, Any]:
    if chosen_id is not None:
        for courier in quote.get("couriers", []):
            if str(courier.get("courier_company_id")) == str(chosen_id):
                return {"rate": courier.get("rate"), "courier_name": courier.get("courier_name"), "id": courier.get("courier_company_id")}
    return quote["cheapest"]


def build_checkout(
    retailer: Retailer,
    cart_lines: List[Tuple[ShoppingCartItem, Product, Manufacturer]],
    shipping_address: Dict[str, str],
    shipping_quotes: Dict[int, Dict[str, Any]],
    payment_option: str = "full",
    courier_choice: Optional[Dict[int, str]] = None,
    advance_percent: Optional[float] = None,
) -> Dict[str, Any]:
    """Prices the cart. Display prices are GST exclusive, tax is added per line."""
    validate_cart_lines(cart_lines)

    if advance_percent is None:
        advance_percent = ADVANCE_PAYMENT_PERCENT
    courier_choice = courier_choice or {}
    destination_state = shipping_address.get("state")

    cart_payload = []
    for manufacturer_id, lines in _group_by_manufacturer(cart_lines).items():
        manufacturer = lines[0][2]
        courier = _pick_courier(shipping_quotes[manufacturer_id], courier_choice.get(manufacturer_id))

        priced = []
        for item, product, _ in lines:
            tax = calculate_tax(product.display_price, item.quantity, product.tax_rate, manufacturer.state, destination_state)
            priced.append((item, product, tax))

        ship_costs = _split_proportionally(float(courier["rate"] or 0), [tax.total_amount for _, _, tax in priced])

        for (item, product, tax), ship_cost in zip(priced, ship_costs):
            cart_payload.append({
                "product_id": product.id,
                "manufacturer_id": manufacturer_id,
                "quantity": item.quantity,
                "unit_price": product.display_price,
                "base_price": product.base_price,
                "your_margin": product.your_margin,
                "tax_rate": product.tax_rate,
                "tax_amount": tax.tax_amount,
                "tax_type": tax.tax_type,
                "gross_amount": tax.total_amount,
                "ship_cost": ship_cost,
                "courier_name": courier.get("courier_name"),
                "courier_company_id": str(courier.get("id")) if courier.get("id") is not None else None,
            })

    total_product = round(sum(line["gross_amount"] for line in cart_payload), 2)
    total_tax = round(sum(line["tax_amount"] for line in cart_payload), 2)
    total_shipping = round(sum(line["ship_cost"] for line in cart_payload), 2)

    if payment_option == "advance":
        upfront = math.ceil(total_product * advance_percent / 100)
        payable = round(upfront + total_shipping, 2)
        remaining = round(total_product - upfront, 2)
    else:
        payable = round(total_product + total_shipping, 2)
        remaining = 0.0

    breakdown = {
        "total_product_amount": total_product,
        "total_tax_amount": total_tax,
        "total_shipping_amount": total_shipping,
        "advance_percent": advance_percent,
        "payable_amount": payable,
        "remaining_balance": remaining,
        "payment_option": payment_option,
    }
    return {"cart_payload": cart_payload, "payment_breakdown": breakdown}


def start_payment(
    razorpay: RazorpayClient,
    retailer: Retailer,
    checkout: Dict[str, Any],
    shipping_address: Dict[str, str],
    attribution: Dict[str, Any],
) -> Dict[str, Any]:
    breakdown = checkout["payment_breakdown"]
    receipt = f"rcpt_{retailer.id}_{int(time.time())}"
    rp_order = razorpay.create_order(breakdown["payable_amount"], receipt, notes={"retailer_id": str(retailer.id)})

    attempt = PaymentAttempt(
        razorpay_order_id=rp_order["id"],
        retailer_id=retailer.id,
        cart_payload=checkout["cart_payload"],
        payment_breakdown=breakdown,
        shipping_address=shipping_address,
        attribution=attribution,
        payment_option=breakdown["payment_option"],
        status=ATTEMPT_PENDING,
    )
    try:
        with Session(engine) as session:
            session.add(attempt)
            session.commit()
    except SQLAlchemyError as e:
        # No record means no way to recover the payment later, so stop here
        logger.error(f"Failed to save payment attempt for {rp_order['id']}: {e}")
        raise HTTPException(status_code=500, detail="Order initialization failed. Please try again.")

    logger.info(f"[Checkout] Razorpay order {rp_order['id']} created for retailer {retailer.id} ({breakdown['payable_amount']} INR)")
    return {
        "razorpay_order_id": rp_order["id"],
        "amount": rp_order.get("amount", int(round(breakdown["payable_amount"] * 100))),
        "currency": rp_order.get("currency", "INR"),
        "key_id": razorpay.key_id,
        "payment_breakdown": breakdown,
    }


# -----------------------------------------------------------------
# Order materialization
# -----------------------------------------------------------------

@dataclass
class MaterializeResult:
    status: str
    order_numbers: List[str] = field(default_factory=list)
    orders_created: int = 0
    detail: Optional[str] = None

    @property
    def http_status(self) -> int:
        return {IN_PROGRESS: 409, NOT_FOUND: 404, FAILED: 500}.get(self.status, 200)


def format_address(address: Dict[str, Any]) -> str:
    return f"{address.get('address', '')}, {address.get('city', '')}, {address.get('state', '')} - {address.get('pincode', '')}"


def build_orders(attempt: PaymentAttempt, payment_id: str) -> List[Order]:
    breakdown = attempt.payment_breakdown or {}
    total_product = float(breakdown.get("total_product_amount") or 0)
    remaining = float(breakdown.get("remaining_balance") or 0)
    advance_percent = float(breakdown.get("advance_percent") or 0)
    payment_option = attempt.payment_option or breakdown.get("payment_option") or "full"
    attribution = attempt.attribution or {}
    lines = attempt.cart_payload or []
    now = datetime.utcnow()

    pending_shares = _split_proportionally(remaining, [line["gross_amount"] for line in lines]) if total_product else [0.0] * len(lines)

    order_numbers = {}
    orders = []
    for line, pending in zip(lines, pending_shares):
        manufacturer_id = line["manufacturer_id"]
        if manufacturer_id not in order_numbers:
            order_numbers[manufacturer_id] = generate_order_number()

        gross = line["gross_amount"]
        ship_cost = line.get("ship_cost") or 0
        if payment_option == "advance":
            paid = math.ceil(gross * advance_percent / 100) + ship_cost
        else:
            paid = gross + ship_cost

        orders.append(Order(
            order_number=order_numbers[manufacturer_id],
            retailer_id=attempt.retailer_id,
            manufacturer_id=manufacturer_id,
            product_id=line["product_id"],
            quantity=line["quantity"],
            unit_price=line["unit_price"],
            total_amount=round(gross + ship_cost, 2),
            tax_amount=line.get("tax_amount") or 0,
            tax_type=line.get("tax_type"),
            tax_rate_snapshot=line.get("tax_rate"),
            manufacturer_payout=round(line["base_price"] * line["quantity"], 2),
            platform_profit=round(line["your_margin"] * line["quantity"] + ship_cost * SHIPPING_PROFIT_SHARE, 2),
            status="paid",
            payment_id=payment_id,
            razorpay_order_id=attempt.razorpay_order_id,
            payment_type=payment_option,
            paid_amount=round(paid, 2),
            pending_amount=pending,
            shipping_address=format_address(attempt.shipping_address or {}),
            shipping_cost=ship_cost,
            courier_name=line.get("courier_name"),
            courier_company_id=line.get("courier_company_id"),
            utm_source=attribution.get("utm_source"),
            utm_campaign=attribution.get("utm_campaign"),
            fbclid=attribution.get("fbclid"),
            created_at=now,
            paid_at=now,
        ))
    return orders


def _claim_attempt(attempt_id: int) -> bool:
    """pending -> processing. Only one caller can win."""
    with Session(engine) as session:
        result = session.execute(
            update(PaymentAttempt)
            .where(PaymentAttempt.id == attempt_id)
            .where(PaymentAttempt.status == ATTEMPT_PENDING)
            .values(status=ATTEMPT_PROCESSING, updated_at=datetime.utcnow())
        )
        session.commit()
        return result.rowcount == 1


def _release_attempt(attempt_id: int):
    with Session(engine) as session:
        session.execute(
            update(PaymentAttempt)
            .where(PaymentAttempt.id == attempt_id)
            .where(PaymentAttempt.status == ATTEMPT_PROCESSING)
            .values(status=ATTEMPT_PENDING, updated_at=datetime.utcnow())
        )
        session.commit()


def _insert_orders(attempt_id: int, payment_id: str) -> Tuple[List[Order], PaymentAttempt]:
    """Orders, stock, cart and attempt status in one transaction."""
    with Session(engine) as session:
        attempt = session.get(PaymentAttempt, attempt_id)
        orders = build_orders(attempt, payment_id)

        for order in orders:
            session.add(order)
            product = session.get(Product, order.product_id)
            if product:
                product.stock = max(0, product.stock - order.quantity)
                session.add(product)

        cart = session.exec(select(ShoppingCart).where(ShoppingCart.retailer_id == attempt.retailer_id)).first()
        if cart:
            clear_cart_items(session, cart.id)

        attempt.status = ATTEMPT_COMPLETED
        attempt.payment_id = payment_id
        attempt.updated_at = datetime.utcnow()
        session.add(attempt)

        session.commit()
        for order in orders:
            session.refresh(order)
        session.refresh(attempt)
        return orders, attempt


def materialize_orders(
    razorpay_order_id: str,
    payment_id: Optional[str] = None,
    paid_amount_paise: Optional[int] = None,
    whatsapp: Optional[WhatsAppClient] = None,
    capi: Optional[ConversionsClient] = None,
) -> MaterializeResult:
    payment_id = payment_id or "webhook_recovered"

    with Session(engine) as session:
        # 1. Idempotency: orders already carry this Razorpay order
        existing = session.exec(select(Order.order_number).where(Order.razorpay_order_id == razorpay_order_id)).all()
        if existing:
            logger.info(f"[Webhook] Order {razorpay_order_id} already processed.")
            return MaterializeResult(ALREADY_PROCESSED, order_numbers=sorted(set(existing)))

        # 2. The attempt holds the checkout snapshot
        attempt = session.exec(select(PaymentAttempt).where(PaymentAttempt.razorpay_order_id == razorpay_order_id)).first()
        if not attempt:
            logger.error(f"[Webhook] No attempt found for order {razorpay_order_id}")
            return MaterializeResult(NOT_FOUND, detail="No order context found")
        if attempt.status == ATTEMPT_COMPLETED:
            logger.info(f"[Webhook] Order {razorpay_order_id} already completed.")
            return MaterializeResult(ALREADY_PROCESSED)
        attempt_id = attempt.id

    # 3. Claim it
    if not _claim_attempt(attempt_id):
        logger.info(f"[Webhook] Order {razorpay_order_id} is being processed by another request.")
        return MaterializeResult(IN_PROGRESS)

    # 4. Fan out
    try:
        orders, attempt = _insert_orders(attempt_id, payment_id)
    except Exception as e:
        logger.exception(f"[Webhook] Failed to insert orders for {razorpay_order_id}: {e}")
        _release_attempt(attempt_id)
        return MaterializeResult(FAILED, detail="DB Insert Failed")

    order_numbers = list(OrderedDict.fromkeys(o.order_number for o in orders))
    payable = float(attempt.payment_breakdown.get("payable_amount") or 0)
    logger.info(f"[Webhook] Created {len(orders)} orders {order_numbers} for {razorpay_order_id}")

    if paid_amount_paise is not None and int(paid_amount_paise) != int(round(payable * 100)):
        logger.warning(f"[Webhook] Amount mismatch for {razorpay_order_id}: paid {paid_amount_paise} paise, expected {payable} INR")

    retailer = None
    with Session(engine) as session:
        retailer = session.get(Retailer, attempt.retailer_id)

    # 5. Notify the admin, never undoes the orders
    if whatsapp is not None:
        try:
            result = whatsapp.send_template(
                ADMIN_PHONE,
                MSG91_TEMPLATE_NEW_ORDER,
                new_order_components(order_numbers, retailer.business_name if retailer else "Retailer", payable),
            )
            if not result.get("success"):
                logger.error(f"WhatsApp Notification Failed: {result.get('error')}")
        except WhatsAppError as e:
            logger.error(f"WhatsApp Notification Failed: {e}")

    # 6. Purchase conversion
    if capi is not None:
        attribution = attempt.attribution or {}
        capi.send_event(
            "Purchase",
            {"value": payable, "currency": "INR", "order_id": order_numbers[0] if order_numbers else razorpay_order_id},
            {
                "email": retailer.mail if retailer else None,
                "phone": retailer.phone_number if retailer else None,
                "fbp": attribution.get("fbp"),
                "fbc": attribution.get("fbc"),
            },
        )

    return MaterializeResult(PROCESSED, order_numbers=order_numbers, orders_created=len(orders))


def mark_attempt_failed(razorpay_order_id: str, payment_id: Optional[str] = None) -> bool:
    with Session(engine) as session:
        result = session.execute(
            update(PaymentAttempt)
            .where(PaymentAttempt.razorpay_order_id == razorpay_order_id)
            .where(PaymentAttempt.status == ATTEMPT_PENDING)
            .values(status=ATTEMPT_FAILED, payment_id=payment_id, updated_at=datetime.utcnow())
        )
        session.commit()
        return result.rowcount == 1
