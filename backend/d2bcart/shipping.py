# Shiprocket integration

# Token login, courier serviceability / rate ranking, pickup location sync,
# shipment creation (AWB, pickup, manifest), tracking and labels.

import hashlib
import logging
import math
import time
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import httpx
from fastapi import HTTPException

from d2bcart.config import SHIPROCKET_BASE_URL, SHIPROCKET_EMAIL, SHIPROCKET_PASSWORD
from d2bcart.database import (
    get_orders_with_parties,
    save_shipment,
    update_manufacturer,
)
from d2bcart.db_models import Manufacturer

logger = logging.getLogger(__name__)


# Couriers we'd rather ship with, matched as case-insensitive substrings
PREFERRED_COURIERS = ["Delhivery", "Blue Dart", "DTDC", "Xpressbees", "Ecom Express", "Shadowfax"]

TOKEN_TTL_SECONDS = 24 * 60 * 60 - 60

DEFAULT_WEIGHT = 0.5
DEFAULT_DIMENSION = 10


class ShiprocketError(Exception):
    pass


# -----------------------------------------------------------------
# Pure helpers
# -----------------------------------------------------------------

def _parse_etd(etd: Optional[str]) -> Optional[datetime]:
    if not etd:
        return None
    for fmt in ("%b %d, %Y", "%Y-%m-%d %H:%M:%S", "%Y-%m-%d", "%d-%m-%Y"):
        try:
            return datetime.strptime(etd, fmt)
        except ValueError:
            continue
    return None


def _summary(courier: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "rate": courier.get("rate"),
        "etd": courier.get("etd"),
        "courier_name": courier.get("courier_name"),
        "id": courier.get("courier_company_id"),
    }


def rank_couriers(couriers: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Trusted couriers first (all couriers when none of them serve the route)."""
    if not couriers:
        return {"couriers": [], "cheapest": None, "fastest": None}

    preferred = [name.lower() for name in PREFERRED_COURIERS]
    trusted = [
        c for c in couriers
        if any(name in (c.get("courier_name") or "").lower() for name in preferred)
    ]
    candidates = sorted(trusted or couriers, key=lambda c: float(c.get("rate") or 0))

    cheapest = candidates[0]

    # Entries without a (parseable) etd never win
    dated = [c for c in candidates if _parse_etd(c.get("etd"))]
    fastest = min(dated, key=lambda c: _parse_etd(c.get("etd"))) if dated else candidates[0]

    return {"couriers": candidates, "cheapest": _summary(cheapest), "fastest": _summary(fastest)}


def package_dimensions(lines: Iterable[Dict[str, Any]]) -> Dict[str, float]:
    """
    Aggregates one package for several lines.

    Each line carries quantity, moq and the product's weight/length/breadth/height,
    where the product measurements describe one MOQ set.
    """
    total_weight = 0.0
    total_volume = 0.0
    max_length = DEFAULT_DIMENSION
    max_breadth = DEFAULT_DIMENSION

    for line in lines:
        sets = line["quantity"] / (line.get("moq") or 1)

        length = line.get("length") or DEFAULT_DIMENSION
        breadth = line.get("breadth") or DEFAULT_DIMENSION
        height = line.get("height") or DEFAULT_DIMENSION

        total_weight += (line.get("weight") or DEFAULT_WEIGHT) * sets
        total_volume += length * breadth * height * sets

        max_length = max(max_length, length)
        max_breadth = max(max_breadth, breadth)

    height = math.ceil(total_volume / (max_length * max_breadth)) or DEFAULT_DIMENSION

    return {
        "weight": round(total_weight, 3),
        "length": max_length,
        "breadth": max_breadth,
        "height": height,
    }


def pickup_location_code(manufacturer: Manufacturer) -> str:
    """Changes whenever the manufacturer's pickup address or phone changes."""
    raw = f"{manufacturer.address}|{manufacturer.city}|{manufacturer.state}|{manufacturer.pincode}|{manufacturer.phone_number}"
    normalized = "".join(raw.lower().split())
    address_hash = hashlib.md5(normalized.encode()).hexdigest()[:6].upper()
    return f"MANUF_{str(manufacturer.id)[:8]}_{address_hash}"


def map_shiprocket_status(current_status: Optional[str], status_id: Optional[int]) -> Optional[str]:
    cs = (current_status or "").upper()
    if cs == "DELIVERED" or status_id == 7:
        return "delivered"
    if cs == "SHIPPED" or status_id == 6:
        return "shipped"
    if "CANCEL" in cs or status_id == 8:
        return "cancelled"
    return None


# -----------------------------------------------------------------
# API client
# -----------------------------------------------------------------

class ShiprocketClient:

    def __init__(
        self,
        email: Optional[str] = SHIPROCKET_EMAIL,
        password: Optional[str] = SHIPROCKET_PASSWORD,
        base_url: str = SHIPROCKET_BASE_URL,
        timeout: float = 20.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.email = email
        self.password = password
        self.base_url = base_url.rstrip("/")
        self.timeout = httpx.Timeout(timeout)
        self.transport = transport

        self._token: Optional[str] = None
        self._token_expiry: float = 0.0

    # Auth --------------------------------------------------------

    def _login(self) -> str:
        if not self.email or not self.password:
            raise ShiprocketError("Shiprocket credentials not configured")

        logger.info("[Shiprocket] Token expired or missing. Logging in...")
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(f"{self.base_url}/auth/login", json={"email": self.email, "password": self.password})
        except httpx.HTTPError as e:
            raise ShiprocketError(f"Shiprocket authentication failed: {e}") from e

        token = response.json().get("token") if response.is_success else None
        if not token:
            raise ShiprocketError("Shiprocket authentication failed")
        return token

    def get_token(self) -> str:
        now = time.time()
        if not self._token or now > self._token_expiry:
            self._token = self._login()
            self._token_expiry = now + TOKEN_TTL_SECONDS
        return self._token

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.get_token()}"}
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.request(method, f"{self.base_url}{path}", headers=headers, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"[Shiprocket] {method} {path} failed: {e}")
            raise ShiprocketError(str(e)) from e

        try:
            return response.json()
        except ValueError:
            raise ShiprocketError(f"Unexpected response from Shiprocket ({response.status_code})")

    # Rates -------------------------------------------------------

    def serviceability(self, pickup_pincode: str, delivery_pincode: str, weight: float = DEFAULT_WEIGHT, cod: int = 0) -> List[Dict[str, Any]]:
        params = {
            "pickup_postcode": pickup_pincode,
            "delivery_postcode": delivery_pincode,
            "weight": str(weight),
            "cod": str(cod),
        }
        data = self._request("GET", "/courier/serviceability/", params=params)
        if data.get("status") != 200:
            raise ShiprocketError(data.get("message") or "Serviceability check failed")
        return (data.get("data") or {}).get("available_courier_companies") or []

    def estimate(self, pickup_pincode: str, delivery_pincode: str, weight: float = DEFAULT_WEIGHT,
                 length: float = DEFAULT_DIMENSION, breadth: float = DEFAULT_DIMENSION,
                 height: float = DEFAULT_DIMENSION, cod: int = 0) -> Dict[str, Any]:
        # Volumetric weight (L*B*H / 5000) is what couriers bill when it exceeds dead weight
        billable = max(weight, (length * breadth * height) / 5000)
        couriers = self.serviceability(pickup_pincode, delivery_pincode, round(billable, 3), cod)
        return rank_couriers(couriers)

    # Pickup locations -------------------------------------------

    def add_pickup_location(self, code: str, manufacturer: Manufacturer) -> Dict[str, Any]:
        address = manufacturer.address or "Market"
        payload = {
            "pickup_location": code,
            "name": manufacturer.business_name or "Manufacturer",
            "email": manufacturer.mail,
            "phone": manufacturer.phone_number,
            # Shiprocket rejects very short address lines
            "address": address if len(address) > 10 else f"Shop 1, {address}",
            "city": manufacturer.city,
            "state": manufacturer.state or "Delhi",
            "country": "India",
            "pin_code": manufacturer.pincode or "110001",
        }
        return self._request("POST", "/settings/company/addpickup", json=payload)

    # Shipments ---------------------------------------------------

    def create_adhoc_order(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/orders/create/adhoc", json=payload)

    def assign_awb(self, shipment_id: Any, courier_id: Optional[str] = None) -> Dict[str, Any]:
        payload = {"shipment_id": shipment_id}
        if courier_id:
            payload["courier_id"] = courier_id
        return self._request("POST", "/courier/assign/awb", json=payload)

    def generate_pickup(self, shipment_id: Any) -> Dict[str, Any]:
        return self._request("POST", "/courier/generate/pickup", json={"shipment_id": [shipment_id]})

    def generate_manifest(self, shipment_id: Any) -> Dict[str, Any]:
        return self._request("POST", "/manifests/generate", json={"shipment_id": [shipment_id]})

    def track(self, awb: str) -> Dict[str, Any]:
        return self._request("GET", f"/courier/track/awb/{awb}")

    def generate_label(self, shipment_id: Any) -> str:
        data = self._request("POST", "/courier/generate/label", json={"shipment_id": [shipment_id]})
        label_url = data.get("label_url")
        if not label_url:
            raise ShiprocketError("Failed to generate label")
        return label_url


# -----------------------------------------------------------------
# Shipment workflow
# -----------------------------------------------------------------

def ensure_pickup_location(client: ShiprocketClient, manufacturer: Manufacturer) -> str:
    code = pickup_location_code(manufacturer)
    existing = manufacturer.shiprocket_pickup_code
    if existing == code:
        return code

    logger.info(f"[Shiprocket] Address changed, registering new pickup: {code}")
    data = client.add_pickup_location(code, manufacturer)

    if data.get("success") or "already exists" in str(data.get("message") or ""):
        update_manufacturer(manufacturer.id, {"shiprocket_pickup_code": code})
        return code

    logger.error(f"[Shiprocket] Pickup creation failed: {data}")
    if existing:
        return existing
    detail = data.get("errors") or data.get("message")
    raise HTTPException(status_code=400, detail=f"Failed to register pickup location: {detail}")


def create_shipment(client: ShiprocketClient, order_ids: List[int]) -> Dict[str, Any]:
    """Ships a group of orders (same manufacturer, same retailer) as one package."""
    if not order_ids:
        raise HTTPException(status_code=400, detail="Order ID(s) required")

    rows = get_orders_with_parties(order_ids)
    if not rows:
        raise HTTPException(status_code=404, detail="Orders not found")

    orders = [row[0] for row in rows]
    primary, _, retailer, manufacturer = rows[0]

    if any(o.manufacturer_id != primary.manufacturer_id or o.retailer_id != primary.retailer_id for o in orders):
        raise HTTPException(status_code=400, detail="Cannot group orders from different manufacturers or to different retailers")

    pickup_code = ensure_pickup_location(client, manufacturer)

    # Anything still owed is collected on delivery
    total_pending = sum(o.pending_amount or 0 for o in orders)
    is_cod = total_pending > 0

    items = []
    for order, product, _, _ in rows:
        selling_price = order.unit_price
        if is_cod:
            pending = order.pending_amount or 0
            selling_price = pending / order.quantity if pending > 0 else 0
        items.append({
            "name": product.name,
            "sku": product.sku or str(product.id),
            "units": order.quantity,
            "selling_price": round(selling_price, 2),
            "discount": "",
            "tax": "",
            "hsn": product.hsn_code or "",
        })

    sub_total = total_pending if is_cod else sum(o.unit_price * o.quantity for o in orders)

    package = package_dimensions(
        {
            "quantity": order.quantity,
            "moq": product.moq,
            "weight": product.weight,
            "length": product.length,
            "breadth": product.breadth,
            "height": product.height,
        }
        for order, product, _, _ in rows
    )

    payload = {
        "order_id": primary.order_number,
        "order_date": primary.created_at.strftime("%Y-%m-%d"),
        "pickup_location": pickup_code,
        "billing_customer_name": retailer.business_name,
        "billing_last_name": "Retailer",
        "billing_address": retailer.address or "Not Provided",
        "billing_city": retailer.city,
        "billing_pincode": retailer.pincode or "110001",
        "billing_state": retailer.state or "Delhi",
        "billing_country": "India",
        "billing_email": retailer.mail,
        "billing_phone": retailer.phone_number,
        "shipping_is_billing": True,
        "order_items": items,
        "payment_method": "COD" if is_cod else "Prepaid",
        "sub_total": round(sub_total, 2),
        **package,
    }

    sr_order = client.create_adhoc_order(payload)
    shipment_id = sr_order.get("shipment_id")
    if not sr_order.get("order_id") or not shipment_id:
        logger.error(f"[Shiprocket] Order creation failed: {sr_order}")
        detail = sr_order.get("message") or sr_order.get("errors")
        raise HTTPException(status_code=400, detail=f"Shiprocket Error: {detail}")

    # Force the chosen courier only for single orders, grouped weight may exceed its limit
    courier_id = primary.courier_company_id if len(orders) == 1 else None
    awb_data = client.assign_awb(shipment_id, courier_id)
    awb_info = ((awb_data.get("response") or {}).get("data") or {})
    awb_code = awb_info.get("awb_code")
    courier_name = awb_info.get("courier_name")

    if not awb_code:
        logger.error(f"[Shiprocket] AWB assignment failed: {awb_data}")
        raise HTTPException(status_code=400, detail=awb_data.get("message") or awb_info.get("awb_assign_error") or "AWB assignment failed")

    client.generate_pickup(shipment_id)
    client.generate_manifest(shipment_id)

    save_shipment([o.id for o in orders], str(shipment_id), awb_code, courier_name)
    logger.info(f"[Shiprocket] Shipment {shipment_id} created for orders {order_ids} (AWB {awb_code}, {'COD' if is_cod else 'Prepaid'})")

    return {"success": True, "shipment_id": str(shipment_id), "awb": awb_code, "courier": courier_name}


def status_from_tracking(data: Dict[str, Any]) -> Optional[str]:
    tracking = data.get("tracking_data") or {}
    tracks = tracking.get("shipment_track") or []
    current = tracks[0].get("current_status") if tracks else None
    return map_shiprocket_status(current, tracking.get("shipment_status"))
