# WhatsApp marketing automation

# Cron jobs (abandoned cart, catalog follow-up, reactivation, weekly catalog,
# daily remarketing, supplier sourcing follow-up) and the on-site browse
# trigger. Every job is batch limited and returns {"processed", "sent", "errors"}.

import logging
from collections import Counter, OrderedDict
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from fastapi import HTTPException, status
from sqlalchemy import exists
from sqlmodel import Session, select

from d2bcart.catalog import catalog_filename, generate_catalog
from d2bcart.config import (
    CRON_SECRET,
    MSG91_TEMPLATE_CATEGORY_BROWSE,
    MSG91_TEMPLATE_PRODUCT_BROWSE,
    SITE_URL,
    SUPPLIER_WA_NUMBER,
)
from d2bcart.database import engine
from d2bcart.db_models import (
    CatalogDownload,
    Order,
    Product,
    Retailer,
    ShoppingCart,
    ShoppingCartItem,
    Supplier,
    UserInteraction,
    WhatsAppChat,
)
from d2bcart.messaging import WhatsAppClient, WhatsAppError, catalog_button, text_param

logger = logging.getLogger(__name__)


DEFAULT_BATCH = 50


def _report() -> Dict[str, int]:
    return {"processed": 0, "sent": 0, "errors": 0}


def _send(whatsapp: WhatsAppClient, report: Dict[str, int], mobile: str, template: str, components: Dict[str, Any]) -> bool:
    try:
        result = whatsapp.send_template(mobile, template, components)
    except WhatsAppError as e:
        logger.error(f"[Marketing] {template} to {mobile} failed: {e}")
        report["errors"] += 1
        return False

    if not result.get("success"):
        logger.error(f"[Marketing] {template} to {mobile} rejected: {result.get('error')}")
        report["errors"] += 1
        return False

    report["sent"] += 1
    return True


# Retailers a template can reach
def _has_phone():
    return (Retailer.phone_number != None) & (Retailer.phone_number != "")


def check_cron_auth(authorization: Optional[str]):
    if not CRON_SECRET:
        logger.warning("[Cron] CRON_SECRET is not set, running job without authentication")
        return
    if authorization != f"Bearer {CRON_SECRET}":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


# -----------------------------------------------------------------
# Abandoned Cart (hourly)
# -----------------------------------------------------------------

def abandoned_cart_job(whatsapp: WhatsAppClient, now: Optional[datetime] = None, limit: int = DEFAULT_BATCH) -> Dict[str, int]:
    """Carts idle for 1-24h that haven't had a recovery message yet."""
    now = now or datetime.utcnow()
    report = _report()

    with Session(engine) as session:
        carts = session.exec(
            select(ShoppingCart, Retailer)
            .join(Retailer, Retailer.id == ShoppingCart.retailer_id)
            .where(ShoppingCart.updated_at < now - timedelta(hours=1))
            .where(ShoppingCart.updated_at > now - timedelta(hours=24))
            .where(ShoppingCart.recovery_sent_at == None)
            .where(_has_phone())
            .where(exists().where(ShoppingCartItem.cart_id == ShoppingCart.id))
            .order_by(ShoppingCart.updated_at, ShoppingCart.id)
            .limit(limit)
        ).all()

        for cart, retailer in carts:
            report["processed"] += 1
            components = {
                "body_1": text_param(retailer.business_name or "Partner"),
                "body_2": text_param(f"{SITE_URL}/cart"),
                "button_1": {"subtype": "url", "type": "text", "value": "cart"},
            }
            if _send(whatsapp, report, retailer.phone_number, "d2b_abandoned_cart", components):
                cart.recovery_sent_at = now
                session.add(cart)
                session.commit()

    logger.info(f"[Abandoned Cart] {report}")
    return report


# -----------------------------------------------------------------
# Catalog Follow-up (daily)
# -----------------------------------------------------------------

def catalog_followup_job(whatsapp: WhatsAppClient, now: Optional[datetime] = None, limit: int = DEFAULT_BATCH) -> Dict[str, int]:
    """Nudges retailers who downloaded a catalog 3+ days ago and haven't ordered since."""
    now = now or datetime.utcnow()
    report = _report()

    with Session(engine) as session:
        downloads = session.exec(
            select(CatalogDownload, Retailer)
            .join(Retailer, Retailer.id == CatalogDownload.retailer_id)
            .where(CatalogDownload.followup_sent_at == None)
            .where(CatalogDownload.created_at < now - timedelta(days=3))
            .where(_has_phone())
            .order_by(CatalogDownload.created_at, CatalogDownload.id)
            .limit(limit)
        ).all()

        for download, retailer in downloads:
            report["processed"] += 1

            converted = session.exec(
                select(Order.id)
                .where(Order.retailer_id == retailer.id)
                .where(Order.created_at > download.created_at)
                .limit(1)
            ).first()

            if converted is None:
                components = {
                    "body_1": text_param(retailer.business_name or "there"),
                    **catalog_button(f"catalog_{download.category_id or 'all'}.pdf"),
                }
                if not _send(whatsapp, report, retailer.phone_number, "d2b_catalog_followup", components):
                    continue

            # Converted retailers are only marked handled
            download.followup_sent_at = now
            session.add(download)
            session.commit()

    logger.info(f"[Follow-up] {report}")
    return report


# -----------------------------------------------------------------
# Reactivation (daily)
# -----------------------------------------------------------------

def reactivation_job(whatsapp: WhatsAppClient, now: Optional[datetime] = None, limit: int = DEFAULT_BATCH) -> Dict[str, int]:
    """Retailers with no order in 30 days (or never ordered since joining 30+ days ago)."""
    now = now or datetime.utcnow()
    cutoff = now - timedelta(days=30)
    report = _report()

    with Session(engine) as session:
        ordered_since_cutoff = exists().where(Order.retailer_id == Retailer.id).where(Order.created_at >= cutoff)
        retailers = session.exec(
            select(Retailer)
            .where(Retailer.date_joined < cutoff)
            .where(Retailer.reactivation_sent_at == None)
            .where(_has_phone())
            .where(~ordered_since_cutoff)
            .order_by(Retailer.id)
            .limit(limit)
        ).all()

        for retailer in retailers:
            report["processed"] += 1
            components = {"body_1": text_param(retailer.business_name or "Partner")}
            if _send(whatsapp, report, retailer.phone_number, "d2b_reactivation", components):
                retailer.reactivation_sent_at = now
                session.add(retailer)
                session.commit()

    logger.info(f"[Reactivation] {report}")
    return report


# -----------------------------------------------------------------
# Weekly Catalog (no order in 7 days)
# -----------------------------------------------------------------

def _interest_category(session: Session, retailer_id: int) -> Optional[int]:
    # Last ordered product first, then whatever sits in the cart
    category_id = session.exec(
        select(Product.category_id)
        .join(Order, Order.product_id == Product.id)
        .where(Order.retailer_id == retailer_id)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .limit(1)
    ).first()
    if category_id:
        return category_id

    return session.exec(
        select(Product.category_id)
        .join(ShoppingCartItem, ShoppingCartItem.product_id == Product.id)
        .join(ShoppingCart, ShoppingCart.id == ShoppingCartItem.cart_id)
        .where(ShoppingCart.retailer_id == retailer_id)
        .order_by(ShoppingCartItem.id)
        .limit(1)
    ).first()


def weekly_catalog_job(whatsapp: WhatsAppClient, now: Optional[datetime] = None, limit: int = DEFAULT_BATCH) -> Dict[str, int]:
    now = now or datetime.utcnow()
    week_ago = now - timedelta(days=7)
    report = _report()

    with Session(engine) as session:
        retailers = session.exec(
            select(Retailer)
            .where((Retailer.last_weekly_catalog_sent_at == None) | (Retailer.last_weekly_catalog_sent_at < week_ago))
            .where(_has_phone())
            .order_by(Retailer.id)
            .limit(limit)
        ).all()

        for retailer in retailers:
            report["processed"] += 1

            ordered_recently = session.exec(
                select(Order.id).where(Order.retailer_id == retailer.id).where(Order.created_at > week_ago).limit(1)
            ).first()

            if ordered_recently is None:
                category_id = _interest_category(session, retailer.id)
                components = {"body_1": text_param(retailer.business_name or "Partner")}
                if category_id:
                    template = "d2b_7_days_reminder"
                    components.update(catalog_button(catalog_filename(category_id)))
                else:
                    template = MSG91_TEMPLATE_PRODUCT_BROWSE

                if not _send(whatsapp, report, retailer.phone_number, template, components):
                    continue

            retailer.last_weekly_catalog_sent_at = now
            session.add(retailer)
            session.commit()

    logger.info(f"[Weekly Catalog] {report}")
    return report


# -----------------------------------------------------------------
# Daily Remarketing (recent browsing)
# -----------------------------------------------------------------

def daily_remarketing_job(whatsapp: WhatsAppClient, now: Optional[datetime] = None, limit: int = DEFAULT_BATCH) -> Dict[str, int]:
    """Sends the catalog of the category each retailer browsed most in the last 24h."""
    now = now or datetime.utcnow()
    report = _report()

    with Session(engine) as session:
        recently_sent = exists().where(CatalogDownload.retailer_id == UserInteraction.retailer_id).where(
            CatalogDownload.created_at > now - timedelta(hours=20)
        )
        interactions = session.exec(
            select(UserInteraction.retailer_id, Product.category_id)
            .join(Product, Product.id == UserInteraction.product_id)
            .join(Retailer, Retailer.id == UserInteraction.retailer_id)
            .where(UserInteraction.created_at > now - timedelta(hours=24))
            .where(Product.category_id != None)
            .where(_has_phone())
            .where(~recently_sent)
            .order_by(UserInteraction.created_at)
        ).all()

        counts: "OrderedDict[int, Counter]" = OrderedDict()
        for retailer_id, category_id in interactions:
            counts.setdefault(retailer_id, Counter())[category_id] += 1

        for retailer_id, categories in list(counts.items())[:limit]:
            retailer = session.get(Retailer, retailer_id)
            report["processed"] += 1

            top_category, _ = categories.most_common(1)[0]

            if not generate_catalog(top_category, now):
                report["errors"] += 1
                continue

            logger.info(f"[Remarketing] Sending to retailer {retailer_id}, category {top_category}")
            filename = catalog_filename(top_category)
            components = {
                "header_1": {
                    "type": "document",
                    "document": {"link": f"{SITE_URL}/downloads/{filename}", "filename": "Catalog.pdf"},
                }
            }
            if _send(whatsapp, report, retailer.phone_number, "d2b_daily_remarketing", components):
                session.add(CatalogDownload(
                    retailer_id=retailer_id,
                    category_id=top_category,
                    source_page="auto_daily_remarketing",
                    created_at=now,
                ))
                session.commit()

    logger.info(f"[Remarketing] {report}")
    return report


# -----------------------------------------------------------------
# Supplier Sourcing Follow-up (daily, supplier line)
# -----------------------------------------------------------------

MAX_SUPPLIER_FOLLOWUPS = 3
SUPPLIER_FOLLOWUP_SOURCE = "auto_followup"

SUPPLIER_FOLLOWUPS = {
    "initial": "Hi, this is the D2BCart Sourcing Team following up. We are looking for wholesale suppliers. Could you share your product catalog?",
    "catalog_received": "Thanks for sharing your catalog! Could you send your best wholesale prices and MOQ for bulk orders?",
    "pricing": "We are reviewing your prices. To proceed, please share your Visiting Card or GST Certificate for vendor registration.",
    "negotiating": "Hi, we are still keen to partner with you. Let us know if you can offer better rates for bulk quantities.",
}


def supplier_followup_job(whatsapp: WhatsAppClient, now: Optional[datetime] = None, limit: int = 20) -> Dict[str, int]:
    """Follows up unverified suppliers at most once a day, three times in total."""
    now = now or datetime.utcnow()
    day_ago = now - timedelta(hours=24)
    report = _report()

    with Session(engine) as session:
        suppliers = session.exec(
            select(Supplier)
            .where(Supplier.is_verified == False)
            .where(Supplier.follow_up_count < MAX_SUPPLIER_FOLLOWUPS)
            .where((Supplier.last_contacted_at == None) | (Supplier.last_contacted_at < day_ago))
            .where(Supplier.status != "blocked")
            .order_by(Supplier.last_contacted_at, Supplier.id)
            .limit(limit)
        ).all()

        for supplier in suppliers:
            report["processed"] += 1
            message = SUPPLIER_FOLLOWUPS.get(supplier.negotiation_stage) or SUPPLIER_FOLLOWUPS["initial"]

            try:
                result = whatsapp.send_template(
                    supplier.phone, "d2b_ai_response", {"body_1": text_param(message)}, integrated_number=SUPPLIER_WA_NUMBER
                )
            except WhatsAppError as e:
                logger.error(f"[Supplier Follow-up] {supplier.phone} failed: {e}")
                report["errors"] += 1
                continue

            # A rejected template still counts as an attempt
            if result.get("success"):
                report["sent"] += 1
            else:
                logger.error(f"[Supplier Follow-up] {supplier.phone} rejected: {result.get('error')}")
                report["errors"] += 1

            supplier.follow_up_count += 1
            supplier.last_contacted_at = now
            if supplier.status == "new":
                supplier.status = "contacted"
            session.add(supplier)
            session.add(WhatsAppChat(
                mobile=supplier.phone,
                message=message,
                direction="outbound",
                status="sent" if result.get("success") else "failed",
                source=SUPPLIER_FOLLOWUP_SOURCE,
                line="supplier",
                created_at=now,
            ))
            session.commit()

    logger.info(f"[Supplier Follow-up] {report}")
    return report


def run_unified(whatsapp: WhatsAppClient, now: Optional[datetime] = None, limit: int = 20) -> Dict[str, Dict[str, int]]:
    now = now or datetime.utcnow()
    return {
        "abandoned": abandoned_cart_job(whatsapp, now, limit),
        "followup": catalog_followup_job(whatsapp, now, limit),
        "reactivation": reactivation_job(whatsapp, now, limit),
        "weekly": weekly_catalog_job(whatsapp, now, limit),
        "remarketing": daily_remarketing_job(whatsapp, now, limit),
    }


# -----------------------------------------------------------------
# Browse Trigger
# -----------------------------------------------------------------

def handle_browse_event(whatsapp: WhatsAppClient, retailer: Retailer, event_type: Optional[str],
                        target_id: Optional[int], now: Optional[datetime] = None) -> Dict[str, Any]:
    """Sends the category catalog right after a retailer browses it (24h cooldown per category)."""
    now = now or datetime.utcnow()

    if not retailer.phone_number:
        raise HTTPException(status_code=401, detail="Unauthorized or no phone")
    if not target_id or event_type not in ("browse_category", "browse_product"):
        raise HTTPException(status_code=400, detail="Missing parameters")

    components: Dict[str, Any] = {}
    with Session(engine) as session:
        if event_type == "browse_category":
            category_id = target_id
            template = MSG91_TEMPLATE_CATEGORY_BROWSE
        else:
            product = session.get(Product, target_id)
            if not product:
                raise HTTPException(status_code=404, detail="Product not found")
            category_id = product.category_id
            template = MSG91_TEMPLATE_PRODUCT_BROWSE
            components["body_1"] = text_param(product.name)
        source_page = f"auto_{event_type}"

        recent = session.exec(
            select(CatalogDownload.id)
            .where(CatalogDownload.retailer_id == retailer.id)
            .where(CatalogDownload.category_id == category_id)
            .where(CatalogDownload.created_at > now - timedelta(hours=24))
            .where(CatalogDownload.source_page.like("auto_%"))
            .limit(1)
        ).first()
        if recent is not None:
            return {"skipped": True, "reason": "Cooldown active"}

    if not category_id or not generate_catalog(category_id, now):
        raise HTTPException(status_code=500, detail="Failed to generate catalog")

    components.update(catalog_button(catalog_filename(category_id)))
    try:
        result = whatsapp.send_template(retailer.phone_number, template, components)
    except WhatsAppError as e:
        raise HTTPException(status_code=502, detail=f"Msg91 Failed: {e}")

    if not result.get("success"):
        raise HTTPException(status_code=502, detail={"error": "Msg91 Failed", "details": result.get("error")})

    with Session(engine) as session:
        session.add(CatalogDownload(retailer_id=retailer.id, category_id=category_id, source_page=source_page, created_at=now))
        session.commit()

    return {"success": True}
