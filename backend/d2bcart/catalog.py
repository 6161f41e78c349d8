# Documents: category price-list PDFs, GST invoices and the Google / Facebook product feeds

import io
import logging
import os
import re
from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import quote
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.units import cm
from reportlab.platypus import SimpleDocTemplate, Paragraph, Spacer, Table, TableStyle
from sqlmodel import Session, select

from d2bcart.config import CATALOG_DIR, MSG91_INTEGRATED_NUMBER, SITE_URL
from d2bcart.database import engine
from d2bcart.db_models import Category, CategoryCatalog, Manufacturer, Order, Product, Retailer
from d2bcart.tax import CGST_SGST

logger = logging.getLogger(__name__)


BRAND_GREEN = colors.HexColor("#10B981")
CATALOG_CACHE_HOURS = 12
CATALOG_FILENAME = re.compile(r"^catalog_(\d+)\.pdf$")


def catalog_filename(category_id: int) -> str:
    return f"catalog_{category_id}.pdf"


def catalog_path(filename: str) -> Optional[str]:
    """Resolves a public catalog file name, None for anything else."""
    if not CATALOG_FILENAME.match(filename or ""):
        return None
    return os.path.join(CATALOG_DIR, filename)


def _styles():
    styles = getSampleStyleSheet()
    styles.add(ParagraphStyle(name="Brand", parent=styles["Title"], textColor=BRAND_GREEN, alignment=0, fontSize=22))
    styles.add(ParagraphStyle(name="Muted", parent=styles["Normal"], textColor=colors.grey, fontSize=9))
    styles.add(ParagraphStyle(name="Cell", parent=styles["Normal"], fontSize=9, leading=12))
    return styles


def _table_style():
    return TableStyle([
        ("BACKGROUND", (0, 0), (-1, 0), BRAND_GREEN),
        ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
        ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
        ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
        ("FONTSIZE", (0, 0), (-1, -1), 9),
    ])


def _variant_label(parent_name: str, variant_name: str) -> str:
    if variant_name.lower().startswith(parent_name.lower()):
        variant_name = variant_name[len(parent_name):].lstrip(" -").strip()
    return variant_name or "Variant"


# -----------------------------------------------------------------
# Category Catalog
# -----------------------------------------------------------------

def generate_catalog(category_id: int, now: Optional[datetime] = None) -> Optional[str]:
    """Path of the category's price list PDF, regenerated when older than 12h. None for unknown categories."""
    now = now or datetime.utcnow()

    with Session(engine) as session:
        category = session.get(Category, category_id)
        if not category:
            logger.error(f"Category not found: {category_id}")
            return None

        cached = session.exec(select(CategoryCatalog).where(CategoryCatalog.category_id == category_id)).first()
        if cached and cached.updated_at > now - timedelta(hours=CATALOG_CACHE_HOURS) and os.path.exists(cached.pdf_path):
            return cached.pdf_path

        parents = session.exec(
            select(Product)
            .where(Product.category_id == category_id)
            .where(Product.is_active == True)
            .where(Product.parent_id == None)
            .order_by(Product.name)
        ).all()

        variations = {}
        if parents:
            children = session.exec(
                select(Product)
                .where(Product.parent_id.in_([p.id for p in parents]))
                .where(Product.is_active == True)
                .order_by(Product.name)
            ).all()
            for child in children:
                variations.setdefault(child.parent_id, []).append(child)

        styles = _styles()
        rows = [["Product", "MOQ", "Price", "Enquire"]]
        for product in parents:
            link = f"{SITE_URL}/products/{product.slug or product.id}"
            text = f"Hi, I am interested in this product: {product.name} (SKU: {product.sku or 'N/A'}). Link: {link}"
            chat_url = f"https://wa.me/{MSG91_INTEGRATED_NUMBER}?text={quote(text)}"

            names = [f'<link href="{escape(link)}">{escape(product.name)}</link>']
            moqs = [str(product.moq or 1)]
            prices = [f"Rs. {product.display_price:.2f}"]
            for variant in variations.get(product.id, []):
                names.append(f"- {escape(_variant_label(product.name, variant.name))}")
                moqs.append(str(variant.moq or 1))
                prices.append(f"Rs. {variant.display_price:.2f}")

            rows.append([
                Paragraph("<br/>".join(names), styles["Cell"]),
                Paragraph("<br/>".join(moqs), styles["Cell"]),
                Paragraph("<br/>".join(prices), styles["Cell"]),
                Paragraph(f'<link href="{escape(chat_url)}"><font color="#25D366">Chat</font></link>', styles["Cell"]),
            ])

        os.makedirs(CATALOG_DIR, exist_ok=True)
        path = os.path.join(CATALOG_DIR, catalog_filename(category_id))

        doc = SimpleDocTemplate(path, pagesize=A4, topMargin=1.5 * cm, bottomMargin=1.5 * cm)
        elements = [
            Paragraph("<font color='#212121'>D2B</font>Cart", styles["Brand"]),
            Paragraph("B2B MARKETPLACE", styles["Muted"]),
            Spacer(1, 8),
            Paragraph("Wholesale Price List", styles["Normal"]),
            Paragraph(escape(category.name), styles["Heading2"]),
            Paragraph(f"Generated on: {now.strftime('%d %b %Y')}", styles["Muted"]),
            Spacer(1, 12),
        ]
        if len(rows) > 1:
            table = Table(rows, colWidths=[9 * cm, 2 * cm, 3.5 * cm, 2.5 * cm], repeatRows=1)
            table.setStyle(_table_style())
            elements.append(table)
        else:
            elements.append(Paragraph("No products listed in this category yet.", styles["Normal"]))
        doc.build(elements)

        if cached:
            cached.pdf_path = path
            cached.updated_at = now
        else:
            cached = CategoryCatalog(category_id=category_id, pdf_path=path, updated_at=now)
        session.add(cached)
        session.commit()

        logger.info(f"[Catalog] Generated {path} with {len(parents)} products")
        return path


# -----------------------------------------------------------------
# GST Invoice
# -----------------------------------------------------------------

def generate_invoice(order_id: int) -> Optional[bytes]:
    with Session(engine) as session:
        order = session.get(Order, order_id)
        if not order:
            return None
        product = session.get(Product, order.product_id)
        retailer = session.get(Retailer, order.retailer_id)
        manufacturer = session.get(Manufacturer, order.manufacturer_id)

    styles = _styles()
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(buffer, pagesize=A4, topMargin=1.5 * cm, bottomMargin=1.5 * cm)

    elements = [
        Paragraph("<font color='#212121'>D2B</font>Cart", styles["Brand"]),
        Paragraph("TAX INVOICE", styles["Heading2"]),
        Paragraph(f"Invoice No: {order.order_number}-{order.id}", styles["Normal"]),
        Paragraph(f"Date: {order.created_at.strftime('%d %B %Y')}", styles["Normal"]),
        Spacer(1, 12),
    ]

    party = Table([
        ["Sold By", "Billed To"],
        [
            Paragraph(f"{escape(manufacturer.business_name)}<br/>{escape(manufacturer.address)}, {escape(manufacturer.city)}<br/>"
                      f"{escape(manufacturer.state)} - {manufacturer.pincode}<br/>GSTIN: {manufacturer.gst_number or 'N/A'}", styles["Cell"]),
            Paragraph(f"{escape(retailer.business_name)}<br/>{escape(order.shipping_address or '')}<br/>"
                      f"GSTIN: {retailer.gst_number or 'N/A'}", styles["Cell"]),
        ],
    ], colWidths=[8.5 * cm, 8.5 * cm])
    party.setStyle(_table_style())
    elements += [party, Spacer(1, 12)]

    taxable = round(order.unit_price * order.quantity, 2)
    rate = order.tax_rate_snapshot or 0
    if order.tax_type == CGST_SGST:
        half = round(order.tax_amount / 2, 2)
        tax_rows = [[f"CGST @ {rate / 2:g}%", f"{half:.2f}"], [f"SGST @ {rate / 2:g}%", f"{order.tax_amount - half:.2f}"]]
    else:
        tax_rows = [[f"IGST @ {rate:g}%", f"{order.tax_amount:.2f}"]]

    items = Table([
        ["Item", "HSN", "Qty", "Rate", "Taxable Value"],
        [Paragraph(escape(product.name), styles["Cell"]), product.hsn_code or "-", str(order.quantity),
         f"{order.unit_price:.2f}", f"{taxable:.2f}"],
    ], colWidths=[7 * cm, 2.5 * cm, 1.5 * cm, 2.5 * cm, 3.5 * cm])
    items.setStyle(_table_style())
    elements += [items, Spacer(1, 12)]

    summary = Table(
        [["Taxable Value", f"{taxable:.2f}"]]
        + tax_rows
        + [
            ["Shipping", f"{order.shipping_cost:.2f}"],
            ["Grand Total", f"{order.total_amount:.2f}"],
            ["Paid", f"{order.paid_amount:.2f}"],
            ["Balance (Cash on Delivery)", f"{order.pending_amount:.2f}"],
        ],
        colWidths=[12 * cm, 5 * cm],
    )
    summary.setStyle(TableStyle([
        ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
        ("ALIGN", (1, 0), (1, -1), "RIGHT"),
        ("FONTNAME", (0, -3), (-1, -3), "Helvetica-Bold"),
    ]))
    elements.append(summary)
    elements += [Spacer(1, 16), Paragraph("This is a computer generated invoice.", styles["Muted"])]

    doc.build(elements)
    return buffer.getvalue()


# -----------------------------------------------------------------
# Google Merchant Feed
# -----------------------------------------------------------------

def _cdata(value: str) -> str:
    return f"<![CDATA[{(value or '').replace(']]>', ']]]]><![CDATA[>')}]]>"


def _feed_rows(session: Session):
    return session.exec(
        select(Product, Manufacturer.business_name, Category.name)
        .join(Manufacturer, Manufacturer.id == Product.manufacturer_id)
        .join(Category, Category.id == Product.category_id, isouter=True)
        .where(Product.is_active == True)
        .order_by(Product.id)
    ).all()


def google_feed() -> str:
    """RSS 2.0 feed. Prices are per MOQ pack so ads match the minimum spend."""
    with Session(engine) as session:
        rows = _feed_rows(session)
        parent_ids = {p.parent_id for p, _, _ in rows if p.parent_id}

    items = []
    for product, brand, category_name in rows:
        brand = brand or "Generic"
        moq = product.moq or 1
        pack_price = (product.display_price or 0) * moq
        title = f"{brand} {product.name} - Wholesale Bulk Pack ({moq} Units)"
        description = product.description or f"Wholesale {product.name} available in bulk from {brand}."
        item_group = product.parent_id or (product.id if product.id in parent_ids else None)

        lines = [
            "<item>",
            f"<g:id>{product.id}</g:id>",
            f"<g:title>{_cdata(title)}</g:title>",
            f"<g:description>{_cdata(description)}</g:description>",
            f"<g:link>{escape(SITE_URL)}/products/{product.id}</g:link>",
            f"<g:image_link>{escape(product.image_url or '')}</g:image_link>",
            f"<g:brand>{_cdata(brand)}</g:brand>",
            "<g:condition>new</g:condition>",
            f"<g:availability>{'in_stock' if product.stock > 0 else 'out_of_stock'}</g:availability>",
            f"<g:price>{pack_price:.2f} INR</g:price>",
            "<g:unit_pricing_measure>1 ct</g:unit_pricing_measure>",
            f"<g:unit_pricing_base_measure>{moq} ct</g:unit_pricing_base_measure>",
            f"<g:mpn>{escape(product.sku or str(product.id))}</g:mpn>",
            f"<g:identifier_exists>{'yes' if product.sku else 'no'}</g:identifier_exists>",
        ]
        if item_group:
            lines.append(f"<g:item_group_id>{item_group}</g:item_group_id>")
        if category_name:
            lines.append(f"<g:product_type>{_cdata(category_name)}</g:product_type>")
        lines.append("</item>")
        items.append("\n".join(lines))

    return (
        '<?xml version="1.0" encoding="UTF-8" ?>\n'
        '<rss version="2.0" xmlns:g="http://base.google.com/ns/1.0">\n'
        "<channel>\n"
        "<title>D2BCart Wholesale Feed</title>\n"
        f"<link>{escape(SITE_URL)}</link>\n"
        "<description>B2B Product Feed for Google Merchant Center</description>\n"
        + "\n".join(items)
        + "\n</channel>\n</rss>"
    )


def facebook_feed() -> str:
    """RSS feed for the Meta Commerce catalog.

    A parent listing without its own price takes the cheapest variation's
    price and MOQ. Variations deep link to the parent page with ?variant=.
    """
    with Session(engine) as session:
        rows = _feed_rows(session)

    variations = {}
    for product, _, _ in rows:
        if product.parent_id:
            variations.setdefault(product.parent_id, []).append(product)
    slugs = {product.id: product.slug for product, _, _ in rows}

    items = []
    for product, brand, category_name in rows:
        brand = brand or "Generic"
        unit_price = product.display_price or 0
        moq = product.moq or 1

        priced = [v for v in variations.get(product.id, []) if v.display_price and v.display_price > 0]
        if unit_price <= 0 and priced:
            cheapest = min(priced, key=lambda v: v.display_price)
            unit_price = cheapest.display_price
            moq = min(v.moq or 1 for v in priced)
        if unit_price <= 0:
            continue

        pack_price = unit_price * moq
        if product.parent_id:
            link = f"{SITE_URL}/products/{slugs.get(product.parent_id) or product.parent_id}?variant={product.id}"
        else:
            link = f"{SITE_URL}/products/{product.slug or product.id}"

        lines = [
            "<item>",
            f"<g:id>{product.id}</g:id>",
            f"<g:title>{_cdata(f'{product.name} - Wholesale Bulk Pack ({moq} Units)')}</g:title>",
            f"<g:description>{_cdata(product.description or f'Wholesale {product.name} available in bulk from {brand}.')}</g:description>",
            f"<g:link>{escape(link)}</g:link>",
            f"<g:image_link>{escape(product.image_url or '')}</g:image_link>",
            f"<g:brand>{_cdata(brand)}</g:brand>",
            "<g:condition>new</g:condition>",
            f"<g:availability>{'in stock' if product.stock > 0 else 'out of stock'}</g:availability>",
            f"<g:price>{pack_price:.2f} INR</g:price>",
            "<g:google_product_category>1</g:google_product_category>",
            "<g:custom_label_0>Wholesale</g:custom_label_0>",
            f"<g:custom_label_1>{'Bulk' if moq > 1 else 'Single'}</g:custom_label_1>",
            f"<g:custom_label_2>{_cdata(brand)}</g:custom_label_2>",
        ]
        # Stored weight already covers one MOQ set
        if product.weight:
            lines.append(f"<g:shipping_weight>{product.weight:g} kg</g:shipping_weight>")
        if product.parent_id:
            lines.append(f"<g:item_group_id>{product.parent_id}</g:item_group_id>")
        if category_name:
            lines.append(f"<g:product_type>{_cdata(category_name)}</g:product_type>")
        lines.append("</item>")
        items.append("\n".join(lines))

    return (
        '<?xml version="1.0" encoding="UTF-8" ?>\n'
        '<rss version="2.0" xmlns:g="http://base.google.com/ns/1.0">\n'
        "<channel>\n"
        "<title>D2BCart Facebook Data Feed</title>\n"
        f"<link>{escape(SITE_URL)}</link>\n"
        "<description>Wholesale catalog for Meta Commerce Manager</description>\n"
        + "\n".join(items)
        + "\n</channel>\n</rss>"
    )
