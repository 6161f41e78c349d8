# Defining functions to create tables in backend
import os
import logging
from sqlmodel import SQLModel, create_engine, Session, select, func
from sqlalchemy.pool import StaticPool
from typing import Optional, List, Dict, Any, Tuple
from datetime import datetime, timedelta

from fastapi import HTTPException, status

# Import your models
from d2bcart.db_models import (
    Admin,
    CatalogDownload,
    Category,
    Manufacturer,
    Order,
    Payout,
    Product,
    Retailer,
    ShoppingCart,
    ShoppingCartItem,
    Supplier,
    UserInteraction,
    VerificationOTP,
    WhatsAppChat,
    Wishlist,
)
from d2bcart.schemas import CategoryCreate, CategoryUpdate, ProductCreate, ProductUpdate, SupplierCreate, SupplierUpdate
from d2bcart.pricing import calculate_display_price, calculate_margin, slugify
from d2bcart.config import DATA_DIR, DATABASE_URL, DATABASE_ECHO

logger = logging.getLogger(__name__)

# -----------------------------------------------------------------
# Engine
# -----------------------------------------------------------------

def build_engine(url: str):
    if url.startswith("sqlite"):
        if url in ("sqlite://", "sqlite:///:memory:"):
            # Single shared in-memory connection (tests)
            return create_engine(url, echo=DATABASE_ECHO, connect_args={"check_same_thread": False}, poolclass=StaticPool)

        if not os.path.exists(DATA_DIR):
            os.makedirs(DATA_DIR)
        return create_engine(url, echo=DATABASE_ECHO, connect_args={"check_same_thread": False})
    return create_engine(url, echo=DATABASE_ECHO)


engine = build_engine(DATABASE_URL)


# -----------------------------------------------------------------
# Creating Tables
# -----------------------------------------------------------------

def create_db_and_tables():
    SQLModel.metadata.create_all(engine)


# -----------------------------------------------------------------
# Retailer Functions
# -----------------------------------------------------------------
def add_retailer(name: str, mail: str, hashed_password: str, business_name: str, phone_number: str = None, gst_number: str = None, address: str = None, city: str = None, state: str = None, pincode: str = None, is_verified: bool = False):
    with Session(engine) as session:
        retailer = Retailer(
            name=name,
            mail=mail,
            hashed_password=hashed_password,
            business_name=business_name,
            phone_number=phone_number,
            gst_number=gst_number,
            address=address,
            city=city,
            state=state,
            pincode=pincode,
            is_verified=is_verified,
        )
        session.add(retailer)
        session.commit()
        session.refresh(retailer)
        return retailer

def get_retailer_by_email(mail: str):
    with Session(engine) as session:
        statement = select(Retailer).where(Retailer.mail == mail)
        return session.exec(statement).first()

def get_retailer_by_phone(phone: str):
    with Session(engine) as session:
        statement = select(Retailer).where(Retailer.phone_number == phone)
        return session.exec(statement).first()

def get_retailer_by_id(retailer_id: int):
    with Session(engine) as session:
        return session.get(Retailer, retailer_id)

def update_retailer(retailer_id: int, data: Dict[str, Any]):
    with Session(engine) as session:
        retailer = session.get(Retailer, retailer_id)
        if not retailer:
            raise HTTPException(status_code=404, detail="Retailer not found")
        for key, value in data.items():
            setattr(retailer, key, value)
        session.add(retailer)
        session.commit()
        session.refresh(retailer)
        return retailer

# -----------------------------------------------------------------
# Manufacturer Functions
# -----------------------------------------------------------------
def add_manufacturer(name: str, mail: str, hashed_password: str, business_name: str, address: str, city: str, state: str, pincode: str, phone_number: str = None, gst_number: str = None, is_verified: bool = False):
    with Session(engine) as session:
        manufacturer = Manufacturer(
            name=name,
            mail=mail,
            hashed_password=hashed_password,
            business_name=business_name,
            address=address,
            city=city,
            state=state,
            pincode=pincode,
            phone_number=phone_number,
            gst_number=gst_number,
            is_verified=is_verified,
        )
        session.add(manufacturer)
        session.commit()
        session.refresh(manufacturer)
        return manufacturer

def get_manufacturer_by_email(mail: str):
    with Session(engine) as session:
        statement = select(Manufacturer).where(Manufacturer.mail == mail)
        return session.exec(statement).first()

def get_manufacturer_by_id(manufacturer_id: int):
    with Session(engine) as session:
        return session.get(Manufacturer, manufacturer_id)

def update_manufacturer(manufacturer_id: int, data: Dict[str, Any]):
    with Session(engine) as session:
        manufacturer = session.get(Manufacturer, manufacturer_id)
        if not manufacturer:
            raise HTTPException(status_code=404, detail="Manufacturer not found")
        for key, value in data.items():
            setattr(manufacturer, key, value)
        session.add(manufacturer)
        session.commit()
        session.refresh(manufacturer)
        return manufacturer

# -----------------------------------------------------------------
# Admin Functions
# -----------------------------------------------------------------
def add_admin(name: str, mail: str, hashed_password: str):
    with Session(engine) as session:
        admin = Admin(name=name, mail=mail, hashed_password=hashed_password)
        session.add(admin)
        session.commit()
        session.refresh(admin)
        return admin

def get_admin_by_email(mail: str):
    with Session(engine) as session:
        return session.exec(select(Admin).where(Admin.mail == mail)).first()

def set_user_verification(role: str, user_id: int, is_verified: bool):
    model = {"retailer": Retailer, "manufacturer": Manufacturer}.get(role)
    if model is None:
        raise HTTPException(status_code=400, detail="Unknown role")
    with Session(engine) as session:
        user = session.get(model, user_id)
        if not user:
            raise HTTPException(status_code=404, detail="User not found")
        user.is_verified = is_verified
        session.add(user)
        session.commit()
        session.refresh(user)
        return user

def list_users(role: str):
    model = {"retailer": Retailer, "manufacturer": Manufacturer}.get(role)
    if model is None:
        raise HTTPException(status_code=400, detail="Unknown role")
    with Session(engine) as session:
        return session.exec(select(model).order_by(model.date_joined.desc())).all()

# -----------------------------------------------------------------
# Verification Functions
# -----------------------------------------------------------------
def save_verification_otp(email: str, otp: str, valid_minutes: int = 30):
    with Session(engine) as session:
        for record in session.exec(select(VerificationOTP).where(VerificationOTP.email == email)).all():
            session.delete(record)
        session.add(VerificationOTP(email=email, otp=otp, expires_at=datetime.utcnow() + timedelta(minutes=valid_minutes)))
        session.commit()

def verify_user_account(email: str, otp: str) -> bool:
    with Session(engine) as session:
        record = session.exec(
            select(VerificationOTP).where((VerificationOTP.email == email) & (VerificationOTP.otp == otp))
        ).first()
        if not record or record.expires_at < datetime.utcnow():
            return False

        found = False
        for model in (Retailer, Manufacturer):
            user = session.exec(select(model).where(model.mail == email)).first()
            if user:
                user.is_verified = True
                session.add(user)
                found = True

        session.delete(record)
        session.commit()
        return found

# -----------------------------------------------------------------
# Category Functions
# -----------------------------------------------------------------
def add_category(category: CategoryCreate):
    with Session(engine) as session:
        level = 0
        if category.parent_id is not None:
            parent = session.get(Category, category.parent_id)
            if not parent:
                raise HTTPException(status_code=404, detail="Parent category not found")
            level = parent.level + 1

        new_category = Category(
            name=category.name,
            slug=slugify(category.name),
            markup_percentage=category.markup_percentage,
            parent_id=category.parent_id,
            level=level,
        )
        if category.image_url:
            new_category.image_url = category.image_url
        session.add(new_category)
        session.commit()
        session.refresh(new_category)
        return new_category

def get_all_categories() -> List[Category]:
    with Session(engine) as session:
        return session.exec(select(Category).order_by(Category.name)).all()

def update_category(category_id: int, update: CategoryUpdate) -> Tuple[Category, bool]:
    """Returns the category and whether the markup changed."""
    with Session(engine) as session:
        category = session.get(Category, category_id)
        if not category:
            raise HTTPException(status_code=404, detail="Category not found")

        markup_changed = False
        if update.name is not None:
            category.name = update.name
            category.slug = slugify(update.name)
        if update.image_url is not None:
            category.image_url = update.image_url
        if update.parent_id is not None:
            if update.parent_id == category.id:
                raise HTTPException(status_code=400, detail="Category cannot be its own parent")
            parent = session.get(Category, update.parent_id)
            if not parent:
                raise HTTPException(status_code=404, detail="Parent category not found")
            category.parent_id = parent.id
            category.level = parent.level + 1
        if update.markup_percentage is not None and update.markup_percentage != category.markup_percentage:
            category.markup_percentage = update.markup_percentage
            markup_changed = True

        session.add(category)
        session.commit()
        session.refresh(category)
        return category, markup_changed

def delete_category(category_id: int):
    with Session(engine) as session:
        category = session.get(Category, category_id)
        if not category:
            raise HTTPException(status_code=404, detail="Category not found")
        in_use = session.exec(select(Product.id).where(Product.category_id == category_id)).first()
        has_children = session.exec(select(Category.id).where(Category.parent_id == category_id)).first()
        if in_use is not None or has_children is not None:
            raise HTTPException(status_code=409, detail="Category still has products or subcategories")
        session.delete(category)
        session.commit()

# Full path from root -> current
def get_category_ancestors(category_id: int, categories: List[Category]) -> List[Category]:
    by_id = {c.id: c for c in categories}
    ancestors = []
    current = by_id.get(category_id)
    while current:
        ancestors.insert(0, current)
        current = by_id.get(current.parent_id) if current.parent_id else None
    return ancestors

def get_category_children(parent_id: Optional[int], categories: List[Category]) -> List[Category]:
    return sorted([c for c in categories if c.parent_id == parent_id], key=lambda c: c.name)

def sync_category_prices(category_id: int, markup_percentage: float, chunk_size: int = 500) -> int:
    """Re-derives display price and margin for every product in the category."""
    logger.info(f"[SYNC] Syncing prices for category {category_id} with markup {markup_percentage}%")

    with Session(engine) as session:
        products = session.exec(select(Product).where(Product.category_id == category_id)).all()
        logger.info(f"[SYNC] Found {len(products)} products for category {category_id}")

        updated = 0
        for start in range(0, len(products), chunk_size):
            for product in products[start:start + chunk_size]:
                try:
                    base_price = float(product.base_price)
                except (TypeError, ValueError):
                    logger.warning(f"[SYNC] Invalid base_price for product {product.id} ({product.name}): {product.base_price}")
                    continue

                product.display_price = calculate_display_price(base_price, markup_percentage)
                product.your_margin = calculate_margin(product.display_price, base_price)
                session.add(product)
                updated += 1
            session.commit()

        logger.info(f"[SYNC] Successfully updated {updated} products")
        return updated

# -----------------------------------------------------------------
# Product Functions
# -----------------------------------------------------------------
def add_product(manufacturer_id: int, product: ProductCreate):
    with Session(engine) as session:
        category = session.get(Category, product.category_id)
        if not category:
            raise HTTPException(status_code=404, detail="Category not found")

        if product.parent_id is not None:
            parent = session.get(Product, product.parent_id)
            if not parent or parent.manufacturer_id != manufacturer_id:
                raise HTTPException(status_code=404, detail="Parent product not found")

        display_price = calculate_display_price(product.base_price, category.markup_percentage)

        new_product = Product(
            manufacturer_id=manufacturer_id,
            category_id=category.id,
            parent_id=product.parent_id,
            name=product.name,
            slug=slugify(product.name),
            sku=product.sku,
            description=product.description,
            base_price=product.base_price,
            display_price=display_price,
            your_margin=calculate_margin(display_price, product.base_price),
            moq=product.moq,
            stock=product.stock,
            weight=product.weight,
            length=product.length,
            breadth=product.breadth,
            height=product.height,
            hsn_code=product.hsn_code,
            tax_rate=product.tax_rate,
        )
        if product.image_url:
            new_product.image_url = product.image_url
        session.add(new_product)
        session.commit()
        session.refresh(new_product)
        return new_product

def get_product_by_id(product_id: int):
    with Session(engine) as session:
        return session.get(Product, product_id)

def get_product_variations(product_id: int) -> List[Product]:
    with Session(engine) as session:
        statement = select(Product).where(Product.parent_id == product_id).where(Product.is_active == True).order_by(Product.name)
        return session.exec(statement).all()

def get_products_by_manufacturer(manufacturer_id: int) -> List[Product]:
    """Fetches all products belonging to a specific manufacturer."""
    with Session(engine) as session:
        statement = select(Product).where(Product.manufacturer_id == manufacturer_id).order_by(Product.id.desc())
        return session.exec(statement).all()

def update_product_details(product_id: int, product_update: ProductUpdate, manufacturer_id: int):
    with Session(engine) as session:
        product = session.get(Product, product_id)
        if not product:
            raise HTTPException(status_code=404, detail="Product not found")
        if product.manufacturer_id != manufacturer_id:
            raise HTTPException(status_code=403, detail="Not authorized to update this product")

        data = product_update.model_dump(exclude_unset=True)
        for key, value in data.items():
            setattr(product, key, value)

        # Keep derived prices in step with the base price
        if "base_price" in data:
            category = session.get(Category, product.category_id) if product.category_id else None
            markup = category.markup_percentage if category else 0
            product.display_price = calculate_display_price(product.base_price, markup)
            product.your_margin = calculate_margin(product.display_price, product.base_price)

        session.add(product)
        session.commit()
        session.refresh(product)
        return product

# -----------------------------------------------------------------
# Cart Functions
# -----------------------------------------------------------------
def create_cart_for_retailer(retailer_id: int):
    with Session(engine) as session:
        cart = ShoppingCart(retailer_id=retailer_id)
        session.add(cart)
        session.commit()
        session.refresh(cart)
        return cart

def get_cart_by_retailer_id(retailer_id: int):
    with Session(engine) as session:
        statement = select(ShoppingCart).where(ShoppingCart.retailer_id == retailer_id)
        return session.exec(statement).first()

def get_detailed_cart_items(retailer_id: int) -> List[Dict[str, Any]]:
    """Returns cart items joined with product details."""
    with Session(engine) as session:
        cart = session.exec(select(ShoppingCart).where(ShoppingCart.retailer_id == retailer_id)).first()
        if not cart:
            return []

        statement = select(ShoppingCartItem, Product).join(Product, Product.id == ShoppingCartItem.product_id).where(
            ShoppingCartItem.cart_id == cart.id
        )
        results = session.exec(statement).all()

        detailed_items = []
        for item, product in results:
            detailed_items.append({
                "product_id": product.id,
                "name": product.name,
                "display_price": product.display_price,
                "image_url": product.image_url,
                "manufacturer_id": product.manufacturer_id,
                "moq": product.moq or 1,
                "quantity": item.quantity,
                "total_price": product.display_price * item.quantity
            })
        return detailed_items

def add_item_to_cart(retailer_id: int, product_id: int, quantity: int):
    """Adds (or with a negative quantity removes) units. Returns None when the item left the cart."""
    with Session(engine) as session:
        product = session.get(Product, product_id)
        if not product or not product.is_active:
            raise HTTPException(status_code=404, detail="Product not found")

        cart = session.exec(select(ShoppingCart).where(ShoppingCart.retailer_id == retailer_id)).first()
        if not cart:
            cart = ShoppingCart(retailer_id=retailer_id)
            session.add(cart)
            session.commit()
            session.refresh(cart)

        statement = select(ShoppingCartItem).where(
            (ShoppingCartItem.cart_id == cart.id) &
            (ShoppingCartItem.product_id == product_id)
        )
        existing_item = session.exec(statement).first()
        new_quantity = (existing_item.quantity if existing_item else 0) + quantity

        cart.updated_at = datetime.utcnow()
        cart.recovery_sent_at = None
        session.add(cart)

        if new_quantity <= 0:
            if existing_item:
                session.delete(existing_item)
            session.commit()
            return None

        if new_quantity > product.stock:
            raise HTTPException(status_code=400, detail=f"Insufficient stock for {product.name}")

        if existing_item:
            existing_item.quantity = new_quantity
        else:
            existing_item = ShoppingCartItem(cart_id=cart.id, product_id=product_id, quantity=new_quantity)
        session.add(existing_item)
        session.commit()
        session.refresh(existing_item)
        return existing_item

def sync_cart(retailer_id: int, items: List[Dict[str, Any]]) -> int:
    """Replaces the stored cart with the client's copy (clear and re-insert)."""
    with Session(engine) as session:
        cart = session.exec(select(ShoppingCart).where(ShoppingCart.retailer_id == retailer_id)).first()
        if not cart:
            cart = ShoppingCart(retailer_id=retailer_id)
            session.add(cart)
            session.commit()
            session.refresh(cart)

        clear_cart_items(session, cart.id)

        for item in items:
            if item.get("product_id") and item.get("quantity", 0) > 0:
                session.add(ShoppingCartItem(cart_id=cart.id, product_id=item["product_id"], quantity=item["quantity"]))

        # Retailer is active again, allow a fresh recovery message later
        cart.updated_at = datetime.utcnow()
        cart.recovery_sent_at = None
        session.add(cart)
        session.commit()
        return cart.id

def get_cart_lines(retailer_id: int) -> List[Tuple[ShoppingCartItem, Product, Manufacturer]]:
    with Session(engine) as session:
        cart = session.exec(select(ShoppingCart).where(ShoppingCart.retailer_id == retailer_id)).first()
        if not cart:
            return []
        statement = (
            select(ShoppingCartItem, Product, Manufacturer)
            .join(Product, Product.id == ShoppingCartItem.product_id)
            .join(Manufacturer, Manufacturer.id == Product.manufacturer_id)
            .where(ShoppingCartItem.cart_id == cart.id)
            .order_by(ShoppingCartItem.id)
        )
        return session.exec(statement).all()

# Deletes the items only, the caller commits
def clear_cart_items(session: Session, cart_id: int):
    for item in session.exec(select(ShoppingCartItem).where(ShoppingCartItem.cart_id == cart_id)).all():
        session.delete(item)

# -----------------------------------------------------------------
# Wishlist Functions
# -----------------------------------------------------------------
def toggle_wishlist(retailer_id: int, product_id: int) -> bool:
    """Returns True when the product was added, False when it was removed."""
    with Session(engine) as session:
        if not session.get(Product, product_id):
            raise HTTPException(status_code=404, detail="Product not found")
        existing = session.exec(
            select(Wishlist).where((Wishlist.retailer_id == retailer_id) & (Wishlist.product_id == product_id))
        ).first()
        if existing:
            session.delete(existing)
            session.commit()
            return False
        session.add(Wishlist(retailer_id=retailer_id, product_id=product_id))
        session.commit()
        return True

def get_wishlist_products(retailer_id: int) -> List[Product]:
    with Session(engine) as session:
        statement = select(Product).join(Wishlist, Wishlist.product_id == Product.id).where(Wishlist.retailer_id == retailer_id)
        return session.exec(statement).all()

# -----------------------------------------------------------------
# Order Functions
# -----------------------------------------------------------------

# Who may move an order where. Admins may set any status.
MANUFACTURER_TRANSITIONS = {
    "paid": {"confirmed", "cancelled"},
    "confirmed": {"shipped", "cancelled"},
    "shipped": {"delivered"},
}

def get_orders_by_retailer(retailer_id: int) -> List[Tuple[Order, str]]:
    with Session(engine) as session:
        statement = (
            select(Order, Product.name)
            .join(Product, Product.id == Order.product_id)
            .where(Order.retailer_id == retailer_id)
            .order_by(Order.created_at.desc(), Order.id.desc())
        )
        return session.exec(statement).all()

def get_orders_by_manufacturer(manufacturer_id: int, status_filter: Optional[str] = None) -> List[Tuple[Order, str]]:
    with Session(engine) as session:
        statement = (
            select(Order, Product.name)
            .join(Product, Product.id == Order.product_id)
            .where(Order.manufacturer_id == manufacturer_id)
        )
        if status_filter:
            statement = statement.where(Order.status == status_filter)
        return session.exec(statement.order_by(Order.created_at.desc(), Order.id.desc())).all()

def get_all_orders(status_filter: Optional[str] = None, limit: int = 200) -> List[Tuple[Order, str]]:
    with Session(engine) as session:
        statement = select(Order, Product.name).join(Product, Product.id == Order.product_id)
        if status_filter:
            statement = statement.where(Order.status == status_filter)
        return session.exec(statement.order_by(Order.created_at.desc(), Order.id.desc()).limit(limit)).all()

def get_order_by_id(order_id: int) -> Optional[Order]:
    with Session(engine) as session:
        return session.get(Order, order_id)

def _stamp_status(order: Order, new_status: str):
    order.status = new_status
    now = datetime.utcnow()
    if new_status == "shipped" and not order.shipped_at:
        order.shipped_at = now
    elif new_status == "delivered" and not order.delivered_at:
        order.delivered_at = now

def update_order_status(order_id: int, new_status: str, manufacturer_id: Optional[int] = None) -> Order:
    """manufacturer_id=None means an admin override."""
    if new_status not in ("pending", "paid", "confirmed", "shipped", "delivered", "cancelled"):
        raise HTTPException(status_code=400, detail=f"Unknown status '{new_status}'")

    with Session(engine) as session:
        order = session.get(Order, order_id)
        if not order:
            raise HTTPException(status_code=404, detail="Order not found")

        if manufacturer_id is not None:
            if order.manufacturer_id != manufacturer_id:
                raise HTTPException(status_code=403, detail="Not authorized to update this order")
            if new_status not in MANUFACTURER_TRANSITIONS.get(order.status, set()):
                raise HTTPException(status_code=400, detail=f"Cannot move order from '{order.status}' to '{new_status}'")

        _stamp_status(order, new_status)
        session.add(order)
        session.commit()
        session.refresh(order)
        return order

def update_orders_by_awb(awb: str, new_status: str) -> int:
    with Session(engine) as session:
        orders = session.exec(select(Order).where(Order.awb_code == awb)).all()
        for order in orders:
            _stamp_status(order, new_status)
            session.add(order)
        session.commit()
        return len(orders)

def get_orders_with_parties(order_ids: List[int]) -> List[Tuple[Order, Product, Retailer, Manufacturer]]:
    with Session(engine) as session:
        statement = (
            select(Order, Product, Retailer, Manufacturer)
            .join(Product, Product.id == Order.product_id)
            .join(Retailer, Retailer.id == Order.retailer_id)
            .join(Manufacturer, Manufacturer.id == Order.manufacturer_id)
            .where(Order.id.in_(order_ids))
            .order_by(Order.id)
        )
        return session.exec(statement).all()

def save_shipment(order_ids: List[int], shipment_id: str, awb_code: str, courier_name: Optional[str]):
    with Session(engine) as session:
        for order in session.exec(select(Order).where(Order.id.in_(order_ids))).all():
            order.shipment_id = str(shipment_id)
            order.awb_code = awb_code
            order.courier_name = courier_name
            order.status = "confirmed"
            session.add(order)
        session.commit()

def get_orders_by_shipment(shipment_id: str) -> List[Order]:
    with Session(engine) as session:
        return session.exec(select(Order).where(Order.shipment_id == str(shipment_id))).all()

def save_shipping_label(shipment_id: str, label_url: str) -> int:
    with Session(engine) as session:
        orders = session.exec(select(Order).where(Order.shipment_id == str(shipment_id))).all()
        for order in orders:
            order.shipping_label_url = label_url
            session.add(order)
        session.commit()
        return len(orders)

# -----------------------------------------------------------------
# Payout Functions
# -----------------------------------------------------------------
def get_pending_payouts() -> List[Tuple[Order, Manufacturer]]:
    """Delivered orders without a payout row."""
    with Session(engine) as session:
        paid_order_ids = select(Payout.order_id)
        statement = (
            select(Order, Manufacturer)
            .join(Manufacturer, Manufacturer.id == Order.manufacturer_id)
            .where(Order.status == "delivered")
            .where(Order.id.not_in(paid_order_ids))
            .order_by(Order.created_at.desc())
        )
        return session.exec(statement).all()

def mark_payout_paid(order_id: int, payment_reference: str = "MANUAL_ADMIN_TRANSFER") -> Payout:
    with Session(engine) as session:
        order = session.get(Order, order_id)
        if not order:
            raise HTTPException(status_code=404, detail="Order not found")
        if order.status != "delivered":
            raise HTTPException(status_code=400, detail="Payouts are released after delivery")
        if session.exec(select(Payout).where(Payout.order_id == order_id)).first():
            raise HTTPException(status_code=409, detail="Payout already recorded for this order")

        payout = Payout(
            manufacturer_id=order.manufacturer_id,
            order_id=order.id,
            amount=order.manufacturer_payout,
            status="completed",
            payment_reference=payment_reference,
            completed_at=datetime.utcnow(),
        )
        session.add(payout)
        session.commit()
        session.refresh(payout)
        logger.info(f"[Payout] Order {order.order_number} paid out {payout.amount} ({payment_reference})")
        return payout

def get_manufacturer_earnings(manufacturer_id: int) -> Dict[str, Any]:
    with Session(engine) as session:
        paid_out = session.exec(
            select(func.coalesce(func.sum(Payout.amount), 0)).where(Payout.manufacturer_id == manufacturer_id)
        ).one()
        delivered_unpaid = session.exec(
            select(func.coalesce(func.sum(Order.manufacturer_payout), 0))
            .where(Order.manufacturer_id == manufacturer_id)
            .where(Order.status == "delivered")
            .where(Order.id.not_in(select(Payout.order_id)))
        ).one()
        in_transit = session.exec(
            select(func.coalesce(func.sum(Order.manufacturer_payout), 0))
            .where(Order.manufacturer_id == manufacturer_id)
            .where(Order.status.in_(["paid", "confirmed", "shipped"]))
        ).one()
        payouts = session.exec(
            select(Payout).where(Payout.manufacturer_id == manufacturer_id).order_by(Payout.created_at.desc())
        ).all()
        return {
            "paid_out": float(paid_out),
            "pending_payout": float(delivered_unpaid),
            "in_transit": float(in_transit),
            "payouts": payouts,
        }

# -----------------------------------------------------------------
# Admin Dashboard
# -----------------------------------------------------------------
def get_admin_stats() -> Dict[str, Any]:
    with Session(engine) as session:
        live = Order.status.in_(["paid", "confirmed", "shipped", "delivered"])
        gmv = session.exec(select(func.coalesce(func.sum(Order.total_amount), 0)).where(live)).one()
        profit = session.exec(select(func.coalesce(func.sum(Order.platform_profit), 0)).where(live)).one()
        return {
            "gmv": float(gmv),
            "platform_profit": float(profit),
            "orders": session.exec(select(func.count(Order.id))).one(),
            "retailers": session.exec(select(func.count(Retailer.id))).one(),
            "manufacturers": session.exec(select(func.count(Manufacturer.id))).one(),
            "products": session.exec(select(func.count(Product.id)).where(Product.is_active == True)).one(),
            "pending_verifications": session.exec(
                select(func.count(Manufacturer.id)).where(Manufacturer.is_verified == False)
            ).one(),
        }

# -----------------------------------------------------------------
# WhatsApp Chat Log
# -----------------------------------------------------------------
def log_chat(mobile: str, message: str, direction: str, status: str = None, source: str = None, line: str = "customer"):
    with Session(engine) as session:
        chat = WhatsAppChat(mobile=mobile, message=message, direction=direction, status=status, source=source, line=line)
        session.add(chat)
        session.commit()
        session.refresh(chat)
        return chat

def get_recent_chats(mobile: str, limit: int = 10) -> List[WhatsAppChat]:
    """Oldest first."""
    with Session(engine) as session:
        statement = select(WhatsAppChat).where(WhatsAppChat.mobile == mobile).order_by(WhatsAppChat.created_at.desc(), WhatsAppChat.id.desc()).limit(limit)
        return list(reversed(session.exec(statement).all()))

# -----------------------------------------------------------------
# Supplier Sourcing
# -----------------------------------------------------------------
def add_supplier(supplier: SupplierCreate):
    phone = "".join(ch for ch in supplier.phone if ch.isdigit())
    if len(phone) < 10:
        raise HTTPException(status_code=400, detail="Invalid phone number")
    with Session(engine) as session:
        if session.exec(select(Supplier).where(Supplier.phone == phone)).first():
            raise HTTPException(status_code=409, detail="Supplier already exists")
        new_supplier = Supplier(**supplier.model_dump(exclude={"phone"}), phone=phone)
        session.add(new_supplier)
        session.commit()
        session.refresh(new_supplier)
        return new_supplier

def list_suppliers(status_filter: Optional[str] = None) -> List[Supplier]:
    with Session(engine) as session:
        statement = select(Supplier).order_by(Supplier.created_at.desc(), Supplier.id.desc())
        if status_filter:
            statement = statement.where(Supplier.status == status_filter)
        return session.exec(statement).all()

def update_supplier(supplier_id: int, update: SupplierUpdate):
    with Session(engine) as session:
        supplier = session.get(Supplier, supplier_id)
        if not supplier:
            raise HTTPException(status_code=404, detail="Supplier not found")
        for key, value in update.model_dump(exclude_unset=True).items():
            setattr(supplier, key, value)
        session.add(supplier)
        session.commit()
        session.refresh(supplier)
        return supplier

# -----------------------------------------------------------------
# Browse Tracking
# -----------------------------------------------------------------
def log_catalog_download(retailer_id: int, category_id: int, source_page: Optional[str] = None):
    with Session(engine) as session:
        download = CatalogDownload(retailer_id=retailer_id, category_id=category_id, source_page=source_page)
        session.add(download)
        session.commit()
        session.refresh(download)
        return download

def log_interaction(product_id: int, interaction_type: str, value: float = 1, retailer_id: Optional[int] = None, session_id: Optional[str] = None):
    with Session(engine) as session:
        if not session.get(Product, product_id):
            raise HTTPException(status_code=404, detail="Product not found")
        interaction = UserInteraction(
            retailer_id=retailer_id,
            session_id=session_id,
            product_id=product_id,
            interaction_type=interaction_type,
            value=value,
        )
        session.add(interaction)
        session.commit()
        session.refresh(interaction)
        return interaction
