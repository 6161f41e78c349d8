import random
from datetime import datetime, timedelta

from sqlmodel import Session, SQLModel

from d2bcart.db_models import Order, CatalogDownload
from d2bcart.database import (
    engine,
    create_db_and_tables,
    add_admin,
    add_category,
    add_manufacturer,
    add_product,
    add_retailer,
    add_supplier,
    create_cart_for_retailer,
)
from d2bcart.schemas import CategoryCreate, ProductCreate, SupplierCreate
from d2bcart.auth import hash_password
from d2bcart.pricing import generate_order_number
from d2bcart.tax import calculate_tax

# --- Sample Data Lists ---

# (name, markup %, parent)
SAMPLE_CATEGORIES = [
    ("Mobile Accessories", 12.0, None),
    ("Cases & Covers", 15.0, "Mobile Accessories"),
    ("Screen Guards", 18.0, "Mobile Accessories"),
    ("Chargers & Cables", 10.0, "Mobile Accessories"),
    ("Audio", 12.0, None),
    ("Earphones", 12.0, "Audio"),
    ("Power Banks", 8.0, None),
]

# Spread over states so both CGST/SGST and IGST orders show up
SAMPLE_MANUFACTURERS = [
    {"business_name": "Apex Mobile Gear", "city": "New Delhi", "state": "Delhi", "pincode": "110006", "address": "Shop 14, Gaffar Market, Karol Bagh"},
    {"business_name": "Summit Accessories", "city": "Mumbai", "state": "Maharashtra", "pincode": "400002", "address": "2nd Floor, Manish Market, Lohar Chawl"},
    {"business_name": "Premier Electronics", "city": "Bengaluru", "state": "Karnataka", "pincode": "560002", "address": "45, SP Road, Near Majestic"},
    {"business_name": "United Power Solutions", "city": "Ahmedabad", "state": "Gujarat", "pincode": "380001", "address": "12, Relief Road, Opp. Ratan Pol"},
]

SAMPLE_RETAIL_CITIES = [
    ("New Delhi", "Delhi", "110092"),
    ("Noida", "Uttar Pradesh", "201301"),
    ("Pune", "Maharashtra", "411002"),
    ("Jaipur", "Rajasthan", "302001"),
    ("Hyderabad", "Telangana", "500001"),
    ("Kolkata", "West Bengal", "700001"),
]

SAMPLE_FIRST_NAMES = ["Rahul", "Priya", "Amit", "Sneha", "Vikram", "Anjali", "Rohan", "Neha", "Arjun", "Kavya"]
SAMPLE_SHOP_NOUNS = ["Mobile Point", "Telecom", "Mobile Hub", "Cell Care", "Gadget Zone", "Communication"]

# (category, product name, base price, moq, weight kg per moq set, variations)
SAMPLE_PRODUCTS = [
    ("Cases & Covers", "Silicone Back Cover", 35, 20, 0.4, ["iPhone 15", "Galaxy S24", "Redmi Note 13"]),
    ("Cases & Covers", "Flip Cover Leather Finish", 80, 10, 0.6, ["Galaxy A55", "Vivo V30"]),
    ("Screen Guards", "Tempered Glass 9H", 12, 50, 0.5, ["iPhone 15", "Galaxy A15", "Redmi 13C"]),
    ("Screen Guards", "Privacy Screen Guard", 45, 25, 0.3, []),
    ("Chargers & Cables", "Type-C Fast Charging Cable 1m", 40, 25, 0.7, []),
    ("Chargers & Cables", "20W USB-C Wall Adapter", 140, 10, 0.9, ["White", "Black"]),
    ("Earphones", "Wired Earphones with Mic", 55, 20, 0.6, []),
    ("Earphones", "TWS Earbuds Pro", 420, 5, 0.8, ["Black", "White"]),
    ("Power Banks", "10000mAh Slim Power Bank", 380, 5, 1.2, []),
    ("Power Banks", "20000mAh Power Bank 22.5W", 690, 4, 1.9, []),
]


def seed():
    # Start from an empty database
    SQLModel.metadata.drop_all(engine)
    create_db_and_tables()
    print("Created new tables.")

    print("--- 1. Creating Categories ---")
    categories = {}
    for name, markup, parent in SAMPLE_CATEGORIES:
        parent_id = categories[parent].id if parent else None
        categories[name] = add_category(CategoryCreate(name=name, markup_percentage=markup, parent_id=parent_id))
    print(f"Created {len(categories)} categories.")

    print("--- 2. Creating Manufacturers ---")
    manufacturers = []
    for i, data in enumerate(SAMPLE_MANUFACTURERS):
        m = add_manufacturer(
            name=f"{random.choice(SAMPLE_FIRST_NAMES)} {data['business_name'].split()[0]}",
            mail=f"manufacturer{i+1}@d2bcart.com",
            hashed_password=hash_password("manuf123"),
            business_name=data["business_name"],
            address=data["address"],
            city=data["city"],
            state=data["state"],
            pincode=data["pincode"],
            phone_number=f"9{random.randint(100000000, 999999999)}",
            gst_number=f"{random.randint(10, 37)}ABCDE{random.randint(1000, 9999)}F1Z{random.randint(1, 9)}",
            is_verified=True,
        )
        manufacturers.append(m)
    print(f"Created {len(manufacturers)} manufacturers.")

    print("--- 3. Creating Retailers ---")
    retailers = []
    for i in range(12):
        city, state, pincode = random.choice(SAMPLE_RETAIL_CITIES)
        first_name = random.choice(SAMPLE_FIRST_NAMES)
        r = add_retailer(
            name=first_name,
            mail=f"retailer{i+1}@shop.com",
            hashed_password=hash_password("retail123"),
            business_name=f"{first_name} {random.choice(SAMPLE_SHOP_NOUNS)}",
            phone_number=f"91{random.randint(7000000000, 9999999999)}",
            address=f"Shop {random.randint(1, 99)}, Main Market",
            city=city,
            state=state,
            pincode=pincode,
            is_verified=True,
        )
        create_cart_for_retailer(r.id)
        retailers.append(r)
    print(f"Created {len(retailers)} retailers.")

    print("--- 4. Creating Products ---")
    products = []
    for category_name, name, base_price, moq, weight, variations in SAMPLE_PRODUCTS:
        manufacturer = random.choice(manufacturers)
        common = dict(
            base_price=base_price,
            moq=moq,
            category_id=categories[category_name].id,
            weight=weight,
            length=20,
            breadth=15,
            height=10,
            hsn_code="8517" if category_name != "Power Banks" else "8507",
            tax_rate=18.0,
        )
        parent = add_product(manufacturer.id, ProductCreate(
            name=name,
            stock=random.randint(200, 2000),
            description=f"Wholesale {name}, minimum order {moq} units.",
            sku=f"D2B-{len(products) + 1:04d}",
            **common,
        ))
        products.append(parent)

        for variant in variations:
            child = add_product(manufacturer.id, ProductCreate(
                name=f"{name} - {variant}",
                stock=random.randint(100, 800),
                parent_id=parent.id,
                **common,
            ))
            products.append(child)
    print(f"Created {len(products)} products.")

    print("--- 5. Creating Admin ---")
    add_admin(name="Platform Admin", mail="admin@d2bcart.com", hashed_password=hash_password("admin123"))

    print("--- 6. Creating Past Orders ---")
    by_manufacturer = {m.id: m for m in manufacturers}
    order_count = 0
    with Session(engine) as session:
        for retailer in retailers:
            for _ in range(random.randint(0, 3)):
                product = random.choice(products)
                manufacturer = by_manufacturer[product.manufacturer_id]
                quantity = product.moq * random.randint(1, 4)
                tax = calculate_tax(product.display_price, quantity, product.tax_rate, manufacturer.state, retailer.state)
                ship_cost = round(random.uniform(60, 180), 2)
                created = datetime.utcnow() - timedelta(days=random.randint(1, 90))
                status = random.choice(["paid", "confirmed", "shipped", "delivered", "delivered"])

                session.add(Order(
                    order_number=generate_order_number(),
                    retailer_id=retailer.id,
                    manufacturer_id=manufacturer.id,
                    product_id=product.id,
                    quantity=quantity,
                    unit_price=product.display_price,
                    total_amount=round(tax.total_amount + ship_cost, 2),
                    tax_amount=tax.tax_amount,
                    tax_type=tax.tax_type,
                    tax_rate_snapshot=product.tax_rate,
                    manufacturer_payout=round(product.base_price * quantity, 2),
                    platform_profit=round(product.your_margin * quantity + ship_cost * 0.1, 2),
                    status=status,
                    payment_id=f"pay_seed{random.randint(100000, 999999)}",
                    payment_type="full",
                    paid_amount=round(tax.total_amount + ship_cost, 2),
                    shipping_address=f"{retailer.address}, {retailer.city}, {retailer.state} - {retailer.pincode}",
                    shipping_cost=ship_cost,
                    courier_name="Delhivery Surface",
                    created_at=created,
                    paid_at=created,
                    shipped_at=created + timedelta(days=1) if status in ("shipped", "delivered") else None,
                    delivered_at=created + timedelta(days=4) if status == "delivered" else None,
                ))
                order_count += 1

            # Some catalog interest for the follow-up / weekly jobs
            if random.random() < 0.5:
                session.add(CatalogDownload(
                    retailer_id=retailer.id,
                    category_id=random.choice(list(categories.values())).id,
                    source_page="category_page",
                    created_at=datetime.utcnow() - timedelta(days=random.randint(0, 10)),
                ))
        session.commit()
    print(f"Created {order_count} past orders.")

    print("\n--- Seeding Suppliers ---")
    suppliers = [
        ("Shree Balaji Covers", "919810011111", "Cases & Covers", "Delhi", "initial"),
        ("Gupta Glass House", "919810022222", "Screen Guards", "Mumbai", "catalog_received"),
        ("Om Sai Cables", "919810033333", "Chargers & Cables", "Surat", "pricing"),
    ]
    for name, phone, category, city, stage in suppliers:
        add_supplier(SupplierCreate(name=name, phone=phone, category=category, city=city, negotiation_stage=stage))
    print(f"Created {len(suppliers)} suppliers.")

    print("\n--- Database Seeding Complete! ---")

if __name__ == "__main__":
    seed()
