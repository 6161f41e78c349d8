import re

from d2bcart.pricing import calculate_display_price, calculate_margin, generate_order_number, slugify


def test_display_price_applies_markup_and_rounds_to_rupee():
    assert calculate_display_price(100, 10) == 110.0
    assert calculate_display_price(99, 15) == 114.0
    assert calculate_display_price(40, 0) == 40.0


def test_margin_is_display_minus_base():
    assert calculate_margin(110.0, 100) == 10.0


def test_order_number_format():
    number = generate_order_number()
    assert re.match(r"^D2B-[0-9A-Z]+-[0-9A-Z]{3}$", number)


def test_slugify():
    assert slugify("Cases & Covers") == "cases-covers"
    assert slugify("  20W USB-C Adapter ") == "20w-usb-c-adapter"
    assert slugify("!!!") == "item"
