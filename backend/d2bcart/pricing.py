# Pricing helpers (platform markup, margins, order numbers)

import random
import re
import string
import time


_BASE36 = string.digits + string.ascii_uppercase


def calculate_display_price(base_price: float, markup_percentage: float) -> float:
    return float(round(base_price * (1 + markup_percentage / 100)))


def calculate_margin(display_price: float, base_price: float) -> float:
    return display_price - base_price


def _to_base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def generate_order_number() -> str:
    """D2B-<ms timestamp in base36>-<3 random chars>"""
    timestamp = _to_base36(int(time.time() * 1000))
    suffix = "".join(random.choices(_BASE36, k=3))
    return f"D2B-{timestamp}-{suffix}"


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (name or "").lower()).strip("-")
    return slug or "item"
