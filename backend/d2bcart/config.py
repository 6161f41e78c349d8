# Configuration

# Everything is read from the environment (or a local .env file)

import os
from dotenv import load_dotenv
load_dotenv()


BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DATA_DIR = os.path.join(BASE_DIR, "..", "data")


# -----------------------------------------------------------------
# Security / JWT
# -----------------------------------------------------------------
SECRET_KEY = os.getenv("SECRET_KEY", "unsafe-random-string-for-dev")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24))  # 1 day


# -----------------------------------------------------------------
# Database
# -----------------------------------------------------------------
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{os.path.join(DATA_DIR, 'd2bcart.db')}")
DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"


# -----------------------------------------------------------------
# Site
# -----------------------------------------------------------------
SITE_URL = os.getenv("SITE_URL", "https://d2bcart.com")
CATALOG_DIR = os.getenv("CATALOG_DIR", os.path.join(DATA_DIR, "catalogs"))


# -----------------------------------------------------------------
# Razorpay
# -----------------------------------------------------------------
RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID")
RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET")
RAZORPAY_WEBHOOK_SECRET = os.getenv("RAZORPAY_WEBHOOK_SECRET")

# "Advance" checkout pays this share of the goods up front plus all shipping.
# 0 means the retailer only pays shipping online, the rest is collected as COD.
ADVANCE_PAYMENT_PERCENT = float(os.getenv("ADVANCE_PAYMENT_PERCENT", 0))

# Platform keeps this share of the shipping charge
SHIPPING_PROFIT_SHARE = 0.1


# -----------------------------------------------------------------
# Shiprocket
# -----------------------------------------------------------------
SHIPROCKET_BASE_URL = os.getenv("SHIPROCKET_BASE_URL", "https://apiv2.shiprocket.in/v1/external")
SHIPROCKET_EMAIL = os.getenv("SHIPROCKET_EMAIL")
SHIPROCKET_PASSWORD = os.getenv("SHIPROCKET_PASSWORD")


# -----------------------------------------------------------------
# MSG91 (WhatsApp)
# -----------------------------------------------------------------
MSG91_BASE_URL = os.getenv("MSG91_BASE_URL", "https://api.msg91.com/api/v5/whatsapp")
MSG91_AUTH_KEY = os.getenv("MSG91_AUTH_KEY")
MSG91_INTEGRATED_NUMBER = os.getenv("MSG91_INTEGRATED_NUMBER", "917557777987")
MSG91_NAMESPACE = os.getenv("MSG91_NAMESPACE", "de03d239_9cbd_4348_ad12_4d8a4ea70188")
MSG91_TEMPLATE_NEW_ORDER = os.getenv("MSG91_TEMPLATE_NEW_ORDER", "d2b_new_order_admin")
MSG91_TEMPLATE_CATEGORY_BROWSE = os.getenv("MSG91_TEMPLATE_CATEGORY_BROWSE", "d2b_category_browse")
MSG91_TEMPLATE_PRODUCT_BROWSE = os.getenv("MSG91_TEMPLATE_PRODUCT_BROWSE", "d2b_product_browse")
SUPPLIER_WA_NUMBER = os.getenv("SUPPLIER_WA_NUMBER", "917557777998")
ADMIN_PHONE = os.getenv("ADMIN_PHONE", "917557777987")

# Manual WhatsApp replies pause the AI assistant for this long
TAKEOVER_WINDOW_HOURS = int(os.getenv("TAKEOVER_WINDOW_HOURS", 4))


# -----------------------------------------------------------------
# AI Assistant (OpenAI compatible)
# -----------------------------------------------------------------
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")


# -----------------------------------------------------------------
# Facebook Conversions API
# -----------------------------------------------------------------
FACEBOOK_PIXEL_ID = os.getenv("FACEBOOK_PIXEL_ID", "881326567810044")
FACEBOOK_ACCESS_TOKEN = os.getenv("FACEBOOK_ACCESS_TOKEN")
FACEBOOK_GRAPH_URL = os.getenv("FACEBOOK_GRAPH_URL", "https://graph.facebook.com/v18.0")


# -----------------------------------------------------------------
# Cron
# -----------------------------------------------------------------
CRON_SECRET = os.getenv("CRON_SECRET")


# -----------------------------------------------------------------
# Mail (OTP)
# -----------------------------------------------------------------
MAIL_USERNAME = os.getenv("MAIL_USERNAME", "noreply@d2bcart.com")
MAIL_PASSWORD = os.getenv("MAIL_PASSWORD", "")
MAIL_PORT = int(os.getenv("MAIL_PORT", 587))
MAIL_SERVER = os.getenv("MAIL_SERVER", "smtp.gmail.com")

# Builds the messages but never connects (local dev and tests)
MAIL_SUPPRESS_SEND = os.getenv("MAIL_SUPPRESS_SEND", "false").lower() == "true"


# -----------------------------------------------------------------
# Google OAuth
# -----------------------------------------------------------------
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET_KEY = os.getenv("GOOGLE_CLIENT_SECRET_KEY")
