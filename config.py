import os
import logging

from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

STRIPE_SECRET = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
STRIPE_TIMEOUT = float(os.getenv("STRIPE_TIMEOUT", "10"))
CURRENCY = os.getenv("CURRENCY", "aud")

FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")

ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@lensaura.com")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "lensaura@1")
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "admin-token")

SENDGRID_API_KEY = os.getenv("SENDGRID_API_KEY", "")
FROM_EMAIL = os.getenv("FROM_EMAIL", "orders@lensaura.com")
CONTACT_EMAIL = os.getenv("CONTACT_EMAIL", "info@lensaura.com.au")

TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")
TELEGRAM_GROUP_ID = os.getenv("TELEGRAM_GROUP_ID", "")

NOTIFY_TIMEOUT = float(os.getenv("NOTIFY_TIMEOUT", "10"))
PROMOTION_CACHE_SECONDS = float(os.getenv("PROMOTION_CACHE_SECONDS", "60"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging():
    logging.basicConfig(level=getattr(logging, LOG_LEVEL.upper(), logging.INFO), format=LOG_FORMAT)
