import os

from dotenv import load_dotenv

load_dotenv()

# Database
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

# Auth
AUTH_JWT_SECRET = os.getenv("AUTH_JWT_SECRET", "dev-insecure-secret-change-me-please-1234567890")
JWT_ALGORITHM = "HS256"
AUTH_TOKEN_EXPIRE_DAYS = 7
AUTH_COOKIE_NAME = "auth_token"
COOKIE_SECURE = os.getenv("COOKIE_SECURE", "false").lower() in ("1", "true", "yes")
ADMIN_EMAILS = [e.strip().lower() for e in os.getenv("ADMIN_EMAILS", "").split(",") if e.strip()]
ADMIN_2FA_WINDOW_HOURS = int(os.getenv("ADMIN_2FA_WINDOW_HOURS", 12))
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")

# Payments
APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:3000").rstrip("/")
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
CHAPA_SECRET_KEY = os.getenv("CHAPA_SECRET_KEY")
CHAPA_WEBHOOK_SECRET = os.getenv("CHAPA_WEBHOOK_SECRET")
REFUND_FEE_PERCENT = float(os.getenv("REFUND_FEE_PERCENT", 0) or 0)

# Email
RESEND_API_KEY = os.getenv("RESEND_API_KEY")
EMAIL_FROM = os.getenv("EMAIL_FROM", "Duha Threads <no-reply@duhathreads.com>")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def admin_emails():
    raw = os.getenv("ADMIN_EMAILS")
    if raw is None:
        return ADMIN_EMAILS
    return [e.strip().lower() for e in raw.split(",") if e.strip()]
