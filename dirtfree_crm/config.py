import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./dirtfree.db")

API_VERSION = os.getenv("API_VERSION", "v1")

# Supabase Auth - access tokens are HS256 JWTs signed with the project JWT secret
SUPABASE_JWT_SECRET = os.getenv("SUPABASE_JWT_SECRET")
SUPABASE_JWT_AUDIENCE = os.getenv("SUPABASE_JWT_AUDIENCE", "authenticated")
AUTH_COOKIE_NAME = os.getenv("AUTH_COOKIE_NAME", "sb-access-token")

# Twilio Configuration
TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN")
TWILIO_PHONE_NUMBER = os.getenv("TWILIO_PHONE_NUMBER")
TWILIO_MESSAGING_SERVICE_SID = os.getenv("TWILIO_MESSAGING_SERVICE_SID")
# Public base URL Twilio calls (e.g. https://crm.dirtfree.com); needed behind proxies
# because the signature covers the exact URL Twilio requested
TWILIO_WEBHOOK_BASE_URL = os.getenv("TWILIO_WEBHOOK_BASE_URL")

# Inbound SMS rate limits
SMS_INBOUND_RATE_LIMIT_PER_IP = int(os.getenv("SMS_INBOUND_RATE_LIMIT_PER_IP", "60"))
SMS_INBOUND_RATE_LIMIT_PER_PHONE = int(os.getenv("SMS_INBOUND_RATE_LIMIT_PER_PHONE", "10"))
SMS_RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("SMS_RATE_LIMIT_WINDOW_SECONDS", "60"))

# Stripe Configuration
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")

# Resend Email Configuration
RESEND_API_KEY = os.getenv("RESEND_API_KEY")
RESEND_WEBHOOK_SECRET = os.getenv("RESEND_WEBHOOK_SECRET")  # whsec_... from Resend dashboard
EMAIL_FROM_ADDRESS = os.getenv("EMAIL_FROM_ADDRESS", "Dirt Free Carpet <noreply@dirtfreecarpet.com>")

# Shared bearer secret for the external scheduler
CRON_SECRET = os.getenv("CRON_SECRET")

# Company info used in SMS replies
COMPANY_NAME = os.getenv("COMPANY_NAME", "Dirt Free Carpet")
COMPANY_PHONE = os.getenv("COMPANY_PHONE", "(713) 730-2782")

# SLO targets
SLO_REMINDER_DELIVERY_TARGET = float(os.getenv("SLO_REMINDER_DELIVERY_TARGET", "0.97"))
SLO_SMS_INBOUND_VERIFY_ERROR_RATE_MAX = float(
    os.getenv("SLO_SMS_INBOUND_VERIFY_ERROR_RATE_MAX", "0.02")
)

# Frontend base URL (used in SMS links and CORS defaults)
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")

# Sentry error reporting, enabled only when a DSN is configured
SENTRY_DSN = os.getenv("SENTRY_DSN", "").strip()
SENTRY_TRACES_SAMPLE_RATE = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.05"))
SENTRY_ENVIRONMENT = os.getenv("SENTRY_ENVIRONMENT", os.getenv("ENVIRONMENT", "development"))
SENTRY_RELEASE = os.getenv("SENTRY_RELEASE")
