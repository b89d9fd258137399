import os

from dotenv import load_dotenv

load_dotenv()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
DEBUG = LOG_LEVEL == "DEBUG"

DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    raise ValueError("DATABASE_URL must be set in the environment")

ALLOWED_ORIGINS_RAW = os.getenv("ALLOWED_ORIGINS")
if not ALLOWED_ORIGINS_RAW:
    raise ValueError("ALLOWED_ORIGINS must be set in the environment")

ALLOWED_ORIGINS: list[str] = [
    origin.strip() for origin in ALLOWED_ORIGINS_RAW.split(",")
]

# Pricing
BASE_CURRENCY = os.getenv("BASE_CURRENCY", "IDR").upper()
SUPPORTED_CURRENCIES: list[str] = [
    code.strip().upper()
    for code in os.getenv(
        "SUPPORTED_CURRENCIES",
        "USD,EUR,GBP,AUD,SGD,JPY,CNY,KRW,MYR,THB,NZD,CAD,CHF,HKD,INR,PHP,VND,RUB,SEK,NOK",
    ).split(",")
    if code.strip()
]
FAMILY_MAX_GUESTS = int(os.getenv("FAMILY_MAX_GUESTS", "6"))

# Rate cache refresh
RATES_API_URL = os.getenv("RATES_API_URL", "https://api.exchangerate.host/")
RATES_API_KEY = os.getenv("RATES_API_KEY")
RATE_BATCH_SIZE = int(os.getenv("RATE_BATCH_SIZE", "10"))
RATE_REFRESH_CONCURRENCY = int(os.getenv("RATE_REFRESH_CONCURRENCY", "2"))
RATE_REFRESH_INTERVAL_SECONDS = int(os.getenv("RATE_REFRESH_INTERVAL_SECONDS", "21600"))
MAINTENANCE_INTERVAL_SECONDS = int(os.getenv("MAINTENANCE_INTERVAL_SECONDS", "60"))

# Payment gateway
GATEWAY_API_URL = os.getenv("GATEWAY_API_URL", "https://api.xendit.co/")
GATEWAY_SECRET_KEY = os.getenv("GATEWAY_SECRET_KEY", "")
CHALLENGE_POLL_INTERVAL_SECONDS = float(os.getenv("CHALLENGE_POLL_INTERVAL_SECONDS", "3"))
CHALLENGE_MAX_POLLS = int(os.getenv("CHALLENGE_MAX_POLLS", "40"))
CHALLENGE_TIMEOUT_SECONDS = float(os.getenv("CHALLENGE_TIMEOUT_SECONDS", "180"))

# Inventory locks and session lifetime
LOCK_TTL_SECONDS = int(os.getenv("LOCK_TTL_SECONDS", "900"))
SESSION_TTL_SECONDS = int(os.getenv("SESSION_TTL_SECONDS", str(LOCK_TTL_SECONDS)))

# PMS
PMS_API_URL = os.getenv("PMS_API_URL", "https://login.smoobu.com/api/")
PMS_API_KEY = os.getenv("PMS_API_KEY", "")
WEBHOOK_USERNAME = os.getenv("WEBHOOK_USERNAME")
WEBHOOK_PASSWORD = os.getenv("WEBHOOK_PASSWORD")
WEBHOOK_RECOVERY_AGE_SECONDS = int(os.getenv("WEBHOOK_RECOVERY_AGE_SECONDS", "60"))

# Scheduler endpoints
TASKS_TOKEN = os.getenv("TASKS_TOKEN")

# Notification collaborator
NOTIFICATION_WEBHOOK_URL = os.getenv("NOTIFICATION_WEBHOOK_URL")
