import os

# Database
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "sphone")

# Environment / Auth settings
SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key-change-me")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 30))

# Payment gateway
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "eur")
ALLOWED_SHIPPING_COUNTRIES = [
    c.strip().upper() for c in os.getenv("ALLOWED_SHIPPING_COUNTRIES", "FR,BE,CH,LU,MC").split(",") if c.strip()
]

FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")

# Flat products historically did not count sales on decrement
FLAT_STOCK_COUNTS_SALES = os.getenv("FLAT_STOCK_COUNTS_SALES", "false").lower() in ("1", "true", "yes")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
