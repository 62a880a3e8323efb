"""
Runtime configuration.

Everything is read from the environment once at import time. A `.env` file in
the working directory is loaded first so local runs behave like deployments.
"""
import os

from dotenv import load_dotenv

load_dotenv()

ENVIRONMENT = os.getenv("ENVIRONMENT", os.getenv("NODE_ENV", "development"))

DATABASE_URL = os.getenv("DATABASE_URL", os.getenv("MONGODB_URI", "mongodb://localhost:27017"))
DATABASE_NAME = os.getenv("DATABASE_NAME", "jewelry-app")
DB_TIMEOUT_MS = int(os.getenv("DB_TIMEOUT_MS", "5000"))

JWT_SECRET = os.getenv("JWT_SECRET", "devsecret")
JWT_ALGO = "HS256"
JWT_EXPIRES_IN = os.getenv("JWT_EXPIRES_IN", "7d" if ENVIRONMENT == "production" else "30d")
# Tokens issued before this instant are rejected (epoch seconds, epoch ms or ISO date).
TOKEN_INVALID_BEFORE = os.getenv("TOKEN_INVALID_BEFORE", "")

# "catalog-scoped" or "legacy-product-scoped"
ACCESS_MODE = os.getenv("ACCESS_MODE", "catalog-scoped")
VISIBILITY_IN_MEMORY = os.getenv("VISIBILITY_IN_MEMORY", "").lower() in ("1", "true", "yes")

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

UPLOAD_DIR = os.getenv("UPLOAD_DIR", os.path.join(os.path.dirname(os.path.abspath(__file__)), "uploads"))
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "")
MAX_UPLOAD_BYTES = 5 * 1024 * 1024

EXPO_PUSH_URL = os.getenv("EXPO_PUSH_URL", "https://exp.host/--/api/v2/push/send")

SMTP_HOST = os.getenv("SMTP_HOST", "smtp.gmail.com")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
EMAIL_USER = os.getenv("EMAIL_USER", "")
EMAIL_PASS = os.getenv("EMAIL_PASS", "")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
PORT = int(os.getenv("PORT", 8000))
