"""
Recycling Marketplace: configuration
Environment variables and constants shared by the backend modules.
"""
import os
from pathlib import Path

from dotenv import load_dotenv

BACKEND_DIR = Path(__file__).parent
BASE_DIR = BACKEND_DIR.parent
load_dotenv(BACKEND_DIR / ".env")

# ========== DATABASE ==========
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

# ========== AUTH ==========
JWT_SECRET = os.getenv("JWT_SECRET", os.urandom(32).hex())
JWT_ALGORITHM = "HS256"
JWT_EXPIRY_HOURS = int(os.getenv("JWT_EXPIRY_HOURS", "72"))
PASSWORD_MIN_LENGTH = 6
PBKDF2_ITERATIONS = 120_000
AVATAR_MAX_BYTES = 700 * 1024

# ========== HTTP ==========
SERVICE_NAME = "Recycling Marketplace Backend"
PORT = int(os.getenv("PORT", "3001"))
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")
STATIC_DIR = Path(os.getenv("STATIC_DIR", str(BASE_DIR / "dist")))

# ========== LOGGING ==========
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE")

# ========== DOMAIN ==========
ROLES = ("buyer", "seller")
ORDER_STATUSES = ("pending", "confirmed")
RECENT_ORDERS_LIMIT = 5
SUBSCRIBER_QUEUE_SIZE = 100
UNKNOWN_SELLER = "Unknown seller"
UNKNOWN_BUYER = "Unknown buyer"
