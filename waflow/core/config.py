# waflow/core/config.py
"""
Application configuration - loads from environment variables.
Single source of truth for all settings.
"""
import os
from typing import Optional
from urllib.parse import quote_plus
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables FIRST
BASE_DIR = Path(__file__).resolve().parent.parent.parent
env_path = BASE_DIR / '.env'
load_dotenv(dotenv_path=env_path)

# ────────────────────────────────────────────
# WhatsApp Configuration
# ────────────────────────────────────────────
PHONE_ID: str = os.getenv("WHATSAPP_PHONE_ID", "")
TOKEN: str = os.getenv("WHATSAPP_TOKEN", "")
BUSINESS_ACCOUNT_ID: str = os.getenv("WHATSAPP_BUSINESS_ACCOUNT_ID", "")
VERIFY_TOKEN: str = os.getenv("VERIFY_TOKEN", "")
TEMPLATE_LANGUAGE: str = os.getenv("WHATSAPP_TEMPLATE_LANGUAGE", "en")

# ────────────────────────────────────────────
# WhatsApp Flows (booking data endpoint)
# ────────────────────────────────────────────
# PEM may be stored on one line with literal "\n" escapes
FLOWS_PRIVATE_KEY: str = os.getenv("WHATSAPP_FLOWS_PRIVATE_KEY", "").replace("\\n", "\n")
FLOWS_PRIVATE_KEY_PASSPHRASE: Optional[str] = os.getenv("WHATSAPP_FLOWS_PRIVATE_KEY_PASSPHRASE") or None
FLOWS_API_VERSION: str = "3.0"

# ────────────────────────────────────────────
# Business Calendar
# ────────────────────────────────────────────
BUSINESS_UTC_OFFSET: str = os.getenv("BUSINESS_UTC_OFFSET", "+05:30")
BUSINESS_OPEN_HOUR: int = int(os.getenv("BUSINESS_OPEN_HOUR", "9"))
BUSINESS_CLOSE_HOUR: int = int(os.getenv("BUSINESS_CLOSE_HOUR", "17"))
BOOKING_SLOT_MINUTES: int = int(os.getenv("BOOKING_SLOT_MINUTES", "30"))
BOOKING_WINDOW_DAYS: int = int(os.getenv("BOOKING_WINDOW_DAYS", "7"))
APPOINTMENT_DURATION_MINUTES: int = int(os.getenv("APPOINTMENT_DURATION_MINUTES", "30"))

# ────────────────────────────────────────────
# Function Sandbox
# ────────────────────────────────────────────
FUNCTION_DEFAULT_TIMEOUT_MS: int = int(os.getenv("FUNCTION_DEFAULT_TIMEOUT_MS", "5000"))
FUNCTION_MIN_TIMEOUT_MS: int = int(os.getenv("FUNCTION_MIN_TIMEOUT_MS", "100"))
FUNCTION_MAX_TIMEOUT_MS: int = int(os.getenv("FUNCTION_MAX_TIMEOUT_MS", "20000"))
# Interpreter start-up is not charged to the user's budget
FUNCTION_STARTUP_TIMEOUT_S: float = float(os.getenv("FUNCTION_STARTUP_TIMEOUT_S", "30"))

LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

# ────────────────────────────────────────────
# Owner identity
# ────────────────────────────────────────────
DEFAULT_OWNER_ID: Optional[str] = os.getenv("DEFAULT_OWNER_ID") or None

# ────────────────────────────────────────────
# Database Configuration
# ────────────────────────────────────────────
DB_USER = os.getenv("DB_USER", "postgres")
DB_PASSWORD = os.getenv("DB_PASSWORD", "")
DB_HOST = os.getenv("DB_HOST", "localhost")
DB_PORT = os.getenv("DB_PORT", "5432")
DB_NAME = os.getenv("DB_NAME", "waflow_db")
DATABASE_URL = os.getenv("DATABASE_URL")

# Build DATABASE_URL
if not DATABASE_URL:
    encoded_password = quote_plus(DB_PASSWORD)
    DATABASE_URL = f"postgresql://{DB_USER}:{encoded_password}@{DB_HOST}:{DB_PORT}/{DB_NAME}"

# ────────────────────────────────────────────
# JWT Configuration
# ────────────────────────────────────────────
JWT_SECRET_KEY: str = os.getenv("JWT_SECRET_KEY", "")
JWT_ALGORITHM: str = os.getenv("JWT_ALGORITHM", "HS256")

if not JWT_SECRET_KEY:
    import warnings
    warnings.warn("JWT_SECRET_KEY not set!")

# ────────────────────────────────────────────
# Settings Class
# ────────────────────────────────────────────
class Settings:
    DATABASE_URL: str = DATABASE_URL
    PHONE_ID: str = PHONE_ID
    TOKEN: str = TOKEN
    BUSINESS_ACCOUNT_ID: str = BUSINESS_ACCOUNT_ID
    VERIFY_TOKEN: str = VERIFY_TOKEN
    TEMPLATE_LANGUAGE: str = TEMPLATE_LANGUAGE
    FLOWS_PRIVATE_KEY: str = FLOWS_PRIVATE_KEY
    FLOWS_PRIVATE_KEY_PASSPHRASE: Optional[str] = FLOWS_PRIVATE_KEY_PASSPHRASE
    BUSINESS_UTC_OFFSET: str = BUSINESS_UTC_OFFSET
    BUSINESS_OPEN_HOUR: int = BUSINESS_OPEN_HOUR
    BUSINESS_CLOSE_HOUR: int = BUSINESS_CLOSE_HOUR
    BOOKING_SLOT_MINUTES: int = BOOKING_SLOT_MINUTES
    BOOKING_WINDOW_DAYS: int = BOOKING_WINDOW_DAYS
    APPOINTMENT_DURATION_MINUTES: int = APPOINTMENT_DURATION_MINUTES
    FUNCTION_DEFAULT_TIMEOUT_MS: int = FUNCTION_DEFAULT_TIMEOUT_MS
    FUNCTION_MIN_TIMEOUT_MS: int = FUNCTION_MIN_TIMEOUT_MS
    FUNCTION_MAX_TIMEOUT_MS: int = FUNCTION_MAX_TIMEOUT_MS
    JWT_SECRET_KEY: str = JWT_SECRET_KEY
    JWT_ALGORITHM: str = JWT_ALGORITHM
    LOG_LEVEL: str = LOG_LEVEL

settings = Settings()
