#!/usr/bin/env python3
# scripts/setup_database.py
"""
Database setup script
- Verifies the database connection
- Creates all tables
- Lists what exists afterwards
"""
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import inspect

from waflow.core.config import DATABASE_URL
from waflow.db.session import engine, init_db, test_db_connection

EXPECTED_TABLES = [
    'whatsapp_accounts',
    'contacts',
    'messages',
    'webhook_logs',
    'flows',
    'functions',
    'custom_messages',
    'appointments',
]


def setup():
    print("=" * 70)
    print("🚀 WAFLOW DATABASE SETUP")
    print("=" * 70)

    print("\n1️⃣  Testing database connection...")
    print(f"   Database: {DATABASE_URL.split('@')[1] if '@' in DATABASE_URL else DATABASE_URL}")

    if not test_db_connection():
        print("   ❌ Database connection failed!")
        print("   Check that the database exists and DATABASE_URL in .env is correct")
        return 1
    print("   ✅ Database connected successfully")

    print("\n2️⃣  Creating tables...")
    try:
        init_db()
    except Exception as e:
        print(f"   ❌ Error: {e}")
        return 1

    print("\n3️⃣  Verifying database tables...")
    tables = inspect(engine).get_table_names()
    missing = [t for t in EXPECTED_TABLES if t not in tables]
    if missing:
        print(f"   ⚠️  Missing tables: {', '.join(missing)}")
        return 1

    print(f"   ✅ All {len(EXPECTED_TABLES)} tables present")
    for table in EXPECTED_TABLES:
        print(f"      ✓ {table}")

    print("\n" + "=" * 70)
    print("✅ DATABASE SETUP COMPLETE!")
    print("=" * 70)
    print("\n🚀 Start Application:")
    print("   python -m uvicorn waflow.main:app --reload --host 0.0.0.0 --port 8100")
    print("   Visit: http://localhost:8100/docs")
    return 0


if __name__ == "__main__":
    sys.exit(setup())
