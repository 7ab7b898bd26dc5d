"""
Check the PostgreSQL database for the inventory backend.
Run once before migrating: python scripts/init_postgres.py

Requires: PostgreSQL installed and running. Create user and database:

  sudo -u postgres psql
  CREATE USER inventory WITH PASSWORD 'inventory';
  CREATE DATABASE inventory_db OWNER inventory;
  GRANT ALL PRIVILEGES ON DATABASE inventory_db TO inventory;
  \q

Then apply the schema from backend/: alembic upgrade head
"""

import sys
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError

from inventory_backend.config import get_settings


def main():
    url = get_settings().DATABASE_URL
    if not url.startswith("postgresql"):
        print("DATABASE_URL is not PostgreSQL. Skipping.")
        return
    try:
        engine = create_engine(url)
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        print("PostgreSQL connection OK. Database exists.")
    except SQLAlchemyError as e:
        print(f"Cannot connect to PostgreSQL: {e}")
        print("\nCreate database first:")
        print("  psql -U postgres -c \"CREATE USER inventory WITH PASSWORD 'inventory';\"")
        print("  psql -U postgres -c \"CREATE DATABASE inventory_db OWNER inventory;\"")
        print("  psql -U postgres -c \"GRANT ALL PRIVILEGES ON DATABASE inventory_db TO inventory;\"")
        sys.exit(1)


if __name__ == "__main__":
    main()
