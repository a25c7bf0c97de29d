#!/usr/bin/env python3
"""
Database initialization script for SatsHunt.

Creates all tables, checks connectivity and optionally seeds a demo location
with a programmed card.
"""
import argparse
import os
import sys

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv

load_dotenv()

from satshunt.cards import activate_location, provision_card  # noqa: E402
from satshunt.config import get_config  # noqa: E402
from satshunt.database import get_database_url, get_health_status, init_all  # noqa: E402
from satshunt.db_storage import create_location  # noqa: E402


def main(argv=None):
    """Initialize database and create all tables."""
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--demo-location", metavar="NAME", help="create an active location with a programmed card")
    parser.add_argument("--capacity-sats", type=int, default=10_000)
    args = parser.parse_args(argv)

    print("=" * 60)
    print("SatsHunt Database Initialization")
    print("=" * 60)

    try:
        db_url = get_database_url()
        print(f"\n📊 Database URL: {db_url.split('@')[1] if '@' in db_url else db_url}")

        print("\n🔨 Creating database tables...")
        init_all(database_url=db_url, create_tables=True)
        print("✅ All tables created successfully")

        if args.demo_location:
            cfg = get_config()
            location_id = create_location(args.demo_location, 0.0, 0.0, args.capacity_sats * 1000)
            payload = provision_card(location_id, cfg["MASTER_KEY"], cfg["BASE_URL"])
            activate_location(location_id)
            print(f"\n📍 Demo location {location_id}")
            print(f"  LNURLW: {payload['LNURLW']}")

        print("\n🏥 Checking database health...")
        health = get_health_status()

        print("\n📊 Database Health:")
        print(f"  Database: {health['database']['status']}")
        print(f"  Redis: {health['redis']['status']}")

        if health["database"]["status"] == "healthy":
            print("\n✅ Database initialization complete!")
            print("\n📝 Next steps:")
            print("  Start the application: gunicorn wsgi:application")
            return 0
        else:
            print("\n⚠️  Database is not healthy. Check configuration.")
            return 1

    except Exception as e:
        print(f"\n❌ Error initializing database: {e}")
        import traceback

        traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
