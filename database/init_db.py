"""
Database initialization script.

Creates tables and optionally bootstraps the first super administrator.

    python -m database.init_db --admin-email root@example.com --admin-handle root
"""
import getpass
import logging

from config.settings import Settings, configure_logging
from database.models import Base

logger = logging.getLogger(__name__)


def init_database(services) -> bool:
    """Create every table; returns False when the store is unreachable."""
    print("Checking database connection...")

    if not services.database.check_connection():
        print("✗ Failed to connect to database")
        print(f"  Connection string: {services.database.engine.url}")
        print("\nMake sure the database server is running and the database exists.")
        return False

    print("✓ Database connection successful")
    print("\nCreating tables...")

    services.database.create_tables()
    print("✓ Database tables created successfully")
    print("\nCreated tables:")
    for table in Base.metadata.sorted_tables:
        print(f"  - {table.name}")
    return True


def bootstrap_admin(services, handle: str, email: str, password: str) -> None:
    """Create the first super_admin unless the email is already taken."""
    from auth.errors import AuthError

    print("\nCreating super administrator...")
    try:
        principal = services.principals.register(handle, email, password, role="super_admin")
    except AuthError as e:
        print(f"✗ {e.kind.value}: {e.message}")
        return
    print(f"✓ Created {principal.handle} ({principal.principal_id})")


if __name__ == "__main__":
    import argparse

    from api.dependencies import Services

    parser = argparse.ArgumentParser(description="Initialize database")
    parser.add_argument("--admin-email", help="Create a super_admin with this email")
    parser.add_argument("--admin-handle", default="admin", help="Handle for the super_admin")
    parser.add_argument("--env-file", default=None, help="Read settings from this .env file")

    args = parser.parse_args()

    settings = Settings.from_env(args.env_file)
    configure_logging(settings.log_level)
    services = Services(settings)

    print("=" * 60)
    print("Database Initialization")
    print("=" * 60)

    success = init_database(services)

    if success and args.admin_email:
        password = getpass.getpass("Super admin password: ")
        bootstrap_admin(services, args.admin_handle, args.admin_email, password)

    services.close()

    print("\n" + "=" * 60)
    if success:
        print("Database initialization complete!")
    else:
        print("Database initialization failed")
    print("=" * 60)
