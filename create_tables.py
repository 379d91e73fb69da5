"""
Script to create all database tables.

Creates the account, webhook and delivery queue tables from the models.
Production databases use the Alembic revisions instead.
"""
import asyncio
import sys

from wa_gateway.database import engine
from wa_gateway.models.base import Base
# Import all models to register them with Base
from wa_gateway.models.account import WhatsAppAccount  # noqa: F401
from wa_gateway.models.webhook import Webhook  # noqa: F401
from wa_gateway.models.delivery import DeliveryRecord  # noqa: F401


async def create_all_tables():
    """Create all tables in the database."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    print("All tables created successfully!")


async def drop_all_tables():
    """Drop all tables in the database (for testing)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    print("All tables dropped!")


async def main():
    """Main entry point. Pass --drop to recreate from scratch."""
    if "--drop" in sys.argv:
        await drop_all_tables()
    print("Creating database tables...")
    await create_all_tables()
    await engine.dispose()
    print("Done!")


if __name__ == "__main__":
    asyncio.run(main())
