#!/usr/bin/env python3
"""
Create the tracking schema in the configured PostgreSQL database.

Creates processing_sessions, forms_processing, form_hazards and
forms_audit_log (plus the form_status enum and indexes) if they do not
exist. Existing tables are left untouched.

Usage:
    DATABASE_URL=postgresql+asyncpg://... python scripts/init_db.py
"""

import asyncio
import logging

from safety_forms.db.engine import dispose_engine, get_async_engine
from safety_forms.db.models import Base

logger = logging.getLogger("init_db")


async def main() -> None:
    engine = get_async_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Created tables: %s", ", ".join(sorted(Base.metadata.tables)))
    await dispose_engine()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    asyncio.run(main())
