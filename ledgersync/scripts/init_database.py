#!/usr/bin/env python3
"""
Database initialization script

Creates the cache, retry job and audit tables and verifies Redis.
"""

import argparse
import sys
from pathlib import Path

# Add worker/ to path so the cachesync package imports without installing
sys.path.insert(0, str(Path(__file__).parent.parent / "worker"))

from cachesync.config import init_config
from cachesync.database import init_database, init_redis
import logging

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


def main(argv=None):
    """Create tables and check Redis"""
    parser = argparse.ArgumentParser(description="Create cachesync tables")
    parser.add_argument("--config", type=Path, default=None, help="Path to config.yaml")
    args = parser.parse_args(argv)

    try:
        logger.info("Loading configuration...")
        config = init_config(args.config)

        logger.info("Initializing database...")
        db_manager = init_database(config.database)

        if db_manager.health_check():
            logger.info("✓ Database connection verified")
        else:
            logger.error("✗ Database health check failed")
            return 1

        db_manager.create_tables()
        logger.info("✓ Tables cache_entries, retry_jobs, audit_records ready")

        logger.info("Initializing Redis...")
        redis_manager = init_redis(config.redis)

        if redis_manager.health_check():
            logger.info("✓ Redis connection verified")
        else:
            logger.warning("⚠ Redis unavailable, leases will use the in-memory fallback (single process only)")

        logger.info("Database initialization complete!")
        return 0

    except Exception as e:
        logger.error(f"Initialization failed: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
