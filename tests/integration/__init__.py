"""
Integration Tests Package for lotsync

Integration tests drive the engine end to end through EngineFactory:
1. Check-in / check-out scenarios and the aggregate they leave behind
2. Concurrency: convergence, number uniqueness, bulk atomicity
3. Storage backends (SQLite through SQLAlchemy always; MongoDB and Redis
   when a live service is configured)
"""

import os


class IntegrationTestConfig:
    """Configuration for integration tests"""

    # Live services; the corresponding suites are skipped when unset
    MONGO_URL = os.environ.get("LOTSYNC_TEST_MONGO_URL")
    REDIS_URL = os.environ.get("LOTSYNC_TEST_REDIS_URL")

    MONGO_DATABASE = os.environ.get("LOTSYNC_TEST_MONGO_DATABASE", "lotsync_test")
    REDIS_CHANNEL = "lotsync:test:changes"

    # Concurrency suite sizing
    CONCURRENT_CALLERS = 10
