"""Shared test configuration, loaded before any mailqueue module."""

import os

# Override settings before any mailqueue modules are imported.
os.environ["MAILQ_DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["MAILQ_RESEND_API_KEY"] = "re_test_key"
os.environ["MAILQ_MAIL_FROM"] = "hr-system@example.com"

import pytest
from mailqueue.database import engine, Base
from mailqueue.models import email_history, mail_job  # noqa: F401


@pytest.fixture(autouse=True)
async def _reset_db():
    """Create all tables before each test, drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
