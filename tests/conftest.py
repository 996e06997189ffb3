import asyncio
import os
import tempfile

import pytest

# settings are read at import time; keep logs and retries test-friendly
os.environ.setdefault("FULFILLMENT_DATA_ROOT", tempfile.mkdtemp(prefix="fulfillment-test-"))
os.environ.setdefault("FULFILLMENT_RETRY_BACKOFF", "0")

from fulfillment_hub.database import build_engine, build_session_factory, create_schema, drop_schema  # noqa: E402


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'fulfillment.db'}"


@pytest.fixture
def run_db(db_url):
    """
    Run `scenario(session_factory)` against a fresh schema.

    Engine, schema and scenario share one event loop, so connections never
    cross loops.
    """
    def runner(scenario):
        async def main():
            engine = build_engine(db_url)
            try:
                await create_schema(engine)
                return await scenario(build_session_factory(engine))
            finally:
                await engine.dispose()
        return asyncio.run(main())
    return runner


@pytest.fixture
def pg_run_db():
    """
    Same as `run_db`, against the PostgreSQL named by FULFILLMENT_TEST_POSTGRES_URL.

    Row-level locking only exists there; the tables are dropped and recreated
    around each scenario.
    """
    url = os.environ.get("FULFILLMENT_TEST_POSTGRES_URL")
    if not url:
        pytest.skip("FULFILLMENT_TEST_POSTGRES_URL not set")

    def runner(scenario):
        async def main():
            engine = build_engine(url)
            try:
                await drop_schema(engine)
                await create_schema(engine)
                return await scenario(build_session_factory(engine))
            finally:
                await drop_schema(engine)
                await engine.dispose()
        return asyncio.run(main())
    return runner
