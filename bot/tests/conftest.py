from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path

import pytest
import pytest_asyncio

from database.base import Database
from database.migrations.runner import run_migrations
from tests.fakes import FakePlatform, ServiceHarness, build_harness


@pytest_asyncio.fixture
async def db(tmp_path: Path) -> AsyncIterator[Database]:
    database = Database(url=f"sqlite:///{tmp_path / 'modmail.db'}")
    await database.connect()
    await run_migrations(database)
    yield database
    await database.close()


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform()


@pytest.fixture
def harness(db: Database, tmp_path: Path, platform: FakePlatform) -> ServiceHarness:
    return build_harness(db, tmp_path, platform)
