from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
import pytest_asyncio

from core.app import HelpdeskApp
from core.config import AppConfig


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    # 12:00 in São Paulo.
    return FakeClock(datetime(2025, 3, 10, 15, 0, tzinfo=UTC))


@pytest.fixture
def config(tmp_path: Path) -> AppConfig:
    cfg = AppConfig()
    cfg.database.url = f"sqlite:///{tmp_path / 'helpdesk.db'}"
    cfg.attachments.storage_directory = str(tmp_path / "attachments")
    cfg.api.api_key = "test-key"
    return cfg


@pytest_asyncio.fixture
async def helpdesk(config: AppConfig, clock: FakeClock):
    app = HelpdeskApp(config, clock=clock)
    await app.start()
    yield app
    await app.close()
