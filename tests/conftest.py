from datetime import datetime, timedelta

import pytest

from registry_cleaner.config import Args, Config
from registry_cleaner.models import Tag
from registry_cleaner.utils import true_utcnow


@pytest.fixture
def now() -> datetime:
    return true_utcnow()


@pytest.fixture
def make_config():
    def _make(**kwargs) -> Config:
        data = {
            "base_url": "https://gitlab.example.com",
            "token": "secret",
            "project": "group/project",
            "args": Args(),
        }
        data.update(kwargs)
        return Config(**data)

    return _make


@pytest.fixture
def make_tag(now):
    def _make(name: str, days_old: float | None = None) -> Tag:
        created_at = None if days_old is None else now - timedelta(days=days_old)
        return Tag(name=name, path=f"group/project/app:{name}", created_at=created_at)

    return _make
