"""
Shared pytest fixtures for Stardeck tests.

Fixtures provided:
- db_manager: DatabaseManager on a temporary SQLite file
- test_user: User row that owns API keys and audit entries
- api_key: Plaintext API key for test_user
- mock_engine: MagicMock standing in for the EngineAdapter
- reporter: ProgressReporter large enough that workflows never block on it
- test_config: AppConfig pointed at a temporary data directory

Helpers (import from tests.conftest):
- create_container_info / create_container_config: engine-side dataclasses
- make_stream: LineStream that yields a fixed list of items
- pulled: finished PullProgress snapshot
"""

import os
import sys
from typing import Any, List, Optional
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from auth.api_key_auth import generate_api_key
from config.settings import AppConfig
from database import ApiKey, DatabaseManager
from engine.adapter import EngineAdapter
from engine.types import (
    ContainerConfig,
    ContainerInfo,
    ContainerStatus,
    MountInfo,
    PortMapping,
    PullProgress,
)
from progress.reporter import ProgressReporter
from utils.line_stream import LineStream


# =============================================================================
# Helpers
# =============================================================================

def create_container_info(
    name: str = "web",
    container_id: str = "a" * 64,
    image: str = "nginx:1.25",
    status: ContainerStatus = ContainerStatus.RUNNING,
    labels: Optional[dict] = None,
) -> ContainerInfo:
    return ContainerInfo(
        id=container_id,
        name=name,
        image=image,
        status=status,
        state=status.value,
        labels=labels or {},
    )


def create_container_config(
    name: str = "web",
    image: str = "nginx:1.25",
    mounts: Optional[List[MountInfo]] = None,
) -> ContainerConfig:
    return ContainerConfig(
        name=name,
        image=image,
        ports=[PortMapping(host_port="8080", container_port="80")],
        mounts=mounts or [],
        env={"TZ": "UTC"},
        labels={"app": "web"},
        restart_policy="unless-stopped",
    )


def make_stream(items: List[Any], error: Optional[BaseException] = None, name: str = "test") -> LineStream:
    """LineStream that yields ``items`` then finishes (raising ``error`` if given)."""
    stream = LineStream(capacity=len(items) + 1, name=name)

    async def _produce(s: LineStream):
        for item in items:
            await s.put(item)
        if error is not None:
            raise error

    return stream.start(_produce)


def pulled(image: str = "docker.io/library/nginx:1.25") -> PullProgress:
    return PullProgress(image=image, status="Pull complete", done=True)


def event_steps(messages: List[dict]) -> List[str]:
    """Distinct step names in the order they first appear."""
    steps: List[str] = []
    for message in messages:
        if message["step"] not in steps:
            steps.append(message["step"])
    return steps


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def db_manager(tmp_path):
    """
    Create a temporary SQLite database for testing.

    Every test gets its own file, so tests don't affect each other.
    """
    db = DatabaseManager(f"sqlite:///{tmp_path / 'stardeck.db'}")
    yield db
    db.close()


@pytest.fixture
def test_user(db_manager):
    return db_manager.add_user("admin", display_name="Administrator")


@pytest.fixture
def api_key(db_manager, test_user):
    """Plaintext API key belonging to test_user."""
    plaintext, key_hash, prefix = generate_api_key()
    with db_manager.get_session() as session:
        session.add(ApiKey(user_id=test_user.id, name="tests", key_hash=key_hash, key_prefix=prefix))
        session.commit()
    return plaintext


@pytest.fixture
def mock_engine():
    """
    Mock Engine Adapter for testing without a container engine.

    Async methods are AsyncMocks; configure return values per test.
    """
    engine = MagicMock(spec=EngineAdapter)
    engine.container_exists.return_value = False
    engine.image_exists.return_value = True
    return engine


@pytest.fixture
def reporter():
    return ProgressReporter(capacity=1000, send_timeout=1.0, name="test")


@pytest.fixture
def test_config(tmp_path, monkeypatch):
    """AppConfig whose paths all live under tmp_path."""
    monkeypatch.delenv("STARDECK_CORS_ORIGINS", raising=False)
    config = AppConfig()
    config.DATA_DIR = str(tmp_path)
    config.DATABASE_URL = f"sqlite:///{tmp_path / 'stardeck.db'}"
    config.STACKS_DIR = str(tmp_path / "stacks")
    config.BACKUPS_DIR = str(tmp_path / "backups")
    config.SHUTDOWN_GRACE = 1.0
    os.makedirs(config.STACKS_DIR, exist_ok=True)
    os.makedirs(config.BACKUPS_DIR, exist_ok=True)
    return config
