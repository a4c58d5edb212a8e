from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Any

import pytest

# Detect CI environment (GitHub Actions sets CI=true)
IS_CI = os.environ.get("CI", "").lower() == "true"


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "local_only: marks tests that require local environment (skip in CI)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip local_only tests when running in CI."""
    if not IS_CI:
        return
    skip_ci = pytest.mark.skip(reason="Skipped in CI (requires local environment)")
    for item in items:
        if "local_only" in item.keywords:
            item.add_marker(skip_ci)


ROOT = Path(__file__).resolve().parent.parent
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from patternbank.core.config import AppConfig  # noqa: E402
from patternbank.memory.store import PatternStore  # noqa: E402

from tests.mocks.clock import FrozenClock  # noqa: E402


@pytest.fixture(autouse=True)
def isolate_config(tmp_path: Path, monkeypatch: Any) -> Path:
    """Point config to a temp path so tests don't touch user state."""
    cfg_path = tmp_path / "config.toml"
    monkeypatch.setenv("PATTERNBANK_CONFIG", str(cfg_path))
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    for name in list(os.environ):
        if name.startswith("PB_"):
            monkeypatch.delenv(name, raising=False)
    return cfg_path


@pytest.fixture(autouse=True)
def reset_package_logger() -> Any:
    """Undo setup_logging so caplog keeps seeing patternbank records."""
    yield
    logger = logging.getLogger("patternbank")
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)
    logger.propagate = True


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def config(tmp_path: Path) -> AppConfig:
    """Config with a temp database and semantic search disabled."""
    return AppConfig(
        storage={"db_path": str(tmp_path / "memory.db")},
        embedding={"use_semantic_search": False},
    )


@pytest.fixture
def store(tmp_path: Path, clock: FrozenClock) -> Any:
    pattern_store = PatternStore(tmp_path / "patterns.db", clock=clock)
    yield pattern_store
    pattern_store.close()
