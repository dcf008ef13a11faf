"""Pytest fixtures and configuration for follow-up triage tests.

Provides common fixtures for configuration, database, and mocking.
"""

import os
from pathlib import Path
from typing import Any, Generator

import pytest

from followup.config_schema import AppConfig
from followup.db.store import DatabaseStore


@pytest.fixture(autouse=True)
def no_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep tests from building a real Anthropic client from the environment."""
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)


@pytest.fixture
def temp_config_dir(tmp_path: Path) -> Path:
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Create a temporary data directory."""
    data = tmp_path / "data"
    data.mkdir()
    return data


@pytest.fixture
def sample_config_yaml(data_dir: Path) -> str:
    """Return a minimal valid config.yaml content."""
    return f"""
schema_version: 1
timezone: "America/New_York"
database_path: "{data_dir / 'followup.db'}"

classification:
  use_ai: false

vips:
  - email: "ceo@example.com"
    name: "Chief Executive"
    tier: 1
"""


@pytest.fixture
def sample_config_dict(data_dir: Path) -> dict[str, Any]:
    """Return a minimal valid config as a dictionary."""
    return {
        "schema_version": 1,
        "timezone": "America/New_York",
        "database_path": str(data_dir / "followup.db"),
        "classification": {"use_ai": False},
        "vips": [{"email": "ceo@example.com", "name": "Chief Executive", "tier": 1}],
    }


@pytest.fixture
def sample_config(sample_config_dict: dict[str, Any]) -> AppConfig:
    """Return a minimal valid AppConfig instance."""
    return AppConfig(**sample_config_dict)


@pytest.fixture
def config_file(temp_config_dir: Path, sample_config_yaml: str) -> Path:
    """Create a temporary config file with valid content."""
    config_path = temp_config_dir / "config.yaml"
    config_path.write_text(sample_config_yaml)
    return config_path


@pytest.fixture
def set_config_env(config_file: Path) -> Generator[None, None, None]:
    """Set the FOLLOWUP_CONFIG_PATH environment variable."""
    old_value = os.environ.get("FOLLOWUP_CONFIG_PATH")
    os.environ["FOLLOWUP_CONFIG_PATH"] = str(config_file)
    yield
    if old_value is None:
        del os.environ["FOLLOWUP_CONFIG_PATH"]
    else:
        os.environ["FOLLOWUP_CONFIG_PATH"] = old_value


@pytest.fixture
async def store(data_dir: Path) -> DatabaseStore:
    """Return an initialized DatabaseStore."""
    s = DatabaseStore(data_dir / "test.db")
    await s.initialize()
    return s
