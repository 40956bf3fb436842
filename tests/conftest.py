"""Test session configuration.

Loads the project `.env` file once so tests that read ``CDC_*`` settings see
the same values as a developer shell, and provides builders for the
monitored-table document shared by several test modules.
"""

from __future__ import annotations

from typing import Any, Dict, Sequence

import pytest
from dotenv import load_dotenv

from cdc_relay.configuration import ConfigurationAggregate, ConfigurationLoader


@pytest.fixture(scope="session", autouse=True)
def _load_dotenv_for_tests() -> None:
    # Load once per test session; no error if .env is absent.
    load_dotenv()


def build_document(
    tables: Sequence[Any] = ("public.customers", "public.orders"),
    *,
    host: str = "db.internal",
    database: str = "inventory",
    username: str = "cdc",
    password: str = "secret",
    brokers: Sequence[str] = ("kafka-1:9092",),
    topic_pattern: str = "cdc.{database}.{table}",
) -> Dict[str, Any]:
    return {
        "database": {
            "type": "postgresql",
            "host": host,
            "port": 5432,
            "database": database,
            "username": username,
            "password": password,
        },
        "tables": list(tables),
        "kafka": {"brokers": list(brokers), "topicPattern": topic_pattern},
    }


@pytest.fixture
def make_document():
    return build_document


@pytest.fixture
def make_configuration():
    def _make(*args: Any, **kwargs: Any) -> ConfigurationAggregate:
        return ConfigurationLoader.from_mapping(build_document(*args, **kwargs))

    return _make


# Note: Individual tests can use the `monkeypatch` fixture to override env vars.
