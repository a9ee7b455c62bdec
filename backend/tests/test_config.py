"""
Tests for environment-driven configuration and run option defaults.
"""

import pytest

import sys
from pathlib import Path

backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from contentflow import config
from contentflow.models.run import RunOptions

ENV_VARS = (
    "CONTENTFLOW_NODE_TIMEOUT_SECONDS",
    "CONTENTFLOW_MAX_LOOP_ITERATIONS",
    "CONTENTFLOW_HALT_ON_FAILURE",
    "CONTENTFLOW_CONTINUE_ON_PARTIAL",
    "CONTENTFLOW_NODE_HANDLER_URL",
    "CONTENTFLOW_LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    yield


class TestConfig:
    def test_defaults(self):
        assert config.node_timeout_seconds() is None
        assert config.max_loop_iterations() == 10
        assert config.halt_on_failure() is False
        assert config.continue_on_partial() is False
        assert config.node_handler_url() == "http://localhost:3001"
        assert config.log_level() == "INFO"

    @pytest.mark.parametrize("raw,expected", [
        ("1", True), ("true", True), ("YES", True), (" on ", True),
        ("0", False), ("false", False), ("maybe", False),
    ])
    def test_flag_parsing(self, monkeypatch, raw, expected):
        monkeypatch.setenv("CONTENTFLOW_HALT_ON_FAILURE", raw)
        assert config.halt_on_failure() is expected

    @pytest.mark.parametrize("raw,expected", [
        ("30", 30.0), ("0.5", 0.5), ("0", None), ("-1", None), ("soon", None),
    ])
    def test_node_timeout(self, monkeypatch, raw, expected):
        monkeypatch.setenv("CONTENTFLOW_NODE_TIMEOUT_SECONDS", raw)
        assert config.node_timeout_seconds() == expected

    @pytest.mark.parametrize("raw,expected", [("4", 4), ("0", 10), ("many", 10)])
    def test_max_loop_iterations(self, monkeypatch, raw, expected):
        monkeypatch.setenv("CONTENTFLOW_MAX_LOOP_ITERATIONS", raw)
        assert config.max_loop_iterations() == expected


class TestRunOptions:
    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("CONTENTFLOW_HALT_ON_FAILURE", "true")
        monkeypatch.setenv("CONTENTFLOW_MAX_LOOP_ITERATIONS", "3")

        options = RunOptions.from_env()

        assert options.halt_on_failure is True
        assert options.default_max_iterations == 3
        assert options.node_timeout_seconds is None

    def test_overrides_win_and_none_is_ignored(self, monkeypatch):
        monkeypatch.setenv("CONTENTFLOW_HALT_ON_FAILURE", "true")

        options = RunOptions.from_env(halt_on_failure=False, node_timeout_seconds=None)

        assert options.halt_on_failure is False
        assert options.node_timeout_seconds is None
