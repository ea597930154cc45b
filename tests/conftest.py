# =====================================================================
# am-executor Pytest Configuration and Fixtures
# =====================================================================
# This file contains shared fixtures and configuration for all tests
# =====================================================================

import logging
import os
import sys
import textwrap
from unittest.mock import MagicMock

import pytest
from prometheus_client import REGISTRY, CollectorRegistry

# Make the package importable without installation
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from am_executor.config_loader import ConfigHolder  # noqa: E402
from am_executor.executor_metrics import ExecutorMetrics  # noqa: E402
from am_executor.executor_service import create_app  # noqa: E402
from am_executor.logging_utils import CorrelationIdFilter  # noqa: E402
from am_executor.process_runner import ProcessRunner  # noqa: E402


# --- Prometheus Metrics Cleanup ---

@pytest.fixture(autouse=True, scope="function")
def cleanup_prometheus_metrics():
    """
    Remove am-executor collectors from the global registry after each test.

    Tests normally use a private CollectorRegistry; this covers the ones
    that exercise the service entry point, which registers globally.
    """
    yield

    collectors_to_remove = []
    for collector in list(REGISTRY._collector_to_names.keys()):
        names = REGISTRY._collector_to_names.get(collector, set())
        if any(name.startswith(('am_executor_', 'flask_')) for name in names):
            collectors_to_remove.append(collector)

    for collector in collectors_to_remove:
        try:
            REGISTRY.unregister(collector)
        except KeyError:
            pass


@pytest.fixture(autouse=True)
def restore_root_logging():
    """main() reconfigures the root logger; undo it after each test"""
    root = logging.getLogger()
    level = root.level
    yield
    for handler in list(root.handlers):
        if any(isinstance(f, CorrelationIdFilter) for f in handler.filters):
            root.removeHandler(handler)
    root.setLevel(level)


# --- Metrics ---

@pytest.fixture
def registry():
    """Private Prometheus registry"""
    return CollectorRegistry()


@pytest.fixture
def metrics(registry):
    """Executor instruments bound to the private registry"""
    return ExecutorMetrics(registry=registry)


# --- Configuration ---

@pytest.fixture
def write_config(tmp_path):
    """Write a YAML config file and return its path"""
    def _write(content: str, name: str = "config.yaml") -> str:
        path = tmp_path / name
        path.write_text(textwrap.dedent(content))
        return str(path)
    return _write


@pytest.fixture
def plain_config_path(write_config):
    """Config with TLS and auth disabled"""
    return write_config("""
        tls:
          enabled: false
        basicAuth:
          enabled: false
        bearerAuth:
          enabled: false
    """)


@pytest.fixture
def config_holder(plain_config_path):
    return ConfigHolder(plain_config_path)


# --- Runner / App ---

@pytest.fixture
def mock_runner(metrics):
    """Runner double that records calls instead of spawning"""
    runner = MagicMock(spec=ProcessRunner)
    runner.metrics = metrics
    runner.argv = ["/bin/true"]
    return runner


@pytest.fixture
def python_runner(metrics):
    """Build a runner that executes a Python snippet"""
    def _build(code: str) -> ProcessRunner:
        return ProcessRunner(sys.executable, ["-c", code], metrics=metrics)
    return _build


@pytest.fixture
def app(config_holder, mock_runner, metrics):
    app = create_app(config_holder, mock_runner, metrics)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


# --- Sample Data Fixtures ---

@pytest.fixture
def sample_notification():
    """Alertmanager webhook body with one firing alert"""
    return {
        "version": "4",
        "groupKey": "{}:{alertname=\"HighLatency\"}",
        "truncatedAlerts": 0,
        "receiver": "team-x",
        "status": "firing",
        "externalURL": "http://am",
        "groupLabels": {"alertname": "HighLatency"},
        "commonLabels": {"severity": "critical", "alertname": "HighLatency"},
        "commonAnnotations": {"summary": "Latency above SLO"},
        "alerts": [
            {
                "status": "firing",
                "labels": {"job": "web", "instance": "web-01:9100"},
                "annotations": {"runbook": "https://runbooks/latency"},
                "startsAt": "2024-03-01T12:00:00.123456789Z",
                "endsAt": "0001-01-01T00:00:00Z",
                "generatorURL": "http://prometheus/graph?g0.expr=latency",
                "fingerprint": "c0ffee",
            }
        ],
    }


# --- Pytest Configuration ---

def pytest_configure(config):
    """Pytest configuration hook"""
    config.addinivalue_line(
        "markers", "unit: Unit tests (mock all external dependencies)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (real subprocesses and sockets)"
    )
    config.addinivalue_line(
        "markers", "slow: Slow tests (>1 second)"
    )


# --- Helper Functions ---

def assert_log_contains(caplog, level, message_fragment):
    """Assert that logs contain a specific message"""
    for record in caplog.records:
        if record.levelname == level and message_fragment in record.getMessage():
            return True
    raise AssertionError(
        f"Log message containing '{message_fragment}' at level '{level}' not found"
    )
