"""Pytest configuration and fixtures for telemetry tests."""

import os
from unittest.mock import patch

import pytest

from nadi_telemetry.client import TelemetryClient
from nadi_telemetry.config import TelemetryConfig
from nadi_telemetry.sampling import SamplingContext


@pytest.fixture
def clean_env():
    """Provide a clean environment without telemetry-related variables."""
    env_vars_to_clear = [
        "DO_NOT_TRACK",
        "NADI_TELEMETRY_ENABLED",
        "NADI_TELEMETRY_DSN",
        "NADI_TELEMETRY_ENVIRONMENT",
        "NADI_TELEMETRY_SAMPLE_RATE",
        "NADI_TELEMETRY_TRACES_SAMPLE_RATE",
        "NADI_TELEMETRY_ADAPTIVE_SAMPLING",
        "NADI_TELEMETRY_TRACING_ENABLED",
        "NADI_TELEMETRY_MASKING_STRATEGY",
    ]

    # Store original values
    original = {var: os.environ.get(var) for var in env_vars_to_clear}

    # Clear the variables
    for var in env_vars_to_clear:
        if var in os.environ:
            del os.environ[var]

    yield

    # Restore original values
    for var, value in original.items():
        if value is not None:
            os.environ[var] = value
        elif var in os.environ:
            del os.environ[var]


@pytest.fixture
def temp_config_file(tmp_path):
    """Point the config file at a temporary location."""
    config_dir = tmp_path / "nadi"
    config_file = config_dir / "telemetry.json"
    with patch("nadi_telemetry.config.CONFIG_DIR", config_dir), patch(
        "nadi_telemetry.config.CONFIG_FILE", config_file
    ):
        yield config_file


@pytest.fixture
def mock_sentry():
    """Mock sentry_sdk for testing."""
    with patch("nadi_telemetry.client.sentry_sdk") as mock:
        yield mock


@pytest.fixture
def enabled_telemetry(mock_sentry):
    """Provide an enabled and initialized telemetry client."""
    client = TelemetryClient(TelemetryConfig())
    client.initialize(
        dsn="https://test@example.com/1",
        package_name="test-package",
        package_version="1.0.0",
    )
    return client


@pytest.fixture
def disabled_telemetry():
    """Provide a disabled telemetry client."""
    return TelemetryClient(TelemetryConfig(enabled=False))


@pytest.fixture
def context():
    """A plain sampling context with no overrides triggered."""
    return SamplingContext(url="https://app.example.com/home", route="/home")
