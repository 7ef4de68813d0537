"""
Tests for ntpwatch.config: configuration loading, validation, and target resolution.
"""

import copy
import os
import tempfile
from unittest.mock import patch

import pytest

from ntpwatch.config import (
    DEFAULT_CONFIG,
    build_targets,
    load_config,
    validate_config,
)

# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def test_load_config_returns_defaults_when_file_missing():
    """load_config falls back to DEFAULT_CONFIG when the file does not exist."""
    config = load_config("/nonexistent/config.yaml")
    assert config["defaults"]["port"] == 123
    assert config["defaults"]["timeout"] == 10
    assert config["monitors"] == []


def test_load_config_does_not_share_default_monitor_list():
    """Mutating a loaded config does not leak into DEFAULT_CONFIG."""
    config = load_config("/nonexistent/config.yaml")
    config["monitors"].append({"hostname": "pool.ntp.org"})
    assert DEFAULT_CONFIG["monitors"] == []


def test_load_config_merges_file_over_defaults():
    """Values from the YAML file override defaults; missing keys keep defaults."""
    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as tmp:
        tmp.write(
            "monitors:\n"
            "  - name: google\n"
            "    hostname: time.google.com\n"
            "    expected_stratum: 1\n"
            "schedule:\n"
            "  interval_seconds: 30\n"
        )
        tmp_path = tmp.name
    try:
        config = load_config(tmp_path)
    finally:
        os.unlink(tmp_path)

    assert config["monitors"][0]["hostname"] == "time.google.com"
    assert config["schedule"]["interval_seconds"] == 30
    assert config["schedule"]["check_on_start"] is True


def test_load_config_uses_defaults_when_yaml_invalid():
    """A YAML syntax error is logged and defaults are used."""
    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as tmp:
        tmp.write("monitors: [unclosed\n")
        tmp_path = tmp.name
    try:
        with patch("ntpwatch.config.logger") as mock_logger:
            config = load_config(tmp_path)
    finally:
        os.unlink(tmp_path)

    assert config["monitors"] == []
    mock_logger.error.assert_called_once()


def test_load_config_uses_defaults_when_top_level_not_mapping():
    """A YAML list at the top level is logged as an error and defaults are kept."""
    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as tmp:
        tmp.write("- pool.ntp.org\n- time.google.com\n")
        tmp_path = tmp.name
    try:
        with patch("ntpwatch.config.logger") as mock_logger:
            config = load_config(tmp_path)
    finally:
        os.unlink(tmp_path)

    assert config["monitors"] == []
    assert config["defaults"]["port"] == 123
    assert config["schedule"]["check_on_start"] is True
    mock_logger.error.assert_called_once()


def test_load_config_env_var_monitors_with_ports():
    """NTPWATCH_MONITORS accepts host[:port] entries separated by commas."""
    with patch.dict(
        os.environ,
        {"NTPWATCH_MONITORS": "pool.ntp.org, time.example.com:1123"},
        clear=False,
    ):
        config = load_config("/nonexistent/config.yaml")
    assert config["monitors"] == [
        {"hostname": "pool.ntp.org"},
        {"hostname": "time.example.com", "port": 1123},
    ]


def test_load_config_env_var_overrides_config_file():
    """Env vars override values from config file."""
    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as tmp:
        tmp.write("defaults:\n  timeout: 10\n")
        tmp_path = tmp.name
    try:
        with patch.dict(
            os.environ,
            {"NTPWATCH_DEFAULTS_TIMEOUT": "2.5"},
            clear=False,
        ):
            config = load_config(tmp_path)
        assert config["defaults"]["timeout"] == 2.5
    finally:
        os.unlink(tmp_path)


def test_load_config_env_var_expected_stratum_and_bool():
    """Typed env vars are parsed to int and bool."""
    with patch.dict(
        os.environ,
        {
            "NTPWATCH_DEFAULTS_EXPECTED_STRATUM": "2",
            "NTPWATCH_SCHEDULE_CHECK_ON_START": "no",
        },
        clear=False,
    ):
        config = load_config("/nonexistent/config.yaml")
    assert config["defaults"]["expected_stratum"] == 2
    assert config["schedule"]["check_on_start"] is False


def test_load_config_ignores_invalid_env_value():
    """An unparseable env var is logged and ignored."""
    with patch.dict(
        os.environ,
        {"NTPWATCH_WEB_PORT": "not-a-port"},
        clear=False,
    ):
        with patch("ntpwatch.config.logger") as mock_logger:
            config = load_config("/nonexistent/config.yaml")
    assert config["web"]["port"] == 8080
    mock_logger.warning.assert_any_call(
        "Invalid env %s=%r; ignoring.", "NTPWATCH_WEB_PORT", "not-a-port"
    )


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def test_validate_config_passes_for_valid_config(valid_config):
    """A config with one well-formed monitor has no errors."""
    assert validate_config(valid_config) == []


def test_validate_config_requires_a_monitor():
    """An empty monitor list is an error."""
    errors = validate_config(copy.deepcopy(DEFAULT_CONFIG))
    assert any("at least one monitor" in e for e in errors)


def test_validate_config_accepts_bare_hostname_strings(valid_config):
    """A monitor may be given as a plain hostname string."""
    valid_config["monitors"] = ["pool.ntp.org", "time.google.com"]
    assert validate_config(valid_config) == []


@pytest.mark.parametrize(
    "monitor, fragment",
    [
        ({"hostname": ""}, "hostname"),
        ({"hostname": "h", "port": 0}, "port"),
        ({"hostname": "h", "port": "123"}, "port"),
        ({"hostname": "h", "timeout": 0}, "timeout"),
        ({"hostname": "h", "expected_stratum": 300}, "expected_stratum"),
        ({"hostname": "h", "expected_stratum": True}, "expected_stratum"),
    ],
)
def test_validate_config_reports_bad_monitor_fields(valid_config, monitor, fragment):
    """Out-of-range monitor fields are reported by name."""
    valid_config["monitors"] = [monitor]
    errors = validate_config(valid_config)
    assert any(fragment in e for e in errors)


def test_validate_config_checks_defaults_applied_to_monitors(valid_config):
    """An invalid default is reported for monitors that inherit it."""
    valid_config["defaults"]["timeout"] = -5
    errors = validate_config(valid_config)
    assert any("timeout" in e for e in errors)


def test_validate_config_rejects_duplicate_names(valid_config):
    """Two monitors resolving to the same name is an error."""
    valid_config["monitors"] = ["pool.ntp.org", {"hostname": "pool.ntp.org"}]
    errors = validate_config(valid_config)
    assert any("more than once" in e for e in errors)


def test_validate_config_rejects_short_interval(valid_config):
    """interval_seconds below 1 is an error."""
    valid_config["schedule"]["interval_seconds"] = 0
    errors = validate_config(valid_config)
    assert any("interval" in e for e in errors)


# ---------------------------------------------------------------------------
# Target resolution
# ---------------------------------------------------------------------------


def test_build_targets_applies_defaults(valid_config):
    """Monitors without explicit fields inherit the defaults section."""
    valid_config["defaults"] = {"port": 1123, "timeout": 3, "expected_stratum": 2}
    valid_config["monitors"] = [
        {"hostname": "a.example.com"},
        {"name": "b", "hostname": "b.example.com", "port": 123, "expected_stratum": 1},
    ]

    first, second = build_targets(valid_config)

    assert (first.hostname, first.port, first.timeout) == ("a.example.com", 1123, 3)
    assert first.expected_stratum == 2
    assert first.label == "a.example.com"
    assert (second.port, second.expected_stratum, second.label) == (123, 1, "b")


def test_build_targets_accepts_hostname_strings(valid_config):
    """Bare hostname strings resolve to targets with default port and timeout."""
    valid_config["monitors"] = ["pool.ntp.org"]
    (target,) = build_targets(valid_config)
    assert target.hostname == "pool.ntp.org"
    assert target.port == 123
    assert target.timeout == 10
    assert target.expected_stratum is None
