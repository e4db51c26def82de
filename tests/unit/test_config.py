"""Configuration loading tests for the task market service."""

from __future__ import annotations

import pytest

from task_market_service.config import (
    REDACTION_MARKER,
    Settings,
    clear_settings_cache,
    get_config_path,
    get_safe_config,
    get_settings,
)
from tests.helpers import config_yaml


@pytest.mark.unit
def test_config_loads_from_yaml(tmp_path, monkeypatch):
    """Valid config loads without error."""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(config_yaml())
    monkeypatch.setenv("CONFIG_PATH", str(config_path))

    clear_settings_cache()
    settings = get_settings()

    assert isinstance(settings, Settings)
    assert settings.service.name == "task-market"
    assert settings.server.port == 8010
    assert settings.identity.principal_path == "/auth/me"
    assert settings.payments.payments_path == "/api/payments"
    assert settings.payments.currency == "usd"
    assert settings.concurrency.max_retries == 3
    assert settings.listing.page_size == 5
    assert settings.limits.max_requirements == 50


@pytest.mark.unit
def test_config_is_cached(tmp_path, monkeypatch):
    """get_settings returns the same object until the cache is cleared."""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(config_yaml())
    monkeypatch.setenv("CONFIG_PATH", str(config_path))

    first = get_settings()
    assert get_settings() is first

    clear_settings_cache()
    assert get_settings() is not first


@pytest.mark.unit
def test_config_rejects_extra_fields(tmp_path, monkeypatch):
    """Extra keys raise ValidationError (extra='forbid')."""
    content = config_yaml().replace(
        '  version: "0.1.0"\n', '  version: "0.1.0"\n  unknown_field: true\n', 1
    )
    config_path = tmp_path / "config.yaml"
    config_path.write_text(content)
    monkeypatch.setenv("CONFIG_PATH", str(config_path))

    with pytest.raises(Exception):  # noqa: B017
        get_settings()


@pytest.mark.unit
def test_config_missing_required_section(tmp_path, monkeypatch):
    """Missing required sections raise ValidationError."""
    config_path = tmp_path / "config.yaml"
    config_path.write_text('service:\n  name: "task-market"\n  version: "0.1.0"\n')
    monkeypatch.setenv("CONFIG_PATH", str(config_path))

    with pytest.raises(Exception):  # noqa: B017
        get_settings()


@pytest.mark.unit
def test_config_rejects_non_mapping(tmp_path, monkeypatch):
    """A YAML file that is not a mapping is rejected."""
    config_path = tmp_path / "config.yaml"
    config_path.write_text("- just\n- a list\n")
    monkeypatch.setenv("CONFIG_PATH", str(config_path))

    with pytest.raises(ValueError, match="Invalid config file"):
        get_settings()


@pytest.mark.unit
def test_config_path_defaults_to_working_directory(tmp_path, monkeypatch):
    """Without CONFIG_PATH the file is looked up in the working directory."""
    monkeypatch.delenv("CONFIG_PATH", raising=False)
    monkeypatch.chdir(tmp_path)
    assert get_config_path() == tmp_path / "config.yaml"


@pytest.mark.unit
def test_safe_config_redacts_api_token(tmp_path, monkeypatch):
    """The payment gateway token never appears in the safe config."""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(config_yaml())
    monkeypatch.setenv("CONFIG_PATH", str(config_path))

    safe = get_safe_config()

    assert safe["payments"]["api_token"] == REDACTION_MARKER
    assert safe["payments"]["base_url"] == "http://localhost:1337"
    assert "secret-token" not in str(safe)
