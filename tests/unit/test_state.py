"""Unit tests for AppState lifecycle helpers."""

from __future__ import annotations

import time
from unittest.mock import MagicMock

import pytest

from task_market_service.core.state import (
    AppState,
    get_app_state,
    init_app_state,
    reset_app_state,
)


@pytest.mark.unit
def test_app_state_init() -> None:
    """AppState initializes with default dependency fields."""
    state = AppState()
    assert state.store is None
    assert state.task_manager is None
    assert state.notification_emitter is None
    assert state.identity_client is None
    assert state.payment_client is None


@pytest.mark.unit
def test_app_state_uptime() -> None:
    """uptime_seconds increases after initialization."""
    state = AppState()
    time.sleep(0.001)
    assert state.uptime_seconds > 0


@pytest.mark.unit
def test_app_state_started_at() -> None:
    """started_at returns a UTC ISO timestamp."""
    state = AppState()
    assert state.started_at.endswith("Z")
    assert "T" in state.started_at


@pytest.mark.unit
def test_payment_client_propagates_to_task_manager() -> None:
    """Replacing the payment client also replaces it inside the TaskManager."""
    state = AppState()
    task_manager = MagicMock()
    state.task_manager = task_manager

    payment_client = MagicMock()
    state.payment_client = payment_client

    task_manager.set_payment_client.assert_called_with(payment_client)


@pytest.mark.unit
def test_get_app_state_uninitialized() -> None:
    """get_app_state raises RuntimeError before initialization."""
    reset_app_state()
    with pytest.raises(RuntimeError):
        _state = get_app_state()


@pytest.mark.unit
def test_init_app_state() -> None:
    """init_app_state creates and stores an AppState instance."""
    reset_app_state()
    state = init_app_state()
    assert isinstance(state, AppState)
    assert get_app_state() is state
    reset_app_state()


@pytest.mark.unit
def test_reset_app_state() -> None:
    """reset_app_state clears the global state container."""
    _state = init_app_state()
    reset_app_state()
    with pytest.raises(RuntimeError):
        _state = get_app_state()
