"""Shared test helpers for building tasks, principals and services."""

from __future__ import annotations

from typing import Any

from task_market_service.services.lifecycle import Principal, TaskLifecycle, TaskRules

FAR_DEADLINE = "2099-12-31"


def make_rules(**overrides: int) -> TaskRules:
    """Build TaskRules with the limits used in config.yaml."""
    values = {
        "max_title_length": 200,
        "max_description_length": 10000,
        "max_requirements": 50,
        "max_bid_message_length": 2000,
    }
    values.update(overrides)
    return TaskRules(**values)


def make_lifecycle(**overrides: int) -> TaskLifecycle:
    """Build a TaskLifecycle with default limits."""
    return TaskLifecycle(make_rules(**overrides))


def make_principal(user_id: str, display_name: str | None = None) -> Principal:
    """Build a principal with a display name derived from the id."""
    return Principal(
        id=user_id,
        display_name=display_name if display_name is not None else user_id.title(),
        photo_url=f"https://example.test/{user_id}.png",
    )


def task_fields(**overrides: Any) -> dict[str, Any]:
    """Return a valid task creation payload."""
    fields: dict[str, Any] = {
        "title": "Build a landing page",
        "category": "Web Development",
        "description": "One page with a signup form",
        "price": 100,
        "deadline": FAR_DEADLINE,
        "requirements": ["Responsive layout", "Contact form"],
    }
    fields.update(overrides)
    return fields


def config_yaml(db_path: str = "data/task-market.db", log_directory: str = "data/logs") -> str:
    """Render a complete config file."""
    return f"""\
service:
  name: "task-market"
  version: "0.1.0"
server:
  host: "0.0.0.0"
  port: 8010
  log_level: "info"
logging:
  level: "WARNING"
  directory: "{log_directory}"
database:
  path: "{db_path}"
identity:
  base_url: "http://localhost:8001"
  principal_path: "/auth/me"
  timeout_seconds: 10
payments:
  base_url: "http://localhost:1337"
  payments_path: "/api/payments"
  api_token: "secret-token"
  currency: "usd"
  timeout_seconds: 10
concurrency:
  max_retries: 3
  backoff_seconds: 0
listing:
  page_size: 5
limits:
  max_title_length: 200
  max_description_length: 10000
  max_requirements: 50
  max_bid_message_length: 2000
request:
  max_body_size: 1048576
"""
