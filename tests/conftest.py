"""Shared pytest fixtures for the recurly-rescue test suite."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from recurly_rescue.client import RecurlyClient, RetryPolicy

API_BASE = "https://v3.recurly.com"
FIXED_NOW = 1_767_225_600.0  # 2026-01-01T00:00:00Z


# ---------------------------------------------------------------------------
# Client fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def sleeps() -> list[float]:
    """Collects every delay the client asks for instead of sleeping."""
    return []


@pytest.fixture()
def make_client(sleeps: list[float]) -> Iterator[Callable[..., RecurlyClient]]:
    """Factory for clients whose sleeps are recorded and whose clock is fixed."""
    created: list[RecurlyClient] = []

    def _make(**kwargs: Any) -> RecurlyClient:
        kwargs.setdefault("sleep", sleeps.append)
        kwargs.setdefault("clock", lambda: FIXED_NOW)
        kwargs.setdefault("policy", RetryPolicy())
        client = RecurlyClient("test-api-key", **kwargs)
        created.append(client)
        return client

    yield _make

    for client in created:
        client.close()


@pytest.fixture()
def client(make_client: Callable[..., RecurlyClient]) -> RecurlyClient:
    return make_client()


# ---------------------------------------------------------------------------
# Payload factories
# ---------------------------------------------------------------------------


@pytest.fixture()
def account_payload() -> Callable[..., dict[str, Any]]:
    """Build an account as returned by ``GET /accounts``."""

    def _build(
        code: str,
        state: str = "closed",
        closed_at: str | None = "2025-12-01T10:00:00Z",
        account_id: str | None = None,
    ) -> dict[str, Any]:
        return {
            "id": account_id or f"id{code}",
            "code": code,
            "state": state,
            "email": f"{code}@example.com",
            "closed_at": closed_at,
        }

    return _build


@pytest.fixture()
def subscription_payload() -> Callable[..., dict[str, Any]]:
    """Build a subscription as returned by ``/accounts/{ref}/subscriptions``."""

    def _build(
        state: str = "expired",
        expiration_reason: str | None = "nonpayment",
        created_at: str | None = "2025-06-01T00:00:00Z",
        uuid: str = "sub-uuid",
    ) -> dict[str, Any]:
        return {
            "id": f"id-{uuid}",
            "uuid": uuid,
            "state": state,
            "expiration_reason": expiration_reason,
            "created_at": created_at,
        }

    return _build


# ---------------------------------------------------------------------------
# Filesystem helpers
# ---------------------------------------------------------------------------


@pytest.fixture()
def state_dir(tmp_path: Path) -> Path:
    """Create and return a temporary directory for state files."""
    directory = tmp_path / "state"
    directory.mkdir()
    return directory
