"""Unit tests for recurly_rescue.models - accounts, subscriptions, verdicts."""

from __future__ import annotations

from datetime import UTC, datetime

from recurly_rescue.models import (
    Account,
    RescueVerdict,
    Subscription,
    newest_subscription,
)


def _sub(state: str, reason: str | None = None, created: str | None = None) -> Subscription:
    return Subscription(state=state, expiration_reason=reason, created_at=created)


# ---- Subscription -----------------------------------------------------------


class TestSubscription:
    """State helpers."""

    def test_active_states(self) -> None:
        assert _sub("active").is_active
        assert _sub("trial").is_active
        assert not _sub("expired").is_active

    def test_expired_for_nonpayment(self) -> None:
        assert _sub("expired", "nonpayment").expired_for_nonpayment
        assert not _sub("expired", "canceled").expired_for_nonpayment
        assert not _sub("canceled", "nonpayment").expired_for_nonpayment

    def test_unknown_fields_preserved(self) -> None:
        sub = Subscription.model_validate({"state": "active", "plan": {"code": "x"}})
        assert sub.model_dump()["plan"] == {"code": "x"}


# ---- Account ----------------------------------------------------------------


class TestAccount:
    """Account parsing."""

    def test_from_api(self) -> None:
        account = Account.from_api(
            {
                "id": "abcdef123456",
                "code": "client-1",
                "state": "closed",
                "closed_at": "2025-12-01T10:00:00Z",
                "billing_info": {"last_four": "1111"},
            }
        )
        assert account.code == "client-1"
        assert account.closed_at == datetime(2025, 12, 1, 10, tzinfo=UTC)

    def test_naive_closed_at_is_utc(self) -> None:
        account = Account(code="a", closed_at=datetime(2025, 12, 1))
        assert account.closed_at is not None
        assert account.closed_at.tzinfo is not None

    def test_reference_prefers_code(self) -> None:
        assert Account(code="c", id="i").reference == "c"
        assert Account(id="i").reference == "i"
        assert Account().reference is None


# ---- Verdicts ---------------------------------------------------------------


class TestNewestSubscription:
    """Ordering by creation time."""

    def test_empty(self) -> None:
        assert newest_subscription([]) is None

    def test_picks_latest_created(self) -> None:
        old = _sub("active", created="2024-01-01T00:00:00Z")
        new = _sub("expired", "nonpayment", created="2025-01-01T00:00:00Z")
        assert newest_subscription([old, new]) is new
        assert newest_subscription([new, old]) is new

    def test_undated_sorts_last(self) -> None:
        undated = _sub("active")
        dated = _sub("expired", "nonpayment", created="2020-01-01T00:00:00Z")
        assert newest_subscription([undated, dated]) is dated


class TestRescueVerdict:
    """needs_rescue is expired-for-nonpayment and no active subscription."""

    def test_empty_list_never_needs_rescue(self) -> None:
        verdict = RescueVerdict.from_subscriptions([])
        assert not verdict.needs_rescue
        assert not verdict.has_active_subscription

    def test_only_newest_counts(self) -> None:
        subs = [
            _sub("expired", "nonpayment", created="2025-03-01T00:00:00Z"),
            _sub("expired", "canceled", created="2025-04-01T00:00:00Z"),
        ]
        assert not RescueVerdict.from_subscriptions(subs).needs_rescue

    def test_newest_expired_for_nonpayment(self) -> None:
        subs = [
            _sub("active", created="2024-03-01T00:00:00Z"),
            _sub("expired", "nonpayment", created="2025-04-01T00:00:00Z"),
        ]
        verdict = RescueVerdict.from_subscriptions(subs)
        assert verdict.needs_rescue
        assert not verdict.has_active_subscription

    def test_conflict_never_needs_rescue(self) -> None:
        verdict = RescueVerdict(has_active_subscription=True, expired_for_nonpayment=True)
        assert verdict.is_conflict
        assert not verdict.needs_rescue
