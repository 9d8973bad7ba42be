"""Account lookups and mutations used by the rescue flow.

Each call is a single request through :class:`RecurlyClient`, which owns
all retry behaviour. Failures are re-raised as ``AccountOperationError``
with the original error chained and its status code copied.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import structlog

from recurly_rescue.exceptions import AccountOperationError, ApiError
from recurly_rescue.models import Account

if TYPE_CHECKING:
    from recurly_rescue.client import RecurlyClient

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_INTERNAL_ID_RE = re.compile(r"^[a-z0-9]{12,13}$")


def _require(value: str | None, what: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise AccountOperationError(f"{what} is required and must be a non-empty string")
    return value.strip()


def is_internal_id(identifier: str) -> bool:
    """Return True if ``identifier`` looks like a Recurly internal account id."""
    return bool(_INTERNAL_ID_RE.match(identifier))


def account_ref(identifier: str, internal: bool | None = None) -> str:
    """Return the URL-encoded path segment addressing an account.

    Internal ids are used as-is; account codes get the ``code-`` prefix.
    When ``internal`` is None the kind is guessed from the id's shape.
    """
    if internal is None:
        internal = is_internal_id(identifier)
    ref = identifier if internal else f"code-{identifier}"
    return quote(ref, safe="")


def _wrap(exc: ApiError, message: str) -> AccountOperationError:
    return AccountOperationError(f"{message}: {exc}", status_code=exc.status_code)


def get_account(client: RecurlyClient, account_id: str) -> Account:
    """Fetch one account by internal id or account code.

    Raises:
        AccountOperationError: If the account does not exist (404) or the
            lookup fails.
    """
    clean_id = _require(account_id, "Account ID")
    try:
        response = client.get(f"/accounts/{account_ref(clean_id)}")
    except ApiError as exc:
        if exc.status_code == 404:
            raise AccountOperationError(
                f"Client not found: {clean_id}", status_code=404
            ) from exc
        raise _wrap(exc, f"Failed to fetch account {clean_id}") from exc
    return Account.from_api(response.data)


def create_account(client: RecurlyClient, payload: dict[str, Any]) -> dict[str, Any]:
    if not payload or not payload.get("code"):
        raise AccountOperationError("Account payload with code is required")
    try:
        response = client.post("/accounts", body=payload)
    except ApiError as exc:
        raise _wrap(exc, f"Failed to create account {payload['code']}") from exc
    logger.info("account_created", account_code=payload["code"])
    return response.data


def deactivate_account(client: RecurlyClient, account_code: str) -> dict[str, Any]:
    """Close an account. An account that is already inactive is not an error."""
    clean_code = _require(account_code, "Account code")
    try:
        response = client.delete(f"/accounts/{account_ref(clean_code, internal=False)}")
    except ApiError as exc:
        message = str(exc).lower()
        if exc.status_code == 422 and "already" in message and "inactive" in message:
            logger.info("account_already_inactive", account_code=clean_code)
            return {"code": clean_code, "state": "inactive", "already_inactive": True}
        raise _wrap(exc, f"Failed to deactivate account {clean_code}") from exc
    logger.info("account_deactivated", account_code=clean_code)
    return response.data


def add_account_note(client: RecurlyClient, account_code: str, note: str) -> dict[str, Any]:
    clean_code = _require(account_code, "Account code")
    clean_note = _require(note, "Note content")
    try:
        response = client.post(
            f"/accounts/{account_ref(clean_code, internal=False)}/notes",
            body={"message": clean_note},
        )
    except ApiError as exc:
        raise _wrap(exc, f"Failed to add note to account {clean_code}") from exc
    return response.data


def reopen_account(
    client: RecurlyClient, account_id: str, internal: bool = False
) -> dict[str, Any]:
    """Reactivate a closed account.

    Args:
        client: API client.
        account_id: Internal id or account code.
        internal: Whether ``account_id`` is an internal id.

    Returns:
        The reactivated account payload, or a minimal payload flagged
        ``already_active`` when the API reports the account is active.

    Raises:
        AccountOperationError: On any other failure.
    """
    clean_id = _require(account_id, "Account ID")
    path = f"/accounts/{account_ref(clean_id, internal=internal)}/reactivate"
    try:
        response = client.put(path)
    except ApiError as exc:
        message = str(exc).lower()
        if exc.status_code == 422 and ("active" in message or "already" in message):
            logger.info("account_already_active", account_id=clean_id)
            return {"id": clean_id, "state": "active", "already_active": True}
        raise _wrap(exc, f"Failed to reopen account {clean_id}") from exc

    logger.info("account_reopened", account_id=clean_id)
    return response.data


def has_billing_info(client: RecurlyClient, account_code: str) -> bool:
    """Return True if the account has a usable card for automatic collection.

    Never raises: a missing record or any lookup failure counts as no
    billing info.
    """
    if not isinstance(account_code, str) or not account_code.strip():
        return False
    clean_code = account_code.strip()

    try:
        response = client.get(f"/accounts/{account_ref(clean_code, internal=False)}/billing_info")
    except ApiError as exc:
        if exc.status_code != 404:
            logger.warning("billing_info_check_failed", account_code=clean_code, error=str(exc))
        return False

    info = response.data
    if not isinstance(info, dict):
        return False
    has_card = bool(info.get("card_type") and info.get("last_four"))
    payment_method = info.get("payment_method")
    has_payment_method = isinstance(payment_method, dict) and bool(payment_method.get("card_type"))
    logger.debug(
        "billing_info_checked",
        account_code=clean_code,
        has_card=has_card,
        has_payment_method=has_payment_method,
    )
    return has_card or has_payment_method
