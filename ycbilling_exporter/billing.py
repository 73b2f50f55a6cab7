from __future__ import annotations

import logging
import math
import re
from datetime import datetime
from typing import Any, Optional
from urllib.parse import quote

import httpx
from opentelemetry import trace
from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import MAX_BODY_CHARS, BillingError, SerializationError
from .logging_utils import redact_secrets
from .settings import BILLING_BASE_URL

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

_DECIMAL_RE = re.compile(r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)")


def parse_balance(value: Any) -> float:
    """Parse the decimal-string balance of a billing account."""
    if not isinstance(value, str):
        raise SerializationError(f"balance must be a decimal string, got {type(value).__name__}")
    text = value.strip()
    if not _DECIMAL_RE.fullmatch(text):
        raise SerializationError(f"balance is not a decimal number: {value!r}")
    result = float(text)
    if not math.isfinite(result):
        raise SerializationError(f"balance is out of range: {value!r}")
    return result


class BillingSnapshot(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    country_code: Optional[str] = Field(default=None, alias="countryCode")
    currency: Optional[str] = None
    balance: float
    active: Optional[bool] = None
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")

    class Config:
        populate_by_name = True

    @field_validator("balance", mode="before")
    @classmethod
    def _parse_balance(cls, value: Any) -> float:
        return parse_balance(value)


class BillingClient:
    """Reads billing accounts from the Yandex Cloud billing API."""

    def __init__(self, http: httpx.AsyncClient, base_url: str = BILLING_BASE_URL) -> None:
        self._http = http
        self._base_url = base_url.rstrip("/")

    def account_url(self, account_id: str) -> str:
        return f"{self._base_url}/{quote(account_id, safe='')}"

    async def fetch_snapshot(self, token: str, account_id: str) -> BillingSnapshot:
        headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}

        with tracer.start_as_current_span("billing.fetch") as span:
            span.set_attribute("billing_account_id", account_id)
            try:
                resp = await self._http.get(self.account_url(account_id), headers=headers)
            except httpx.HTTPError as e:
                span.set_attribute("success", False)
                span.record_exception(e)
                raise BillingError(f"billing request failed: {e!r}") from e

            span.set_attribute("http.status_code", resp.status_code)
            if not resp.is_success:
                span.set_attribute("success", False)
                raise BillingError(
                    f"billing API rejected request for account {account_id}",
                    status_code=resp.status_code,
                    body=redact_secrets(resp.text[:MAX_BODY_CHARS]),
                )

            try:
                data = resp.json()
            except ValueError as e:
                span.set_attribute("success", False)
                raise SerializationError(
                    "billing response is not valid JSON",
                    status_code=resp.status_code,
                    body=redact_secrets(resp.text[:MAX_BODY_CHARS]),
                ) from e

            try:
                snapshot = BillingSnapshot.model_validate(data)
            except ValidationError as e:
                span.set_attribute("success", False)
                raise SerializationError(f"unexpected billing response: {e}", status_code=resp.status_code) from e

            span.set_attribute("success", True)

        logger.debug(
            "Billing account %s (%s): balance %s %s",
            snapshot.id or account_id,
            snapshot.name,
            snapshot.balance,
            snapshot.currency,
        )
        return snapshot

    async def fetch_balance(self, token: str, account_id: str) -> float:
        snapshot = await self.fetch_snapshot(token, account_id)
        return snapshot.balance
