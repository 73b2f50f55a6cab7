"""IAM token exchange and caching.

The billing API only accepts short-lived IAM tokens. They are obtained by
posting a long-lived credential to the IAM token endpoint, either an OAuth
token or a JWT signed with a service account's authorized key. A token is
kept until the expiry the IAM service reports, or for one hour when the
response carries none.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Protocol

import httpx
import jwt as pyjwt
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey
from opentelemetry import trace

from .errors import MAX_BODY_CHARS, AuthError
from .logging_utils import redact_secrets
from .settings import IAM_TOKEN_URL, Settings

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

TOKEN_LIFETIME = timedelta(hours=1)
ASSERTION_LIFETIME = timedelta(hours=1)
ASSERTION_ALGORITHM = "PS256"
CACHE_KEY = "iam"

_FRACTION_RE = re.compile(r"\.(\d+)")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AccessToken:
    value: str = field(repr=False)
    issued_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime, margin: timedelta = timedelta(0)) -> bool:
        return now >= self.expires_at - margin


class CredentialStrategy(Protocol):
    name: str

    def build_request(self, now: datetime) -> dict[str, str]:
        ...


class OAuthTokenStrategy:
    """Exchange a Yandex Passport OAuth token for an IAM token."""

    name = "oauth"

    def __init__(self, oauth_token: str) -> None:
        self._oauth_token = oauth_token

    def build_request(self, now: datetime) -> dict[str, str]:
        return {"yandexPassportOauthToken": self._oauth_token}


class ServiceAccountKeyStrategy:
    """Exchange a JWT signed with a service account's authorized key.

    The key file is either a PEM private key or the JSON document produced by
    ``yc iam key create``. It is read on first use, so a missing file fails the
    poll cycle rather than the process.
    """

    name = "service_account"

    def __init__(
        self,
        key_file: str | Path,
        service_account_id: str | None = None,
        key_id: str | None = None,
        audience: str = IAM_TOKEN_URL,
    ) -> None:
        self.key_file = Path(key_file)
        self.service_account_id = service_account_id
        self.key_id = key_id
        self.audience = audience
        self._private_key: RSAPrivateKey | None = None

    def _load_key(self) -> RSAPrivateKey:
        if self._private_key is not None:
            return self._private_key

        try:
            content = self.key_file.read_text(encoding="utf-8")
        except OSError as e:
            raise AuthError(f"cannot read private key file {self.key_file}: {e}") from e

        pem = content
        if content.lstrip().startswith("{"):
            try:
                document = json.loads(content)
            except ValueError as e:
                raise AuthError(f"authorized key file {self.key_file} is not valid JSON") from e
            pem = document.get("private_key") or ""
            self.key_id = self.key_id or document.get("id")
            self.service_account_id = self.service_account_id or document.get("service_account_id")

        # Authorized keys carry a banner line before the PEM block
        start = pem.find("-----BEGIN")
        if start < 0:
            raise AuthError(f"no PEM private key found in {self.key_file}")

        try:
            key = serialization.load_pem_private_key(pem[start:].encode("utf-8"), password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise AuthError(f"cannot parse private key in {self.key_file}: {e}") from e
        if not isinstance(key, RSAPrivateKey):
            raise AuthError(f"private key in {self.key_file} is not an RSA key")

        if not self.service_account_id or not self.key_id:
            raise AuthError("SERVICE_ACCOUNT_ID and KEY_ID are required unless the key file provides them")

        self._private_key = key
        return key

    def build_assertion(self, now: datetime) -> str:
        key = self._load_key()
        issued = int(now.timestamp())
        claims = {
            "iss": self.service_account_id,
            "aud": self.audience,
            "iat": issued,
            "nbf": issued,
            "exp": issued + int(ASSERTION_LIFETIME.total_seconds()),
        }
        return pyjwt.encode(claims, key, algorithm=ASSERTION_ALGORITHM, headers={"kid": self.key_id})

    def build_request(self, now: datetime) -> dict[str, str]:
        return {"jwt": self.build_assertion(now)}


def build_strategy(settings: Settings) -> CredentialStrategy:
    mode = settings.resolved_auth_mode()
    if mode == "service_account":
        return ServiceAccountKeyStrategy(
            settings.private_key_file,
            service_account_id=settings.service_account_id,
            key_id=settings.key_id,
            audience=settings.iam_token_url,
        )
    return OAuthTokenStrategy(settings.oauth_token)


def parse_expiry(value: Any) -> datetime | None:
    """Parse the RFC 3339 ``expiresAt`` of a token response, or None."""
    if not isinstance(value, str) or not value:
        return None
    text = value.strip().replace("Z", "+00:00")
    # fromisoformat only takes microseconds; upstream sends nanoseconds
    text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.debug("Ignoring unparseable token expiry %r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class CredentialProvider:
    """Hands out a cached IAM token, refreshing it when it is about to expire."""

    def __init__(
        self,
        strategy: CredentialStrategy,
        http: httpx.AsyncClient,
        token_url: str = IAM_TOKEN_URL,
        refresh_margin: timedelta = timedelta(seconds=60),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.strategy = strategy
        self._http = http
        self._token_url = token_url
        self._refresh_margin = refresh_margin
        self._clock = clock
        self._cache: dict[str, AccessToken] = {}
        self._lock = asyncio.Lock()

    def _cached(self) -> AccessToken | None:
        token = self._cache.get(CACHE_KEY)
        if token is None or token.is_expired(self._clock(), self._refresh_margin):
            return None
        return token

    async def get_token(self) -> AccessToken:
        token = self._cached()
        if token is not None:
            return token

        async with self._lock:
            # Another caller may have refreshed while we waited
            token = self._cached()
            if token is not None:
                return token
            token = await self._exchange()
            self._cache[CACHE_KEY] = token
            return token

    def invalidate(self) -> None:
        if self._cache.pop(CACHE_KEY, None) is not None:
            logger.info("Dropped cached IAM token")

    async def _exchange(self) -> AccessToken:
        now = self._clock()
        with tracer.start_as_current_span("iam.exchange") as span:
            span.set_attribute("strategy", self.strategy.name)
            try:
                body = self.strategy.build_request(now)
                resp = await self._http.post(self._token_url, json=body)
            except httpx.HTTPError as e:
                span.set_attribute("success", False)
                span.record_exception(e)
                raise AuthError(f"IAM token request failed: {e!r}") from e
            except AuthError as e:
                span.set_attribute("success", False)
                span.record_exception(e)
                raise

            span.set_attribute("http.status_code", resp.status_code)
            if not resp.is_success:
                span.set_attribute("success", False)
                raise AuthError(
                    "IAM token exchange rejected",
                    status_code=resp.status_code,
                    body=redact_secrets(resp.text[:MAX_BODY_CHARS]),
                )

            try:
                data = resp.json()
            except ValueError as e:
                span.set_attribute("success", False)
                raise AuthError("IAM token response is not valid JSON", status_code=resp.status_code) from e

            value = data.get("iamToken") if isinstance(data, dict) else None
            if not isinstance(value, str) or not value:
                span.set_attribute("success", False)
                raise AuthError("IAM token response has no iamToken", status_code=resp.status_code)

            expires_at = parse_expiry(data.get("expiresAt")) or now + TOKEN_LIFETIME
            span.set_attribute("success", True)

        logger.info("Obtained IAM token via %s flow, valid until %s", self.strategy.name, expires_at.isoformat())
        return AccessToken(value=value, issued_at=now, expires_at=expires_at)
