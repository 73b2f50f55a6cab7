from __future__ import annotations

import json
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from ycbilling_exporter.settings import Settings

IAM_PATH = "/iam/v1/tokens"
BILLING_PATH = "/billing/v1/billingAccounts/"

BILLING_ACCOUNT = {
    "id": "dn2abcdefghijklmnop",
    "name": "my-billing-account",
    "countryCode": "RU",
    "currency": "RUB",
    "balance": "987.65",
    "active": True,
    "createdAt": "2023-04-01T10:20:30Z",
}


class FakeClock:
    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeYandexCloud:
    """Stands in for the IAM and billing APIs behind an httpx.MockTransport."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.iam_status = 200
        self.iam_body: Any = {"iamToken": "t1.9euelZqTestIamTokenValue0123456789"}
        self.iam_error: Exception | None = None
        self.billing_status = 200
        self.billing_body: Any = dict(BILLING_ACCOUNT)
        self.billing_error: Exception | None = None

    @staticmethod
    def _response(status: int, body: Any) -> httpx.Response:
        if isinstance(body, (dict, list)):
            return httpx.Response(status, json=body)
        return httpx.Response(status, content=body)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == IAM_PATH:
            if self.iam_error:
                raise self.iam_error
            return self._response(self.iam_status, self.iam_body)
        if request.url.path.startswith(BILLING_PATH):
            if self.billing_error:
                raise self.billing_error
            return self._response(self.billing_status, self.billing_body)
        return httpx.Response(404)

    def calls(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.startswith(path)]

    def iam_calls(self) -> list[httpx.Request]:
        return self.calls(IAM_PATH)

    def billing_calls(self) -> list[httpx.Request]:
        return self.calls(BILLING_PATH)

    def iam_bodies(self) -> list[dict[str, Any]]:
        return [json.loads(r.content) for r in self.iam_calls()]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cloud() -> FakeYandexCloud:
    return FakeYandexCloud()


@pytest.fixture
def http(cloud: FakeYandexCloud) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(cloud.handler))


@pytest.fixture(scope="session")
def rsa_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def _pem(key: rsa.RSAPrivateKey) -> str:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


@pytest.fixture
def pem_key_file(tmp_path, rsa_key):
    path = tmp_path / "key.pem"
    path.write_text(_pem(rsa_key), encoding="utf-8")
    return path


@pytest.fixture
def authorized_key_file(tmp_path, rsa_key):
    path = tmp_path / "authorized_key.json"
    document = {
        "id": "ajekeyid0123456789",
        "service_account_id": "ajesaid0123456789",
        "created_at": "2024-01-01T00:00:00.000000000Z",
        "key_algorithm": "RSA_2048",
        "public_key": "-----BEGIN PUBLIC KEY-----\n...\n-----END PUBLIC KEY-----\n",
        "private_key": "PLEASE DO NOT REMOVE THIS LINE! Yandex.Cloud SA Key ID <ajekeyid0123456789>\n"
        + _pem(rsa_key),
    }
    path.write_text(json.dumps(document), encoding="utf-8")
    return path


@pytest.fixture
def make_settings() -> Callable[..., Settings]:
    def factory(**overrides: Any) -> Settings:
        values: dict[str, Any] = {"billing_account_id": "dn2abcdefghijklmnop", "oauth_token": "y0_AgAAAAtestoauthtoken"}
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return factory


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def wait() -> Callable[..., bool]:
    return wait_until
