from __future__ import annotations

import threading

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, generate_latest

BALANCE_METRIC = "yc_billing_balance"
POLL_RESULTS = ("success", "auth_error", "billing_error", "error")


class BalancePublisher:
    """Owns the exporter's registry and the balance gauge in it.

    The gauge joins the registry on the first successful poll, so a scrape
    before then shows no balance sample instead of a misleading zero.
    """

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()
        self._balance = Gauge(
            BALANCE_METRIC,
            "current balance of the cloud billing account",
            registry=None,
        )
        self._registered = False
        self._lock = threading.Lock()
        self.polls_total = Counter(
            "yc_billing_polls_total",
            "Billing poll cycles by result",
            ["result"],
            registry=self.registry,
        )
        for result in POLL_RESULTS:
            self.polls_total.labels(result=result)

    def set(self, value: float) -> None:
        self._balance.set(value)
        if not self._registered:
            with self._lock:
                if not self._registered:
                    self.registry.register(self._balance)
                    self._registered = True

    @property
    def value(self) -> float | None:
        return self.registry.get_sample_value(BALANCE_METRIC)

    def record_poll(self, result: str) -> None:
        self.polls_total.labels(result=result).inc()

    def render(self) -> bytes:
        return generate_latest(self.registry)
