from __future__ import annotations

import asyncio
import logging
import signal
import sys
from contextlib import asynccontextmanager, contextmanager
from datetime import timedelta

import httpx
import uvicorn
from fastapi import FastAPI, Response

from . import __version__, otel
from .billing import BillingClient
from .errors import ConfigError
from .iam import CredentialProvider, build_strategy
from .logging_utils import configure_logging
from .metrics import BalancePublisher
from .poller import BalancePoller
from .settings import Settings, load_settings

logger = logging.getLogger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def create_app(settings: Settings, http: httpx.AsyncClient | None = None) -> FastAPI:
    """Build the exporter app. The poller runs for the lifetime of the app."""
    publisher = BalancePublisher()
    strategy = build_strategy(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client = http if http is not None else httpx.AsyncClient(timeout=settings.request_timeout)
        provider = CredentialProvider(
            strategy,
            client,
            token_url=settings.iam_token_url,
            refresh_margin=timedelta(seconds=settings.token_refresh_margin_seconds),
        )
        poller = BalancePoller(
            provider,
            BillingClient(client, settings.billing_base_url),
            publisher,
            settings.billing_account_id,
            interval=settings.poll_interval_seconds,
        )
        app.state.poller = poller

        stop = asyncio.Event()
        task = asyncio.create_task(poller.run(stop), name="billing-poller")
        try:
            yield
        finally:
            stop.set()
            try:
                await asyncio.wait_for(task, timeout=settings.request_timeout)
            except asyncio.TimeoutError:
                logger.warning("Billing poller did not stop in time, cancelled it")
            if http is None:
                await client.aclose()

    app = FastAPI(title="Yandex Cloud billing exporter", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.publisher = publisher
    app.state.poller = None

    @app.get("/metrics")
    def metrics() -> Response:
        return Response(publisher.render(), media_type=publisher.content_type)

    @app.get("/healthz")
    def healthcheck() -> dict[str, bool]:
        poller = app.state.poller
        return {"ok": True, "last_success": bool(poller and poller.last_success)}

    return app


class ExporterServer(uvicorn.Server):
    """uvicorn server that treats SIGINT/SIGTERM as a normal shutdown.

    uvicorn re-raises the captured signal once it has shut down, which kills
    the process with the signal instead of letting ``main`` return.
    """

    @contextmanager
    def capture_signals(self):
        loop = asyncio.get_running_loop()
        for sig in SHUTDOWN_SIGNALS:
            loop.add_signal_handler(sig, self.request_exit, sig)
        try:
            yield
        finally:
            for sig in SHUTDOWN_SIGNALS:
                loop.remove_signal_handler(sig)

    def request_exit(self, sig: int) -> None:
        logger.info("Received %s, shutting down", signal.Signals(sig).name)
        if self.should_exit:
            self.force_exit = True
        self.should_exit = True


def serve(app: FastAPI, settings: Settings) -> None:
    config = uvicorn.Config(
        app,
        host=settings.listen_host,
        port=settings.listen_port,
        log_level=settings.log_level.lower(),
    )
    asyncio.run(ExporterServer(config).serve())


def main() -> int:
    configure_logging()
    try:
        settings = load_settings()
    except ConfigError as e:
        logger.error("Invalid configuration: %s", e)
        return 1
    configure_logging(settings.log_level)

    app = create_app(settings)
    otel.instrument(app, settings)

    logger.info(
        "Yandex Cloud billing exporter is running on %s:%s", settings.listen_host, settings.listen_port
    )
    serve(app, settings)
    logger.info("Yandex Cloud billing exporter stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
