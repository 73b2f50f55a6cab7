from __future__ import annotations

import asyncio
import logging

from .billing import BillingClient
from .errors import AuthError, BillingError
from .iam import CredentialProvider
from .metrics import BalancePublisher

logger = logging.getLogger(__name__)


class BalancePoller:
    """Fetches the balance on a fixed interval and publishes it.

    A cycle is token -> balance -> gauge. Any failure skips the rest of the
    cycle and leaves the last published balance in place.
    """

    def __init__(
        self,
        provider: CredentialProvider,
        client: BillingClient,
        publisher: BalancePublisher,
        account_id: str,
        interval: float = 3600.0,
    ) -> None:
        self.provider = provider
        self.client = client
        self.publisher = publisher
        self.account_id = account_id
        self.interval = interval
        self.last_success = False

    async def poll_once(self) -> bool:
        try:
            token = await self.provider.get_token()
        except AuthError as e:
            logger.error("Skipping poll: IAM token exchange failed: %s", e)
            self.publisher.record_poll("auth_error")
            self.last_success = False
            return False

        try:
            balance = await self.client.fetch_balance(token.value, self.account_id)
        except BillingError as e:
            if e.status_code == 401:
                self.provider.invalidate()
            logger.error("Skipping poll: cannot fetch balance of %s: %s", self.account_id, e)
            self.publisher.record_poll("billing_error")
            self.last_success = False
            return False

        self.publisher.set(balance)
        self.publisher.record_poll("success")
        self.last_success = True
        logger.info("Billing account %s balance is %s", self.account_id, balance)
        return True

    async def run(self, stop: asyncio.Event) -> None:
        logger.info("Polling billing account %s every %ss", self.account_id, self.interval)
        while not stop.is_set():
            try:
                await self.poll_once()
            except Exception:
                logger.exception("Unexpected error during billing poll")
                self.publisher.record_poll("error")
                self.last_success = False

            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                continue
        logger.info("Billing poller stopped")
