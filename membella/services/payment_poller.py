import asyncio
import contextlib
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from membella.config import payment_config
from membella.schemas.payment import PaymentStatus, PollResponse, TERMINAL_FAILURE_STATUSES
from membella.services.exceptions import (
    GatewayError,
    PaymentNotFoundError,
    PaymentNotSuccessfulError,
    PaymentPollTimeoutError,
    PaymentValidationError,
)
from membella.services.payment_service import PaymentService

logger = logging.getLogger(__name__)


class PaymentPoller:
    """Waits for a payment to reach a terminal status without a push channel.

    Each attempt reads the stored status; every `gateway_check_every`
    attempts (and on the first) a still-pending payment is also checked
    against the gateway in case a webhook was dropped. Database reads and
    gateway calls are blocking, so they run in a worker thread. Waiting
    between attempts yields the event loop, and the total wait is capped at
    `max_attempts * interval`.
    """

    def __init__(
        self,
        service: PaymentService,
        gateway_check_every: int = payment_config.POLL_GATEWAY_CHECK_EVERY,
        max_attempts_cap: int = payment_config.POLL_MAX_ATTEMPTS,
        min_interval_ms: int = payment_config.POLL_MIN_INTERVAL_MS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.service = service
        self.gateway_check_every = gateway_check_every
        self.max_attempts_cap = max_attempts_cap
        self.min_interval_ms = min_interval_ms
        self._sleep = sleep

    def _should_check_gateway(self, attempt: int) -> bool:
        if self.gateway_check_every <= 0:
            return False
        return attempt == 1 or attempt % self.gateway_check_every == 0

    async def poll(
        self,
        payment_id: str,
        max_attempts: Optional[int] = None,
        interval_ms: Optional[int] = None,
    ) -> PollResponse:
        max_attempts = max(1, min(max_attempts or payment_config.POLL_MAX_ATTEMPTS, self.max_attempts_cap))
        interval_ms = max(interval_ms or payment_config.POLL_INTERVAL_MS, self.min_interval_ms)
        interval = interval_ms / 1000

        loop = asyncio.get_running_loop()
        deadline = loop.time() + max_attempts * interval

        for attempt in range(1, max_attempts + 1):
            logger.info(f"Polling attempt {attempt}/{max_attempts} for payment {payment_id}")
            try:
                payment = await asyncio.to_thread(self.service.get_payment_status, payment_id, fresh=True)
            except PaymentNotFoundError:
                raise
            except Exception as e:
                logger.error(f"Polling attempt {attempt} for payment {payment_id} failed: {e}")
                if attempt >= max_attempts:
                    raise
                await self._sleep(interval)
                continue

            if (
                payment.status == PaymentStatus.PENDING
                and payment.gateway_charge_id
                and self._should_check_gateway(attempt)
            ):
                try:
                    payment = await asyncio.to_thread(self.service.refresh_payment_from_gateway, payment_id)
                except (GatewayError, PaymentValidationError) as e:
                    logger.warning(f"Gateway check on attempt {attempt} for payment {payment_id} failed: {e}")

            if payment.status == PaymentStatus.SUCCESSFUL:
                logger.info(f"Payment {payment_id} successful after {attempt} attempts")
                return PollResponse(
                    **PaymentService.summarize(payment).model_dump(),
                    attempts=attempt,
                    last_checked=datetime.now(timezone.utc),
                )

            if payment.status in TERMINAL_FAILURE_STATUSES:
                logger.info(f"Payment {payment_id} {payment.status.value}, stopping polling")
                raise PaymentNotSuccessfulError(payment_id, payment.status)

            if attempt < max_attempts:
                if loop.time() + interval > deadline:
                    break
                await self._sleep(interval)

        logger.info(f"Polling timeout reached for payment {payment_id}")
        raise PaymentPollTimeoutError(payment_id, max_attempts)


async def run_until_disconnected(
    coro: Awaitable,
    is_disconnected: Callable[[], Awaitable[bool]],
    check_interval: float = 1.0,
):
    """Run `coro` as a task, cancelling it if the client goes away.

    Returns the coroutine's result, or None when it was cancelled because of
    a disconnect. Exceptions from the coroutine propagate.
    """
    task = asyncio.ensure_future(coro)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=check_interval)
            if done:
                return task.result()
            if await is_disconnected():
                logger.info("Client disconnected, cancelling payment poll")
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
                return None
    finally:
        if not task.done():
            task.cancel()
