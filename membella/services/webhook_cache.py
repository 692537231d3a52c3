import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Dict

from membella.config import payment_config

logger = logging.getLogger(__name__)


class WebhookDedupCache:
    """Process-local record of recently handled webhook keys.

    Suppresses side effects of provider redelivery. Losing it (restart,
    another instance) is safe: subscription creation is idempotent and the
    database enforces one subscription per payment.
    """

    def __init__(
        self,
        ttl_seconds: int = payment_config.WEBHOOK_DEDUP_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, float] = {}
        self._lock = threading.Lock()
        self.last_cleanup = datetime.now(timezone.utc)

    @staticmethod
    def make_key(event_type: str, charge_id: str, status: str) -> str:
        return f"{event_type}_{charge_id}_{status}"

    def seen(self, key: str) -> bool:
        """Return True if `key` was recorded within the TTL, else record it."""
        now = self._clock()
        with self._lock:
            self._sweep(now)
            if key in self._entries:
                return True
            self._entries[key] = now
            return False

    def forget(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def cleanup(self) -> int:
        with self._lock:
            removed = self._sweep(self._clock())
        if removed:
            logger.info(f"Removed {removed} expired webhook cache entries")
        return removed

    def _sweep(self, now: float) -> int:
        expired = [k for k, ts in self._entries.items() if now - ts >= self.ttl_seconds]
        for k in expired:
            del self._entries[k]
        self.last_cleanup = datetime.now(timezone.utc)
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
