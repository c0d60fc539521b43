"""Background release of abandoned stock holds.

``HoldSweeper`` calls ``OrderService.expire_stale_holds`` every
``interval`` seconds from a daemon thread until ``stop()`` is called. A
failing sweep is logged and retried on the next tick.

With the in-process stock ledger (``USE_HTTP_ADAPTERS`` off) the holds only
exist inside the serving process, so the server starts its own sweeper
through ``start_local_sweeper()`` (see ``gateway.wsgi``).
"""

import logging
import threading
from datetime import timedelta
from typing import Optional

from django.conf import settings

from . import providers

logger = logging.getLogger(__name__)

_local_lock = threading.Lock()
_local_sweeper = None


class HoldSweeper:
    """Periodically expire stale stock holds.

    Args:
        service_factory: Zero-argument callable returning an OrderService.
            Called on every tick so settings changes are picked up.
        max_age: Age after which a held reservation is released.
        interval: Seconds between sweeps.
    """

    def __init__(self, service_factory, max_age: timedelta, interval: float = 60.0):
        self.service_factory = service_factory
        self.max_age = max_age
        self.interval = interval
        self._stop = threading.Event()
        self._thread = None

    def sweep_once(self) -> list:
        released = self.service_factory().expire_stale_holds(self.max_age)
        if released:
            logger.info("expired stale holds", extra={"count": len(released), "order_ids": released})
        return released

    def _run(self):
        while not self._stop.is_set():
            try:
                self.sweep_once()
            except Exception:
                logger.exception("hold sweep failed")
            self._stop.wait(self.interval)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="hold-sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def wait(self, timeout: float | None = None) -> None:
        """Block until the sweeper thread exits or ``timeout`` elapses."""
        thread = self._thread
        if thread is not None:
            thread.join(timeout)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()


def build_sweeper(service_factory=None) -> HoldSweeper:
    """HoldSweeper configured from ``ORDERS_HOLD_MAX_AGE_SECS`` and ``ORDERS_SWEEP_INTERVAL_SECS``."""
    return HoldSweeper(
        service_factory or providers.get_order_service,
        max_age=timedelta(seconds=settings.ORDERS_HOLD_MAX_AGE_SECS),
        interval=settings.ORDERS_SWEEP_INTERVAL_SECS,
    )


def start_local_sweeper(service_factory=None) -> Optional[HoldSweeper]:
    """Start the process-wide sweeper for the in-process stock ledger.

    Returns None without starting anything when the inventory service owns
    stock (``USE_HTTP_ADAPTERS``) or ``ORDERS_SWEEPER_AUTOSTART`` is off.
    Later calls return the sweeper started by the first one.
    """
    global _local_sweeper
    if settings.USE_HTTP_ADAPTERS or not settings.ORDERS_SWEEPER_AUTOSTART:
        return None
    with _local_lock:
        if _local_sweeper is None:
            _local_sweeper = build_sweeper(service_factory)
            _local_sweeper.start()
            logger.info("hold sweeper started", extra={"interval": _local_sweeper.interval})
        return _local_sweeper


def stop_local_sweeper(timeout: float | None = None) -> None:
    global _local_sweeper
    with _local_lock:
        if _local_sweeper is not None:
            _local_sweeper.stop(timeout)
            _local_sweeper = None
