"""HTTP adapter clients with retries, circuit breakers, and context headers.

This module implements the catalog and stock ports against the inventory
service using ``httpx``. It adds:

- Request correlation: propagates ``X-Request-ID`` from the ContextVar set
  by the gateway middleware.
- A circuit breaker per downstream concern (catalog reads, stock writes)
  with HALF_OPEN probing after a timeout.
- A retry policy with exponential backoff for transport errors and 5xx.

Business outcomes (404 unknown reservation, 422 insufficient stock) are
mapped to engine errors and do not count as circuit failures. Exhausted
retries, an open circuit, and unexpected statuses all surface as
``DependencyUnavailable``.
"""

import logging
import threading
import time
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, List, Optional

import httpx
from django.conf import settings
from django.utils.module_loading import import_string

from .domain import ProductSnapshot, ReservationSet, ReservationStatus, StockReservation
from .errors import DependencyUnavailable, InsufficientStock, NotFound

REQUEST_ID_CTX = import_string("gateway.middleware.REQUEST_ID_CTX")
logger = logging.getLogger(__name__)


# ---------------- Circuit Breaker ---------------- #

class CircuitBreaker:
    """Thread-safe circuit breaker with CLOSED/OPEN/HALF_OPEN states.

    CLOSED → OPEN after ``fail_threshold`` consecutive failures; OPEN →
    HALF_OPEN once ``reset_timeout`` seconds have passed; a successful
    HALF_OPEN probe closes the circuit, a failed one opens it again. Only
    one probe may be in flight while HALF_OPEN.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._lock = threading.RLock()
        self._failures = 0
        self._state = "CLOSED"
        self._opened_at = 0.0
        self._probe_in_flight = False

    @property
    def state(self) -> str:
        with self._lock:
            if self._state == "OPEN" and (time.monotonic() - self._opened_at) >= self.reset_timeout:
                self._state = "HALF_OPEN"
                self._probe_in_flight = False
            return self._state

    def before_call(self) -> str:
        """Admit a call or refuse it.

        Raises:
            DependencyUnavailable: If OPEN, or HALF_OPEN with a probe busy.
        """
        with self._lock:
            st = self.state
            if st == "OPEN":
                raise DependencyUnavailable(f"{self.name} circuit is open.", dependency=self.name)
            if st == "HALF_OPEN":
                if self._probe_in_flight:
                    raise DependencyUnavailable(f"{self.name} circuit is probing.", dependency=self.name)
                self._probe_in_flight = True
            return st

    def on_success(self):
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._probe_in_flight = False

    def on_failure(self):
        with self._lock:
            self._failures += 1
            if self._state == "HALF_OPEN" or (self._failures >= self.fail_threshold and self._state != "OPEN"):
                self._state = "OPEN"
                self._opened_at = time.monotonic()
                self._probe_in_flight = False

    def on_finish(self):
        with self._lock:
            if self._state == "HALF_OPEN":
                self._probe_in_flight = False


def _breaker(name: str) -> CircuitBreaker:
    return CircuitBreaker(
        name,
        getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
        getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
    )


# Per-concern instances
_catalog_cb = _breaker("catalog")
_stock_cb = _breaker("stock")


# ---------------- Helpers ---------------- #

def _request_headers(extra: Optional[dict] = None) -> dict:
    """Build headers carrying ``X-Request-ID`` (when set) plus ``extra``."""
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def _retry_policy():
    """Return ``(max_retries, backoff_base_seconds, max_sleep_seconds)``."""
    return (
        getattr(settings, "HTTP_RETRY_MAX", 2),
        getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15),
        getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5),
    )


def _should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
    """Retry only on transport errors or HTTP 5xx."""
    if exc is not None:
        return True
    return resp is not None and 500 <= resp.status_code < 600


def _post(breaker: CircuitBreaker, url: str, payload: dict, timeout: float):
    """POST ``payload`` with circuit-breaker precheck and retries.

    Returns:
        The first response that is not a 5xx.

    Raises:
        DependencyUnavailable: Circuit open, or transport errors / 5xx
            after ``HTTP_RETRY_MAX`` retries.
    """
    max_retries, backoff, cap = _retry_policy()
    state = breaker.before_call()
    headers = _request_headers({"X-Circuit-State": state, "X-Retry-Count": "0"})
    tries = 0
    try:
        with httpx.Client(timeout=timeout) as client:
            while True:
                resp = None
                exc = None
                try:
                    resp = client.post(url, json=payload, headers=headers)
                except httpx.RequestError as e:
                    exc = e
                if not _should_retry(resp, exc):
                    breaker.on_success()
                    return resp

                if tries >= max_retries:
                    breaker.on_failure()
                    logger.warning(
                        "upstream call failed",
                        extra={"dependency": breaker.name, "url": url, "tries": tries + 1},
                    )
                    raise DependencyUnavailable(f"{breaker.name} service unavailable.", dependency=breaker.name) from exc

                tries += 1
                headers["X-Retry-Count"] = str(tries)
                time.sleep(min(backoff * (2 ** (tries - 1)), cap))
    finally:
        breaker.on_finish()


def _unexpected(resp, dependency: str) -> DependencyUnavailable:
    return DependencyUnavailable(
        f"Unexpected {resp.status_code} from {dependency} service.",
        dependency=dependency,
        upstream_status=resp.status_code,
    )


def _parse_reservation_set(data: dict) -> ReservationSet:
    return ReservationSet(
        reservation_id=data["reservation_id"],
        order_id=data["order_id"],
        reservations=tuple(
            StockReservation(
                reservation_id=data["reservation_id"],
                order_id=data["order_id"],
                product_id=r["product_id"],
                quantity=int(r["quantity"]),
                status=ReservationStatus(r["status"]),
                created_at=datetime.fromisoformat(r["created_at"]),
                updated_at=datetime.fromisoformat(r["updated_at"]),
            )
            for r in data["reservations"]
        ),
    )


# ---------------- Catalog Adapter ---------------- #

class HttpCatalogClient:
    """CatalogPort backed by ``POST {INVENTORY_BASE_URL}/snapshot``."""

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = base_url or settings.INVENTORY_BASE_URL
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS

    def fetch(self, product_ids: Iterable[str]) -> dict:
        """Return snapshots for the known ids; unknown ids are omitted."""
        resp = _post(_catalog_cb, f"{self.base_url}/snapshot", {"product_ids": list(product_ids)}, self.timeout)
        if resp.status_code != 200:
            raise _unexpected(resp, "catalog")
        products = resp.json().get("products", {})
        return {
            pid: ProductSnapshot(
                product_id=pid,
                price=Decimal(str(p["price"])),
                available_stock=int(p["stock"]),
                active=bool(p.get("active", True)),
                discount_eligible=bool(p.get("discount_eligible", True)),
            )
            for pid, p in products.items()
        }


# ---------------- Stock Adapter ---------------- #

class HttpStockClient:
    """StockPort backed by the inventory service reservation endpoints."""

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = base_url or settings.INVENTORY_BASE_URL
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS

    def reserve(self, order_id: str, items: Iterable[tuple]) -> ReservationSet:
        """Hold stock for ``order_id``.

        Maps 201/200 to the reservation set and 422 to InsufficientStock.
        """
        payload = {
            "order_id": order_id,
            "items": [{"product_id": pid, "quantity": qty} for pid, qty in items],
        }
        resp = _post(_stock_cb, f"{self.base_url}/reservations", payload, self.timeout)
        if resp.status_code in (200, 201):
            return _parse_reservation_set(resp.json())
        if resp.status_code == 422:
            body = resp.json()
            detail = body.get("detail") if isinstance(body, dict) else None
            # Request validation errors are also 422, with a list detail.
            if isinstance(detail, dict) and detail.get("detail") == "INSUFFICIENT_STOCK":
                raise InsufficientStock(product_id=detail.get("product_id"))
        raise _unexpected(resp, "stock")

    def confirm(self, order_id: str) -> ReservationSet:
        resp = _post(_stock_cb, f"{self.base_url}/reservations/{order_id}/confirm", {}, self.timeout)
        if resp.status_code == 200:
            return _parse_reservation_set(resp.json())
        if resp.status_code == 404:
            raise NotFound("No reservation for this order.", order_id=order_id)
        raise _unexpected(resp, "stock")

    def unconfirm(self, order_id: str) -> Optional[ReservationSet]:
        resp = _post(_stock_cb, f"{self.base_url}/reservations/{order_id}/unconfirm", {}, self.timeout)
        if resp.status_code == 200:
            return _parse_reservation_set(resp.json())
        if resp.status_code == 404:
            return None
        raise _unexpected(resp, "stock")

    def release(self, order_id: str) -> Optional[ReservationSet]:
        resp = _post(_stock_cb, f"{self.base_url}/reservations/{order_id}/release", {}, self.timeout)
        if resp.status_code == 200:
            return _parse_reservation_set(resp.json())
        if resp.status_code == 404:
            return None
        raise _unexpected(resp, "stock")

    def expire_stale_holds(self, max_age: timedelta) -> List[str]:
        payload = {"max_age_seconds": max_age.total_seconds()}
        resp = _post(_stock_cb, f"{self.base_url}/reservations/expire", payload, self.timeout)
        if resp.status_code != 200:
            raise _unexpected(resp, "stock")
        return list(resp.json().get("released", []))
