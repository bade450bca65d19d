"""Storefront-side watcher for a payment session.

The gateway confirms payments through a server-to-server webhook, so the
customer's side only learns about it by polling the status endpoint. The
poller owns its deadline: giving up here does not expire anything on the
server, and a late webhook is still applied there.
"""

import logging
import threading
import time
from typing import Callable, Optional

import requests
from requests import RequestException

logger = logging.getLogger(__name__)

POLL_INTERVAL = 5.0
MAX_POLL_TIME = 30 * 60.0
REDIRECT_DELAY = 3.0
MAX_BACKOFF = 60.0


class PaymentStatusNotFound(Exception):
    """The status endpoint does not know the reference (yet)."""


class HttpStatusFetcher:
    """GET ``/api/payments/<ref>/status`` against a running storefront."""

    def __init__(self, base_url: str, *, timeout: float = 10, session=None, headers=None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.headers = dict(headers or {}, Accept="application/json")

    def __call__(self, payment_ref: str) -> dict:
        url = f"{self.base_url}/api/payments/{payment_ref}/status"
        resp = self.session.get(url, headers=self.headers, timeout=self.timeout)
        if resp.status_code == 404:
            raise PaymentStatusNotFound(payment_ref)
        resp.raise_for_status()
        return resp.json()


class PaymentStatusPoller:
    POLLING = "polling"
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    EXPIRED = "expired"
    ERROR = "error"
    CANCELLED = "cancelled"
    TERMINAL = {PAID, FAILED, EXPIRED, ERROR, CANCELLED}

    TRANSIENT_ERRORS = (RequestException, PaymentStatusNotFound, ValueError)

    def __init__(
        self,
        payment_ref: str,
        fetch_status: Callable[[str], dict],
        *,
        interval: float = POLL_INTERVAL,
        max_wait: float = MAX_POLL_TIME,
        redirect_delay: float = REDIRECT_DELAY,
        max_backoff: float = MAX_BACKOFF,
        on_update: Optional[Callable[[str], None]] = None,
        on_redirect: Optional[Callable[[dict], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        wait: Optional[Callable[[float], bool]] = None,
        timer_factory=threading.Timer,
    ):
        self.payment_ref = payment_ref
        self._fetch = fetch_status
        self.interval = interval
        self.max_wait = max_wait
        self.redirect_delay = redirect_delay
        self.max_backoff = max(max_backoff, interval)
        self._on_update = on_update
        self._on_redirect = on_redirect
        self._clock = clock
        self._stopped = threading.Event()
        self._lock = threading.Lock()
        self._wait = wait or self._stopped.wait
        self._timer_factory = timer_factory

        self.state = self.POLLING
        self.last_status: dict = {}
        self.last_error: Optional[Exception] = None
        self.failures = 0
        self.polls = 0
        self.started_at: Optional[float] = None
        self.redirect_timer = None
        self._thread: Optional[threading.Thread] = None

    # ---------- lifecycle ----------
    def start(self) -> threading.Thread:
        self._thread = threading.Thread(
            target=self.run, name=f"payment-poller-{self.payment_ref}", daemon=True
        )
        self._thread.start()
        return self._thread

    def stop(self) -> None:
        """Tear down the loop and any pending redirect."""
        with self._lock:
            self._stopped.set()
            if self.redirect_timer is not None:
                self.redirect_timer.cancel()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    # ---------- loop ----------
    def next_delay(self) -> float:
        if not self.failures:
            return self.interval
        return min(self.interval * (2 ** (self.failures - 1)), self.max_backoff)

    def _set_state(self, state: str) -> str:
        if state != self.state:
            self.state = state
            if self._on_update is not None:
                self._on_update(state)
        return state

    def _schedule_redirect(self) -> None:
        if self._on_redirect is None:
            return
        # stop() takes the same lock, so it either sees the timer or prevents it
        with self._lock:
            if self.stopped:
                return
            self.redirect_timer = self._timer_factory(
                self.redirect_delay, self._on_redirect, args=(self.last_status,)
            )
            self.redirect_timer.daemon = True
            self.redirect_timer.start()

    def poll_once(self) -> Optional[str]:
        """Fetch the status once; return a terminal state or None to keep going."""
        self.polls += 1
        try:
            data = self._fetch(self.payment_ref)
            if not isinstance(data, dict):
                raise ValueError(f"unexpected status body: {type(data).__name__}")
        except self.TRANSIENT_ERRORS as e:
            self.failures += 1
            self.last_error = e
            logger.warning("Status poll %d for %s failed: %s", self.polls, self.payment_ref, e)
            return None

        self.failures = 0
        self.last_error = None
        self.last_status = data or {}
        status = str(self.last_status.get("status") or "").lower()
        if status == self.PAID:
            return self.PAID
        if status in (self.FAILED, self.EXPIRED):
            return status
        self._set_state(self.PENDING)
        return None

    def run(self) -> str:
        self.started_at = self._clock()
        while True:
            if self.stopped:
                return self._set_state(self.CANCELLED)

            outcome = self.poll_once()
            if outcome == self.PAID:
                self._set_state(self.PAID)
                self._schedule_redirect()
                return self.state
            if outcome is not None:
                return self._set_state(outcome)

            elapsed = self._clock() - self.started_at
            if elapsed >= self.max_wait:
                final = self.ERROR if self.failures else self.EXPIRED
                logger.info("Stopped polling %s after %.0fs: %s", self.payment_ref, elapsed, final)
                return self._set_state(final)

            delay = min(self.next_delay(), self.max_wait - elapsed)
            if self._wait(delay):
                return self._set_state(self.CANCELLED)
