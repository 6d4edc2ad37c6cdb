"""
Client-side polling of a transaction after an STK push.

    IDLE -> POLLING -> SUCCESS | FAILED | TIMEOUT

``fetch`` returns the transaction record (as served by
``GET /api/mpesa/transactions/{document_id}``) or None when it does not
exist. ``cancel()`` is cooperative: an in-flight fetch is allowed to finish.
"""

import enum
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

import requests

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 3.0
DEFAULT_TIMEOUT = 120.0


class PollState(enum.Enum):
    IDLE = "IDLE"
    POLLING = "POLLING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"


@dataclass
class PollResult:
    state: PollState
    status_message: Optional[str] = None
    receipt_number: Optional[str] = None
    error: Optional[str] = None

    @property
    def message(self) -> Optional[str]:
        if self.state == PollState.SUCCESS:
            return f"Payment Successful! Receipt: {self.receipt_number or 'N/A'}"
        if self.state == PollState.FAILED:
            return f"Payment Failed: {self.error or 'Payment failed'}"
        if self.state == PollState.TIMEOUT:
            return self.error
        return None


class TransactionPoller:
    def __init__(
        self,
        fetch: Callable[[], Optional[dict]],
        interval: float = DEFAULT_INTERVAL,
        timeout: float = DEFAULT_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.fetch = fetch
        self.interval = interval
        self.timeout = timeout
        self.clock = clock
        self.result = PollResult(PollState.IDLE)
        self._cancelled = threading.Event()
        self._thread = None

    @property
    def state(self) -> PollState:
        return self.result.state

    def _check(self) -> Optional[PollResult]:
        try:
            record = self.fetch()
        except Exception as e:
            logger.error("Transaction polling error: %s", e)
            return PollResult(PollState.FAILED, error="Failed to poll transaction status")

        if record is None:
            return PollResult(PollState.FAILED, error="Transaction not found")

        status = record.get("status")
        message = record.get("statusMessage")
        if status == "SUCCESS":
            return PollResult(PollState.SUCCESS, message, record.get("mpesaReceiptNumber"))
        if status in ("FAILED", "CANCELLED"):
            return PollResult(PollState.FAILED, message, error=message or "Payment failed")

        self.result = PollResult(PollState.POLLING, message)
        return None

    def poll(self) -> PollResult:
        """Block until the transaction settles, the timeout passes or ``cancel()`` is called."""
        self._cancelled.clear()
        return self._run()

    def _run(self) -> PollResult:
        self.result = PollResult(PollState.POLLING)
        deadline = self.clock() + self.timeout

        while not self._cancelled.is_set():
            outcome = self._check()
            if outcome is not None:
                self.result = outcome
                return outcome

            remaining = deadline - self.clock()
            if remaining <= 0:
                self.result = PollResult(
                    PollState.TIMEOUT,
                    self.result.status_message,
                    error="Transaction timeout. Please check your payment history.",
                )
                return self.result

            self._cancelled.wait(min(self.interval, remaining))

        self.result = PollResult(PollState.IDLE)
        return self.result

    def start(self, on_complete: Callable[[PollResult], None] = None) -> threading.Thread:
        def run():
            result = self._run()
            if on_complete and result.state != PollState.IDLE:
                on_complete(result)

        self._cancelled.clear()
        self._thread = threading.Thread(target=run, daemon=True)
        self._thread.start()
        return self._thread

    def cancel(self):
        self._cancelled.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join()
        self._thread = None


def http_fetcher(base_url: str, document_id: str, session: requests.Session = None, timeout: float = 10.0):
    session = session or requests.Session()
    url = f"{base_url.rstrip('/')}/api/mpesa/transactions/{document_id}"

    def fetch():
        resp = session.get(url, timeout=timeout)
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return resp.json()

    return fetch
