"""
backend/features/jobs/poller.py

Bounded status poller for generation jobs.

One loop drives every poll: the first read is immediate, later reads wait
``interval_seconds``. States move idle -> watching -> stopped_terminal,
stopped_timeout or stopped_error and never back, so the terminal callback
fires at most once.
A terminal status only counts when its version is newer than
``since_version`` (the version returned by the enqueue), so a stale
completed/failed record from a previous run is never reported as this run's
outcome.

Polling is observation only; stopping never affects the server-side job.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional
import logging
import time

import httpx

from backend.core.config import settings
from backend.features.jobs.tracker import TERMINAL_STATUSES, JobStatusView


logger = logging.getLogger("aiseo")


class PollerState(str, Enum):
    IDLE = "idle"
    WATCHING = "watching"
    STOPPED_TERMINAL = "stopped_terminal"
    STOPPED_TIMEOUT = "stopped_timeout"
    STOPPED_ERROR = "stopped_error"


class TransientPollError(Exception):
    """A read failed in a way worth retrying (network error, 5xx)."""


@dataclass(frozen=True)
class PollSnapshot:
    status: str
    version: int
    message: Optional[str] = None
    queue_position: Optional[int] = None
    estimated_seconds: Optional[int] = None
    error_code: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_view(cls, view: JobStatusView) -> "PollSnapshot":
        return cls(
            status=view.status,
            version=view.version,
            message=view.message,
            queue_position=view.queue_position,
            estimated_seconds=view.estimated_seconds,
            error_code=view.error_code,
            raw=view.to_dict(),
        )

    @classmethod
    def from_payload(cls, body: Dict[str, Any]) -> "PollSnapshot":
        """Build from a /api/schema/status or /api/sitemap/info response."""
        queue = body.get("queue") or {}
        return cls(
            status=body.get("status", "idle"),
            version=int(body.get("version") or 0),
            message=body.get("message"),
            queue_position=queue.get("position"),
            estimated_seconds=queue.get("estimatedTime"),
            error_code=body.get("error"),
            raw=body,
        )


@dataclass(frozen=True)
class PollOutcome:
    state: PollerState
    attempts: int
    transient_errors: int
    snapshot: Optional[PollSnapshot]

    @property
    def timed_out(self) -> bool:
        return self.state == PollerState.STOPPED_TIMEOUT


class StatusPoller:
    """
    Watch one job until it reaches a terminal state or the attempt budget runs out.

    Args:
        fetch: returns a PollSnapshot; may raise TransientPollError
        interval_seconds: wait between polls (default POLL_INTERVAL_SECONDS)
        max_attempts: poll budget, transient failures included (default POLL_MAX_ATTEMPTS)
        since_version: only terminal snapshots with a newer version end the watch
        sleep: injectable for tests
        on_update: called when the observed version changes
        on_terminal: called once with the terminal snapshot
        on_timeout: called once with the outcome when the budget is exhausted
    """

    def __init__(
        self,
        fetch: Callable[[], PollSnapshot],
        *,
        interval_seconds: Optional[float] = None,
        max_attempts: Optional[int] = None,
        since_version: int = 0,
        sleep: Callable[[float], None] = time.sleep,
        on_update: Optional[Callable[[PollSnapshot], None]] = None,
        on_terminal: Optional[Callable[[PollSnapshot], None]] = None,
        on_timeout: Optional[Callable[[PollOutcome], None]] = None,
    ):
        self.fetch = fetch
        self.interval_seconds = settings.POLL_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        self.max_attempts = settings.POLL_MAX_ATTEMPTS if max_attempts is None else max_attempts
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.since_version = since_version
        self._sleep = sleep
        self._on_update = on_update
        self._on_terminal = on_terminal
        self._on_timeout = on_timeout

        self._state = PollerState.IDLE
        self._attempts = 0
        self._transient_errors = 0
        self._last: Optional[PollSnapshot] = None

    @property
    def state(self) -> PollerState:
        return self._state

    def _outcome(self) -> PollOutcome:
        return PollOutcome(
            state=self._state,
            attempts=self._attempts,
            transient_errors=self._transient_errors,
            snapshot=self._last,
        )

    def run(self) -> PollOutcome:
        """Poll until stopped. A poller runs once; a second call raises RuntimeError.

        A fetch error other than TransientPollError stops the poller in
        STOPPED_ERROR and is re-raised.
        """
        if self._state != PollerState.IDLE:
            raise RuntimeError(f"Poller already {self._state.value}")
        self._state = PollerState.WATCHING
        try:
            return self._watch()
        finally:
            if self._state == PollerState.WATCHING:
                self._state = PollerState.STOPPED_ERROR
                logger.warning(
                    f"[poller] stopped on fetch error after {self._attempts} attempts",
                    extra={"status": self._last.status if self._last else None},
                )

    def _watch(self) -> PollOutcome:
        while self._attempts < self.max_attempts:
            if self._attempts > 0:
                self._sleep(self.interval_seconds)
            self._attempts += 1

            try:
                snapshot = self.fetch()
            except TransientPollError as e:
                self._transient_errors += 1
                logger.debug(f"[poller] transient error on attempt {self._attempts}: {e}")
                continue

            if self._last is None or snapshot.version != self._last.version:
                self._last = snapshot
                if self._on_update:
                    self._on_update(snapshot)
            else:
                self._last = snapshot

            if snapshot.is_terminal and snapshot.version > self.since_version:
                self._state = PollerState.STOPPED_TERMINAL
                if self._on_terminal:
                    self._on_terminal(snapshot)
                return self._outcome()

        self._state = PollerState.STOPPED_TIMEOUT
        outcome = self._outcome()
        logger.info(
            "[poller] attempt budget exhausted",
            extra={"status": self._last.status if self._last else None},
        )
        if self._on_timeout:
            self._on_timeout(outcome)
        return outcome


STATUS_PATHS = {
    "schema": "/api/schema/status",
    "sitemap": "/api/sitemap/info",
}


class HttpStatusSource:
    """Fetch callable reading the status endpoint over HTTP.

    Closes only a client it created itself; use it as a context manager or
    call close().
    """

    def __init__(
        self,
        base_url: str,
        shop: str,
        job_type: str,
        *,
        client: Optional[httpx.Client] = None,
        timeout: float = 10.0,
    ):
        if job_type not in STATUS_PATHS:
            raise ValueError(f"Unknown job type: {job_type}")
        self.url = base_url.rstrip("/") + STATUS_PATHS[job_type]
        self.shop = shop
        self._owns_client = client is None
        self.client = client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def __enter__(self) -> "HttpStatusSource":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __call__(self) -> PollSnapshot:
        try:
            response = self.client.get(self.url, params={"shop": self.shop})
        except httpx.TransportError as e:
            raise TransientPollError(str(e)) from e
        if response.status_code >= 500:
            raise TransientPollError(f"status endpoint returned {response.status_code}")
        response.raise_for_status()
        return PollSnapshot.from_payload(response.json())
