"""Request multiplexing over a worker that answers one line at a time.

The wire protocol carries no request id: the Nth response is the answer to
the Nth request written. Both policies below therefore keep at most one
request on the wire and only dispatch the next one after the previous
response (or a write failure) has been seen.

Policies:
- FifoMultiplexer ("fifo", default): requests queue in submission order.
  A submission whose key already has an unsettled entry joins that entry,
  and every attached caller gets the same result. New content replaces the
  entry's payload; if the entry was already on the wire it is sent once
  more after its reply, and only the second reply is delivered.
- SingleSlotMultiplexer ("single-slot"): only the most recent submission
  has a live caller. Older ones are rejected with Superseded; if one was
  already on the wire its response is read and discarded.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Deque, List, Optional, Set

from tgsdaemon.core.configs import POLICIES
from tgsdaemon.core.errors import DaemonError, Superseded, WriteFailed
from tgsdaemon.daemon.protocol import ResultEnvelope
from tgsdaemon.daemon.state import SessionCounters

logger = logging.getLogger(__name__)

SendFn = Callable[["PendingRequest"], Awaitable[None]]


@dataclass
class PendingRequest:
    """One unit of work, possibly shared by several callers."""

    key: str
    payload: Optional[str]
    waiters: List["asyncio.Future[ResultEnvelope]"] = field(default_factory=list)
    enqueued_at: float = field(default_factory=time.monotonic)
    dispatched: bool = False
    resend: bool = False
    settled: bool = False

    def attach(self) -> "asyncio.Future[ResultEnvelope]":
        waiter = asyncio.get_running_loop().create_future()
        self.waiters.append(waiter)
        return waiter

    def resolve(self, result: ResultEnvelope) -> None:
        self._settle()
        for waiter in self.waiters:
            if not waiter.done():
                waiter.set_result(result)

    def reject(self, error: BaseException) -> None:
        self._settle()
        for waiter in self.waiters:
            if not waiter.done():
                waiter.set_exception(error)

    @property
    def abandoned(self) -> bool:
        """True when every caller has cancelled its wait."""
        return bool(self.waiters) and all(waiter.cancelled() for waiter in self.waiters)

    def _settle(self) -> None:
        if self.settled:
            raise RuntimeError(f"Request for {self.key} settled twice")
        self.settled = True


class RequestMultiplexer(ABC):
    """
    Shared machinery: the in-flight slot, dispatch, and failure sweeps.

    Subclasses decide where a new submission goes (``_accept``) and which
    entry is dispatched next (``_next_request``).
    """

    policy = ""

    def __init__(self, send: SendFn, counters: Optional[SessionCounters] = None):
        """
        Args:
            send: Coroutine writing one request to the worker. Raises
                WriteFailed (or any DaemonError) when the write fails.
            counters: Shared session counters, updated in place
        """
        self._send = send
        self.counters = counters or SessionCounters()
        self._in_flight: Optional[PendingRequest] = None
        self._draining = False
        self._send_tasks: Set["asyncio.Task[None]"] = set()

    async def submit(self, key: str, payload: Optional[str] = None) -> ResultEnvelope:
        """
        Queue a request and wait for its result.

        Cancelling the awaiting task only drops this caller's continuation;
        a request already on the wire still completes on the worker.
        """
        self.counters.requests_submitted += 1
        waiter = self._accept(key, payload)
        self._drain()
        return await waiter

    def on_response(self, result: ResultEnvelope) -> None:
        """Route a worker response to the request that is on the wire."""
        self.counters.responses_received += 1
        request = self._in_flight
        self._in_flight = None

        if request is None:
            logger.warning("Dropping unsolicited daemon response: %s", result.to_dict())
        elif request.settled:
            logger.debug("Discarding response for superseded request %s", request.key)
        else:
            self._deliver(request, result)

        self._drain()

    def fail_all(self, error: BaseException) -> None:
        """Reject every pending request (in flight or queued) with ``error``."""
        requests = self._take_all()
        if self._in_flight is not None:
            requests.insert(0, self._in_flight)
            self._in_flight = None

        failed = 0
        for request in requests:
            if not request.settled:
                request.reject(error)
                failed += 1
        if failed:
            self.counters.requests_failed += failed
            logger.info("Rejected %d pending request(s): %s", failed, error)

    @property
    def in_flight_key(self) -> Optional[str]:
        return self._in_flight.key if self._in_flight is not None else None

    @property
    @abstractmethod
    def pending_count(self) -> int:
        """Requests with at least one caller still waiting."""

    # ------------------------------------------------------------------
    # Policy hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def _accept(self, key: str, payload: Optional[str]) -> "asyncio.Future[ResultEnvelope]":
        """Register a submission and return the future its caller awaits."""

    @abstractmethod
    def _next_request(self) -> Optional[PendingRequest]:
        """Pop the entry to dispatch next, or None when idle."""

    @abstractmethod
    def _take_all(self) -> List[PendingRequest]:
        """Remove and return every queued (not in-flight) entry."""

    def _deliver(self, request: PendingRequest, result: ResultEnvelope) -> None:
        request.resolve(result)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _drain(self) -> None:
        """Put the next request on the wire if the slot is free."""
        if self._draining:
            return
        self._draining = True
        try:
            while self._in_flight is None:
                request = self._next_request()
                if request is None:
                    return
                if request.abandoned:
                    logger.debug("Skipping request for %s: all callers cancelled", request.key)
                    request.settled = True
                    continue
                request.dispatched = True
                self._in_flight = request
                task = asyncio.ensure_future(self._transmit(request))
                self._send_tasks.add(task)
                task.add_done_callback(self._send_tasks.discard)
        finally:
            self._draining = False

    async def _transmit(self, request: PendingRequest) -> None:
        try:
            await self._send(request)
        except DaemonError as e:
            self._on_send_failed(request, e)
        except OSError as e:
            self._on_send_failed(request, WriteFailed(request.key, str(e)))
        else:
            self.counters.requests_sent += 1

    def _on_send_failed(self, request: PendingRequest, error: DaemonError) -> None:
        logger.warning("Failed to send request for %s: %s", request.key, error)
        if self._in_flight is request:
            self._in_flight = None
        if not request.settled:
            request.reject(error)
            self.counters.requests_failed += 1
        self._drain()


class FifoMultiplexer(RequestMultiplexer):
    """Queue in submission order and coalesce concurrent requests per key."""

    policy = "fifo"

    def __init__(self, send: SendFn, counters: Optional[SessionCounters] = None):
        super().__init__(send, counters)
        self._queue: Deque[PendingRequest] = deque()

    @property
    def pending_count(self) -> int:
        count = len(self._queue)
        if self._in_flight is not None and not self._in_flight.settled:
            count += 1
        return count

    def _find(self, key: str) -> Optional[PendingRequest]:
        in_flight = self._in_flight
        if in_flight is not None and in_flight.key == key and not in_flight.settled:
            return in_flight
        for request in self._queue:
            if request.key == key:
                return request
        return None

    def _accept(self, key: str, payload: Optional[str]) -> "asyncio.Future[ResultEnvelope]":
        existing = self._find(key)
        if existing is None:
            request = PendingRequest(key=key, payload=payload)
            self._queue.append(request)
            return request.attach()

        if existing.payload != payload:
            existing.payload = payload
            # Already on the wire with older content: ask again once the
            # current reply is in, so nobody gets a stale result.
            existing.resend = existing.dispatched
        self.counters.requests_coalesced += 1
        logger.debug("Coalescing request for %s with pending entry", key)
        return existing.attach()

    def _deliver(self, request: PendingRequest, result: ResultEnvelope) -> None:
        if not request.resend:
            request.resolve(result)
            return
        logger.debug("Content for %s changed while in flight, sending it again", request.key)
        request.resend = False
        request.dispatched = False
        self._queue.appendleft(request)

    def _next_request(self) -> Optional[PendingRequest]:
        return self._queue.popleft() if self._queue else None

    def _take_all(self) -> List[PendingRequest]:
        requests = list(self._queue)
        self._queue.clear()
        return requests


class SingleSlotMultiplexer(RequestMultiplexer):
    """Most recent submission wins; older callers are rejected."""

    policy = "single-slot"

    def __init__(self, send: SendFn, counters: Optional[SessionCounters] = None):
        super().__init__(send, counters)
        self._waiting: Optional[PendingRequest] = None

    @property
    def pending_count(self) -> int:
        count = 1 if self._waiting is not None else 0
        if self._in_flight is not None and not self._in_flight.settled:
            count += 1
        return count

    def _accept(self, key: str, payload: Optional[str]) -> "asyncio.Future[ResultEnvelope]":
        for previous in (self._waiting, self._in_flight):
            if previous is not None and not previous.settled:
                # An in-flight entry stays in the slot so its reply is
                # consumed and discarded instead of reaching the new caller.
                previous.reject(Superseded(previous.key))
                self.counters.requests_failed += 1

        request = PendingRequest(key=key, payload=payload)
        self._waiting = request
        return request.attach()

    def _next_request(self) -> Optional[PendingRequest]:
        request, self._waiting = self._waiting, None
        return request

    def _take_all(self) -> List[PendingRequest]:
        request = self._next_request()
        return [request] if request is not None else []


def create_multiplexer(
    policy: str,
    send: SendFn,
    counters: Optional[SessionCounters] = None,
) -> RequestMultiplexer:
    """Build the multiplexer for a configured policy name."""
    if policy == FifoMultiplexer.policy:
        return FifoMultiplexer(send, counters)
    if policy == SingleSlotMultiplexer.policy:
        return SingleSlotMultiplexer(send, counters)
    raise ValueError(f"Unknown multiplexing policy '{policy}'. Expected one of: {', '.join(POLICIES)}")
