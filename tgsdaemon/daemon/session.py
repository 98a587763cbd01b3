"""Public session API over the typegen worker.

A DaemonSession owns one worker process and everything in flight to it.
Callers see three operations and never deal with the process directly:

    session = DaemonSession(config)
    await session.initialize()                       # optional, submit() starts lazily
    result = await session.submit("a.tgs", content)  # -> ResultEnvelope
    await session.dispose()

There is one session per editor (or CLI run). It is an ordinary object,
passed to whoever needs it, not a module-level singleton.
"""

import logging
from typing import Any, Dict, Optional

from tgsdaemon.core.configs import SessionConfig, get_session_config
from tgsdaemon.core.errors import DaemonError, Disposed
from tgsdaemon.daemon.multiplexer import PendingRequest, RequestMultiplexer, create_multiplexer
from tgsdaemon.daemon.protocol import ResultEnvelope, encode_request
from tgsdaemon.daemon.state import SessionCounters, SessionState
from tgsdaemon.daemon.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)


class DaemonSession:
    """
    Request/response facade over one long-running typegen worker.

    Every failure leaves the session restartable: the next ``submit()``
    after a crash, a startup timeout or ``dispose()`` performs a fresh
    start.
    """

    def __init__(self, config: Optional[SessionConfig] = None):
        """
        Args:
            config: Worker command and timeouts (default: loaded from the
                user config file and environment)
        """
        self.config = config or get_session_config()
        self.state = SessionState.UNINITIALIZED
        self.counters = SessionCounters()

        self._supervisor = ProcessSupervisor(
            self.config,
            on_result=self._on_result,
            on_failure=self._on_failure,
            counters=self.counters,
        )
        self._multiplexer: RequestMultiplexer = create_multiplexer(
            self.config.policy,
            send=self._send,
            counters=self.counters,
        )

    @property
    def is_ready(self) -> bool:
        return self.state is SessionState.READY and self._supervisor.is_ready

    @property
    def policy(self) -> str:
        return self._multiplexer.policy

    async def initialize(self) -> None:
        """
        Start the worker if it is not already running and ready.

        Concurrent calls share a single start attempt.

        Raises:
            SpawnFailed, StartupTimeout, ProcessExited, Disposed
        """
        if self.is_ready:
            return

        self.state = SessionState.STARTING
        try:
            await self._supervisor.start()
        except DaemonError as e:
            if self.state is not SessionState.DISPOSED:
                self.state = SessionState.DEGRADED
            self._multiplexer.fail_all(e)
            raise

        if self._supervisor.is_ready:
            if self.state is not SessionState.READY:
                self.counters.ready_since = self._supervisor.started_at
            self.state = SessionState.READY

    async def submit(self, key: str, payload: Optional[str] = None) -> ResultEnvelope:
        """
        Parse a document through the worker.

        Args:
            key: Document identity, normally its file path
            payload: Document content; None asks the worker to read ``key``
                from disk

        Returns:
            The worker's result, errors already unescaped

        Raises:
            DaemonError: The request failed (see core.errors for kinds)
        """
        if not self.is_ready:
            await self.initialize()
        return await self._multiplexer.submit(key, payload)

    async def dispose(self) -> None:
        """
        Terminate the worker and reject everything pending with Disposed.

        Idempotent. A later ``initialize()`` or ``submit()`` cold-starts a
        new worker.
        """
        if self.state is SessionState.DISPOSED and not self._supervisor.is_running:
            return

        logger.info("Disposing Typegen daemon...")
        self.state = SessionState.DISPOSED
        error = Disposed()
        await self._supervisor.stop(error)
        self._multiplexer.fail_all(error)
        self.counters.ready_since = None
        logger.info("Daemon disposed")

    async def restart(self) -> None:
        """Operator restart: dispose, then start a fresh worker."""
        await self.dispose()
        await self.initialize()

    def get_stats(self) -> Dict[str, Any]:
        """Session statistics for health checks and the CLI."""
        stats = self.counters.get_stats()
        stats.update(
            {
                "state": self.state.value,
                "policy": self.policy,
                "pid": self._supervisor.pid,
                "restarts": self._supervisor.restarts,
                "pending_requests": self._multiplexer.pending_count,
                "in_flight": self._multiplexer.in_flight_key,
            }
        )
        return stats

    async def __aenter__(self) -> "DaemonSession":
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.dispose()

    # ------------------------------------------------------------------
    # Wiring between supervisor and multiplexer
    # ------------------------------------------------------------------

    async def _send(self, request: PendingRequest) -> None:
        data = encode_request(request.key, request.payload)
        await self._supervisor.write(data, key=request.key)

    def _on_result(self, result: ResultEnvelope) -> None:
        self._multiplexer.on_response(result)

    def _on_failure(self, error: DaemonError) -> None:
        if self.state is not SessionState.DISPOSED:
            self.state = SessionState.DEGRADED
        self.counters.ready_since = None
        self._multiplexer.fail_all(error)
