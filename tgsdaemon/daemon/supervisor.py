"""Ownership of the typegen worker process.

The supervisor spawns the worker with piped stdio, waits for its ready
signal, reads its stdout through the framer and codec, and reports results
and failures upward through two callbacks. It never decides what happens to
pending requests; that is the session's job.

Usage:
    supervisor = ProcessSupervisor(config, on_result=..., on_failure=...)
    await supervisor.start()      # single-flight, bounded by startup_timeout
    await supervisor.write(data)
    await supervisor.stop(Disposed())
"""

import asyncio
import contextlib
import logging
import time
from typing import Callable, Optional

from tgsdaemon.core.configs import SessionConfig
from tgsdaemon.core.errors import (
    DaemonError,
    ExecutableNotFound,
    MalformedResponse,
    ProcessExited,
    SpawnFailed,
    StartupTimeout,
    WriteFailed,
)
from tgsdaemon.daemon.framing import StreamDecoder
from tgsdaemon.daemon.protocol import READY, ResultEnvelope, decode_record
from tgsdaemon.daemon.state import SessionCounters

logger = logging.getLogger(__name__)

# Bytes per stdout read; records may be longer, the framer reassembles them.
READ_CHUNK_SIZE = 65536


class ProcessSupervisor:
    """
    Spawn, watch and terminate one worker process at a time.

    Only one start can be in progress: concurrent ``start()`` callers await
    the same attempt instead of spawning a second process.
    """

    def __init__(
        self,
        config: SessionConfig,
        on_result: Callable[[ResultEnvelope], None],
        on_failure: Callable[[DaemonError], None],
        counters: Optional[SessionCounters] = None,
    ):
        """
        Args:
            config: Command line and timeouts
            on_result: Called with every decoded result record
            on_failure: Called when a running (or starting) worker dies
                without being asked to
            counters: Shared session counters, updated in place
        """
        self.config = config
        self._on_result = on_result
        self._on_failure = on_failure
        self.counters = counters or SessionCounters()

        self._process: Optional[asyncio.subprocess.Process] = None
        self._ready = False
        self._ready_waiter: Optional["asyncio.Future[None]"] = None
        self._start_task: Optional["asyncio.Task[None]"] = None
        self._stdout_task: Optional["asyncio.Task[None]"] = None
        self._stderr_task: Optional["asyncio.Task[None]"] = None
        self._decoder = StreamDecoder()
        self.started_at: Optional[float] = None

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def is_ready(self) -> bool:
        """
        True from the ready signal until the exit has been reported.

        The handle is dropped only after stdout EOF, not when ``returncode``
        is first set, so every request written to a dying process is failed
        by the exit report.
        """
        return self._ready and self._process is not None

    @property
    def restarts(self) -> int:
        """Successful starts so far, the first one included."""
        return self.counters.process_starts

    async def start(self) -> None:
        """
        Start the worker and wait for its ready signal.

        Raises:
            ExecutableNotFound: The executable is missing
            SpawnFailed: Any other OS-level spawn error
            StartupTimeout: No ready signal within ``startup_timeout``
            ProcessExited: The worker exited before becoming ready
        """
        if self.is_ready:
            return

        if self._start_task is None or self._start_task.done():
            self._start_task = asyncio.ensure_future(self._start())

        # Shielded: one caller giving up must not abort everyone's start.
        await asyncio.shield(self._start_task)

    async def _start(self) -> None:
        loop = asyncio.get_running_loop()
        self._ready = False
        self._ready_waiter = loop.create_future()
        self._decoder.reset()

        command = self.config.command
        logger.info("Starting Typegen daemon: %s", " ".join(command))
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            self._ready_waiter = None
            logger.error("Typegen command ('%s') not found", self.config.executable)
            raise ExecutableNotFound(self.config.executable) from e
        except OSError as e:
            self._ready_waiter = None
            logger.error("Failed to spawn daemon: %s", e)
            raise SpawnFailed(" ".join(command), str(e)) from e

        self._process = process
        logger.info("Daemon process spawned (pid %s)", process.pid)
        self._stdout_task = asyncio.ensure_future(self._read_stdout(process))
        self._stderr_task = asyncio.ensure_future(self._read_stderr(process))

        try:
            await asyncio.wait_for(asyncio.shield(self._ready_waiter), self.config.startup_timeout)
        except asyncio.TimeoutError:
            logger.error(
                "Daemon startup timeout - no ready signal within %gs", self.config.startup_timeout
            )
            error = StartupTimeout(self.config.startup_timeout)
            await self._shutdown(error)
            raise error from None
        except DaemonError as e:
            # stop() landed while the spawn was still in progress
            if self._process is process:
                await self._shutdown(e)
            raise

        self._ready = True
        self.started_at = time.time()
        self.counters.process_starts += 1
        logger.info("Daemon is ready!")

    async def write(self, data: bytes, key: str = "") -> None:
        """
        Write one encoded request to the worker's stdin.

        Raises:
            WriteFailed: No live process, or the pipe rejected the write
        """
        process = self._process
        if process is None or process.returncode is not None or process.stdin is None:
            raise WriteFailed(key, "daemon process is not running")
        if process.stdin.is_closing():
            raise WriteFailed(key, "daemon stdin is closed")

        try:
            process.stdin.write(data)
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError, OSError) as e:
            raise WriteFailed(key, str(e)) from e

    async def stop(self, reason: DaemonError) -> None:
        """
        Terminate the worker. Safe to call repeatedly or with no process.

        A start still waiting for its ready signal fails with ``reason``.
        """
        await self._shutdown(reason)

    async def _shutdown(self, reason: DaemonError) -> None:
        process = self._process
        self._process = None
        self._ready = False
        self._fail_ready_waiter(reason)

        if process is not None and process.returncode is None:
            logger.info("Terminating daemon process (pid %s)", process.pid)
            with contextlib.suppress(ProcessLookupError):
                process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=self.config.terminate_timeout)
            except asyncio.TimeoutError:
                logger.warning("Daemon did not exit after SIGTERM, killing it")
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()

        for task in (self._stdout_task, self._stderr_task):
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._stdout_task = None
        self._stderr_task = None
        self._decoder.reset()

    def _fail_ready_waiter(self, error: DaemonError) -> None:
        waiter = self._ready_waiter
        if waiter is not None and not waiter.done():
            waiter.set_exception(error)
            # The start task re-raises it; keep asyncio from logging it twice.
            waiter.exception()

    # ------------------------------------------------------------------
    # Stream readers
    # ------------------------------------------------------------------

    async def _read_stdout(self, process: asyncio.subprocess.Process) -> None:
        assert process.stdout is not None
        detail = ""
        try:
            while True:
                data = await process.stdout.read(READ_CHUNK_SIZE)
                if not data:
                    break
                for record in self._decoder.feed(data):
                    try:
                        self._handle_record(record)
                    except Exception:
                        # Keep reading: exit detection runs after EOF.
                        logger.exception("Error handling daemon record: %.200s", record)
        except OSError as e:
            detail = f"stdout read failed: {e}"
            logger.error("Error reading daemon stdout: %s", e)

        returncode = await process.wait()
        self._handle_exit(process, returncode, detail)

    def _handle_record(self, record: str) -> None:
        if not record.strip():
            return

        try:
            message = decode_record(record)
        except MalformedResponse as e:
            self.counters.malformed_records += 1
            logger.warning("%s (record: %.200s)", e, record)
            return

        if message is READY:
            if self._ready_waiter is not None and not self._ready_waiter.done():
                self._ready_waiter.set_result(None)
            else:
                logger.debug("Ignoring repeated ready signal")
            return

        self._on_result(message)

    async def _read_stderr(self, process: asyncio.subprocess.Process) -> None:
        assert process.stderr is not None
        # readline() gives up on lines past the stream limit; frame by hand.
        decoder = StreamDecoder()
        while True:
            data = await process.stderr.read(READ_CHUNK_SIZE)
            if not data:
                self._log_stderr(decoder.framer.pending)
                return
            for line in decoder.feed(data):
                self._log_stderr(line)

    def _log_stderr(self, line: str) -> None:
        text = line.rstrip()
        if not text:
            return
        if "error" in text.lower():
            logger.warning("STDERR: %.2000s", text)
        else:
            logger.debug("STDERR: %.2000s", text)

    def _handle_exit(self, process: asyncio.subprocess.Process, returncode: int, detail: str) -> None:
        if process is not self._process:
            # Stopped on purpose, or already replaced by a newer process.
            logger.debug("Daemon process %s exited (code: %s)", process.pid, returncode)
            return

        self._process = None
        self._ready = False
        self.counters.process_failures += 1
        error = ProcessExited(returncode, detail)
        logger.error("%s", error)

        waiter = self._ready_waiter
        if waiter is not None and not waiter.done():
            self._fail_ready_waiter(error)
        self._on_failure(error)
