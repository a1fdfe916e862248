"""Shutdown coordination: signal/error handler table and the exit sequence.

Handlers are installed once per process. Signals go through the event loop
(``loop.add_signal_handler``); uncaught exceptions from the main thread,
worker threads and never-retrieved task exceptions are marshalled onto the
loop and classified. The process only ever ends through ``terminate``.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import gc
import os
import signal
import sys
import threading
import traceback
import warnings
from typing import TYPE_CHECKING, Any, Callable, Coroutine, Optional

from fetchbot.logging_config import get_logger
from fetchbot.supervisor.classifier import describe_error
from fetchbot.supervisor.errors import EventLogError
from fetchbot.supervisor.models import MAX_RESTARTS_CAUSE, EventType

if TYPE_CHECKING:
    from fetchbot.supervisor.restarter import AutoRestarter

logger = get_logger(__name__)

SHUTDOWN_SIGNALS = ("SIGTERM", "SIGINT", "SIGUSR2")

CHANNEL_UNCAUGHT = "uncaught_exception"
CHANNEL_THREAD = "thread_exception"
CHANNEL_TASK = "unhandled_task_exception"

UNCAUGHT_CAUSE = "UNCAUGHT_EXCEPTION"


def _format_stack(exc: object) -> str:
    if isinstance(exc, BaseException) and exc.__traceback__ is not None:
        return "".join(traceback.format_exception(exc))
    return "Stack unavailable"


class ShutdownCoordinator:
    """Owns the handler table and drives the terminal exit sequence."""

    def __init__(
        self,
        supervisor: AutoRestarter,
        exit_func: Optional[Callable[[int], Any]] = None,
    ) -> None:
        self._supervisor = supervisor
        self._exit = exit_func or os._exit
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._installed = False
        self._signals: list[int] = []
        self._tasks: set[asyncio.Task] = set()
        self._previous_excepthook = sys.excepthook
        self._previous_threading_excepthook = threading.excepthook
        self._previous_showwarning = warnings.showwarning
        self._previous_loop_handler: Optional[Callable[..., Any]] = None

    @property
    def installed(self) -> bool:
        return self._installed

    @staticmethod
    def signal_table() -> dict[str, int]:
        """Shutdown signals available on this platform, by name."""
        table = {}
        for name in SHUTDOWN_SIGNALS:
            signum = getattr(signal, name, None)
            if signum is not None:
                table[name] = signum
        return table

    # ── Handler table ─────────────────────────────────────────────────

    def install(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Register signal and error handlers. Later calls are no-ops."""
        if self._installed:
            return
        loop = loop or asyncio.get_running_loop()
        self._loop = loop

        for name, signum in self.signal_table().items():
            try:
                loop.add_signal_handler(signum, self._on_signal, name)
            except (NotImplementedError, RuntimeError, ValueError) as exc:
                logger.warning("signal_handler_unsupported", signal=name, error=str(exc))
            else:
                self._signals.append(signum)

        self._previous_excepthook = sys.excepthook
        self._previous_threading_excepthook = threading.excepthook
        self._previous_showwarning = warnings.showwarning
        self._previous_loop_handler = loop.get_exception_handler()

        sys.excepthook = self._excepthook
        threading.excepthook = self._thread_excepthook
        warnings.showwarning = self._showwarning
        loop.set_exception_handler(self._loop_exception_handler)

        self._installed = True
        logger.info("shutdown_handlers_installed", signals=[signal.Signals(s).name for s in self._signals])

    def uninstall(self) -> None:
        """Restore the hooks that were active before ``install``."""
        if not self._installed:
            return
        loop = self._loop
        if loop is not None and not loop.is_closed():
            for signum in self._signals:
                loop.remove_signal_handler(signum)
            loop.set_exception_handler(self._previous_loop_handler)
        self._signals.clear()
        sys.excepthook = self._previous_excepthook
        threading.excepthook = self._previous_threading_excepthook
        warnings.showwarning = self._previous_showwarning
        self._installed = False

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        loop = self._loop or asyncio.get_running_loop()
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _dispatch(self, coro: Coroutine[Any, Any, None]) -> None:
        """Run a handler coroutine on the supervised loop, from any thread."""
        loop = self._loop
        if loop is not None and loop.is_running() and not loop.is_closed():
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is loop:
                self._spawn(coro)
            else:
                future = asyncio.run_coroutine_threadsafe(coro, loop)
                future.add_done_callback(self._log_handler_failure)
            return
        asyncio.run(coro)

    @staticmethod
    def _log_handler_failure(future: concurrent.futures.Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("error_handler_failed", error=str(exc), error_type=type(exc).__name__)

    def _on_signal(self, name: str) -> None:
        logger.info("signal_received", signal=name)
        self._spawn(self.graceful_shutdown(name))

    def _excepthook(self, exc_type: type[BaseException], exc: BaseException, tb: Any) -> None:
        if issubclass(exc_type, KeyboardInterrupt):
            self._dispatch(self.graceful_shutdown("SIGINT"))
            return
        self._previous_excepthook(exc_type, exc, tb)
        self._dispatch(self.handle_error(CHANNEL_UNCAUGHT, exc, fatal=True))

    def _thread_excepthook(self, args: threading.ExceptHookArgs) -> None:
        if args.exc_type is SystemExit:
            return
        self._previous_threading_excepthook(args)
        self._dispatch(self.handle_error(CHANNEL_THREAD, args.exc_value))

    def _loop_exception_handler(self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        exc = context.get("exception")
        if exc is None:
            exc = context.get("message", "unhandled event loop error")
        self._spawn(self.handle_error(CHANNEL_TASK, exc))

    def _showwarning(self, message: Any, category: type[Warning], filename: str, lineno: int,
                     file: Any = None, line: Optional[str] = None) -> None:
        if issubclass(category, ResourceWarning):
            self._supervisor.events.log(EventType.WARNING, f"{category.__name__}: {message}")
        self._previous_showwarning(message, category, filename, lineno, file, line)

    # ── Error ingestion ───────────────────────────────────────────────

    async def handle_error(self, channel: str, exc: object, *, fatal: bool = False) -> None:
        """Record an uncaught failure and route critical ones to the restart policy.

        ``fatal`` marks failures the interpreter will not survive (main-thread
        exceptions); those end in a graceful shutdown even when non-critical.
        """
        sup = self._supervisor
        message, code = describe_error(exc)
        try:
            sup.events.write(EventType.CRITICAL_ERROR, {
                "type": channel,
                "message": message,
                "code": code,
                "stack": _format_stack(exc),
                "restartCount": sup.state.restart_count,
            })
        except EventLogError as log_exc:
            logger.error("error_handling_failed", channel=channel, error=str(log_exc))
            await sup.force_restart("Event log failure")
            return

        verdict = sup.classifier.classify(message, code)
        if verdict.critical:
            await sup.request_restart(f"Critical error detected: {code} - {message}")
        else:
            logger.error("non_critical_error", channel=channel, message=message, code=code)

        if fatal:
            await self.graceful_shutdown(UNCAUGHT_CAUSE)

    # ── Exit sequence ─────────────────────────────────────────────────

    async def graceful_shutdown(self, cause: str) -> None:
        """Shut down once; later calls (from any trigger) are no-ops."""
        if not self._supervisor.state.try_begin_shutdown():
            return
        await self.shutdown_sequence(cause)

    async def shutdown_sequence(self, cause: str) -> None:
        """Run the terminal sequence. The caller must already hold the latch."""
        sup = self._supervisor
        code = 1 if cause == MAX_RESTARTS_CAUSE else 0
        try:
            sup.events.log(EventType.GRACEFUL_SHUTDOWN, cause)
            logger.info("graceful_shutdown", cause=cause, exit_code=code)
            sup.store.remove_pid()
            self._terminate_child()
            gc.collect()
        except Exception as exc:
            logger.error("graceful_shutdown_failed", cause=cause, error=str(exc))
            self.exit_now(1)
            return
        await self.terminate(code, sup.config.shutdown_exit_delay_s)

    def _terminate_child(self) -> None:
        child = self._supervisor.state.child
        if child is None:
            return
        poll = getattr(child, "poll", None)
        running = (poll() if callable(poll) else child.returncode) is None
        if not running:
            return
        try:
            child.terminate()
            logger.info("child_process_terminated", pid=child.pid)
        except ProcessLookupError:
            pass
        except Exception as exc:
            logger.warning("child_process_terminate_failed", pid=getattr(child, "pid", None), error=str(exc))

    async def terminate(self, code: int, delay: float = 0.0) -> None:
        """Wait ``delay`` seconds for log writers, then exit with ``code``."""
        if delay > 0:
            await asyncio.sleep(delay)
        self.exit_now(code)

    def exit_now(self, code: int) -> None:
        logger.info("supervisor_exit", exit_code=code)
        for stream in (sys.stdout, sys.stderr):
            try:
                stream.flush()
            except Exception:
                continue
        self._exit(code)
