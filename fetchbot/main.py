"""fetchbot host process entry point.

Quick Start:
    $ fetchbot                      # Start the host process under the auto-restarter
    $ fetchbot-supervisor status    # Inspect restart bookkeeping

Environment:
    FETCHBOT_ENV                    # development/production
    FETCHBOT_LOG_LEVEL              # DEBUG/INFO/WARNING/ERROR (default: INFO)
    FETCHBOT_APP                    # "module:function" coroutine hosting the bot
    FETCHBOT_RESTARTED              # set by the process manager after a relaunch
    FETCHBOT_RESTART_COUNT          # restart count handed over by the previous process
"""

from __future__ import annotations

import asyncio
import importlib
import os
import warnings
from typing import Awaitable, Callable, Optional

from fetchbot import __version__
from fetchbot.config import get_settings
from fetchbot.logging_config import get_logger, setup_logging
from fetchbot.supervisor import AutoRestarter
from fetchbot.supervisor.shutdown import CHANNEL_UNCAUGHT

logger = get_logger(__name__)

HostedApp = Callable[[AutoRestarter], Awaitable[None]]

APP_EXITED_CAUSE = "APP_EXITED"

_supervisor: AutoRestarter | None = None


def get_supervisor() -> Optional[AutoRestarter]:
    """Return the supervisor of this process, once ``serve`` has created it."""
    return _supervisor


def load_app(spec: str) -> Optional[HostedApp]:
    """Resolve a ``module:function`` string to the hosted application coroutine."""
    if not spec:
        return None
    module_name, _, attr = spec.partition(":")
    if not attr:
        raise ValueError(f"FETCHBOT_APP must look like 'module:function', got {spec!r}")
    module = importlib.import_module(module_name)
    return getattr(module, attr)


async def serve(app: Optional[HostedApp] = None, supervisor: Optional[AutoRestarter] = None) -> None:
    """Run the hosted application under the auto-restarter.

    Without an application the process idles until a signal or the
    supervisor ends it. An application that returns normally triggers a
    graceful shutdown; one that raises goes through error classification.
    """
    global _supervisor
    settings = get_settings()
    supervisor = supervisor or AutoRestarter.from_settings(settings)
    _supervisor = supervisor

    supervisor.install()
    await supervisor.start()
    logger.info("fetchbot_ready", version=__version__, env=settings.fetchbot_env, pid=os.getpid())

    if app is None:
        await asyncio.Event().wait()
        return

    try:
        await app(supervisor)
    except Exception as exc:
        await supervisor.shutdown.handle_error(CHANNEL_UNCAUGHT, exc, fatal=True)
        return
    logger.info("fetchbot_app_finished")
    await supervisor.shutdown.graceful_shutdown(APP_EXITED_CAUSE)


def main() -> None:
    """Console entry point."""
    setup_logging()
    warnings.simplefilter("default", ResourceWarning)
    settings = get_settings()
    logger.info("fetchbot_starting", version=__version__)
    app = load_app(settings.fetchbot_app)
    asyncio.run(serve(app))


if __name__ == "__main__":
    main()
