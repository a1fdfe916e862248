"""fetchbot in-process auto-restart supervisor.

Components:
- EventLogger: append-only NDJSON event log
- StateStore: restart bookkeeping persisted across relaunches (reset daily)
- ErrorClassifier: critical vs. non-critical failures
- MemoryMonitor: periodic memory sampling, warn and critical thresholds
- CleanupManager: gc, registered caches and temp files before a restart
- AutoRestarter: restart policy (cooldown, daily limit, restart sequence)
- ShutdownCoordinator: signal/error handler table and the exit sequence
"""

from fetchbot.supervisor.classifier import ErrorClassifier
from fetchbot.supervisor.cleanup import CleanupManager
from fetchbot.supervisor.events import EventLogger
from fetchbot.supervisor.memory import MemoryMonitor
from fetchbot.supervisor.models import RestartState, SupervisorConfig
from fetchbot.supervisor.restarter import AutoRestarter
from fetchbot.supervisor.shutdown import ShutdownCoordinator
from fetchbot.supervisor.state import StateStore

__all__ = [
    "AutoRestarter",
    "CleanupManager",
    "ErrorClassifier",
    "EventLogger",
    "MemoryMonitor",
    "RestartState",
    "ShutdownCoordinator",
    "StateStore",
    "SupervisorConfig",
]
