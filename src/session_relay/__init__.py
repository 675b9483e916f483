"""session_relay - Chat front ends to the claude CLI, one session per user.

Architecture:
- Engine runs one `claude -p` per turn and parses its stream-json output
- SessionOrchestrator maps users to sessions, queues, and token accounting
- Auto-compact recovers sessions whose context overflowed
"""

from .compact import CompactState, Compactor
from .config import JsonConfigStore, MemoryConfigStore, RelayConfig
from .engine import Engine, EngineState
from .errors import AlreadyProcessing, EngineSpawnError, RelayError
from .observability import configure as configure_observability
from .orchestrator import HealthReport, SessionOrchestrator, SubmitOutcome
from .router import Observer, Router

__all__ = [
    # Main API
    "SessionOrchestrator",
    "SubmitOutcome",
    "HealthReport",
    # Engine
    "Engine",
    "EngineState",
    # Compaction
    "Compactor",
    "CompactState",
    # Settings and persistence
    "RelayConfig",
    "JsonConfigStore",
    "MemoryConfigStore",
    # Fan-out
    "Observer",
    "Router",
    # Errors
    "RelayError",
    "AlreadyProcessing",
    "EngineSpawnError",
    # Observability
    "configure_observability",
]
__version__ = "0.1.0"
