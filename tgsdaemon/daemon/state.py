"""In-memory lifecycle state for a daemon session.

Nothing here survives a restart: the session keeps only what it needs to
route the next response and to answer a health query.

Thread safety: not thread-safe. The session runs on a single asyncio
event loop, so no locking is needed.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class SessionState(str, Enum):
    """Session lifecycle states."""

    UNINITIALIZED = "uninitialized"  # Constructed, no process yet
    STARTING = "starting"  # Process spawned, waiting for ready signal
    READY = "ready"  # Ready signal seen, accepting requests
    DEGRADED = "degraded"  # Last start failed or process died; next submit restarts
    DISPOSED = "disposed"  # Torn down; initialize() performs a cold start


@dataclass
class SessionCounters:
    """Counters reported by the health/stats query."""

    requests_submitted: int = 0
    requests_sent: int = 0
    responses_received: int = 0
    requests_coalesced: int = 0
    requests_failed: int = 0
    malformed_records: int = 0
    process_starts: int = 0
    process_failures: int = 0
    created_at: float = field(default_factory=time.time)
    ready_since: Optional[float] = None

    def get_stats(self) -> Dict[str, Any]:
        now = time.time()
        return {
            "uptime_seconds": now - self.created_at,
            "ready_seconds": (now - self.ready_since) if self.ready_since else 0.0,
            "requests_submitted": self.requests_submitted,
            "requests_sent": self.requests_sent,
            "responses_received": self.responses_received,
            "requests_coalesced": self.requests_coalesced,
            "requests_failed": self.requests_failed,
            "malformed_records": self.malformed_records,
            "process_starts": self.process_starts,
            "process_failures": self.process_failures,
        }
