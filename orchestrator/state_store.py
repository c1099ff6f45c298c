"""
Orchestrator State Persistence

Keeps restart counters and the set of running servers in a small JSON document
so a restarted orchestrator does not reset its restart budget.
"""

import asyncio
import contextlib
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union

logger = logging.getLogger(__name__)


@dataclass
class PersistedState:
    """Snapshot written to the state file"""

    restart_counts: Dict[str, int] = field(default_factory=dict)
    running_servers: List[str] = field(default_factory=list)
    timestamp: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            'timestamp': self.timestamp or datetime.now(timezone.utc).isoformat(),
            'restartCounts': dict(self.restart_counts),
            'runningServers': list(self.running_servers),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'PersistedState':
        counts = data.get('restartCounts') or {}
        if not isinstance(counts, dict):
            raise ValueError("restartCounts must be an object")
        running = data.get('runningServers') or []
        if not isinstance(running, list):
            raise ValueError("runningServers must be an array")
        return cls(
            restart_counts={str(name): int(count) for name, count in counts.items()},
            running_servers=[str(name) for name in running],
            timestamp=data.get('timestamp'),
        )


class StateStore:
    """JSON state file with atomic replace-on-write."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    async def load(self) -> PersistedState:
        """Read the state file; a missing or unreadable file yields a fresh state."""
        return await asyncio.to_thread(self._load)

    async def save(self, restart_counts: Dict[str, int], running_servers: List[str]) -> bool:
        """Persist state. Failures are logged and reported as False."""
        state = PersistedState(restart_counts=restart_counts, running_servers=running_servers)
        return await asyncio.to_thread(self._save, state)

    def _load(self) -> PersistedState:
        if not self.path.exists():
            logger.info("No previous state found, starting fresh")
            return PersistedState()

        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("state document must be an object")
            state = PersistedState.from_dict(data)
        except (OSError, ValueError, TypeError) as e:
            logger.warning(f"Could not read state file {self.path}, starting fresh: {e}")
            return PersistedState()

        logger.info(f"Loaded previous state from {self.path}")
        return state

    def _save(self, state: PersistedState) -> bool:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=str(self.path.parent))
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    json.dump(state.to_dict(), f, indent=2)
                os.replace(tmp_path, self.path)
            except BaseException:
                with contextlib.suppress(FileNotFoundError):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            logger.error(f"Failed to save state to {self.path}: {e}")
            return False
        return True

