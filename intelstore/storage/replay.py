"""Warm replay of sealed trajectories into in-process learning components.

Learning components that keep their state only in memory lose it when the
hook process exits. On every fresh start the most recent sealed
trajectories are fed back to them, oldest first. This is best-effort: a
component whose updates depend on the full history will not reach the exact
state it had before the restart.
"""

import logging
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from intelstore.types import ReplayResult

logger = logging.getLogger(__name__)


@runtime_checkable
class LearningComponent(Protocol):
    """Anything that can absorb a historical trajectory."""

    def ingest(self, trajectory: Dict[str, Any]) -> None: ...


class WarmReplayLoader:
    """Feed the last `depth` sealed trajectories to a learning component.

    Args:
        store: RecordStore to read trajectories from.
        depth: Maximum number of trajectories replayed (store default if None).
    """

    def __init__(self, store, depth: Optional[int] = None):
        self._store = store
        self.depth = store.config.replay_depth if depth is None else depth
        if self.depth < 0:
            raise ValueError("depth cannot be negative")

    def recent_sealed(self) -> List[Dict[str, Any]]:
        """Newest `depth` sealed trajectories, returned oldest first.

        Ordered by sealed_at; ties are broken by insertion order.
        """
        if self.depth == 0:
            return []
        newest_first = list(
            self._store.iter_records(
                "trajectories",
                where={"sealed": True},
                order_by="sealed_at",
                descending=True,
                limit=self.depth,
            )
        )
        newest_first.reverse()
        return newest_first

    def replay(self, component: LearningComponent) -> ReplayResult:
        """Call component.ingest() for each trajectory, oldest first.

        An exception from ingest() stops the replay and propagates.
        """
        if not isinstance(component, LearningComponent):
            raise TypeError(f"{type(component).__name__} has no ingest() method")

        trajectories = self.recent_sealed()
        result = ReplayResult(available=self._store.count("trajectories", where={"sealed": True}))
        for trajectory in trajectories:
            component.ingest(trajectory)
            result.replayed.append(trajectory["id"])

        logger.debug(f"Replayed {result.count} trajectories into {type(component).__name__}")
        return result
