from __future__ import annotations

from typing import Iterable, Optional

from ..domain.models import NavigationState, StatsSnapshot


class NavigationSession:
    """Mutating operations over one conversation's ``NavigationState``."""

    def __init__(self, state: Optional[NavigationState] = None) -> None:
        self.state = state or NavigationState()

    @property
    def current_node_id(self) -> Optional[int]:
        return self.state.current_node_id

    @property
    def can_go_back(self) -> bool:
        return bool(self.state.history)

    def enter(self, node_id: int) -> None:
        self.state.history.append(self.state.current_node_id)
        self.state.current_node_id = node_id
        self.state.total_selections += 1
        self.record_viewed([node_id])

    def back(self) -> bool:
        """Return to the previous node; False (and no change) when there is no history."""
        if not self.state.history:
            return False
        self.state.current_node_id = self.state.history.pop()
        return True

    def reset(self) -> None:
        self.state = NavigationState()

    def record_viewed(self, node_ids: Iterable[int]) -> None:
        _add_unique(self.state.viewed_node_ids, node_ids)

    def record_discovered(self, node_ids: Iterable[int]) -> None:
        _add_unique(self.state.discovered_node_ids, node_ids)

    def stats(self) -> StatsSnapshot:
        return StatsSnapshot(
            depth=len(self.state.history),
            discovered=len(self.state.discovered_node_ids),
            viewed=len(self.state.viewed_node_ids),
            pressed=self.state.total_selections,
        )


def _add_unique(target: list[int], node_ids: Iterable[int]) -> None:
    seen = set(target)
    for node_id in node_ids:
        if node_id not in seen:
            seen.add(node_id)
            target.append(node_id)
