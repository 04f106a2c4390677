from __future__ import annotations

import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class NodeCandidate(BaseModel):
    name: str = Field(min_length=1)
    decoration: Optional[str] = Field(default=None, description="Short icon, usually an emoji")


class Node(BaseModel):
    id: int
    name: str
    decoration: Optional[str] = None
    parent_id: Optional[int] = None
    discovered_by: Optional[str] = None
    created_at: datetime

    @property
    def label(self) -> str:
        return f"{self.decoration} {self.name}" if self.decoration else self.name


class NavigationState(BaseModel):
    """Per-conversation traversal state, persisted under ``session:<conversation_id>``."""

    started_at: float = Field(default_factory=time.time)
    current_node_id: Optional[int] = None
    # None entries mean "was at root"
    history: List[Optional[int]] = Field(default_factory=list)
    total_selections: int = 0
    viewed_node_ids: List[int] = Field(default_factory=list)
    discovered_node_ids: List[int] = Field(default_factory=list)


class StatsSnapshot(BaseModel):
    depth: int
    discovered: int
    viewed: int
    pressed: int


class ConversationProgress(BaseModel):
    """An in-flight multi-step dialogue, persisted under ``conversation:<conversation_id>``."""

    flow: str
    step: int = 0
    data: Dict[str, Any] = Field(default_factory=dict)
    started_at: float = Field(default_factory=time.time)
