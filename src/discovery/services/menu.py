"""Two-phase alternating discovery menu.

A chat message's keyboard cannot be re-rendered against itself, so the
same menu exists under two identities that always hand over to each other:
a control pressed on ``discovery-a`` is answered with ``discovery-b`` and
vice versa. Both are produced by one ``render`` function from a boolean.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Literal, Optional, Sequence

from ..domain.interaction_models import Control, RenderInstruction
from ..domain.models import Node, StatsSnapshot
from .content_tree import ChildrenResult, ContentTree
from .navigation import NavigationSession

MENU_A = "discovery-a"
MENU_B = "discovery-b"
TITLE = "Infinite Buttons!"
BACK_LABEL = "⬅️ Back"
CLOSE_LABEL = "Close"
NO_HISTORY_NOTICE = "Nothing to go back to."

ActionKind = Literal["select", "back", "close"]


@dataclass(frozen=True)
class MenuAction:
    menu: str
    kind: ActionKind
    node_id: Optional[int] = None


def menu_for(opposing: bool) -> str:
    return MENU_B if opposing else MENU_A


def is_opposing(menu: str) -> bool:
    return menu == MENU_B


def control_id(menu: str, kind: ActionKind, node_id: Optional[int] = None) -> str:
    if kind == "select":
        return f"{menu}/select/{node_id}"
    return f"{menu}/{kind}"


def parse_control(raw: str) -> MenuAction:
    parts = (raw or "").split("/")
    if not parts or parts[0] not in (MENU_A, MENU_B):
        raise ValueError(f"Unknown menu in control {raw!r}")
    if len(parts) == 3 and parts[1] == "select" and parts[2].isdecimal():
        return MenuAction(menu=parts[0], kind="select", node_id=int(parts[2]))
    if len(parts) == 2 and parts[1] in ("back", "close"):
        return MenuAction(menu=parts[0], kind=parts[1])  # type: ignore[arg-type]
    raise ValueError(f"Malformed control {raw!r}")


def format_stats(stats: StatsSnapshot) -> str:
    return (
        f"📏 Depth: {stats.depth} · ✨ Discovered: {stats.discovered} · "
        f"👀 Viewed: {stats.viewed} · 👆 Pressed: {stats.pressed}"
    )


def render(
    children: Sequence[Node],
    opposing: bool,
    *,
    can_go_back: bool,
    stats: StatsSnapshot,
    location: Optional[Node] = None,
    notice: Optional[str] = None,
) -> RenderInstruction:
    menu = menu_for(opposing)
    rows: List[List[Control]] = []
    row: List[Control] = []
    for i, child in enumerate(children, start=1):
        row.append(Control(control_id=control_id(menu, "select", child.id), label=child.label))
        if i % 2 == 0:
            rows.append(row)
            row = []
    if row:
        rows.append(row)

    trailing: List[Control] = []
    if can_go_back:
        trailing.append(Control(control_id=control_id(menu, "back"), label=BACK_LABEL))
    trailing.append(Control(control_id=control_id(menu, "close"), label=CLOSE_LABEL))
    rows.append(trailing)

    lines = [TITLE, f"📍 {location.label if location else 'Start'}"]
    if notice:
        lines.append(notice)
    lines.append(format_stats(stats))
    return RenderInstruction(text="\n".join(lines), controls=rows, menu=menu)


class MenuStateMachine:
    def __init__(self, tree: ContentTree) -> None:
        self._tree = tree

    def start(self, session: NavigationSession, actor_id: str) -> RenderInstruction:
        session.reset()
        return self._show(session, self._prewarm(session, actor_id), opposing=False)

    def dispatch(self, session: NavigationSession, action: MenuAction, actor_id: str) -> RenderInstruction:
        opposing = not is_opposing(action.menu)
        if action.kind == "close":
            return RenderInstruction(
                text=f"{TITLE}\nSee you next time. Send /start to play again.\n{format_stats(session.stats())}",
                menu=action.menu,
                closed=True,
            )
        if action.kind == "back":
            notice = None if session.back() else NO_HISTORY_NOTICE
            return self._show(session, self._prewarm(session, actor_id), opposing, notice=notice)

        node = self._tree.get_node(int(action.node_id))  # type: ignore[arg-type]
        session.enter(node.id)
        return self._show(session, self._prewarm(session, actor_id), opposing)

    def _prewarm(self, session: NavigationSession, actor_id: str) -> ChildrenResult:
        # the only lookup per transition; created nodes count as this session's discoveries
        result = self._tree.get_or_generate_children(session.current_node_id, actor_id)
        session.record_discovered(n.id for n in result.created)
        return result

    def _show(
        self,
        session: NavigationSession,
        children: ChildrenResult,
        opposing: bool,
        notice: Optional[str] = None,
    ) -> RenderInstruction:
        current = session.current_node_id
        session.record_viewed(c.id for c in children.nodes)
        location = self._tree.get_node(current) if current is not None else None
        return render(
            children.nodes,
            opposing,
            can_go_back=session.can_go_back,
            stats=session.stats(),
            location=location,
            notice=notice,
        )
