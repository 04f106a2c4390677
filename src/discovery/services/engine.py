from __future__ import annotations

import logging
from typing import Optional

from ..config import load_settings
from ..domain.errors import DiscoveryError, NotFoundError
from ..domain.interaction_models import InteractionRequest, InteractionResult, RenderInstruction
from ..domain.models import ConversationProgress
from ..infrastructure.kv_store import KeyValueStore, get_kv_store
from ..infrastructure.node_repository import get_node_repo
from ..infrastructure.record_store import conversation_store, session_store
from .content_tree import ContentTree
from .generator import ItemGenerator
from .menu import MenuStateMachine, format_stats, parse_control
from .navigation import NavigationSession

logger = logging.getLogger("discovery.engine")

RESET_FLOW = "confirm_reset"
_YES = {"yes", "y"}
_NO = {"no", "n"}

HELP_TEXT = (
    "Infinite Buttons! Press a button to discover what hides behind it.\n"
    "/start - begin a new journey from the root\n"
    "/stats - show your progress\n"
    "/reset - forget your progress\n"
    "/help - show this message"
)


def normalize_command(raw: str) -> str:
    """``/Start@my_bot arg`` -> ``start``."""
    head = (raw or "").strip().split(maxsplit=1)[0] if (raw or "").strip() else ""
    return head.lstrip("/").split("@", 1)[0].lower()


class DiscoveryEngine:
    """Interaction boundary: one inbound interaction in, one render instruction out.

    Session state is loaded at the start of each interaction and written
    back only once the interaction has succeeded, so a failed generation or
    storage error leaves the persisted session exactly as it was.
    """

    def __init__(self, kv: KeyValueStore, tree: ContentTree) -> None:
        self._sessions = session_store(kv)
        self._conversations = conversation_store(kv)
        self._menu = MenuStateMachine(tree)

    def handle(self, request: InteractionRequest) -> InteractionResult:
        try:
            render = self._dispatch(request)
        except DiscoveryError as exc:
            logger.warning(
                "interaction_failed kind=%s conversation=%s err=%s",
                exc.kind,
                request.conversation_id,
                exc,
            )
            return InteractionResult(ok=False, error=exc.kind, render=RenderInstruction(text=exc.user_message))  # type: ignore[arg-type]
        return InteractionResult(render=render)

    def _dispatch(self, request: InteractionRequest) -> RenderInstruction:
        if request.control_id is not None:
            return self._on_control(request, request.control_id)
        if request.command is not None:
            return self._on_command(request, normalize_command(request.command))
        return self._on_text(request, request.text or "")

    def _load_session(self, conversation_id: str) -> NavigationSession:
        return NavigationSession(self._sessions.load(conversation_id))

    # ------------------------------------------------------------------
    # Menu controls
    # ------------------------------------------------------------------
    def _on_control(self, request: InteractionRequest, raw: str) -> RenderInstruction:
        try:
            action = parse_control(raw)
        except ValueError as exc:
            raise NotFoundError(str(exc)) from exc
        session = self._load_session(request.conversation_id)
        render = self._menu.dispatch(session, action, request.actor_id)
        if not render.closed:
            self._sessions.save(request.conversation_id, session.state)
        return render

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    def _on_command(self, request: InteractionRequest, command: str) -> RenderInstruction:
        logger.info("command_received command=%s actor=%s", command, request.actor_id)
        if command == "start":
            render = self._restart(request)
            self._conversations.delete(request.conversation_id)
            return render
        if command == "reset":
            self._conversations.save(request.conversation_id, ConversationProgress(flow=RESET_FLOW))
            return RenderInstruction(text="Forget all your progress and start over? (yes/no)")
        if command == "stats":
            session = self._load_session(request.conversation_id)
            return RenderInstruction(text=format_stats(session.stats()))
        return RenderInstruction(text=HELP_TEXT)

    def _restart(self, request: InteractionRequest) -> RenderInstruction:
        session = NavigationSession()
        render = self._menu.start(session, request.actor_id)
        self._sessions.save(request.conversation_id, session.state)
        return render

    # ------------------------------------------------------------------
    # Free text and dialogues
    # ------------------------------------------------------------------
    def _on_text(self, request: InteractionRequest, text: str) -> RenderInstruction:
        progress = self._conversations.load(request.conversation_id)
        if progress is None or progress.flow != RESET_FLOW:
            return RenderInstruction(text=f"echo: {text}")
        return self._continue_reset(request, progress, text)

    def _continue_reset(self, request: InteractionRequest, progress: ConversationProgress, text: str) -> RenderInstruction:
        answer = text.strip().lower()
        if answer in _YES:
            render = self._restart(request)
            self._conversations.delete(request.conversation_id)
            return render.model_copy(update={"text": f"Progress reset.\n{render.text}"})
        if answer in _NO:
            self._conversations.delete(request.conversation_id)
            return RenderInstruction(text="Reset cancelled.")
        progress.step += 1
        self._conversations.save(request.conversation_id, progress)
        return RenderInstruction(text="Please answer yes or no.")


_tree: Optional[ContentTree] = None
_engine: Optional[DiscoveryEngine] = None


def get_content_tree() -> ContentTree:
    global _tree
    if _tree is None:
        settings = load_settings()
        _tree = ContentTree(
            get_node_repo(),
            ItemGenerator(batch_size=settings.generate_batch),
            accept_count=settings.generate_accept,
        )
    return _tree


def get_engine() -> DiscoveryEngine:
    global _engine
    if _engine is None:
        _engine = DiscoveryEngine(get_kv_store(), get_content_tree())
    return _engine
