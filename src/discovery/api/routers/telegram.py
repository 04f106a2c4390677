"""Telegram webhook adapter.

Answers with a webhook reply: the Bot API method to invoke is returned
as the JSON body of the webhook response. A reply holds one method, so a
successful button press is acknowledged with a separate outbound
``answerCallbackQuery`` when a bot token is configured.
"""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests
from fastapi import APIRouter, Body, Depends, Header, status
from fastapi.responses import JSONResponse, Response

from ...config import load_settings
from ...domain.interaction_models import InteractionRequest, InteractionResult, RenderInstruction
from ...services.engine import DiscoveryEngine, get_engine

logger = logging.getLogger("discovery.telegram")

router = APIRouter(prefix="/tlg", tags=["telegram"])

TELEGRAM_API = "https://api.telegram.org"


@dataclass
class ReplyContext:
    chat_id: int
    message_id: Optional[int] = None
    callback_query_id: Optional[str] = None


def inline_keyboard(render: RenderInstruction) -> Dict[str, Any]:
    return {
        "inline_keyboard": [
            [{"text": c.label, "callback_data": c.control_id} for c in row]
            for row in render.controls
        ]
    }


def _update_date(update: Dict[str, Any]) -> Optional[int]:
    message = update.get("message") or (update.get("callback_query") or {}).get("message") or {}
    date = message.get("date")
    return int(date) if isinstance(date, (int, float)) else None


def parse_update(update: Dict[str, Any]) -> Optional[tuple[InteractionRequest, ReplyContext]]:
    """Map a Telegram update onto an interaction; None for updates the bot ignores."""
    callback = update.get("callback_query")
    if callback:
        message = callback.get("message") or {}
        chat = message.get("chat") or {}
        if "id" not in chat or not callback.get("data"):
            return None
        request = InteractionRequest(
            actor_id=str((callback.get("from") or {}).get("id", chat["id"])),
            conversation_id=str(chat["id"]),
            control_id=str(callback["data"]),
        )
        return request, ReplyContext(
            chat_id=chat["id"],
            message_id=message.get("message_id"),
            callback_query_id=callback.get("id"),
        )

    message = update.get("message") or {}
    text = message.get("text")
    chat = message.get("chat") or {}
    if not isinstance(text, str) or "id" not in chat:
        return None
    actor_id = str((message.get("from") or {}).get("id", chat["id"]))
    if text.startswith("/"):
        request = InteractionRequest(actor_id=actor_id, conversation_id=str(chat["id"]), command=text)
    else:
        request = InteractionRequest(actor_id=actor_id, conversation_id=str(chat["id"]), text=text)
    return request, ReplyContext(chat_id=chat["id"])


def answer_callback_query(bot_token: str, callback_query_id: str) -> bool:
    """Stop the client-side spinner; the webhook reply itself is spent on editMessageText."""
    try:
        resp = requests.post(
            f"{TELEGRAM_API}/bot{bot_token}/answerCallbackQuery",
            json={"callback_query_id": callback_query_id},
            timeout=(3, 5),
        )
        resp.raise_for_status()
    except requests.RequestException as exc:
        logger.warning("answer_callback_failed id=%s err=%s", callback_query_id, exc)
        return False
    return True


def build_reply(result: InteractionResult, ctx: ReplyContext) -> Dict[str, Any]:
    render = result.render
    if ctx.callback_query_id is not None:
        if not result.ok:
            # keep the menu in place so the press can be retried
            return {
                "method": "answerCallbackQuery",
                "callback_query_id": ctx.callback_query_id,
                "text": render.text,
                "show_alert": True,
            }
        return {
            "method": "editMessageText",
            "chat_id": ctx.chat_id,
            "message_id": ctx.message_id,
            "text": render.text,
            "reply_markup": inline_keyboard(render),
        }
    reply: Dict[str, Any] = {"method": "sendMessage", "chat_id": ctx.chat_id, "text": render.text}
    if render.controls:
        reply["reply_markup"] = inline_keyboard(render)
    return reply


@router.post("")
@router.post("/")
def telegram_webhook(
    update: Dict[str, Any] = Body(...),
    secret_token: Optional[str] = Header(default=None, alias="X-Telegram-Bot-Api-Secret-Token"),
    engine: DiscoveryEngine = Depends(get_engine),
) -> Response:
    settings = load_settings()
    expected = settings.telegram_secret_token
    if expected and not secrets.compare_digest(secret_token or "", expected):
        return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content="secret token is wrong")

    date = _update_date(update)
    if date is not None and time.time() - date > settings.ignore_old_seconds:
        logger.info("ignoring_old_update update_id=%s", update.get("update_id"))
        return Response(status_code=status.HTTP_200_OK)

    parsed = parse_update(update)
    if parsed is None:
        return Response(status_code=status.HTTP_200_OK)
    request, ctx = parsed
    result = engine.handle(request)
    if result.ok and ctx.callback_query_id and settings.telegram_bot_token:
        answer_callback_query(settings.telegram_bot_token, ctx.callback_query_id)
    return JSONResponse(content=build_reply(result, ctx))
