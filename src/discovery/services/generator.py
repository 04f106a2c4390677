from __future__ import annotations

import json
import logging
import os
import re
import time
from typing import Any, Dict, List, Optional, Protocol

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
from langchain_openai import ChatOpenAI

from ..config import DEFAULT_GENERATE_BATCH
from ..domain.errors import GenerationError
from ..domain.models import NodeCandidate
from ..observability.metrics import GENERATION_LATENCY
from .model_router import ModelRouter, ProviderSelection

LOG = logging.getLogger("discovery.llm")

SYSTEM_PROMPT = (
    "You are a creative assistant that generates items for a discovery game. "
    "Each item needs a name and an emoji."
)

_TIMEOUT = (int(os.getenv("DISCOVERY_LLM_CONNECT_TIMEOUT", "3")), int(os.getenv("DISCOVERY_LLM_READ_TIMEOUT", "60")))


class Generator(Protocol):
    def generate(self, parent_name: str) -> List[NodeCandidate]: ...


class CompletionClient(Protocol):
    def complete(self, messages: List[Dict[str, str]], schema: Dict[str, Any]) -> Any: ...


class CircuitBreaker:
    """Stops calling a failing provider for ``cooldown`` seconds after ``threshold`` straight failures."""

    def __init__(self, threshold: int, cooldown: float) -> None:
        self.threshold = threshold
        self.cooldown = cooldown
        self.failures = 0
        self.opened_at: Optional[float] = None

    def is_open(self) -> bool:
        if self.opened_at is None:
            return False
        if time.time() - self.opened_at < self.cooldown:
            return True
        # half-open: let the next call through
        self.failures = 0
        self.opened_at = None
        return False

    def failure(self) -> None:
        self.failures += 1
        if self.opened_at is None and self.failures >= self.threshold:
            self.opened_at = time.time()
            LOG.warning("llm_breaker_opened", extra={"fails": self.failures, "cooldown_s": self.cooldown})

    def success(self) -> None:
        if self.failures or self.opened_at is not None:
            LOG.info("llm_breaker_closed")
        self.failures = 0
        self.opened_at = None


def _default_breaker() -> CircuitBreaker:
    return CircuitBreaker(
        threshold=int(os.getenv("DISCOVERY_LLM_BREAKER_THRESHOLD", "2")),
        cooldown=float(os.getenv("DISCOVERY_LLM_BREAKER_COOLDOWN", "120.0")),
    )


# shared by every generator in the process
_BREAKER = _default_breaker()



def _build_session() -> requests.Session:
    session = requests.Session()
    retry = Retry(
        total=2,
        backoff_factor=0.5,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset(["POST", "GET"]),
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=10, pool_maxsize=10)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def item_schema(batch_size: int) -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            "items": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "name": {"type": "string"},
                        "emoji": {"type": "string"},
                    },
                    "required": ["name", "emoji"],
                },
                "minItems": batch_size,
                "maxItems": batch_size,
            }
        },
        "required": ["items"],
    }


def build_messages(parent_name: str, batch_size: int) -> List[Dict[str, str]]:
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {
            "role": "user",
            "content": (
                f'Generate {batch_size} items that can be derived from or are related to "{parent_name}". '
                'Answer with JSON only: {"items": [{"name": "...", "emoji": "..."}]}'
            ),
        },
    ]


_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def parse_candidates(raw: Any) -> List[NodeCandidate]:
    """Normalize a provider response into candidates.

    Accepts a decoded ``{"items": [...]}`` object, a bare list, or the
    same as a JSON string (optionally fenced). Entries without a usable
    name are skipped; a response that is not shaped like a list of items
    at all raises ``GenerationError``.
    """

    if isinstance(raw, (bytes, str)):
        text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
        text = _FENCE.sub("", text.strip())
        if not text:
            return []
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as exc:
            raise GenerationError("Generator returned non-JSON content") from exc

    items = raw.get("items") if isinstance(raw, dict) else raw
    if items is None:
        return []
    if not isinstance(items, list):
        raise GenerationError(f"Generator returned {type(items).__name__} instead of a list of items")

    out: List[NodeCandidate] = []
    for entry in items:
        if not isinstance(entry, dict):
            continue
        name = entry.get("name")
        if not isinstance(name, str) or not name.strip():
            continue
        emoji = entry.get("emoji", entry.get("decoration"))
        out.append(
            NodeCandidate(
                name=name.strip(),
                decoration=(emoji.strip() or None) if isinstance(emoji, str) else None,
            )
        )
    return out


class CloudflareAIClient:
    """Workers AI REST endpoint with an enforced JSON schema response."""

    def __init__(self, base_url: str, account_id: str, api_token: str, model: str) -> None:
        self.base_url = base_url.rstrip("/")
        self.account_id = account_id
        self.model = model
        self._api_token = api_token
        self._session = _build_session()

    def complete(self, messages: List[Dict[str, str]], schema: Dict[str, Any]) -> Any:
        url = f"{self.base_url}/accounts/{self.account_id}/ai/run/{self.model}"
        LOG.debug("cloudflare_ai_invoke", extra={"model": self.model})
        resp = self._session.post(
            url,
            headers={"Authorization": f"Bearer {self._api_token}"},
            json={
                "messages": messages,
                "response_format": {"type": "json_schema", "json_schema": schema},
            },
            timeout=_TIMEOUT,
        )
        resp.raise_for_status()
        data = resp.json()
        if data.get("success") is False:
            raise GenerationError(f"Workers AI rejected the request: {data.get('errors')}")
        return (data.get("result") or {}).get("response")


class LocalLLMClient:
    """OpenAI-compatible chat completions served by a local host."""

    def __init__(self, base_url: str, model: str) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self._session = _build_session()

    def complete(self, messages: List[Dict[str, str]], schema: Dict[str, Any]) -> Any:
        LOG.debug("local_llm_invoke", extra={"model": self.model, "base_url": self.base_url})
        resp = self._session.post(
            f"{self.base_url}/v1/chat/completions",
            json={
                "model": self.model,
                "messages": messages,
                "stream": False,
                "response_format": {"type": "json_object"},
            },
            timeout=_TIMEOUT,
        )
        resp.raise_for_status()
        data = resp.json()
        choices = data.get("choices") or []
        if choices:
            return (choices[0].get("message") or {}).get("content") or ""
        return data.get("response") or ""


class OpenAIChatClient:
    def __init__(self, api_key: str, base_url: str, model: str) -> None:
        self.model = model
        self._llm = ChatOpenAI(
            api_key=api_key,
            base_url=base_url,
            model=model,
            temperature=0.9,
        ).bind(response_format={"type": "json_object"})

    def complete(self, messages: List[Dict[str, str]], schema: Dict[str, Any]) -> Any:
        res = self._llm.invoke(messages)
        return res.content if hasattr(res, "content") else str(res)


def build_client(router: ModelRouter, selection: ProviderSelection) -> CompletionClient:
    env = router.env
    base_url = router.base_url(selection)
    api_key = env.get(selection.api_key_env) if selection.api_key_env else None
    if selection.requires_api_key and not api_key:
        raise GenerationError(f"Provider {selection.name} is not configured")
    if selection.name == "cloudflare":
        return CloudflareAIClient(base_url, env.get("CLOUDFLARE_ACCOUNT_ID", ""), str(api_key), selection.model)
    if selection.name == "local":
        return LocalLLMClient(base_url, selection.model)
    return OpenAIChatClient(str(api_key), base_url, selection.model)


class ItemGenerator:
    """Produces candidate children for a parent item through the routed LLM provider."""

    def __init__(
        self,
        router: Optional[ModelRouter] = None,
        batch_size: int = DEFAULT_GENERATE_BATCH,
        client: Optional[CompletionClient] = None,
    ) -> None:
        self._router = router or ModelRouter()
        self._batch_size = batch_size
        self._client = client

    @property
    def batch_size(self) -> int:
        return self._batch_size

    def _get_client(self) -> CompletionClient:
        if self._client is not None:
            return self._client
        try:
            selection = self._router.select_provider("item_generation")
        except RuntimeError as exc:
            raise GenerationError(str(exc)) from exc
        LOG.info("Using generation provider name=%s model=%s", selection.name, selection.model)
        self._client = build_client(self._router, selection)
        return self._client

    def generate(self, parent_name: str) -> List[NodeCandidate]:
        if _BREAKER.is_open():
            raise GenerationError("Generation provider is cooling down after repeated failures")
        client = self._get_client()
        messages = build_messages(parent_name, self._batch_size)
        start = time.perf_counter()
        try:
            raw = client.complete(messages, item_schema(self._batch_size))
        except GenerationError:
            _BREAKER.failure()
            raise
        except Exception as exc:
            _BREAKER.failure()
            LOG.warning("generation_call_failed", extra={"parent": parent_name, "err": str(exc)})
            raise GenerationError(f"Generation call failed for {parent_name!r}") from exc
        finally:
            GENERATION_LATENCY.observe(time.perf_counter() - start)
        try:
            candidates = parse_candidates(raw)
        except GenerationError:
            _BREAKER.failure()
            raise
        _BREAKER.success()
        LOG.debug("generation_parsed", extra={"parent": parent_name, "count": len(candidates)})
        return candidates[: self._batch_size]
