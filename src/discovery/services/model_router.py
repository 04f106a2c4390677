"""Choose which LLM provider generates items.

Providers are tried in a fixed order per purpose, with an optional
preferred provider from ``DISCOVERY_MODEL_PROVIDER`` moved to the front.
Only configuration is resolved here; clients are built by the generator.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Optional, Tuple


@dataclass(frozen=True)
class ProviderSpec:
    key_var: Optional[str]
    url_var: str
    model_var: str
    fallback_model: str
    fallback_url: str
    keyless: bool = False


@dataclass(frozen=True)
class ProviderSelection:
    """A resolved provider: which one, with which model."""

    name: str
    model: str
    api_key_env: Optional[str]
    base_url_env: Optional[str] = None
    default_base_url: Optional[str] = None
    requires_api_key: bool = True


PROVIDERS: Dict[str, ProviderSpec] = {
    "cloudflare": ProviderSpec(
        key_var="CLOUDFLARE_API_TOKEN",
        url_var="CLOUDFLARE_BASE_URL",
        model_var="CLOUDFLARE_AI_MODEL",
        fallback_model="@cf/meta/llama-4-scout-17b-16e-instruct",
        fallback_url="https://api.cloudflare.com/client/v4",
    ),
    "openai": ProviderSpec(
        key_var="OPENAI_API_KEY",
        url_var="OPENAI_BASE_URL",
        model_var="OPENAI_MODEL",
        fallback_model="gpt-4o-mini",
        fallback_url="https://api.openai.com/v1",
    ),
    "local": ProviderSpec(
        key_var="LOCAL_API_KEY",
        url_var="LOCAL_BASE_URL",
        model_var="LOCAL_MODEL",
        fallback_model="llama3.1:8b",
        fallback_url="http://127.0.0.1:11434",
        keyless=True,
    ),
}

# Workers AI enforces a JSON schema, so it leads for item generation
ROUTING_POLICY: Dict[str, Tuple[str, ...]] = {
    "item_generation": ("cloudflare", "openai", "local"),
}


class ModelRouter:
    def __init__(
        self,
        env: Optional[Mapping[str, str]] = None,
        allowed_providers: Optional[Iterable[str]] = None,
    ) -> None:
        self._env = env if env is not None else os.environ
        self._only = frozenset(allowed_providers) if allowed_providers else None
        preferred = (self._env.get("DISCOVERY_MODEL_PROVIDER") or "").strip().lower()
        self._preferred = preferred if preferred in PROVIDERS else None

    @property
    def env(self) -> Mapping[str, str]:
        return self._env

    def _has(self, var: Optional[str]) -> bool:
        return bool(var and self._env.get(var))

    def provider_available(self, provider: str) -> bool:
        spec = PROVIDERS.get(provider)
        if spec is None or (self._only is not None and provider not in self._only):
            return False
        if provider == "cloudflare" and not self._has("CLOUDFLARE_ACCOUNT_ID"):
            return False
        if not spec.keyless:
            return self._has(spec.key_var)
        # keyless hosts must be switched on and pointed at explicitly
        switched_on = (self._env.get("DISCOVERY_ENABLE_LOCAL_PROVIDER") or "").strip() == "1"
        return (switched_on or self._preferred == provider) and self._has(spec.url_var)

    def resolve_provider(self, provider: str) -> ProviderSelection:
        spec = PROVIDERS[provider]
        return ProviderSelection(
            name=provider,
            model=self._env.get(spec.model_var) or spec.fallback_model,
            api_key_env=spec.key_var,
            base_url_env=spec.url_var,
            default_base_url=spec.fallback_url,
            requires_api_key=not spec.keyless,
        )

    def base_url(self, selection: ProviderSelection) -> str:
        url = self._env.get(selection.base_url_env or "") or selection.default_base_url or ""
        return str(url).rstrip("/")

    def select_provider(self, purpose: str) -> ProviderSelection:
        """First available provider for ``purpose``; RuntimeError when none is configured."""
        order = list(ROUTING_POLICY.get(purpose, ROUTING_POLICY["item_generation"]))
        if self._preferred:
            order.remove(self._preferred)
            order.insert(0, self._preferred)
        for provider in order:
            if self.provider_available(provider):
                return self.resolve_provider(provider)
        raise RuntimeError(f"No model provider is configured for {purpose}")
