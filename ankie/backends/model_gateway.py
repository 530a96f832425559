# ankie/backends/model_gateway.py

import asyncio
import contextlib
import logging
import threading
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Sequence, Tuple

from langchain_anthropic import ChatAnthropic
from langchain_core.caches import BaseCache, InMemoryCache
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage
from langchain_core.runnables import Runnable
from langchain_google_genai import ChatGoogleGenerativeAI
from langchain_openai import ChatOpenAI

from ankie.boot.env_vars import EnvConfig
from ankie.orchestration.errors import (
    ExecutionCancelledError,
    ModelTimeoutError,
    ProviderNotConfiguredError,
)
from ankie.orchestration.schema import ModelConfig

_log = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 60.0
DEFAULT_MAX_TOKENS = 4000
DEFAULT_TEMPERATURE = 0.7
DEFAULT_SAFE_MODEL = "gpt-4o-mini"
XAI_BASE_URL = "https://api.x.ai/v1"

# Accepted spellings of an explicit "provider/model" prefix
PROVIDER_ALIASES: Dict[str, str] = {
    "openai": "openai",
    "anthropic": "anthropic",
    "claude": "anthropic",
    "xai": "xai",
    "grok": "xai",
    "google": "google",
    "gemini": "google",
}


# ──────────────────────────────────────────────────────────────────────────────
# Provider registry
# ──────────────────────────────────────────────────────────────────────────────

ModelBuilder = Callable[[str, ModelConfig, Optional[str], Optional[BaseCache]], BaseChatModel]


class ProviderSpec(NamedTuple):
    """Constructor and capability metadata for one provider family."""

    name: str
    output_ceiling: int
    build: ModelBuilder
    requires_key: bool = True


def _common_kwargs(cfg: ModelConfig, cache: Optional[BaseCache]) -> Dict[str, Any]:
    kwargs: Dict[str, Any] = {"streaming": cfg.streaming}
    if cfg.temperature is not None:
        kwargs["temperature"] = cfg.temperature
    if cache is not None:
        kwargs["cache"] = cache
    return kwargs


def _build_openai(model: str, cfg: ModelConfig, api_key: Optional[str], cache: Optional[BaseCache]) -> BaseChatModel:
    return ChatOpenAI(model=model, max_tokens=cfg.max_tokens, api_key=api_key, **_common_kwargs(cfg, cache))


def _build_xai(model: str, cfg: ModelConfig, api_key: Optional[str], cache: Optional[BaseCache]) -> BaseChatModel:
    return ChatOpenAI(
        model=model,
        max_tokens=cfg.max_tokens,
        api_key=api_key,
        base_url=XAI_BASE_URL,
        **_common_kwargs(cfg, cache),
    )


def _build_anthropic(model: str, cfg: ModelConfig, api_key: Optional[str], cache: Optional[BaseCache]) -> BaseChatModel:
    return ChatAnthropic(model=model, max_tokens=cfg.max_tokens, api_key=api_key, **_common_kwargs(cfg, cache))


def _build_google(model: str, cfg: ModelConfig, api_key: Optional[str], cache: Optional[BaseCache]) -> BaseChatModel:
    kwargs = _common_kwargs(cfg, cache)
    kwargs.pop("streaming", None)
    return ChatGoogleGenerativeAI(model=model, max_output_tokens=cfg.max_tokens, api_key=api_key, **kwargs)


def default_providers(ceilings: Optional[Dict[str, int]] = None) -> Dict[str, ProviderSpec]:
    """Built-in provider registry, with output ceilings optionally overridden from settings."""
    ceilings = ceilings or {}
    return {
        "openai": ProviderSpec("openai", int(ceilings.get("openai", 16384)), _build_openai),
        "anthropic": ProviderSpec("anthropic", int(ceilings.get("anthropic", 8192)), _build_anthropic),
        "xai": ProviderSpec("xai", int(ceilings.get("xai", 16384)), _build_xai),
        "google": ProviderSpec("google", int(ceilings.get("google", 8192)), _build_google),
    }


def clamp_max_tokens(requested: Optional[int], ceiling: int, default: int = DEFAULT_MAX_TOKENS) -> int:
    """
    Clamp a requested output budget to the provider ceiling.

    A missing or non-positive request falls back to `default` (itself clamped), so the
    result is always in [1, ceiling].
    """
    value = requested if requested is not None and requested > 0 else default
    return max(1, min(int(value), int(ceiling)))


# ──────────────────────────────────────────────────────────────────────────────
# Handle
# ──────────────────────────────────────────────────────────────────────────────

class ChatModelHandle:
    """
    A provider-bound chat model plus its call policy.

    - `model_name` is the concrete model the handle is bound to (after fallback resolution)
    - every call races a wall-clock timeout and an optional cancellation event
    - call-level failures fall through the remaining chain via `with_fallbacks`
    """

    def __init__(
        self,
        *,
        requested_name: str,
        model_name: str,
        provider: str,
        max_tokens: int,
        client: BaseChatModel,
        fallbacks: Sequence[Tuple[str, BaseChatModel]] = (),
        timeout_s: float = DEFAULT_TIMEOUT_S,
        runnable: Optional[Runnable] = None,
    ) -> None:
        self.requested_name = requested_name
        self.model_name = model_name
        self.provider = provider
        self.max_tokens = max_tokens
        self.client = client
        self.fallbacks = list(fallbacks)
        self.timeout_s = timeout_s
        self._runnable = runnable if runnable is not None else self._compose(client, [c for _, c in self.fallbacks])

    @staticmethod
    def _compose(primary: Runnable, backups: List[Runnable]) -> Runnable:
        if not backups:
            return primary
        return primary.with_fallbacks(backups)

    @property
    def fallback_names(self) -> List[str]:
        return [name for name, _ in self.fallbacks]

    def bind_tools(self, tools: Sequence[Any]) -> "ChatModelHandle":
        """Return a new handle whose whole chain has `tools` bound."""
        if not tools:
            return self
        primary = self.client.bind_tools(list(tools))
        backups = [c.bind_tools(list(tools)) for _, c in self.fallbacks]
        return ChatModelHandle(
            requested_name=self.requested_name,
            model_name=self.model_name,
            provider=self.provider,
            max_tokens=self.max_tokens,
            client=self.client,
            fallbacks=self.fallbacks,
            timeout_s=self.timeout_s,
            runnable=self._compose(primary, backups),
        )

    async def ainvoke(
        self,
        messages: Sequence[BaseMessage],
        *,
        config: Optional[Dict[str, Any]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AIMessage:
        """
        Generate a reply, racing the call against the timeout and `cancel_event`.

        Raises:
            ModelTimeoutError: the call did not finish within `timeout_s`.
            ExecutionCancelledError: `cancel_event` was set first.
        """
        call = asyncio.ensure_future(self._runnable.ainvoke(list(messages), config=config))
        waiters = {call}
        stopper = None
        if cancel_event is not None:
            stopper = asyncio.ensure_future(cancel_event.wait())
            waiters.add(stopper)

        try:
            done, _ = await asyncio.wait(waiters, timeout=self.timeout_s, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if stopper is not None and not stopper.done():
                stopper.cancel()

        if call in done:
            return call.result()

        call.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await call

        if stopper is not None and stopper in done:
            _log.info("Model call to %s cancelled.", self.model_name)
            raise ExecutionCancelledError(f"Call to {self.model_name} cancelled.")

        _log.warning("Model call to %s timed out after %.1fs.", self.model_name, self.timeout_s)
        raise ModelTimeoutError(self.model_name, self.timeout_s)

    def __repr__(self) -> str:
        return f"ChatModelHandle(model={self.model_name!r}, provider={self.provider!r}, fallbacks={self.fallback_names!r})"


# ──────────────────────────────────────────────────────────────────────────────
# Factory
# ──────────────────────────────────────────────────────────────────────────────

class ModelFactory:
    """
    Resolve logical model names to provider-bound chat model handles.

    Construction order for a name is [requested, configured fallback, default-safe]; the
    first one that builds becomes the handle's identity and the rest become call-time
    fallbacks. Handles are cached per (name, config); responses are cached in one
    `InMemoryCache` shared by every client the factory creates.
    """

    def __init__(
        self,
        models_cfg: Optional[Dict[str, Any]] = None,
        *,
        providers: Optional[Dict[str, ProviderSpec]] = None,
        env: Optional[EnvConfig] = None,
        response_cache: Optional[BaseCache] = None,
    ) -> None:
        cfg = dict(models_cfg or {})
        self.default_model: str = cfg.get("default_model", DEFAULT_SAFE_MODEL)
        self.default_safe_model: str = cfg.get("default_safe_model", DEFAULT_SAFE_MODEL)
        self.timeout_s = float(cfg.get("call_timeout_s", DEFAULT_TIMEOUT_S))
        self.default_max_tokens = int(cfg.get("default_max_tokens", DEFAULT_MAX_TOKENS))
        self.fallbacks: Dict[str, str] = dict(cfg.get("fallbacks") or {})
        self.catalog: Dict[str, List[str]] = {k: list(v or []) for k, v in (cfg.get("catalog") or {}).items()}
        self.providers = providers if providers is not None else default_providers(cfg.get("output_ceilings"))
        self.env = env or EnvConfig()
        if response_cache is None and cfg.get("response_cache", True):
            response_cache = InMemoryCache()
        self.response_cache = response_cache

        self._handles: Dict[Tuple[str, str], ChatModelHandle] = {}
        self._lock = threading.Lock()
        _log.info(
            "Model factory ready: providers=%s default_safe=%s timeout=%.0fs",
            sorted(self.providers), self.default_safe_model, self.timeout_s,
        )

    # ──────────────────────────────────────────────────────────────────────────
    # Resolution
    # ──────────────────────────────────────────────────────────────────────────
    @staticmethod
    def normalize(model_name: str) -> str:
        name = (model_name or "").strip()
        if name.endswith("-fallback"):
            name = name[: -len("-fallback")]
        return name

    def resolve(self, model_name: str) -> Tuple[Optional[str], str]:
        """
        Map a logical name to (provider, concrete model id).

        Explicit `provider/model` prefixes win; otherwise the catalog is consulted.
        Unknown names return provider None.
        """
        name = self.normalize(model_name)
        if "/" in name:
            prefix, rest = name.split("/", 1)
            provider = PROVIDER_ALIASES.get(prefix.lower())
            if provider in self.providers and rest:
                return provider, rest
        for provider, known in self.catalog.items():
            if name in known and provider in self.providers:
                return provider, name
        return None, name

    def fallback_chain(self, model_name: str) -> List[str]:
        """The ordered list of model names tried for `model_name`."""
        name = self.normalize(model_name)
        chain = [name]
        fallback = self.fallbacks.get(name)
        if fallback and self.normalize(fallback) not in chain:
            chain.append(self.normalize(fallback))
        if self.default_safe_model not in chain:
            chain.append(self.default_safe_model)
        return chain

    def output_ceiling(self, provider: str) -> int:
        return self.providers[provider].output_ceiling

    # ──────────────────────────────────────────────────────────────────────────
    # Construction
    # ──────────────────────────────────────────────────────────────────────────
    def _create_client(self, model_name: str, config: ModelConfig) -> Tuple[str, str, int, BaseChatModel]:
        provider, model_id = self.resolve(model_name)
        if provider is None:
            raise LookupError(f"No provider family matches model '{model_name}'.")

        spec = self.providers[provider]
        api_key = self.env.api_key(provider)
        if spec.requires_key and not api_key:
            raise ProviderNotConfiguredError(provider, self.env.key_var(provider))

        max_tokens = clamp_max_tokens(config.max_tokens, spec.output_ceiling, self.default_max_tokens)
        if config.max_tokens is not None and max_tokens < config.max_tokens:
            _log.info(
                "Clamped max_tokens for %s from %d to %d (provider ceiling).",
                model_id, config.max_tokens, max_tokens,
            )
        effective = ModelConfig(
            temperature=config.temperature if config.temperature is not None else DEFAULT_TEMPERATURE,
            max_tokens=max_tokens,
            streaming=config.streaming,
        )
        client = spec.build(model_id, effective, api_key, self.response_cache)
        return provider, model_id, max_tokens, client

    def get_model(self, model_name: Optional[str] = None, config: Optional[ModelConfig] = None) -> ChatModelHandle:
        """
        Return a cached or freshly built handle for `model_name`.

        Raises:
            ProviderNotConfiguredError: every model in the chain, including the
                default-safe model, failed to construct.
        """
        model_name = model_name or self.default_model
        config = config or ModelConfig()
        key = (model_name, config.cache_key())

        with self._lock:
            cached = self._handles.get(key)
            if cached is not None:
                _log.debug("Model handle cache hit: %s", model_name)
                return cached

            handle = self._build_handle(model_name, config)
            self._handles[key] = handle
            return handle

    def _build_handle(self, model_name: str, config: ModelConfig) -> ChatModelHandle:
        chain = self.fallback_chain(model_name)
        if self.resolve(chain[0])[0] is None:
            _log.warning("Unknown model family for '%s'; defaulting to %s.", model_name, self.default_safe_model)
            chain = [self.default_safe_model]

        built: List[Tuple[str, str, int, BaseChatModel]] = []
        last_error: Optional[Exception] = None
        for candidate in chain:
            try:
                built.append(self._create_client(candidate, config))
                if len(built) == 1:
                    _log.info("Created model %s for '%s'.", built[0][1], model_name)
            except Exception as exc:
                last_error = exc
                if built:
                    _log.warning("Call-time fallback %s unavailable: %s", candidate, exc)
                else:
                    _log.warning("Model %s failed to construct (%s); trying next fallback.", candidate, exc)

        if not built:
            _log.error("No model in chain %s could be created for '%s'.", chain, model_name)
            if isinstance(last_error, ProviderNotConfiguredError):
                raise last_error
            raise ProviderNotConfiguredError("any", "provider credentials") from last_error

        provider, model_id, max_tokens, client = built[0]
        return ChatModelHandle(
            requested_name=model_name,
            model_name=model_id,
            provider=provider,
            max_tokens=max_tokens,
            client=client,
            fallbacks=[(mid, c) for _, mid, _, c in built[1:]],
            timeout_s=self.timeout_s,
        )

    # ──────────────────────────────────────────────────────────────────────────
    # Cache management
    # ──────────────────────────────────────────────────────────────────────────
    def clear_cache(self) -> None:
        with self._lock:
            self._handles.clear()
        _log.info("Model handle cache cleared.")

    def cache_size(self) -> int:
        return len(self._handles)

    def clear_response_cache(self) -> None:
        if self.response_cache is not None:
            self.response_cache.clear()
            _log.info("Model response cache cleared.")
