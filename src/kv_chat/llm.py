"""Language model backends that turn an ordered message list into a reply.

Every backend exposes ``async run(messages)`` and returns an object with a
``response`` field, the shape Workers AI uses. ``extract_reply`` is the one
place that decides what counts as a usable reply.
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx

from .config import resolve_secret
from .errors import MissingBindings, ModelInvocationFailure

logger = logging.getLogger(__name__)

CLOUDFLARE_API = "https://api.cloudflare.com/client/v4"
DEFAULT_WORKERS_AI_MODEL = "@cf/meta/llama-3.3-70b-instruct-fp8-fast"


class ModelCapability(Protocol):
    async def run(self, messages: List[Dict[str, str]]) -> Any:
        ...


def extract_reply(result: Any) -> str:
    """Return the ``response`` text of a model result, or ``""`` if there is none."""
    if isinstance(result, dict):
        value = result.get("response")
    else:
        value = getattr(result, "response", None)
    return value if isinstance(value, str) else ""


# -----------------------------
# Types & defaults
# -----------------------------

@dataclass
class GenerationConfig:
    max_new_tokens: Optional[int] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    repeat_penalty: Optional[float] = None


def _bool(v: Any, default: bool) -> bool:
    if v is None:
        return default
    if isinstance(v, bool):
        return v
    if isinstance(v, str):
        return v.strip().lower() in {"1", "true", "yes", "y", "on"}
    return bool(v)


def _gen_config(model_cfg: Dict[str, Any]) -> GenerationConfig:
    def _opt(key: str, cast):
        v = model_cfg.get(key)
        return None if v is None else cast(v)

    return GenerationConfig(
        max_new_tokens=_opt("max_new_tokens", int),
        temperature=_opt("temperature", float),
        top_p=_opt("top_p", float),
        top_k=_opt("top_k", int),
        repeat_penalty=_opt("repeat_penalty", float),
    )


# -----------------------------
# Workers AI (hosted)
# -----------------------------

class WorkersAIModel:
    """Cloudflare Workers AI text generation over the REST API."""

    def __init__(
        self,
        account_id: str,
        api_token: str,
        *,
        model: str = DEFAULT_WORKERS_AI_MODEL,
        base_url: str = CLOUDFLARE_API,
        timeout: Optional[float] = None,
        generation: Optional[GenerationConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.account_id = account_id
        self.model = model
        self.generation = generation or GenerationConfig()
        self._url = f"{base_url.rstrip('/')}/accounts/{account_id}/ai/run/{model}"
        self._headers = {"Authorization": f"Bearer {api_token}"}
        # No timeout by default: a stalled model call stalls the request.
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    def _payload(self, messages: Sequence[Dict[str, str]]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"messages": list(messages)}
        g = self.generation
        extras = {
            "max_tokens": g.max_new_tokens,
            "temperature": g.temperature,
            "top_p": g.top_p,
            "top_k": g.top_k,
            "repetition_penalty": g.repeat_penalty,
        }
        payload.update({k: v for k, v in extras.items() if v is not None})
        return payload

    async def run(self, messages: List[Dict[str, str]]) -> Any:
        try:
            resp = await self._client.post(self._url, json=self._payload(messages), headers=self._headers)
            resp.raise_for_status()
            body = resp.json()
        except httpx.HTTPError as e:
            raise ModelInvocationFailure("Workers AI request failed", detail=str(e)) from e
        except ValueError as e:
            raise ModelInvocationFailure("Workers AI returned invalid JSON", detail=str(e)) from e

        if isinstance(body, dict) and body.get("success") is False:
            errors = body.get("errors") or []
            raise ModelInvocationFailure("Workers AI reported an error", detail=str(errors))
        # Unwrap the REST envelope; anything odd is left for extract_reply to degrade.
        if isinstance(body, dict) and "result" in body:
            return body["result"]
        return body

    async def aclose(self) -> None:
        await self._client.aclose()


# -----------------------------
# llama.cpp (local GGUF)
# -----------------------------

class LlamaCppModel:
    """Thin wrapper around :mod:`llama_cpp` chat completion."""

    def __init__(
        self,
        model_path: Optional[str] = None,
        *,
        llama: Any = None,
        generation: Optional[GenerationConfig] = None,
        **kwargs: Any,
    ) -> None:
        """
        Parameters
        ----------
        model_path : str | None
            Path to .gguf weights. Ignored when ``llama`` is given.
        llama : Any
            An already constructed ``llama_cpp.Llama`` (or compatible) object.
        kwargs : Any
            Passed to llama_cpp.Llama with some smart defaults:
              - n_threads: defaults to os.cpu_count()
              - n_gpu_layers: auto if gpu offload supported; else 0
              - use_mmap: default True, with fallback retry if OSError
        """
        self.generation = generation or GenerationConfig()
        # One llama context is not safe to share across threads.
        self._lock = threading.Lock()
        if llama is not None:
            self._llama = llama
            return

        # Lazy import so the hosted backend works without the dep.
        from llama_cpp import Llama, llama_supports_gpu_offload  # type: ignore

        threads = kwargs.get("n_threads")
        if threads is None or int(threads) <= 0:
            kwargs["n_threads"] = os.cpu_count() or 1

        if kwargs.get("n_gpu_layers") is None:
            kwargs["n_gpu_layers"] = -1 if llama_supports_gpu_offload() else 0

        use_mmap = _bool(kwargs.get("use_mmap", True), True)
        kwargs["use_mmap"] = use_mmap
        kwargs.setdefault("verbose", False)

        try:
            self._llama = Llama(model_path=model_path, **kwargs)
        except OSError as e:
            if not use_mmap:
                raise
            # Retry without mmap on network filesystems / Windows oddities.
            logger.warning("mmap load failed, retrying without mmap: %s", e)
            kwargs["use_mmap"] = False
            self._llama = Llama(model_path=model_path, **kwargs)

    def _complete(self, messages: List[Dict[str, str]]) -> Dict[str, Any]:
        g = self.generation
        args = dict(
            max_tokens=g.max_new_tokens,
            temperature=g.temperature,
            top_p=g.top_p,
            top_k=g.top_k,
            repeat_penalty=g.repeat_penalty,
        )
        args = {k: v for k, v in args.items() if v is not None}
        with self._lock:
            out = self._llama.create_chat_completion(messages=messages, stream=False, **args)
        try:
            content = out["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            content = None
        return {"response": content}

    async def run(self, messages: List[Dict[str, str]]) -> Any:
        try:
            return await asyncio.to_thread(self._complete, messages)
        except Exception as e:
            logger.warning("llama.cpp completion failed: %s", e)
            raise ModelInvocationFailure("Local model completion failed", detail=str(e)) from e


# -----------------------------
# Convenience factory
# -----------------------------

def create_model(cfg: Dict[str, Any]) -> ModelCapability:
    """Create a model backend from the ``model`` section of the config."""
    model_cfg = (cfg or {}).get("model", {}) if isinstance(cfg, dict) else {}
    backend = str(model_cfg.get("backend", "workers_ai")).lower()
    generation = _gen_config(model_cfg)

    if backend == "workers_ai":
        account_id = resolve_secret(model_cfg, "account_id")
        api_token = resolve_secret(model_cfg, "api_token")
        if not (account_id and api_token):
            raise MissingBindings(
                "Workers AI is not configured",
                detail="model.account_id and model.api_token are required",
            )
        return WorkersAIModel(
            account_id,
            api_token,
            model=str(model_cfg.get("name") or DEFAULT_WORKERS_AI_MODEL),
            base_url=str(model_cfg.get("base_url") or CLOUDFLARE_API),
            timeout=model_cfg.get("timeout"),
            generation=generation,
        )

    if backend == "llama_cpp":
        model_dir = model_cfg.get("model_dir")
        model_path = model_cfg.get("model_path")
        if model_dir and model_path and not os.path.isabs(model_path):
            model_path = os.path.join(model_dir, model_path)
        if not model_path or not os.path.exists(model_path):
            raise MissingBindings("Local model not found", detail=f"model_path={model_path!r}")
        params = {
            "n_ctx": model_cfg.get("n_ctx", 4096),
            "n_threads": model_cfg.get("n_threads"),
            "n_gpu_layers": model_cfg.get("n_gpu_layers"),
            "use_mmap": model_cfg.get("use_mmap", True),
        }
        # llama.cpp is picky about None entries
        params = {k: v for k, v in params.items() if v is not None}
        return LlamaCppModel(model_path, generation=generation, **params)

    raise MissingBindings(f"Unknown model backend: {backend!r}")
