from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Tuple, Type

import requests
from requests import RequestException, Timeout

from formgen.llm_errors import ProviderError, is_model_unavailable

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECS = 30.0
DEFAULT_TEMPERATURE = 0.7
_RAW_BODY_LIMIT = 2000


@dataclass(frozen=True)
class ProviderResult:
    """Typed outcome of one adapter invocation (never raised)."""

    provider: str
    text: Optional[str] = None
    model: Optional[str] = None
    error: Optional[ProviderError] = None
    models_tried: Tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.text)


def _safe_text(resp: Any) -> str:
    try:
        return resp.text or ""
    except Exception:
        return ""


def _error_message(resp: Any) -> str:
    """Best-effort human message from a non-2xx body that may not be JSON."""
    try:
        data = resp.json()
    except Exception:
        data = None
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict):
            for key in ("message", "status", "type"):
                msg = err.get(key)
                if isinstance(msg, str) and msg.strip():
                    return msg.strip()
        if isinstance(err, str) and err.strip():
            return err.strip()
        for key in ("message", "detail"):
            msg = data.get(key)
            if isinstance(msg, str) and msg.strip():
                return msg.strip()
    text = _safe_text(resp).strip()
    if text:
        return text[:400]
    return f"HTTP {getattr(resp, 'status_code', '?')}"


class ProviderAdapter:
    """One external LLM service: request envelope out, completion text back.

    Subclasses supply the wire shape via `_request` and `_extract_text`.
    `generate` walks the model list, moving on only when a model id is
    rejected as unknown or unavailable.
    """

    name = "provider"
    CREDENTIAL_ENV = ""
    DEFAULT_MODELS: Tuple[str, ...] = ()

    def __init__(
        self,
        api_key: str = "",
        models: Optional[Sequence[str]] = None,
        timeout: float = DEFAULT_TIMEOUT_SECS,
        temperature: float = DEFAULT_TEMPERATURE,
    ) -> None:
        self.api_key = (api_key or "").strip()
        cleaned = tuple(m.strip() for m in (models or ()) if m and m.strip())
        self.models: Tuple[str, ...] = cleaned or self.DEFAULT_MODELS
        self.timeout = timeout
        self.temperature = temperature

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    @property
    def display_name(self) -> str:
        return self.name.capitalize()

    def describe(self) -> Dict[str, Any]:
        return {"provider": self.name, "models": list(self.models), "has_token": self.available}

    def generate(self, prompt: str, max_tokens: int) -> ProviderResult:
        if not self.available:
            return ProviderResult(self.name, error=ProviderError(self.name, "missing credential"))
        tried = []
        last_error: Optional[ProviderError] = None
        for idx, model in enumerate(self.models):
            tried.append(model)
            try:
                text = self._complete(model, prompt, max_tokens)
                if idx:
                    log.info("%s: succeeded with fallback model '%s'", self.name, model)
                return ProviderResult(self.name, text=text, model=model, models_tried=tuple(tried))
            except ProviderError as err:
                last_error = err
            except Exception as exc:
                log.exception("%s: unexpected adapter error", self.name)
                last_error = ProviderError(self.name, f"unexpected error: {exc!r}", model=model)
            if idx + 1 < len(self.models) and is_model_unavailable(last_error):
                log.warning(
                    "%s model '%s' unavailable; retrying with '%s'", self.name, model, self.models[idx + 1]
                )
                continue
            break
        return ProviderResult(self.name, model=tried[-1] if tried else None, error=last_error, models_tried=tuple(tried))

    def _complete(self, model: str, prompt: str, max_tokens: int) -> str:
        resp = self._post(model, prompt, max_tokens)
        status = getattr(resp, "status_code", None)
        if not isinstance(status, int) or not 200 <= status < 300:
            msg = _error_message(resp)
            log.warning("%s HTTP %s (model=%s): %s", self.name, status, model, msg)
            raise ProviderError(self.name, msg, status, _safe_text(resp)[:_RAW_BODY_LIMIT], model)
        try:
            data = resp.json()
        except Exception:
            log.warning("%s: non-JSON HTTP body", self.name)
            raise ProviderError(self.name, "non-JSON response body", status, _safe_text(resp)[:_RAW_BODY_LIMIT], model)
        text = self._extract_text(data) if isinstance(data, dict) else None
        if not text or not text.strip():
            log.warning("%s: empty response text (model=%s)", self.name, model)
            raise ProviderError(self.name, "empty response", status, model=model)
        return text

    def _post(self, model: str, prompt: str, max_tokens: int) -> Any:
        url, kwargs = self._request(model, prompt, max_tokens)
        try:
            return requests.post(url, timeout=self.timeout, **kwargs)
        except Timeout as exc:
            log.warning("%s request timed out after %ss", self.name, self.timeout)
            raise ProviderError(self.name, f"request timed out after {self.timeout}s", model=model) from exc
        except RequestException as exc:
            log.warning("%s request error: %r", self.name, exc)
            raise ProviderError(self.name, f"request error: {exc}", model=model) from exc

    def _request(self, model: str, prompt: str, max_tokens: int) -> Tuple[str, Dict[str, Any]]:
        raise NotImplementedError

    def _extract_text(self, data: Dict[str, Any]) -> Optional[str]:
        raise NotImplementedError


class GrokAdapter(ProviderAdapter):
    """x.ai chat completions (OpenAI-compatible)."""

    name = "grok"
    CREDENTIAL_ENV = "GROK_API_KEY"
    ENDPOINT = "https://api.x.ai/v1/chat/completions"
    DEFAULT_MODELS = ("grok-beta", "grok-2-latest", "grok-2-1212")

    def _request(self, model: str, prompt: str, max_tokens: int) -> Tuple[str, Dict[str, Any]]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        body = {
            "model": model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": max_tokens,
            "temperature": self.temperature,
        }
        return self.ENDPOINT, {"headers": headers, "json": body}

    def _extract_text(self, data: Dict[str, Any]) -> Optional[str]:
        try:
            text = data.get("choices", [{}])[0].get("message", {}).get("content")
        except (AttributeError, IndexError, TypeError):
            return None
        return text if isinstance(text, str) else None


class ClaudeAdapter(ProviderAdapter):
    """Anthropic Messages API."""

    name = "claude"
    CREDENTIAL_ENV = "CLAUDE_API_KEY"
    ENDPOINT = "https://api.anthropic.com/v1/messages"
    API_VERSION = "2023-06-01"
    DEFAULT_MODELS = ("claude-3-5-sonnet-20241022", "claude-3-5-sonnet-latest", "claude-3-haiku-20240307")

    def _request(self, model: str, prompt: str, max_tokens: int) -> Tuple[str, Dict[str, Any]]:
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": self.API_VERSION,
            "Content-Type": "application/json",
        }
        body = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        return self.ENDPOINT, {"headers": headers, "json": body}

    def _extract_text(self, data: Dict[str, Any]) -> Optional[str]:
        blocks = data.get("content")
        if not isinstance(blocks, list):
            return None
        for block in blocks:
            if isinstance(block, dict) and isinstance(block.get("text"), str) and block["text"].strip():
                return block["text"]
        return None


class GeminiAdapter(ProviderAdapter):
    """Google Generative Language generateContent; key travels in the query string."""

    name = "gemini"
    CREDENTIAL_ENV = "GEMINI_API_KEY"
    BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"
    DEFAULT_MODELS = ("gemini-1.5-flash", "gemini-1.5-flash-latest", "gemini-pro")

    def endpoint(self, model: str) -> str:
        return f"{self.BASE_URL}/{model}:generateContent"

    def _request(self, model: str, prompt: str, max_tokens: int) -> Tuple[str, Dict[str, Any]]:
        body = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": self.temperature,
                "maxOutputTokens": max_tokens,
            },
        }
        return self.endpoint(model), {"params": {"key": self.api_key}, "json": body}

    def _extract_text(self, data: Dict[str, Any]) -> Optional[str]:
        candidates = data.get("candidates")
        if not isinstance(candidates, list):
            return None
        for cand in candidates:
            content = cand.get("content") if isinstance(cand, dict) else None
            parts = content.get("parts") if isinstance(content, dict) else None
            for part in parts or []:
                txt = part.get("text") if isinstance(part, dict) else None
                if isinstance(txt, str) and txt.strip():
                    return txt
        return None


PROVIDERS: Dict[str, Type[ProviderAdapter]] = {
    GrokAdapter.name: GrokAdapter,
    ClaudeAdapter.name: ClaudeAdapter,
    GeminiAdapter.name: GeminiAdapter,
}

_NAME_ALIASES = {"xai": "grok", "x.ai": "grok", "anthropic": "claude", "google": "gemini"}


def canonical_name(name: Optional[str]) -> Optional[str]:
    """Resolve a configured provider name; None for blank/'none'/unknown."""
    key = (name or "").strip().lower()
    key = _NAME_ALIASES.get(key, key)
    return key if key in PROVIDERS else None
