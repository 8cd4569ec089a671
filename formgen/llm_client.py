from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple, Union

from pydantic import ValidationError

from formgen.fields import FieldSchemaError, FormField, normalize
from formgen.llm_errors import FailureKind, ProviderError, classify
from formgen.llm_parsing import ExtractError, extract_json
from formgen.llm_prompts import build_prompt_from_text, build_prompt_from_topic
from formgen.providers import PROVIDERS, ProviderAdapter, canonical_name

log = logging.getLogger(__name__)


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, "") or default)
    except ValueError:
        return default


def _env_list(name: str) -> Tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(s.strip() for s in raw.split(",") if s.strip())


GROK_API_KEY = (os.getenv("GROK_API_KEY") or os.getenv("XAI_API_KEY") or "").strip()
CLAUDE_API_KEY = (os.getenv("CLAUDE_API_KEY") or os.getenv("ANTHROPIC_API_KEY") or "").strip()
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "").strip()

GROK_MODELS = _env_list("GROK_MODELS")
CLAUDE_MODELS = _env_list("CLAUDE_MODELS")
GEMINI_MODELS = _env_list("GEMINI_MODELS")

LLM_PRIMARY_PROVIDER = os.getenv("LLM_PRIMARY_PROVIDER", "grok").strip()
LLM_SECONDARY_PROVIDER = os.getenv("LLM_SECONDARY_PROVIDER", "gemini").strip()
LLM_FALLBACK_ON = os.getenv("LLM_FALLBACK_ON", "quota,bad_request,unknown,rate_limited")

LLM_TIMEOUT_SECS = _env_float("LLM_TIMEOUT_SECS", 30.0)
TEMPERATURE = _env_float("TEMPERATURE", 0.7)

# Token ceilings the form builder has always used for each request shape
PROMPT_MAX_TOKENS = 1024
TOPIC_MAX_TOKENS = 4000
DEFAULT_QUESTION_COUNT = 5
MIN_QUESTIONS = 1
MAX_QUESTIONS = 25


class OutcomeKind(str, Enum):
    MISSING_CREDENTIAL = "missing_credential"
    AUTH_FAILED = "auth_failed"
    QUOTA_EXCEEDED = "quota_exceeded"
    RATE_LIMITED = "rate_limited"
    UPSTREAM_MALFORMED_RESPONSE = "upstream_malformed_response"
    UPSTREAM_ERROR = "upstream_error"
    BOTH_PROVIDERS_FAILED = "both_providers_failed"
    INVALID_REQUEST = "invalid_request"


_KIND_FOR_FAILURE = {
    FailureKind.AUTH: OutcomeKind.AUTH_FAILED,
    FailureKind.QUOTA_OR_CREDIT: OutcomeKind.QUOTA_EXCEEDED,
    FailureKind.RATE_LIMITED: OutcomeKind.RATE_LIMITED,
    FailureKind.BAD_REQUEST_OTHER: OutcomeKind.UPSTREAM_ERROR,
    FailureKind.UNKNOWN: OutcomeKind.UPSTREAM_ERROR,
}


class InvalidRequest(ValueError):
    pass


@dataclass(frozen=True)
class GenerationRequest:
    """What the caller asked for: a free-form prompt or a topic triple."""

    prompt: Optional[str] = None
    topic: Optional[str] = None
    description: Optional[str] = None
    question_count: int = DEFAULT_QUESTION_COUNT

    @classmethod
    def from_prompt(cls, prompt: Optional[str]) -> "GenerationRequest":
        return cls(prompt=prompt)

    @classmethod
    def from_topic(
        cls, topic: Optional[str], description: Optional[str] = None, question_count: Optional[int] = None
    ) -> "GenerationRequest":
        count = DEFAULT_QUESTION_COUNT if question_count is None else int(question_count)
        return cls(topic=topic, description=description, question_count=count)

    @property
    def is_structured(self) -> bool:
        return self.prompt is None

    def render(self) -> Tuple[str, int]:
        """Return (prompt text, token ceiling); raise InvalidRequest on empty input."""
        if self.is_structured:
            topic = (self.topic or "").strip()
            if not topic:
                raise InvalidRequest("Topic is required")
            count = max(MIN_QUESTIONS, min(MAX_QUESTIONS, self.question_count))
            return build_prompt_from_topic(topic, count, self.description), TOPIC_MAX_TOKENS
        prompt = (self.prompt or "").strip()
        if not prompt:
            raise InvalidRequest("Prompt is required")
        return build_prompt_from_text(prompt), PROMPT_MAX_TOKENS


@dataclass(frozen=True)
class ProviderAttempt:
    """Diagnostic record of one adapter invocation."""

    provider: str
    model: Optional[str]
    ok: bool
    failure: Optional[FailureKind] = None
    error_kind: Optional[OutcomeKind] = None
    message: str = ""
    status_code: Optional[int] = None
    models_tried: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "model": self.model,
            "ok": self.ok,
            "failure": self.failure.value if self.failure else None,
            "error": self.error_kind.value if self.error_kind else None,
            "message": self.message,
            "status": self.status_code,
            "models_tried": list(self.models_tried),
        }


@dataclass(frozen=True)
class Success:
    fields: Tuple[FormField, ...]
    provider_used: str
    model: Optional[str] = None
    was_fallback: bool = False
    provider_attempts: Tuple[ProviderAttempt, ...] = ()
    notes: Tuple[str, ...] = ()

    ok = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "fields": [f.to_dict() for f in self.fields],
            "provider": self.provider_used,
            "model": self.model,
            "fallback": self.was_fallback,
            "notes": list(self.notes),
        }


@dataclass(frozen=True)
class Failure:
    kind: OutcomeKind
    message: str
    details: Optional[str] = None
    provider_attempts: Tuple[ProviderAttempt, ...] = ()

    ok = False

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"error": self.kind.value, "message": self.message}
        if self.details:
            out["details"] = self.details
        out["attempts"] = [a.to_dict() for a in self.provider_attempts]
        return out


GenerationOutcome = Union[Success, Failure]

_POLICY_ALIASES = {
    "quota": FailureKind.QUOTA_OR_CREDIT,
    "credit": FailureKind.QUOTA_OR_CREDIT,
    "quota_or_credit": FailureKind.QUOTA_OR_CREDIT,
    "bad_request": FailureKind.BAD_REQUEST_OTHER,
    "bad_request_other": FailureKind.BAD_REQUEST_OTHER,
    "rate_limited": FailureKind.RATE_LIMITED,
    "rate_limit": FailureKind.RATE_LIMITED,
    "unknown": FailureKind.UNKNOWN,
}

DEFAULT_FALLBACK_ON: FrozenSet[FailureKind] = frozenset(
    {FailureKind.QUOTA_OR_CREDIT, FailureKind.BAD_REQUEST_OTHER, FailureKind.UNKNOWN, FailureKind.RATE_LIMITED}
)


@dataclass(frozen=True)
class FallbackPolicy:
    """Which primary failure kinds justify a hop to the secondary provider.

    Auth failures are never eligible: the secondary has its own key and the
    primary's bad key says nothing about it.
    """

    fallback_on: FrozenSet[FailureKind] = field(default=DEFAULT_FALLBACK_ON)

    def allows(self, kind: Optional[FailureKind]) -> bool:
        return kind is not None and kind is not FailureKind.AUTH and kind in self.fallback_on

    @classmethod
    def from_string(cls, raw: Optional[str]) -> "FallbackPolicy":
        tokens = [t.strip().lower() for t in (raw or "").split(",") if t.strip()]
        if tokens in ([], ["none"], ["off"]):
            return cls(frozenset())
        kinds = set()
        for token in tokens:
            kind = _POLICY_ALIASES.get(token)
            if kind is None:
                log.warning("fallback policy: ignoring unknown entry %r", token)
                continue
            kinds.add(kind)
        return cls(frozenset(kinds))


@dataclass
class _Attempt:
    record: ProviderAttempt
    fields: Tuple[FormField, ...] = ()
    notes: Tuple[str, ...] = ()


class Orchestrator:
    """Primary provider, then at most one policy-gated hop to the secondary."""

    def __init__(
        self,
        primary: Optional[ProviderAdapter],
        secondary: Optional[ProviderAdapter] = None,
        policy: Optional[FallbackPolicy] = None,
    ) -> None:
        if secondary is not None and primary is not None and secondary.name == primary.name:
            log.warning("llm secondary provider %s equals primary; fallback disabled", secondary.name)
            secondary = None
        self.primary = primary
        self.secondary = secondary
        self.policy = policy or FallbackPolicy()

    def generate(self, request: GenerationRequest) -> GenerationOutcome:
        try:
            prompt, max_tokens = request.render()
        except InvalidRequest as exc:
            return Failure(OutcomeKind.INVALID_REQUEST, str(exc))

        primary, secondary = self.primary, self.secondary
        if primary is None:
            return Failure(
                OutcomeKind.MISSING_CREDENTIAL,
                "No AI provider configured",
                "Set LLM_PRIMARY_PROVIDER to one of: " + ", ".join(sorted(PROVIDERS)),
            )
        can_fall_back = secondary is not None and secondary.available
        if not primary.available and not can_fall_back:
            return Failure(
                OutcomeKind.MISSING_CREDENTIAL,
                f"{primary.display_name} API key missing in backend",
                f"Set {primary.CREDENTIAL_ENV} in the .env file to enable AI form generation.",
            )

        log.info("llm providers_order=%s", [p.name for p in (primary, secondary) if p is not None])
        first = self._attempt(primary, prompt, max_tokens)
        if first.record.ok:
            return self._success(first, was_fallback=False, attempts=(first.record,))

        if not can_fall_back or not self._fallback_allowed(first.record):
            log.warning(
                "llm %s failed (%s); no fallback", primary.name, first.record.error_kind.value
            )
            return self._single_failure(primary, first.record)

        log.warning(
            "llm %s failed (%s); falling back to %s",
            primary.name,
            first.record.error_kind.value,
            secondary.name,
        )
        second = self._attempt(secondary, prompt, max_tokens)
        attempts = (first.record, second.record)
        if second.record.ok:
            return self._success(second, was_fallback=True, attempts=attempts)
        summary = "; ".join(f"{a.provider}: {a.message}" for a in attempts)
        log.warning("llm both providers failed: %s", summary)
        return Failure(
            OutcomeKind.BOTH_PROVIDERS_FAILED,
            "All AI providers failed to generate the form",
            f"{summary}. Please try again later or create the form manually.",
            attempts,
        )

    def _fallback_allowed(self, record: ProviderAttempt) -> bool:
        if record.error_kind is OutcomeKind.MISSING_CREDENTIAL:
            return True
        return self.policy.allows(record.failure)

    def _attempt(self, adapter: ProviderAdapter, prompt: str, max_tokens: int) -> _Attempt:
        if not adapter.available:
            return _Attempt(
                ProviderAttempt(
                    adapter.name,
                    None,
                    ok=False,
                    error_kind=OutcomeKind.MISSING_CREDENTIAL,
                    message="missing credential",
                )
            )
        result = adapter.generate(prompt, max_tokens)
        if not result.ok:
            error = result.error or ProviderError(adapter.name, "empty response")
            failure = classify(error)
            return _Attempt(
                ProviderAttempt(
                    adapter.name,
                    result.model,
                    ok=False,
                    failure=failure,
                    error_kind=_KIND_FOR_FAILURE[failure],
                    message=error.message,
                    status_code=error.status_code,
                    models_tried=result.models_tried,
                )
            )
        notes: List[str] = []
        try:
            fields = normalize(extract_json(result.text or ""), notes)
            if not fields:
                raise FieldSchemaError("model returned an empty field list")
        except ExtractError as exc:
            log.warning("llm %s: failed to extract JSON: %s; raw=%r", adapter.name, exc.message, exc.snippet)
            return self._malformed(adapter, result.model, result.models_tried, exc.message)
        except (FieldSchemaError, ValidationError) as exc:
            log.warning("llm %s: field normalization error: %s", adapter.name, exc)
            return self._malformed(adapter, result.model, result.models_tried, str(exc))
        return _Attempt(
            ProviderAttempt(adapter.name, result.model, ok=True, models_tried=result.models_tried),
            fields=tuple(fields),
            notes=tuple(notes),
        )

    @staticmethod
    def _malformed(
        adapter: ProviderAdapter, model: Optional[str], models_tried: Tuple[str, ...], message: str
    ) -> _Attempt:
        # An unusable reply is as fallback-worthy as a transport failure
        return _Attempt(
            ProviderAttempt(
                adapter.name,
                model,
                ok=False,
                failure=FailureKind.UNKNOWN,
                error_kind=OutcomeKind.UPSTREAM_MALFORMED_RESPONSE,
                message=message,
                models_tried=models_tried,
            )
        )

    @staticmethod
    def _success(attempt: _Attempt, was_fallback: bool, attempts: Tuple[ProviderAttempt, ...]) -> Success:
        log.info(
            "llm chosen provider=%s model=%s fields=%d fallback=%s",
            attempt.record.provider,
            attempt.record.model,
            len(attempt.fields),
            was_fallback,
        )
        return Success(
            fields=attempt.fields,
            provider_used=attempt.record.provider,
            model=attempt.record.model,
            was_fallback=was_fallback,
            provider_attempts=attempts,
            notes=attempt.notes,
        )

    @staticmethod
    def _single_failure(adapter: ProviderAdapter, record: ProviderAttempt) -> Failure:
        name = adapter.display_name
        kind = record.error_kind or OutcomeKind.UPSTREAM_ERROR
        if kind is OutcomeKind.AUTH_FAILED:
            message = f"{name} API authentication failed"
            details = f"Invalid or missing {name} API key. Please check {adapter.CREDENTIAL_ENV} in the .env file."
        elif kind is OutcomeKind.QUOTA_EXCEEDED:
            message = f"{name} API credits insufficient"
            details = (
                f"Your {name} account has insufficient credits or quota. "
                "Add credits to the account or configure a secondary AI provider."
            )
        elif kind is OutcomeKind.RATE_LIMITED:
            message = f"{name} API rate limit exceeded"
            details = "Too many requests. Please try again later."
        elif kind is OutcomeKind.UPSTREAM_MALFORMED_RESPONSE:
            message = "Failed to parse AI response"
            details = f"{record.message}. Please try again or create the form manually."
        elif kind is OutcomeKind.MISSING_CREDENTIAL:
            message = f"{name} API key missing in backend"
            details = f"Set {adapter.CREDENTIAL_ENV} in the .env file to enable AI form generation."
        else:
            message = f"Failed to generate form with {name}"
            details = f"{record.message}. Please try again or create the form manually."
        return Failure(kind, message, details, (record,))


def _credential_for(name: str) -> str:
    return {"grok": GROK_API_KEY, "claude": CLAUDE_API_KEY, "gemini": GEMINI_API_KEY}.get(name, "")


def _models_for(name: str) -> Tuple[str, ...]:
    return {"grok": GROK_MODELS, "claude": CLAUDE_MODELS, "gemini": GEMINI_MODELS}.get(name, ())


def build_adapter(name: Optional[str]) -> Optional[ProviderAdapter]:
    key = canonical_name(name)
    if key is None:
        return None
    return PROVIDERS[key](
        api_key=_credential_for(key),
        models=_models_for(key),
        timeout=LLM_TIMEOUT_SECS,
        temperature=TEMPERATURE,
    )


def build_orchestrator() -> Orchestrator:
    """Compose an Orchestrator from the process-wide provider settings."""
    primary = build_adapter(LLM_PRIMARY_PROVIDER)
    secondary = build_adapter(LLM_SECONDARY_PROVIDER)
    if primary is None:
        if LLM_PRIMARY_PROVIDER:
            log.warning("llm unknown primary provider %r", LLM_PRIMARY_PROVIDER)
        if secondary is not None:
            log.warning("llm no usable primary provider; promoting secondary %s", secondary.name)
            primary, secondary = secondary, None
    return Orchestrator(primary, secondary, FallbackPolicy.from_string(LLM_FALLBACK_ON))


def generate_fields(request: GenerationRequest, provider: Optional[str] = None) -> GenerationOutcome:
    """Single entry point for the HTTP layer.

    With `provider` set, only that provider is used and no fallback happens.
    """
    if provider is not None:
        adapter = build_adapter(provider)
        if adapter is None:
            return Failure(
                OutcomeKind.INVALID_REQUEST,
                f"Unknown AI provider: {provider}",
                "Use one of: " + ", ".join(sorted(PROVIDERS)),
            )
        return Orchestrator(adapter).generate(request)
    return build_orchestrator().generate(request)


def status() -> Dict[str, Any]:
    orch = build_orchestrator()
    primary = orch.primary.describe() if orch.primary else None
    secondary = orch.secondary.describe() if orch.secondary else None
    has_token = any(p and p["has_token"] for p in (primary, secondary))
    return {
        "provider": primary["provider"] if primary else None,
        "has_token": has_token,
        "primary": primary,
        "secondary": secondary,
        "fallback_on": sorted(k.value for k in orch.policy.fallback_on),
        "timeout_secs": LLM_TIMEOUT_SECS,
    }
