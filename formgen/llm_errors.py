"""
LLM provider error classification.

Sorts a failed provider call into the handful of categories the
orchestrator needs to decide whether another provider is worth trying.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class FailureKind(str, Enum):
    AUTH = "auth"                  # bad or missing key on that provider
    QUOTA_OR_CREDIT = "quota"      # out of credits / billing / quota
    BAD_REQUEST_OTHER = "bad_request"
    RATE_LIMITED = "rate_limited"
    UNKNOWN = "unknown"            # network, timeout, 5xx, unusable reply


@dataclass(eq=False)
class ProviderError(Exception):
    """A failed provider call, as seen at the adapter boundary."""

    provider: str
    message: str
    status_code: Optional[int] = None
    raw_body: str = ""
    model: Optional[str] = None

    def __str__(self) -> str:
        status = self.status_code if self.status_code is not None else "-"
        return f"[{self.provider} HTTP {status}] {self.message}"


_AUTH_RE = re.compile(
    r"unauthori[sz]ed|authori[sz]ation|authentication|"
    r"(?:invalid|incorrect|missing|wrong)[\s_-]*(?:x-)?api[\s_-]*key|"
    r"api[\s_-]*key[\s_-]*(?:not[\s_-]*valid|is[\s_-]*invalid|invalid|missing|expired)",
    re.IGNORECASE,
)
_CREDIT_RE = re.compile(r"credit|balance|quota|billing", re.IGNORECASE)
_RATE_RE = re.compile(r"rate[\s_-]*limit|too many requests", re.IGNORECASE)


def _haystack(error: ProviderError) -> str:
    # Provider error shapes vary; match against the parsed message and the raw body
    return f"{error.message or ''}\n{error.raw_body or ''}"


def classify(error: ProviderError) -> FailureKind:
    status = error.status_code
    text = _haystack(error)
    if status == 401 or _AUTH_RE.search(text):
        return FailureKind.AUTH
    if status == 400 and _CREDIT_RE.search(text):
        return FailureKind.QUOTA_OR_CREDIT
    if status == 429 or _RATE_RE.search(text):
        return FailureKind.RATE_LIMITED
    if status == 400:
        return FailureKind.BAD_REQUEST_OTHER
    return FailureKind.UNKNOWN


_MODEL_UNAVAILABLE_RE = re.compile(
    r"models?\b.*\b(?:not[\s_-]*found|does not exist|not exist|invalid|unknown|unsupported|"
    r"not supported|deprecated|unavailable|not available|decommissioned)|"
    r"(?:invalid|unknown|unsupported)[\s_-]*model",
    re.IGNORECASE,
)
_MODEL_WORD_RE = re.compile(r"\bmodels?\b", re.IGNORECASE)
_NOT_FOUND_RE = re.compile(r"not[\s_-]*found", re.IGNORECASE)


def is_model_unavailable(error: ProviderError) -> bool:
    """True when a 400/404 says the model id itself was rejected."""
    if error.status_code not in (400, 404):
        return False
    if classify(error) in (FailureKind.AUTH, FailureKind.QUOTA_OR_CREDIT):
        return False
    message = error.message or ""
    if _MODEL_UNAVAILABLE_RE.search(message):
        return True
    # Anthropic: 404 not_found_error whose message is just "model: <id>"
    return (
        error.status_code == 404
        and bool(_MODEL_WORD_RE.search(message))
        and bool(_NOT_FOUND_RE.search(error.raw_body or ""))
    )
