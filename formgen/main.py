import logging
import os
import sys
import time
import uuid
from typing import Any, Dict, Optional, Tuple

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from redis.exceptions import RedisError

from formgen import ratelimit
from formgen.auth import extract_client_key, keys_required, require_api_key
from formgen.llm_client import (
    DEFAULT_QUESTION_COUNT,
    GenerationOutcome,
    GenerationRequest,
    OutcomeKind,
    generate_fields as llm_generate_fields,
    status as llm_status,
)
from formgen.validators import collect_errors

if not logging.getLogger().handlers:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

log = logging.getLogger(__name__)

app = FastAPI(title="formgen")

allow_origins = [o.strip() for o in os.getenv("ALLOW_ORIGINS", "*").split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = str(uuid.uuid4())
    start = time.time()
    request.state.request_id = rid
    response = None
    try:
        response = await call_next(request)
        return response
    finally:
        dur_ms = int((time.time() - start) * 1000)
        log.info(
            "rid=%s method=%s path=%s status=%s dur_ms=%d",
            rid,
            request.method,
            request.url.path,
            getattr(response, "status_code", "?"),
            dur_ms,
        )


class PromptRequest(BaseModel):
    prompt: str = Field("", description="Natural-language description of the form to build")


class FormRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    topic: str = Field("", description="What the form is about")
    description: Optional[str] = Field(default=None, description="Extra details for the form designer")
    num_questions: int = Field(
        default=DEFAULT_QUESTION_COUNT,
        alias="numQuestions",
        description="How many questions to generate (clamped to 1..25)",
    )


class ValidateFieldsRequest(BaseModel):
    fields: Any = Field(..., description="Field list as saved by the form builder")


_STATUS_FOR_KIND: Dict[OutcomeKind, int] = {
    OutcomeKind.INVALID_REQUEST: 400,
    OutcomeKind.RATE_LIMITED: 429,
    OutcomeKind.MISSING_CREDENTIAL: 503,
    OutcomeKind.AUTH_FAILED: 503,
    OutcomeKind.QUOTA_EXCEEDED: 503,
    OutcomeKind.UPSTREAM_MALFORMED_RESPONSE: 502,
    OutcomeKind.UPSTREAM_ERROR: 502,
    OutcomeKind.BOTH_PROVIDERS_FAILED: 502,
}

_REDIS_URL = os.getenv("REDIS_URL", "").strip()
_rl_instance = None
if _REDIS_URL and "pytest" not in sys.modules:
    from formgen.redis_ratelimit import RedisRateLimiter

    _rl_instance = RedisRateLimiter(_REDIS_URL)


def _safe_rate_check(bucket: str, key: str) -> Tuple[bool, int, int]:
    """
    Return (allowed, remaining, reset_ts).
    Uses the Redis limiter when configured; if Redis is unreachable the
    in-process limiter takes over for that request.
    """
    if _rl_instance is not None:
        try:
            return _rl_instance.check_and_increment(bucket, key)
        except RedisError as exc:
            log.warning("rate_limit: Redis unavailable, using in-process limiter: %s", exc)
    return ratelimit.check_and_increment(bucket, key)


def _rate_limit_headers(remaining: int, reset_ts: int, *, limited: bool = False) -> Dict[str, str]:
    headers = {
        "X-RateLimit-Remaining": str(remaining),
        "X-RateLimit-Reset": str(reset_ts),
    }
    if limited:
        wait_seconds = max(0, reset_ts - int(time.time()))
        headers["Retry-After"] = str(wait_seconds)
    return headers


def _rate_limit_payload(reset_ts: int) -> Dict[str, Any]:
    wait_seconds = max(0, reset_ts - int(time.time()))
    return {
        "error": "rate limit exceeded",
        "reset": reset_ts,
        "retry_after_seconds": wait_seconds,
        "message": f"Rate limit exceeded. Try again in {wait_seconds} seconds.",
    }


def _outcome_response(outcome: GenerationOutcome, headers: Dict[str, str]) -> JSONResponse:
    if outcome.ok:
        return JSONResponse(outcome.to_dict(), headers=headers)
    status_code = _STATUS_FOR_KIND.get(outcome.kind, 500)
    log.info("generate: outcome=%s status=%d", outcome.kind.value, status_code)
    return JSONResponse(status_code=status_code, content=outcome.to_dict(), headers=headers)


def _generate(request: Request, api_key: str, gen: GenerationRequest, provider: Optional[str] = None) -> JSONResponse:
    client_key = extract_client_key(api_key, request.client.host if request.client else "anon")
    allowed, remaining, reset_ts = _safe_rate_check("gen", client_key)
    log.info("rate_limit check allowed=%s remaining=%s", allowed, remaining)
    if not allowed:
        return JSONResponse(
            status_code=429,
            content=_rate_limit_payload(reset_ts),
            headers=_rate_limit_headers(remaining, reset_ts, limited=True),
        )
    outcome = llm_generate_fields(gen, provider=provider)
    return _outcome_response(outcome, _rate_limit_headers(remaining, reset_ts))


@app.get("/")
def root() -> Dict[str, str]:
    return {"message": "API is running..."}


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/api/v1/ai/status")
def llm_status_endpoint() -> Dict[str, Any]:
    info = llm_status()
    info["auth_required"] = keys_required()
    return info


@app.post("/api/v1/ai/generate")
def generate_endpoint(req: PromptRequest, request: Request, api_key: str = Depends(require_api_key)):
    """Generate form fields from one free-form prompt, with provider fallback."""
    return _generate(request, api_key, GenerationRequest.from_prompt(req.prompt))


@app.post("/api/v1/ai/generate-form")
def generate_form_endpoint(req: FormRequest, request: Request, api_key: str = Depends(require_api_key)):
    gen = GenerationRequest.from_topic(req.topic, req.description, req.num_questions)
    return _generate(request, api_key, gen)


@app.post("/api/v1/ai/generate/{provider}")
def generate_with_provider_endpoint(
    provider: str,
    req: PromptRequest,
    request: Request,
    api_key: str = Depends(require_api_key),
):
    """Pin a single provider (no fallback); useful for checking one provider's key."""
    return _generate(request, api_key, GenerationRequest.from_prompt(req.prompt), provider=provider)


@app.post("/api/v1/fields/validate")
def validate_fields_endpoint(req: ValidateFieldsRequest):
    """
    Validate a field list against the field JSON schema plus cross-item checks.
    Returns 200 and {"detail":{"valid":true}} on success,
            422 and {"detail":{"valid":false,"errors":[...]}} on failure.
    """
    errors = collect_errors(req.fields)
    detail: Dict[str, Any] = {"valid": not errors}
    if errors:
        detail["errors"] = errors
        return JSONResponse(status_code=422, content={"detail": detail})
    return {"detail": detail}
