from types import SimpleNamespace

import pytest

from formgen import llm_client, providers
from formgen.fields import FieldType
from formgen.llm_client import (
    MAX_QUESTIONS,
    PROMPT_MAX_TOKENS,
    TOPIC_MAX_TOKENS,
    FallbackPolicy,
    GenerationRequest,
    Orchestrator,
    OutcomeKind,
    generate_fields,
)
from formgen.llm_errors import FailureKind, ProviderError
from formgen.providers import ProviderAdapter, ProviderResult

RADIO_JSON = (
    '```json\n[{"id":"q1","type":"radio","label":"How satisfied are you?",'
    '"options":["Good","Bad"],"required":true}]\n```'
)


class StubAdapter(ProviderAdapter):
    """Adapter that replays canned completions or errors without any HTTP."""

    def __init__(self, name, replies=(), api_key="key"):
        super().__init__(api_key=api_key, models=[f"{name}-model"])
        self.name = name
        self.CREDENTIAL_ENV = f"{name.upper()}_API_KEY"
        self.replies = list(replies)
        self.calls = []

    def generate(self, prompt, max_tokens):
        self.calls.append((prompt, max_tokens))
        reply = self.replies.pop(0)
        model = self.models[0]
        if isinstance(reply, ProviderError):
            return ProviderResult(self.name, model=model, error=reply, models_tried=(model,))
        return ProviderResult(self.name, text=reply, model=model, models_tried=(model,))


def _error(provider, status, message):
    return ProviderError(provider, message, status_code=status, raw_body=message)


def test_primary_success_is_not_fallback():
    primary = StubAdapter("grok", [RADIO_JSON])
    secondary = StubAdapter("gemini", [])
    outcome = Orchestrator(primary, secondary).generate(GenerationRequest.from_prompt("customer survey"))

    assert outcome.ok
    assert outcome.provider_used == "grok"
    assert outcome.was_fallback is False
    assert len(outcome.provider_attempts) == 1
    (field,) = outcome.fields
    assert field.type is FieldType.SINGLE_CHOICE
    assert field.options == ["Good", "Bad"]
    assert field.required is True
    assert secondary.calls == []


def test_prompt_request_uses_prompt_token_ceiling():
    primary = StubAdapter("grok", [RADIO_JSON])
    Orchestrator(primary).generate(GenerationRequest.from_prompt("  event RSVP  "))
    ((prompt, max_tokens),) = primary.calls
    assert max_tokens == PROMPT_MAX_TOKENS
    assert "event RSVP" in prompt


def test_topic_request_uses_topic_token_ceiling_and_clamps_count():
    primary = StubAdapter("grok", [RADIO_JSON])
    Orchestrator(primary).generate(GenerationRequest.from_topic("Onboarding", "for new hires", 100))
    ((prompt, max_tokens),) = primary.calls
    assert max_tokens == TOPIC_MAX_TOKENS
    assert f"{MAX_QUESTIONS} questions" in prompt
    assert "Onboarding" in prompt
    assert "for new hires" in prompt


def test_auth_failure_does_not_fall_back():
    primary = StubAdapter("grok", [_error("grok", 401, "Incorrect API key provided")])
    secondary = StubAdapter("gemini", [RADIO_JSON])
    outcome = Orchestrator(primary, secondary).generate(GenerationRequest.from_prompt("x"))

    assert not outcome.ok
    assert outcome.kind is OutcomeKind.AUTH_FAILED
    assert outcome.message == "Grok API authentication failed"
    assert secondary.calls == []
    (attempt,) = outcome.provider_attempts
    assert attempt.failure is FailureKind.AUTH


def test_auth_never_falls_back_even_if_listed():
    policy = FallbackPolicy(frozenset(FailureKind))
    primary = StubAdapter("grok", [_error("grok", 401, "nope")])
    secondary = StubAdapter("gemini", [RADIO_JSON])
    outcome = Orchestrator(primary, secondary, policy).generate(GenerationRequest.from_prompt("x"))
    assert outcome.kind is OutcomeKind.AUTH_FAILED
    assert secondary.calls == []


def test_quota_failure_falls_back_to_secondary():
    primary = StubAdapter("grok", [_error("grok", 400, "Your credit balance is too low")])
    secondary = StubAdapter("gemini", [RADIO_JSON])
    outcome = Orchestrator(primary, secondary).generate(GenerationRequest.from_prompt("x"))

    assert outcome.ok
    assert outcome.provider_used == "gemini"
    assert outcome.was_fallback is True
    first, second = outcome.provider_attempts
    assert first.failure is FailureKind.QUOTA_OR_CREDIT
    assert second.ok
    assert outcome.to_dict()["fallback"] is True


def test_both_providers_failing_reports_two_attempts():
    primary = StubAdapter("grok", [_error("grok", 500, "upstream exploded")])
    secondary = StubAdapter("gemini", [_error("gemini", 503, "overloaded")])
    outcome = Orchestrator(primary, secondary).generate(GenerationRequest.from_prompt("x"))

    assert not outcome.ok
    assert outcome.kind is OutcomeKind.BOTH_PROVIDERS_FAILED
    assert [a.provider for a in outcome.provider_attempts] == ["grok", "gemini"]
    assert "upstream exploded" in outcome.details
    assert "overloaded" in outcome.details
    body = outcome.to_dict()
    assert body["error"] == "both_providers_failed"
    assert len(body["attempts"]) == 2


def test_credit_error_without_secondary_is_quota_exceeded():
    primary = StubAdapter("claude", [_error("claude", 400, "Your credit balance is too low to access the API")])
    outcome = Orchestrator(primary).generate(GenerationRequest.from_prompt("x"))
    assert outcome.kind is OutcomeKind.QUOTA_EXCEEDED
    assert outcome.message == "Claude API credits insufficient"


def test_malformed_output_on_both_providers():
    primary = StubAdapter("grok", ["Sure! A job application form would have name, email and resume."])
    secondary = StubAdapter("gemini", ['[{"id": "a", "type": , }'])
    outcome = Orchestrator(primary, secondary).generate(GenerationRequest.from_prompt("job application"))

    assert outcome.kind is OutcomeKind.BOTH_PROVIDERS_FAILED
    kinds = [a.error_kind for a in outcome.provider_attempts]
    assert kinds == [OutcomeKind.UPSTREAM_MALFORMED_RESPONSE, OutcomeKind.UPSTREAM_MALFORMED_RESPONSE]


def test_malformed_output_without_secondary():
    primary = StubAdapter("grok", ["no json here"])
    outcome = Orchestrator(primary).generate(GenerationRequest.from_prompt("x"))
    assert outcome.kind is OutcomeKind.UPSTREAM_MALFORMED_RESPONSE
    assert outcome.message == "Failed to parse AI response"


def test_empty_field_list_is_malformed():
    primary = StubAdapter("grok", ["[]"])
    outcome = Orchestrator(primary).generate(GenerationRequest.from_prompt("x"))
    assert outcome.kind is OutcomeKind.UPSTREAM_MALFORMED_RESPONSE


def test_rate_limited_without_fallback_policy():
    primary = StubAdapter("grok", [_error("grok", 429, "Too Many Requests")])
    secondary = StubAdapter("gemini", [RADIO_JSON])
    outcome = Orchestrator(primary, secondary, FallbackPolicy.from_string("none")).generate(
        GenerationRequest.from_prompt("x")
    )
    assert outcome.kind is OutcomeKind.RATE_LIMITED
    assert outcome.message == "Grok API rate limit exceeded"
    assert secondary.calls == []


def test_bad_request_without_secondary_is_upstream_error():
    primary = StubAdapter("gemini", [_error("gemini", 400, "contents: must not be empty")])
    outcome = Orchestrator(primary).generate(GenerationRequest.from_prompt("x"))
    assert outcome.kind is OutcomeKind.UPSTREAM_ERROR
    assert outcome.message == "Failed to generate form with Gemini"


@pytest.mark.parametrize(
    "request_",
    [
        GenerationRequest.from_prompt(""),
        GenerationRequest.from_prompt("   "),
        GenerationRequest.from_prompt(None),
        GenerationRequest.from_topic(""),
        GenerationRequest.from_topic(None, "details", 3),
    ],
)
def test_invalid_request_makes_no_provider_call(request_):
    primary = StubAdapter("grok", [RADIO_JSON])
    outcome = Orchestrator(primary).generate(request_)
    assert outcome.kind is OutcomeKind.INVALID_REQUEST
    assert primary.calls == []


def test_missing_primary_key_without_secondary():
    primary = StubAdapter("grok", [], api_key="")
    outcome = Orchestrator(primary).generate(GenerationRequest.from_prompt("x"))
    assert outcome.kind is OutcomeKind.MISSING_CREDENTIAL
    assert outcome.message == "Grok API key missing in backend"
    assert outcome.provider_attempts == ()


def test_missing_primary_key_falls_back_to_configured_secondary():
    primary = StubAdapter("grok", [], api_key="")
    secondary = StubAdapter("gemini", [RADIO_JSON])
    outcome = Orchestrator(primary, secondary).generate(GenerationRequest.from_prompt("x"))
    assert outcome.ok
    assert outcome.was_fallback is True
    first, _ = outcome.provider_attempts
    assert first.error_kind is OutcomeKind.MISSING_CREDENTIAL
    assert primary.calls == []


def test_no_primary_configured():
    outcome = Orchestrator(None).generate(GenerationRequest.from_prompt("x"))
    assert outcome.kind is OutcomeKind.MISSING_CREDENTIAL


def test_same_provider_twice_disables_fallback():
    orch = Orchestrator(StubAdapter("grok"), StubAdapter("grok"))
    assert orch.secondary is None


def test_success_notes_report_coercions():
    primary = StubAdapter("grok", ['[{"id": "stars", "type": "rating", "label": "Rate us"}]'])
    outcome = Orchestrator(primary).generate(GenerationRequest.from_prompt("x"))
    assert outcome.ok
    assert outcome.fields[0].type is FieldType.SHORT_TEXT
    assert any("rating" in n for n in outcome.to_dict()["notes"])


@pytest.mark.parametrize(
    "raw, expected",
    [
        (None, set()),
        ("", set()),
        ("none", set()),
        ("OFF", set()),
        ("quota", {FailureKind.QUOTA_OR_CREDIT}),
        ("credit, rate_limit, bogus", {FailureKind.QUOTA_OR_CREDIT, FailureKind.RATE_LIMITED}),
        ("unknown,bad_request", {FailureKind.UNKNOWN, FailureKind.BAD_REQUEST_OTHER}),
    ],
)
def test_fallback_policy_from_string(raw, expected):
    assert FallbackPolicy.from_string(raw).fallback_on == frozenset(expected)


def test_default_policy():
    policy = FallbackPolicy()
    assert policy.allows(FailureKind.QUOTA_OR_CREDIT)
    assert policy.allows(FailureKind.UNKNOWN)
    assert not policy.allows(FailureKind.AUTH)
    assert not policy.allows(None)


@pytest.mark.parametrize(
    "error, failure",
    [
        (_error("grok", 429, "Too Many Requests"), FailureKind.RATE_LIMITED),
        (_error("grok", 400, "messages: field required"), FailureKind.BAD_REQUEST_OTHER),
        (ProviderError("grok", "request timed out after 30.0s"), FailureKind.UNKNOWN),
    ],
)
def test_default_policy_falls_back(error, failure):
    primary = StubAdapter("grok", [error])
    secondary = StubAdapter("gemini", [RADIO_JSON])
    outcome = Orchestrator(primary, secondary).generate(GenerationRequest.from_prompt("x"))

    assert outcome.ok
    assert outcome.was_fallback is True
    assert outcome.provider_used == "gemini"
    first, second = outcome.provider_attempts
    assert first.failure is failure
    assert second.ok


# End-to-end through the env-configured entry point, HTTP faked at requests.post


def _configure(monkeypatch, **overrides):
    settings = {
        "GROK_API_KEY": "xai-test",
        "CLAUDE_API_KEY": "",
        "GEMINI_API_KEY": "g-test",
        "LLM_PRIMARY_PROVIDER": "grok",
        "LLM_SECONDARY_PROVIDER": "gemini",
        "LLM_FALLBACK_ON": "quota,bad_request,unknown,rate_limited",
    }
    settings.update(overrides)
    for name, value in settings.items():
        monkeypatch.setattr(llm_client, name, value)


class FakeResp:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload
        self.text = str(payload)

    def json(self):
        return self._payload


def _route(monkeypatch, by_host):
    calls = []

    def fake_post(url, timeout=None, **kwargs):
        calls.append(url)
        for host, resp in by_host.items():
            if host in url:
                return resp
        raise AssertionError(f"unexpected url {url}")

    monkeypatch.setattr(providers, "requests", SimpleNamespace(post=fake_post))
    return calls


def test_generate_fields_falls_back_from_grok_to_gemini(monkeypatch):
    _configure(monkeypatch)
    calls = _route(
        monkeypatch,
        {
            "api.x.ai": FakeResp(400, {"error": "Your credit balance is too low"}),
            "generativelanguage": FakeResp(
                200, {"candidates": [{"content": {"parts": [{"text": RADIO_JSON}]}}]}
            ),
        },
    )
    outcome = generate_fields(GenerationRequest.from_prompt("customer survey"))

    assert outcome.ok
    assert outcome.provider_used == "gemini"
    assert outcome.model == "gemini-1.5-flash"
    assert outcome.was_fallback
    assert len(calls) == 2


def test_generate_fields_pinned_provider_does_not_fall_back(monkeypatch):
    _configure(monkeypatch)
    calls = _route(monkeypatch, {"api.x.ai": FakeResp(500, {"error": {"message": "server error"}})})
    outcome = generate_fields(GenerationRequest.from_prompt("x"), provider="grok")
    assert outcome.kind is OutcomeKind.UPSTREAM_ERROR
    assert len(calls) == 1


def test_generate_fields_unknown_pinned_provider(monkeypatch):
    _configure(monkeypatch)
    calls = _route(monkeypatch, {})
    outcome = generate_fields(GenerationRequest.from_prompt("x"), provider="openai")
    assert outcome.kind is OutcomeKind.INVALID_REQUEST
    assert outcome.message == "Unknown AI provider: openai"
    assert calls == []


def test_generate_fields_without_any_keys(monkeypatch):
    _configure(monkeypatch, GROK_API_KEY="", GEMINI_API_KEY="")
    calls = _route(monkeypatch, {})
    outcome = generate_fields(GenerationRequest.from_prompt("x"))
    assert outcome.kind is OutcomeKind.MISSING_CREDENTIAL
    assert calls == []


def test_status_reports_configuration(monkeypatch):
    _configure(monkeypatch, GEMINI_API_KEY="", LLM_FALLBACK_ON="quota")
    info = llm_client.status()
    assert info["provider"] == "grok"
    assert info["has_token"] is True
    assert info["primary"]["has_token"] is True
    assert info["secondary"]["has_token"] is False
    assert info["fallback_on"] == ["quota"]


@pytest.mark.parametrize("primary_name", ["", "none", "openai"])
def test_unusable_primary_name_promotes_secondary(monkeypatch, primary_name):
    _configure(monkeypatch, LLM_PRIMARY_PROVIDER=primary_name)
    calls = _route(
        monkeypatch,
        {"generativelanguage": FakeResp(200, {"candidates": [{"content": {"parts": [{"text": RADIO_JSON}]}}]})},
    )
    outcome = generate_fields(GenerationRequest.from_prompt("customer survey"))

    assert outcome.ok
    assert outcome.provider_used == "gemini"
    assert outcome.was_fallback is False
    assert len(calls) == 1
    assert llm_client.status()["provider"] == "gemini"


def test_no_provider_names_at_all(monkeypatch):
    _configure(monkeypatch, LLM_PRIMARY_PROVIDER="", LLM_SECONDARY_PROVIDER="")
    outcome = generate_fields(GenerationRequest.from_prompt("x"))
    assert outcome.kind is OutcomeKind.MISSING_CREDENTIAL
    assert outcome.message == "No AI provider configured"
