import pytest

from formgen import auth, ratelimit


@pytest.fixture(autouse=True)
def _fresh_rate_limits(monkeypatch):
    # dev mode unless a test opts into API keys
    monkeypatch.setattr(auth, "API_KEYS", set())
    ratelimit._reset()
    yield
    ratelimit._reset()
