import os
from typing import Optional, Set

from fastapi import Header, HTTPException


def _load_keys() -> Set[str]:
    raw = os.getenv("API_KEYS", "")
    return {k.strip() for k in raw.split(",") if k.strip()}

API_KEYS: Set[str] = _load_keys()

def keys_required() -> bool:
    return bool(API_KEYS)

def check_api_key(key: Optional[str]) -> bool:
    """
    Returns True if:
      - API_KEYS is empty (dev mode), or
      - 'key' is provided and is in API_KEYS.
    """
    if not API_KEYS:
        return True
    return bool(key) and key in API_KEYS

def require_api_key(x_api_key: Optional[str] = Header(default=None)) -> str:
    """FastAPI dependency; returns the presented key ("" when none) or raises 401."""
    if not check_api_key(x_api_key):
        raise HTTPException(status_code=401, detail={"error": "invalid or missing API key"})
    return x_api_key or ""

def extract_client_key(api_key: str, fallback: str) -> str:
    """Rate-limit identity: the API key when one was sent, else the client host."""
    return api_key.strip() if api_key and api_key.strip() else (fallback or "anon")
