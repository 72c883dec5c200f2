"""
pipeline/auth.py
----------------
OAuth2 client-credentials helper shared by the AI Core client and the
workflow trigger.

Fail-closed: every failure (transport, non-JSON body, missing
``access_token``) is logged with the raw response text and turned into
``None``.  Callers substitute their safe default; nothing is raised.
"""

# =========================
# Imports & Config
# =========================
import logging
from typing import Optional, Tuple

import requests
from cachetools import TTLCache

from pipeline import config

log = logging.getLogger("pipeline.auth")

# Tokens are reused for a short while so one run does not hit the token
# endpoint once per LLM call.
_token_cache: TTLCache = TTLCache(maxsize=64, ttl=max(1, config.TOKEN_CACHE_SECONDS))


def clear_token_cache() -> None:
    _token_cache.clear()


def _cache_key(token_url: str, client_id: str) -> Tuple[str, str]:
    return (token_url, client_id)


def get_oauth_token(
    token_url: str,
    client_id: str,
    client_secret: str,
    timeout: Optional[float] = None,
) -> Optional[str]:
    """Client-credentials flow → bearer token, or ``None`` on any failure."""
    if not token_url or not client_id:
        log.warning("oauth_not_configured", extra={"kv": {"token_url": token_url or "-"}})
        return None

    key = _cache_key(token_url, client_id)
    cached = _token_cache.get(key)
    if cached:
        return cached

    data = {
        "grant_type": "client_credentials",
        "client_id": client_id,
        "client_secret": client_secret,
    }
    try:
        res = requests.post(token_url, data=data, timeout=timeout)
    except requests.RequestException as e:
        log.error("oauth_transport_error", extra={"kv": {"token_url": token_url, "error": str(e)}})
        return None

    raw = res.text or ""
    try:
        payload = res.json()
    except ValueError:
        log.error("oauth_invalid_json", extra={"kv": {"token_url": token_url, "raw": raw[:500]}})
        return None

    token = payload.get("access_token") if isinstance(payload, dict) else None
    if not token:
        log.error("oauth_no_access_token", extra={"kv": {"token_url": token_url, "raw": raw[:500]}})
        return None

    _token_cache[key] = token
    log.debug("oauth_token_ok", extra={"kv": {"token_url": token_url}})
    return token
