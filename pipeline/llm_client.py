"""
    pipeline/llm_client.py
    ----------------------
    Client for the SAP AI Core orchestration completion endpoint.

    - One single-turn user prompt per call, fixed model name/version.
    - Fail-closed: no token, transport error or non-2xx status → ``None``.
      The raw response text is logged so operators can see what the
      gateway returned.
"""

# =========================
# Imports & Session
# =========================
import logging
import time
from typing import Any, Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from pipeline import config
from pipeline.auth import get_oauth_token

log = logging.getLogger("pipeline.llm_client")


def _build_session(max_retries: int) -> requests.Session:
    """Session with an optional urllib3 retry policy (0 disables retries)."""
    session = requests.Session()
    if max_retries > 0:
        retry = Retry(
            total=max_retries,
            backoff_factor=1.0,
            status_forcelist=(408, 429, 500, 502, 503, 504),
            allowed_methods=frozenset(["POST"]),
        )
        session.mount("http://", HTTPAdapter(max_retries=retry))
        session.mount("https://", HTTPAdapter(max_retries=retry))
    return session


class AICoreClient:
    """Thin wrapper around ``/v2/inference/deployments/{id}/completion``."""

    def __init__(
        self,
        api_url: str = config.AIC_API_URL,
        token_url: str = config.AIC_TOKEN_URL,
        client_id: str = config.AIC_CLIENT_ID,
        client_secret: str = config.AIC_CLIENT_SECRET,
        deployment_id: str = config.AIC_DEPLOYMENT_ID,
        resource_group: str = config.AIC_RESOURCE_GROUP,
        model_name: str = config.AIC_MODEL_NAME,
        model_version: str = config.AIC_MODEL_VERSION,
        timeout: Optional[float] = config.LLM_TIMEOUT_SEC,
        session: Optional[requests.Session] = None,
    ):
        self.api_url = (api_url or "").rstrip("/")
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.deployment_id = deployment_id
        self.resource_group = resource_group
        self.model_name = model_name
        self.model_version = model_version
        self.timeout = timeout
        self.session = session or _build_session(config.LLM_MAX_RETRIES)

    @property
    def completion_url(self) -> str:
        return f"{self.api_url}/v2/inference/deployments/{self.deployment_id}/completion"

    def build_body(self, prompt: str) -> Dict[str, Any]:
        return {
            "orchestration_config": {
                "module_configurations": {
                    "templating_module_config": {
                        "template": [{"role": "user", "content": prompt}],
                    },
                    "llm_module_config": {
                        "model_name": self.model_name,
                        "model_version": self.model_version,
                    },
                },
            },
            "input_params": {},
        }

    def token(self) -> Optional[str]:
        return get_oauth_token(self.token_url, self.client_id, self.client_secret, timeout=self.timeout)

    def complete(self, prompt: str, purpose: str = "completion") -> Optional[str]:
        """POST one prompt; return the raw response text or ``None``."""
        tok = self.token()
        if not tok:
            log.warning("llm_no_token", extra={"kv": {"purpose": purpose}})
            return None

        headers = {
            "Authorization": f"Bearer {tok}",
            "ai-resource-group": self.resource_group,
            "content-type": "application/json",
        }
        start = time.perf_counter()
        try:
            resp = self.session.post(
                self.completion_url,
                json=self.build_body(prompt),
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            log.error("llm_transport_error", extra={"kv": {"purpose": purpose, "error": str(e)}})
            return None
        finally:
            elapsed_ms = int((time.perf_counter() - start) * 1000)
            if elapsed_ms > config.SLOW_LLM_MS:
                log.warning("slow_llm_call", extra={"kv": {"purpose": purpose, "elapsed_ms": elapsed_ms}})

        text = resp.text or ""
        if resp.status_code >= 300:
            log.error(
                "llm_http_error",
                extra={"kv": {"purpose": purpose, "status": resp.status_code, "raw": text[:500]}},
            )
            return None

        log.info(
            "llm_response",
            extra={"kv": {"purpose": purpose, "elapsed_ms": elapsed_ms, "raw": text[:500]}},
        )
        return text
