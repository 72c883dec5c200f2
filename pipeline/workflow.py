"""
pipeline/workflow.py
--------------------
Starts the SAP Build Process Automation workflow for a newly stored row.

Success is structural: the decoded response must carry a non-empty
``id`` and a non-empty ``startedAt``.  The HTTP status alone is not
trusted because the gateway can answer 200 with an embedded error
object.  There is no retry; the returned ``TriggerResult.reason`` says
why a workflow did not start.
"""

import logging
from typing import Any, Optional

import requests

from pipeline import config
from pipeline.auth import get_oauth_token
from pipeline.models import CanonicalRecord, TriggerReason, TriggerResult

log = logging.getLogger("pipeline.workflow")


def is_started_response(obj: Any) -> bool:
    return isinstance(obj, dict) and bool(obj.get("id")) and bool(obj.get("startedAt"))


class WorkflowTrigger:
    def __init__(
        self,
        api_url: str = config.SPA_API_URL,
        token_url: str = config.SPA_TOKEN_URL,
        client_id: str = config.SPA_CLIENT_ID,
        client_secret: str = config.SPA_CLIENT_SECRET,
        api_key: str = config.SPA_API_KEY,
        environment_id: str = config.SPA_ENV,
        definition_id: str = config.SPA_DEFINITION_ID,
        enabled: bool = config.WORKFLOW_ENABLED,
        timeout: Optional[float] = config.WORKFLOW_TIMEOUT_SEC,
        session: Optional[requests.Session] = None,
    ):
        self.api_url = (api_url or "").rstrip("/")
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.api_key = api_key
        self.environment_id = environment_id
        self.definition_id = definition_id
        self.enabled = enabled
        self.timeout = timeout
        # Plain session: no retry adapter is ever mounted here.
        self.session = session or requests.Session()

    @property
    def instances_url(self) -> str:
        return f"{self.api_url}/workflow/rest/v1/workflow-instances"

    def trigger(self, record: CanonicalRecord) -> TriggerResult:
        if not self.enabled:
            log.info("workflow_disabled", extra={"kv": {"InvoiceNb": record.invoice_nb}})
            return TriggerResult(started=False, reason=TriggerReason.DISABLED)

        tok = get_oauth_token(self.token_url, self.client_id, self.client_secret, timeout=self.timeout)
        if not tok:
            log.warning("workflow_no_token", extra={"kv": {"InvoiceNb": record.invoice_nb}})
            return TriggerResult(started=False, reason=TriggerReason.NO_TOKEN)

        body = {"definitionId": self.definition_id, "context": record.to_context()}
        headers = {
            "Authorization": f"Bearer {tok}",
            "api-key": self.api_key,
            "content-type": "application/json",
        }
        try:
            resp = self.session.post(
                self.instances_url,
                params={"environmentId": self.environment_id},
                json=body,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            log.error("workflow_transport_error", extra={"kv": {"error": str(e)}})
            return TriggerResult(started=False, reason=TriggerReason.TRANSPORT_ERROR, detail=str(e))

        text = resp.text or ""
        log.info("workflow_raw_response", extra={"kv": {"status": resp.status_code, "raw": text[:500]}})
        try:
            data = resp.json()
        except ValueError:
            log.error("workflow_invalid_json", extra={"kv": {"status": resp.status_code}})
            return TriggerResult(started=False, reason=TriggerReason.INVALID_JSON, detail=text[:500])

        if is_started_response(data):
            log.info("workflow_started", extra={"kv": {"instance_id": data["id"], "startedAt": data["startedAt"]}})
            return TriggerResult(started=True, reason=TriggerReason.STARTED, instance_id=str(data["id"]))

        log.warning("workflow_unexpected_response", extra={"kv": {"status": resp.status_code}})
        return TriggerResult(started=False, reason=TriggerReason.UNEXPECTED_RESPONSE, detail=text[:500])
