"""Tests for the classification and extraction clients."""

import json
from unittest.mock import MagicMock, patch

import pytest

from pipeline import config
from pipeline.classifier import build_classification_prompt, classify_email, coerce_category
from pipeline.extractor import build_extraction_prompt, extract_fields
from pipeline.llm_client import AICoreClient
from pipeline.models import NOT_RELEVANT, SHEET_HEADERS, EmailPayload
from tests.conftest import FakeLLM, envelope

PAYLOAD = EmailPayload(subject="Wasserrechnung Q1", from_email="info@wasser.de", plain_body="7000 L Wasser")


# ── classification ─────────────────────────────────────────────────────────────


class TestClassify:
    def test_prompt_embeds_payload_and_contract(self) -> None:
        prompt = build_classification_prompt(PAYLOAD)
        assert "Wasserrechnung Q1" in prompt
        assert '{"class":"WATER_INVOICE"}' in prompt

    def test_valid_class(self) -> None:
        llm = FakeLLM({"classify": envelope({"class": "WATER_INVOICE"})})
        assert classify_email(llm, PAYLOAD) == "WATER_INVOICE"
        assert llm.purposes == ["classify"]

    @pytest.mark.parametrize(
        "value, expected",
        [
            ("water_invoice", "WATER_INVOICE"),
            (" Energy Invoice Gas ", "ENERGY_INVOICE_GAS"),
            ("fuel-invoice", "FUEL_INVOICE"),
            ("PIZZA_ORDER", NOT_RELEVANT),
            (None, NOT_RELEVANT),
            (3, NOT_RELEVANT),
        ],
    )
    def test_coerce_category(self, value, expected) -> None:
        assert coerce_category(value) == expected

    def test_unparseable_answer_is_not_relevant(self) -> None:
        llm = FakeLLM({"classify": "I think this is about water."})
        assert classify_email(llm, PAYLOAD) == NOT_RELEVANT

    def test_no_answer_is_not_relevant(self) -> None:
        assert classify_email(FakeLLM(), PAYLOAD) == NOT_RELEVANT


# ── extraction ─────────────────────────────────────────────────────────────────


class TestExtract:
    def test_prompt_lists_all_headers_and_rules(self) -> None:
        prompt = build_extraction_prompt("WATER_INVOICE", PAYLOAD)
        for header in SHEET_HEADERS:
            assert header in prompt
        assert "WATER_INVOICE" in prompt
        assert "Unit must NEVER be a currency" in prompt

    def test_returns_parsed_object(self) -> None:
        llm = FakeLLM({"extract": envelope({"InvoiceNb": "W-1", "Amount": 7000, "Unit": "L"})})
        assert extract_fields(llm, "WATER_INVOICE", PAYLOAD) == {"InvoiceNb": "W-1", "Amount": 7000, "Unit": "L"}

    def test_failure_is_empty_mapping(self) -> None:
        assert extract_fields(FakeLLM(), "WATER_INVOICE", PAYLOAD) == {}
        assert extract_fields(FakeLLM(default="garbage"), "WATER_INVOICE", PAYLOAD) == {}


# ── fail-closed with the real client ───────────────────────────────────────────


class TestFailClosed:
    def make_client(self, session) -> AICoreClient:
        return AICoreClient(
            api_url="https://aic.example", token_url="https://auth.example/token",
            client_id="cid", client_secret="sec", deployment_id="dep", session=session,
        )

    def test_no_token_means_no_call_and_sentinel(self) -> None:
        session = MagicMock()
        with patch("pipeline.llm_client.get_oauth_token", return_value=None):
            client = self.make_client(session)
            assert classify_email(client, PAYLOAD) == NOT_RELEVANT
            assert extract_fields(client, "WATER_INVOICE", PAYLOAD) == {}
        session.post.assert_not_called()

    def test_http_error_is_sentinel(self) -> None:
        session = MagicMock()
        session.post.return_value = MagicMock(status_code=500, text='{"error":"boom"}')
        with patch("pipeline.llm_client.get_oauth_token", return_value="tok"):
            assert classify_email(self.make_client(session), PAYLOAD) == NOT_RELEVANT

    def test_request_shape(self) -> None:
        session = MagicMock()
        session.post.return_value = MagicMock(status_code=200, text=envelope({"class": "WATER_INVOICE"}))
        with patch("pipeline.llm_client.get_oauth_token", return_value="tok"):
            assert classify_email(self.make_client(session), PAYLOAD) == "WATER_INVOICE"

        args, kwargs = session.post.call_args
        assert args[0] == "https://aic.example/v2/inference/deployments/dep/completion"
        assert kwargs["headers"]["Authorization"] == "Bearer tok"
        assert kwargs["headers"]["ai-resource-group"] == config.AIC_RESOURCE_GROUP
        body = kwargs["json"]
        modules = body["orchestration_config"]["module_configurations"]
        assert modules["llm_module_config"] == {"model_name": config.AIC_MODEL_NAME, "model_version": config.AIC_MODEL_VERSION}
        template = modules["templating_module_config"]["template"]
        assert len(template) == 1 and template[0]["role"] == "user"
        assert body["input_params"] == {}
        json.dumps(body)
