"""
pipeline/classifier.py
----------------------
Sustainability classification of one email through the AI Core model.

Returns exactly one of ``SUSTAINABILITY_CLASSES``.  A missing token, a
transport error, an unparseable answer or a label outside the taxonomy
all resolve to ``NOT_RELEVANT_FOR_SUSTAINABILITY`` so nothing downstream
runs on a doubtful classification.
"""

import logging
import time
from typing import Any

from pipeline.llm_client import AICoreClient
from pipeline.models import EmailPayload, NOT_RELEVANT, SUSTAINABILITY_CLASSES
from pipeline.response_parser import parse

log = logging.getLogger("pipeline.classifier")

_CLASS_HINTS = """
- ENERGY_INVOICE_ELECTRICITY: electricity, kwh, power, energy consumed, meter id, strom, eon, utility bill
- ENERGY_INVOICE_GAS: gas, m³, gasverbrauch, gas supply, heating gas
- WATER_INVOICE: water, wasser, liters, cubic meters, wasserverbrauch, wasserrechnung
- FUEL_INVOICE: diesel, petrol, fuel, liters, fleet, transport fuel, tanken
- WASTE_MANAGEMENT: waste, recycling, disposal, entsorgung
- SERVICE_MAINTENANCE: maintenance, repair, service visit, inspection
- EMISSIONS_REPORT: emissions, co2, greenhouse gas, footprint
- GENERAL_CONSUMPTION_INFO: any utility consumption info that is not a bill
- NOT_RELEVANT_FOR_SUSTAINABILITY: only choose this if ABSOLUTELY nothing relates to consumption, utilities, energy, water, fuel, emissions, waste, or sustainability.
""".strip()


def build_classification_prompt(payload: EmailPayload) -> str:
    return (
        "You are a sustainability email classifier. "
        "Your ONLY task is to classify the email into one sustainability class.\n\n"
        "You MUST assign one of these classes based on KEYWORDS, EVEN IF THERE IS NO ATTACHMENT:\n"
        f"{_CLASS_HINTS}\n\n"
        f"Email JSON:\n{payload.model_dump_json()}\n\n"
        'Return ONLY a JSON object like: {"class":"WATER_INVOICE"} with no explanation.'
    )


def coerce_category(value: Any) -> str:
    """Map the model's label onto the taxonomy; unknown labels become the sentinel."""
    if not isinstance(value, str):
        return NOT_RELEVANT
    label = value.strip().upper().replace(" ", "_").replace("-", "_")
    return label if label in SUSTAINABILITY_CLASSES else NOT_RELEVANT


def classify_email(llm: AICoreClient, payload: EmailPayload) -> str:
    start = time.perf_counter()
    raw = llm.complete(build_classification_prompt(payload), purpose="classify")
    if raw is None:
        log.info("llm_classify_fallback", extra={"kv": {"category": NOT_RELEVANT}})
        return NOT_RELEVANT

    parsed = parse(raw)
    category = coerce_category(parsed.get("class"))
    if category == NOT_RELEVANT and parsed.get("class") not in (None, NOT_RELEVANT):
        log.warning("llm_class_outside_taxonomy", extra={"kv": {"class": parsed.get("class")}})

    log.info(
        "llm_classify_complete",
        extra={"kv": {
            "category": category,
            "subject": payload.subject[:120],
            "elapsed_ms": int((time.perf_counter() - start) * 1000),
        }},
    )
    return category
