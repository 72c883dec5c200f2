"""
pipeline/extractor.py
---------------------
Field extraction for an already-classified email.

The model is asked for one flat JSON object keyed by the sheet headers.
Whatever comes back is returned as-is (synonym keys included) and
cleaned up later by ``pipeline.normalizer``.  Any failure yields ``{}``.
"""

import logging
import time
from typing import Any, Dict

from pipeline.llm_client import AICoreClient
from pipeline.models import EmailPayload, SHEET_HEADERS
from pipeline.response_parser import parse

log = logging.getLogger("pipeline.extractor")

_FIELD_DEFINITIONS = """
- InvoiceNb: invoice number or reference id as string.
- Date: invoice date in ISO format YYYY-MM-DD.
- Supplier: name of the supplier or issuer.
- Material: short description of the billed material or service.
- Energykhw: total electricity consumption in kWh, numeric.
- Litres_Fuel: total fuel quantity in litres, numeric.
- CloudHours: hours of cloud compute, numeric.
- StorageCloud: amount of cloud storage, numeric.
- DataTransferCloud: data transferred in GB, numeric.
- TransportMode: type of transport (for example Truck, Ship, Train, Plane).
- DistanceTransport: distance covered in km, numeric.
- Amount: quantity of the main material or service (for example 7000 for 7000 L of water, or 1842 for 1842 kWh), numeric.
- Price: total monetary cost in EUR for this invoice line. Only a number, no currency symbol, always in EUR.
- Unit: PHYSICAL unit of the Amount, for example L, kWh, m3, kg, t, h, pcs.
- Category: the sustainability class given above.
- SupplierEmail: email address of the supplier.
""".strip()


def build_extraction_prompt(category: str, payload: EmailPayload) -> str:
    return (
        "You are an information extraction assistant for sustainability reporting.\n"
        f"The email is already classified as: {category}.\n\n"
        "You must fill exactly these fields for ONE invoice line:\n"
        f"{', '.join(SHEET_HEADERS)}\n\n"
        "Use the following precise definitions:\n"
        f"{_FIELD_DEFINITIONS}\n"
        'IMPORTANT: Unit must NEVER be a currency. Never set Unit to "EUR", "Euro", "USD", "$", "€" '
        "or any money symbol.\n"
        "If the invoice is in another currency (for example USD or GBP), convert to EUR using a "
        "reasonable approximate rate and write the converted value in Price.\n"
        "If a field is unknown, set it to null.\n\n"
        "Return ONLY a JSON object with exactly these keys and no explanation.\n\n"
        f"Email JSON:\n{payload.model_dump_json()}"
    )


def extract_fields(llm: AICoreClient, category: str, payload: EmailPayload) -> Dict[str, Any]:
    start = time.perf_counter()
    raw = llm.complete(build_extraction_prompt(category, payload), purpose="extract")
    if raw is None:
        log.info("llm_extract_fallback", extra={"kv": {"category": category}})
        return {}

    fields = parse(raw)
    log.info(
        "llm_extract_complete",
        extra={"kv": {
            "category": category,
            "fields_present": sorted(k for k, v in fields.items() if v not in (None, "")),
            "elapsed_ms": int((time.perf_counter() - start) * 1000),
        }},
    )
    if fields:
        log.info("llm_extract_values", extra={"kv": dict(fields)})
    return fields
