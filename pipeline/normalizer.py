"""
pipeline/normalizer.py
----------------------
Maps loosely keyed extraction output onto the fixed 16-column record.

Each column has an ordered list of candidate keys; the first value that
is not ``None`` and not an empty string wins.  A few columns fall back
to the email itself (date, sender name/address) or to the
classification result.  Unresolved columns become ``""``.  ``normalize``
never raises.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pipeline import config
from pipeline.models import CanonicalRecord, CellValue, EmailPayload

log = logging.getLogger("pipeline.normalizer")

# Candidate keys per column, most specific first.
FIELD_CANDIDATES: Dict[str, Tuple[str, ...]] = {
    "InvoiceNb":         ("InvoiceNb", "invoiceNb", "invoice_number", "invoiceId", "invoice_id"),
    "Date":              ("Date", "invoice_date", "date"),
    "Supplier":          ("Supplier", "supplier_name"),
    "Material":          ("Material", "material", "description", "line_item_description"),
    "Energykhw":         ("Energykhw", "energy_kwh", "quantity_kwh", "energyKwh"),
    "Litres_Fuel":       ("Litres_Fuel", "litres_fuel", "fuel_litres"),
    "CloudHours":        ("CloudHours", "cloud_hours", "compute_hours"),
    "StorageCloud":      ("StorageCloud", "storage_gb_month", "storage_usage_gb_month"),
    "DataTransferCloud": ("DataTransferCloud", "transfer_gb", "data_transfer_gb"),
    "TransportMode":     ("TransportMode", "transport_mode"),
    "DistanceTransport": ("DistanceTransport", "distance_km"),
    "Amount":            ("Amount", "amount", "quantity"),
    "Price":             ("Price", "total_amount", "price_eur", "price"),
    "Unit":              ("Unit", "unit", "uom"),
    "Category":          ("Category",),
    "SupplierEmail":     ("SupplierEmail",),
}

_ADDRESS = re.compile(r"^(.*)<([^>]+)>$")


def parse_email_address(raw: Optional[str]) -> Tuple[str, str]:
    """``'ACME GmbH <billing@acme.de>'`` → ``('ACME GmbH', 'billing@acme.de')``."""
    if not raw:
        return "", ""
    raw = raw.strip()
    m = _ADDRESS.match(raw)
    if m:
        return m.group(1).strip().strip('"').strip(), m.group(2).strip()
    return "", raw


def _is_blank(v: Any) -> bool:
    return v is None or (isinstance(v, str) and v == "")


def _scalar(v: Any) -> CellValue:
    """Keep numbers and strings; anything else is stringified for the sheet."""
    if isinstance(v, bool):
        return "true" if v else "false"
    if isinstance(v, (int, float, str)):
        return v
    return str(v)


def pick(*values: Any) -> CellValue:
    for v in values:
        if not _is_blank(v):
            return _scalar(v)
    return ""


def _candidates(extracted: Mapping[str, Any], header: str) -> list:
    return [extracted.get(k) for k in FIELD_CANDIDATES.get(header, (header,))]


def _zone(tz_name: str):
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        log.warning("unknown_timezone", extra={"kv": {"tz": tz_name}})
        return timezone.utc


def format_local_date(value: Any, tz_name: str = config.PIPELINE_TIMEZONE) -> str:
    """Render an email timestamp as ``YYYY-MM-DD`` in ``tz_name``; invalid → ``""``."""
    if value is None or value == "":
        return ""
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return ""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(_zone(tz_name)).strftime("%Y-%m-%d")


def normalize(
    extracted: Optional[Mapping[str, Any]],
    category: str,
    payload: Optional[EmailPayload],
    tz_name: str = config.PIPELINE_TIMEZONE,
) -> CanonicalRecord:
    extracted = extracted if isinstance(extracted, Mapping) else {}
    payload = payload or EmailPayload()

    row: Dict[str, CellValue] = {}
    for header in FIELD_CANDIDATES:
        row[header] = pick(*_candidates(extracted, header))

    if row["Date"] == "":
        row["Date"] = format_local_date(payload.date, tz_name)
    if row["Supplier"] == "":
        row["Supplier"] = pick(payload.from_name)
    if row["Category"] == "":
        row["Category"] = pick(category)
    if row["SupplierEmail"] == "":
        row["SupplierEmail"] = pick(payload.from_email)

    record = CanonicalRecord(**row)
    log.info("record_normalized", extra={"kv": record.to_context()})
    return record
