"""
Pydantic models shared across the pipeline
==========================================

``EmailPayload``
    Immutable snapshot of one mailbox message, built once and handed to
    the classification and extraction prompts.

``CanonicalRecord``
    The fixed 16-column row.  Attributes are snake_case; aliases are the
    sheet header names, which are also the keys sent to the workflow as
    context.  Every field defaults to ``""`` so a record is always full
    width.

``TriggerResult``
    Outcome of the downstream workflow call.  ``reason`` states why a
    workflow did or did not start; callers never retry on any reason.

The aggregate models at the bottom back the dashboard and report
endpoints.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Taxonomy and sheet layout
# ---------------------------------------------------------------------------
Category = Literal[
    "ENERGY_INVOICE_ELECTRICITY",
    "ENERGY_INVOICE_GAS",
    "WATER_INVOICE",
    "FUEL_INVOICE",
    "WASTE_MANAGEMENT",
    "SERVICE_MAINTENANCE",
    "EMISSIONS_REPORT",
    "GENERAL_CONSUMPTION_INFO",
    "NOT_RELEVANT_FOR_SUSTAINABILITY",
]

SUSTAINABILITY_CLASSES: List[str] = [
    "ENERGY_INVOICE_ELECTRICITY",
    "ENERGY_INVOICE_GAS",
    "WATER_INVOICE",
    "FUEL_INVOICE",
    "WASTE_MANAGEMENT",
    "SERVICE_MAINTENANCE",
    "EMISSIONS_REPORT",
    "GENERAL_CONSUMPTION_INFO",
    "NOT_RELEVANT_FOR_SUSTAINABILITY",
]

NOT_RELEVANT = "NOT_RELEVANT_FOR_SUSTAINABILITY"

SHEET_HEADERS: List[str] = [
    "InvoiceNb",
    "Date",
    "Supplier",        # name only
    "Material",
    "Energykhw",
    "Litres_Fuel",
    "CloudHours",
    "StorageCloud",
    "DataTransferCloud",
    "TransportMode",
    "DistanceTransport",
    "Amount",
    "Price",           # EUR
    "Unit",            # physical unit, never a currency
    "Category",
    "SupplierEmail",
]

CellValue = Union[str, int, float]


# ---------------------------------------------------------------------------
# Email payload
# ---------------------------------------------------------------------------
class AttachmentInfo(BaseModel):
    """Descriptor of one file attachment (content is never sent to the model)."""
    model_config = ConfigDict(frozen=True)

    name: str = ""
    content_type: str = ""
    length: int = 0


class EmailPayload(BaseModel):
    """Structured view of a message as seen by the AI clients."""
    model_config = ConfigDict(frozen=True)

    subject: str = ""
    from_raw: str = Field(default="", description="Raw From header, e.g. 'ACME <billing@acme.de>'")
    from_name: str = ""
    from_email: str = ""
    to: str = ""
    date: Optional[datetime] = None
    plain_body: str = ""
    html_body: str = ""
    attachments: List[AttachmentInfo] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Canonical record
# ---------------------------------------------------------------------------
class CanonicalRecord(BaseModel):
    """One normalised invoice line, in fixed sheet column order."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    invoice_nb: CellValue = Field(default="", alias="InvoiceNb")
    date: CellValue = Field(default="", alias="Date")
    supplier: CellValue = Field(default="", alias="Supplier")
    material: CellValue = Field(default="", alias="Material")
    energy_kwh: CellValue = Field(default="", alias="Energykhw")
    litres_fuel: CellValue = Field(default="", alias="Litres_Fuel")
    cloud_hours: CellValue = Field(default="", alias="CloudHours")
    storage_cloud: CellValue = Field(default="", alias="StorageCloud")
    data_transfer_cloud: CellValue = Field(default="", alias="DataTransferCloud")
    transport_mode: CellValue = Field(default="", alias="TransportMode")
    distance_transport: CellValue = Field(default="", alias="DistanceTransport")
    amount: CellValue = Field(default="", alias="Amount")
    price: CellValue = Field(default="", alias="Price")
    unit: CellValue = Field(default="", alias="Unit")
    category: CellValue = Field(default="", alias="Category")
    supplier_email: CellValue = Field(default="", alias="SupplierEmail")

    def to_context(self) -> Dict[str, CellValue]:
        """Header-keyed mapping, in column order (workflow context / logs)."""
        return self.model_dump(by_alias=True)

    def to_row(self) -> List[CellValue]:
        """Cell values in ``SHEET_HEADERS`` order."""
        ctx = self.to_context()
        return [ctx[h] for h in SHEET_HEADERS]


# ---------------------------------------------------------------------------
# Workflow trigger
# ---------------------------------------------------------------------------
class TriggerReason(str, Enum):
    STARTED = "started"
    NO_TOKEN = "no_token"
    TRANSPORT_ERROR = "transport_error"
    INVALID_JSON = "invalid_json"
    UNEXPECTED_RESPONSE = "unexpected_response"
    DISABLED = "disabled"


class TriggerResult(BaseModel):
    """Result of one workflow-start attempt.  There is no retry on any reason."""
    started: bool
    reason: TriggerReason
    instance_id: Optional[str] = None
    detail: Optional[str] = None


# ---------------------------------------------------------------------------
# HTTP callback
# ---------------------------------------------------------------------------
class CallbackOut(BaseModel):
    message: str
    timestamp: str


class ExtractOut(BaseModel):
    """Envelope of the in-process debugging endpoints."""
    ok: bool
    data: Dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Aggregates for dashboard / report
# ---------------------------------------------------------------------------
class DashboardSummary(BaseModel):
    totalInvoices: int = 0
    totalPriceEur: float = 0.0
    totalEnergyKwh: float = 0.0
    totalFuelLitres: float = 0.0
    totalCloudHours: float = 0.0
    totalStorageGbMonth: float = 0.0
    totalTransferGb: float = 0.0


class MonthlyPoint(BaseModel):
    month: str
    totalPriceEur: float = 0.0
    totalEnergyKwh: float = 0.0
    totalFuelLitres: float = 0.0
    totalCloudHours: float = 0.0
    totalStorageGbMonth: float = 0.0
    totalTransferGb: float = 0.0


class CategorySpend(BaseModel):
    category: str
    totalPriceEur: float


class AmountStats(BaseModel):
    count: int = 0
    min: float = 0.0
    max: float = 0.0
    mean: float = 0.0
    median: Optional[float] = None
    p90: Optional[float] = None


class HistogramBucket(BaseModel):
    label: str
    count: int


class EsgReport(BaseModel):
    year: int
    created_at: datetime
    summary: DashboardSummary
    monthly_series: List[MonthlyPoint]
    spend_by_category: List[CategorySpend]
    invoice_amounts: List[float]
    amount_stats: AmountStats
    histogram: List[HistogramBucket]
    narratives: Dict[str, str]
