"""
pipeline/narratives.py
----------------------
Plain-text narratives for the annual ESG report, and report assembly.

Each narrative is one free-text completion.  When the model is not
reachable (or answers with nothing usable) a fixed sentence is used
instead, so a report can always be assembled.  Charts and PDF layout
are rendered elsewhere from the returned ``EsgReport``.
"""

import json
import logging
from datetime import datetime, timezone
from typing import List, Optional

from pipeline.llm_client import AICoreClient
from pipeline.models import AmountStats, CategorySpend, DashboardSummary, EsgReport, MonthlyPoint
from pipeline.reporting import (
    available_years,
    compute_simple_stats,
    dashboard_summary,
    histogram_buckets,
    invoice_amounts,
    monthly_time_series,
    spend_by_category,
    year_bounds,
)
from pipeline.response_parser import clean_narrative, extract_text_content
from pipeline.store import TabularStore

log = logging.getLogger("pipeline.narratives")

COMPANY_NAME = "SAP EcoTrace"

NO_MONTHLY_DATA = "No monthly data was available for the selected period."
NO_CATEGORY_DATA = "There was no classified spend by sustainability category in this period."
NO_AMOUNTS = "No invoice amounts were available for this period."

TIME_SERIES_FALLBACK = (
    "The monthly time series shows how electricity consumption and related spend developed "
    "throughout the year, with clear seasonal fluctuations and a visible link between kWh and cost."
)
CATEGORY_FALLBACK = (
    "The spend by category chart highlights which sustainability related cost centers dominate "
    "the year, such as energy, fuel, water, waste and emissions reporting."
)
HISTOGRAM_FALLBACK = (
    "The distribution of invoice amounts indicates that most invoices fall in the lower value range, "
    "with a few large documents driving a significant share of the annual spend. "
    "This pattern is typical for utilities, services and cloud charges consolidated into periodic statements."
)


def generate_narrative(llm: AICoreClient, prompt: str) -> Optional[str]:
    """One completion as cleaned plain text; ``None`` if nothing usable came back."""
    raw = llm.complete(prompt, purpose="narrative")
    if raw is None:
        return None
    text = clean_narrative(extract_text_content(raw))
    return text or None


def executive_fallback(year: int, summary: DashboardSummary) -> str:
    return (
        f"In the reporting year {year} the company processed {summary.totalInvoices} sustainability "
        "relevant invoices. Total spend covered by the system amounted to approximately "
        f"{summary.totalPriceEur:.2f} EUR. The main cost drivers were energy, fuel and cloud infrastructure. "
        "The data set provides a robust foundation for tracking environmental performance and "
        "preparing the ESG disclosures."
    )


def build_executive_narrative(
    llm: AICoreClient,
    year: int,
    summary: DashboardSummary,
    series: List[MonthlyPoint],
    categories: List[CategorySpend],
) -> str:
    context = {
        "year": year,
        "totals": summary.model_dump(),
        "monthlyPoints": len(series),
        "categories": [{"category": c.category, "spendEur": c.totalPriceEur} for c in categories],
    }
    prompt = (
        f"You are helping to write a professional ESG sustainability report for the company {COMPANY_NAME} "
        f"for the year {year}. Use the following JSON with aggregated KPIs and category spend to write a "
        "compact executive summary (4 to 6 paragraphs):\n\n"
        f"{json.dumps(context)}\n\n"
        "Focus on energy and fuel consumption, cloud and digital infrastructure, spend structure by "
        "sustainability category, and risks or opportunities. Write in a neutral, business style that "
        "could be used directly in a board level ESG report. Do not include any markdown, bullet points, "
        "titles or code fences, only plain text paragraphs."
    )
    return generate_narrative(llm, prompt) or executive_fallback(year, summary)


def build_time_series_narrative(llm: AICoreClient, year: int, series: List[MonthlyPoint]) -> str:
    if not series:
        return NO_MONTHLY_DATA
    trimmed = [
        {"month": p.month, "energyKwh": p.totalEnergyKwh, "spendEur": p.totalPriceEur}
        for p in series
    ]
    prompt = (
        'You are an ESG analyst. You receive monthly data for one year in JSON with the fields "month", '
        '"energyKwh" and "spendEur". '
        f"Explain in 2 to 3 short paragraphs how energy consumption and related spend evolved during the year {year}. "
        "Comment on peaks, troughs and any noticeable correlation between kWh and spend. "
        "Answer with plain text, no bullets or markdown.\n\n"
        f"{json.dumps(trimmed)}"
    )
    return generate_narrative(llm, prompt) or TIME_SERIES_FALLBACK


def build_category_narrative(llm: AICoreClient, year: int, categories: List[CategorySpend]) -> str:
    if not categories:
        return NO_CATEGORY_DATA
    prompt = (
        'You are an ESG analyst. You receive a JSON array with objects { "category": "...", '
        '"totalPriceEur": number } representing the annual spend by sustainability category for the year '
        f"{year}. Summarize in 2 short paragraphs which categories dominate the spend and what that implies "
        "for the environmental footprint. Answer with plain text, no bullets or markdown.\n\n"
        f"{json.dumps([c.model_dump() for c in categories])}"
    )
    return generate_narrative(llm, prompt) or CATEGORY_FALLBACK


def build_histogram_narrative(llm: AICoreClient, year: int, amounts: List[float]) -> str:
    if not amounts:
        return NO_AMOUNTS
    stats: AmountStats = compute_simple_stats(amounts)
    prompt = (
        "You are an ESG reporting assistant. You receive summary statistics of invoice amounts for the year "
        f"{year} in this JSON: {stats.model_dump_json()}. "
        "Write 1 to 2 short paragraphs that describe the distribution of invoice sizes, highlighting whether "
        "the cost structure is dominated by many small invoices or a few large ones. "
        "Use plain text only, no markdown or code."
    )
    return generate_narrative(llm, prompt) or HISTOGRAM_FALLBACK


def build_esg_report(store: TabularStore, llm: AICoreClient, year: int) -> Optional[EsgReport]:
    """Assemble the report for ``year``; ``None`` when the sheet has no row dated in that year."""
    rows = store.get_all_rows()
    if year not in available_years(rows):
        log.info("esg_report_no_data", extra={"kv": {"year": year}})
        return None

    start, end = year_bounds(year)
    summary = dashboard_summary(rows, start, end)
    series = monthly_time_series(rows, start, end)
    categories = spend_by_category(rows, start, end)
    amounts = invoice_amounts(rows, start, end)

    narratives = {
        "executive": build_executive_narrative(llm, year, summary, series, categories),
        "time_series": build_time_series_narrative(llm, year, series),
        "category": build_category_narrative(llm, year, categories),
        "histogram": build_histogram_narrative(llm, year, amounts),
    }
    log.info("esg_report_built", extra={"kv": {"year": year, "invoices": summary.totalInvoices}})
    return EsgReport(
        year=year,
        created_at=datetime.now(timezone.utc),
        summary=summary,
        monthly_series=series,
        spend_by_category=categories,
        invoice_amounts=amounts,
        amount_stats=compute_simple_stats(amounts),
        histogram=histogram_buckets(amounts),
        narratives=narratives,
    )
