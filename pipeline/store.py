"""
pipeline/store.py
-----------------
Tabular store behind the pipeline: one sheet, header in row 1, one
canonical record per data row, append-only apart from callback deletes.

``GoogleSheetStore`` talks to the Sheets v4 API with a service account.
Values are written RAW and read UNFORMATTED so a stored row reads back
the same scalars that were appended (needed for exact-match dedup).
``InMemoryStore`` is a list-backed stand-in for local runs and tests.

Errors from the Sheets API are not swallowed here; they propagate to
the orchestrator boundary.
"""

# =========================
# Imports & Setup
# =========================
import json
import logging
from typing import Any, List, Optional, Protocol, Sequence, runtime_checkable

from google.oauth2 import service_account
from googleapiclient.discovery import build

from pipeline import config
from pipeline.models import SHEET_HEADERS

log = logging.getLogger("pipeline.store")

Row = List[Any]


@runtime_checkable
class TabularStore(Protocol):
    def ensure_headers(self) -> None: ...
    def get_all_rows(self) -> List[Row]: ...
    def append_row(self, row: Sequence[Any]) -> None: ...
    def delete_row(self, index: int) -> None: ...


def pad_row(row: Sequence[Any], width: int = len(SHEET_HEADERS)) -> Row:
    out = list(row[:width])
    out.extend([""] * (width - len(out)))
    return out


def _is_blank_row(row: Sequence[Any]) -> bool:
    return all(v is None or v == "" for v in row)


def load_service_account_info(service_account_json: str) -> dict:
    """Accept the key as inline JSON or as a file path."""
    if not service_account_json:
        raise RuntimeError(
            "Missing GOOGLE_SERVICE_ACCOUNT_JSON: set it to the service account key "
            "(inline JSON or a file path)."
        )
    if service_account_json.lstrip().startswith("{"):
        return json.loads(service_account_json)
    with open(service_account_json, "r") as f:
        return json.load(f)


# =========================
# In-memory store
# =========================
class InMemoryStore:
    """List-backed store with the same row semantics as the sheet."""

    def __init__(self, rows: Optional[Sequence[Sequence[Any]]] = None, with_header: bool = True):
        self.header: Row = list(SHEET_HEADERS) if with_header else []
        self.rows: List[Row] = [pad_row(r) for r in (rows or [])]

    def ensure_headers(self) -> None:
        if _is_blank_row(self.header):
            self.header = list(SHEET_HEADERS)

    def get_all_rows(self) -> List[Row]:
        return [list(r) for r in self.rows]

    def append_row(self, row: Sequence[Any]) -> None:
        self.rows.append(pad_row(row))

    def delete_row(self, index: int) -> None:
        del self.rows[index]


# =========================
# Google Sheets store
# =========================
class GoogleSheetStore:
    """Sheets v4 implementation; the sheet is ``sheet_name`` or the first sheet."""

    SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]

    def __init__(
        self,
        spreadsheet_id: str = config.SHEET_ID,
        sheet_name: str = config.SHEET_NAME,
        service_account_json: str = config.GOOGLE_SERVICE_ACCOUNT_JSON,
        service: Any = None,
    ):
        self.spreadsheet_id = spreadsheet_id
        self.sheet_name = sheet_name
        self._service_account_json = service_account_json
        self._service = service
        self._title: Optional[str] = None
        self._sheet_id: Optional[int] = None

    @property
    def service(self):
        """Sheets client, built on first use so configuration errors surface per call."""
        if self._service is None:
            self._service = self._build_service(self._service_account_json)
        return self._service

    def _build_service(self, service_account_json: str):
        if not self.spreadsheet_id:
            raise RuntimeError("Missing SHEET_ID: set it to the target spreadsheet id.")
        credentials = service_account.Credentials.from_service_account_info(
            load_service_account_info(service_account_json),
            scopes=self.SCOPES,
        )
        service = build("sheets", "v4", credentials=credentials, cache_discovery=False)
        log.info("sheets_client_initialized", extra={"kv": {"spreadsheet": self.spreadsheet_id}})
        return service

    # ---- sheet resolution ----
    def _resolve_sheet(self) -> None:
        if self._title is not None:
            return
        meta = self.service.spreadsheets().get(
            spreadsheetId=self.spreadsheet_id,
            fields="sheets.properties",
        ).execute()
        sheets = [s.get("properties", {}) for s in meta.get("sheets", [])]
        if not sheets:
            raise RuntimeError(f"Spreadsheet {self.spreadsheet_id} has no sheets")
        chosen = next((p for p in sheets if self.sheet_name and p.get("title") == self.sheet_name), sheets[0])
        self._title = chosen.get("title")
        self._sheet_id = chosen.get("sheetId", 0)

    def _range(self, a1: str) -> str:
        self._resolve_sheet()
        title = (self._title or "").replace("'", "''")
        return f"'{title}'!{a1}"

    @staticmethod
    def _last_column() -> str:
        return chr(ord("A") + len(SHEET_HEADERS) - 1)

    # ---- TabularStore ----
    def ensure_headers(self) -> None:
        rng = self._range(f"A1:{self._last_column()}1")
        resp = self.service.spreadsheets().values().get(
            spreadsheetId=self.spreadsheet_id, range=rng,
        ).execute()
        values = resp.get("values", [])
        if not values or _is_blank_row(values[0]):
            self.service.spreadsheets().values().update(
                spreadsheetId=self.spreadsheet_id,
                range=rng,
                valueInputOption="RAW",
                body={"values": [list(SHEET_HEADERS)]},
            ).execute()
            log.info("sheet_headers_written", extra={"kv": {"sheet": self._title}})

    def get_all_rows(self) -> List[Row]:
        resp = self.service.spreadsheets().values().get(
            spreadsheetId=self.spreadsheet_id,
            range=self._range(f"A2:{self._last_column()}"),
            valueRenderOption="UNFORMATTED_VALUE",
            dateTimeRenderOption="FORMATTED_STRING",
        ).execute()
        return [pad_row(r) for r in resp.get("values", [])]

    def append_row(self, row: Sequence[Any]) -> None:
        self.service.spreadsheets().values().append(
            spreadsheetId=self.spreadsheet_id,
            range=self._range("A1"),
            valueInputOption="RAW",
            insertDataOption="INSERT_ROWS",
            body={"values": [pad_row(row)]},
        ).execute()

    def delete_row(self, index: int) -> None:
        """Delete data row ``index`` (0-based, header excluded)."""
        self._resolve_sheet()
        self.service.spreadsheets().batchUpdate(
            spreadsheetId=self.spreadsheet_id,
            body={"requests": [{
                "deleteDimension": {
                    "range": {
                        "sheetId": self._sheet_id,
                        "dimension": "ROWS",
                        "startIndex": index + 1,
                        "endIndex": index + 2,
                    }
                }
            }]},
        ).execute()
