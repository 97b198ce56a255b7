import re
from typing import Any, Dict, List, Optional, Sequence, Set
from urllib.parse import quote

import httpx

from google_auth import AuthError, DRIVE_FILE_SCOPE, SPREADSHEETS_SCOPE

SHEETS_API = "https://sheets.googleapis.com/v4/spreadsheets"
DRIVE_FILES_API = "https://www.googleapis.com/drive/v3/files"

SHEET_HEADERS: Dict[str, List[str]] = {
    "Classes": ["id", "name", "defaultN"],
    "Students": [
        "id", "classId", "firstName", "lastName", "displayName",
        "externalId", "loginId", "sisId", "notes", "absenceCount",
    ],
    "Sessions": ["id", "classId", "date", "savedAt", "picksCSV", "picksNamesCSV", "carryoverCSV", "carryoverNamesCSV"],
    "Marks": ["sessionId", "studentId", "displayName", "status", "reason"],
    "Ledger": ["id", "classId", "studentId", "displayName", "date", "sessionId", "reason", "notes"],
    "Settings": ["classId", "defaultN", "neverSeenWeight", "cooldownWeight"],
}

STATUS_EXISTS = "exists"
STATUS_TRASHED = "trashed"
STATUS_NOT_FOUND = "not_found"

Cell = Optional[Any]


class SheetsError(RuntimeError):
    """Remote mirror call failed"""


class SpreadsheetNotFoundError(SheetsError):
    pass


class SpreadsheetTrashedError(SheetsError):
    pass


class RemoteUnavailableError(SheetsError):
    """Transient failure (network, timeout, 5xx, rate limit); the caller decides whether to retry"""


class InvalidSpreadsheetIdError(ValueError):
    pass


def parse_spreadsheet_id(raw: str) -> str:
    """Accept a full sheet URL or a bare id"""
    trimmed = (raw or "").strip()
    m = re.search(r"/spreadsheets/d/([a-zA-Z0-9-_]+)", trimmed)
    if m:
        return m.group(1)
    return trimmed


def is_likely_spreadsheet_id(spreadsheet_id: str) -> bool:
    return bool(re.fullmatch(r"[a-zA-Z0-9-_]{20,}", spreadsheet_id or ""))


def normalize_and_validate_spreadsheet_id(raw: str) -> str:
    spreadsheet_id = parse_spreadsheet_id(raw)
    if not is_likely_spreadsheet_id(spreadsheet_id):
        raise InvalidSpreadsheetIdError(
            "Invalid Spreadsheet ID. Paste the full sheet URL or the ID from /spreadsheets/d/<ID>/..."
        )
    return spreadsheet_id


def _a1(sheet: str, cell: str = "A1") -> str:
    return quote(f"{sheet}!{cell}", safe="")


class SheetsClient:
    """Thin client for the Sheets v4 / Drive v3 calls the mirror needs"""

    def __init__(self, token_provider, http_client: Optional[httpx.Client] = None, timeout: float = 20.0):
        self.token_provider = token_provider
        self.http = http_client or httpx.Client(timeout=timeout)

    def _request(self, method: str, url: str, scopes: Optional[Sequence[str]] = None, **kwargs) -> httpx.Response:
        try:
            token = self.token_provider.get_access_token(scopes or [SPREADSHEETS_SCOPE])
        except AuthError as e:
            raise RemoteUnavailableError(f"Google authentication failed: {e}") from e

        headers = {"Authorization": f"Bearer {token}", **kwargs.pop("headers", {})}
        print(f"[Google] HTTP {method} {url}")
        try:
            return self.http.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            print(f"[Google] ❌ {method} {url} failed: {e}")
            raise RemoteUnavailableError(f"Remote mirror unreachable: {e}") from e

    def _json(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        response = self._request(method, url, **kwargs)
        if response.is_success:
            if not response.content:
                return {}
            try:
                return response.json()
            except ValueError as e:
                print(f"[Google] ❌ HTTP {response.status_code} with unreadable body: {response.text[:120]}")
                raise SheetsError(f"Unexpected non-JSON response from {method} {url}") from e

        detail = response.text[:300] or response.reason_phrase
        print(f"[Google] ❌ HTTP {response.status_code}: {detail}")
        if response.status_code == 404:
            raise SpreadsheetNotFoundError(f"HTTP 404: {detail}")
        if response.status_code == 429 or response.status_code >= 500:
            raise RemoteUnavailableError(f"HTTP {response.status_code}: {detail}")
        raise SheetsError(f"HTTP {response.status_code}: {detail}")

    # ==================== PROVISIONING ====================

    def create_spreadsheet_with_tabs(self, title: str, sheet_titles: Sequence[str]) -> str:
        body = {
            "properties": {"title": title},
            "sheets": [{"properties": {"title": t}} for t in sheet_titles],
        }
        data = self._json("POST", SHEETS_API, json=body)
        print(f"[Google] ✅ Spreadsheet created: {data.get('spreadsheetId')}")
        return data["spreadsheetId"]

    def write_header_row(self, spreadsheet_id: str, sheet: str, headers: Sequence[str]):
        # OVERWRITE avoids range mismatch issues on fresh sheets
        url = f"{SHEETS_API}/{quote(spreadsheet_id, safe='')}/values/{_a1(sheet)}:append"
        self._json(
            "POST",
            url,
            params={"valueInputOption": "RAW", "insertDataOption": "OVERWRITE"},
            json={"range": f"{sheet}!A1", "majorDimension": "ROWS", "values": [list(headers)]},
        )

    def create_and_init_spreadsheet(self, title: str) -> str:
        spreadsheet_id = self.create_spreadsheet_with_tabs(title, list(SHEET_HEADERS))
        for sheet, headers in SHEET_HEADERS.items():
            self.write_header_row(spreadsheet_id, sheet, headers)
        return spreadsheet_id

    def get_sheet_titles(self, spreadsheet_id: str) -> Set[str]:
        data = self._json(
            "GET",
            f"{SHEETS_API}/{quote(spreadsheet_id, safe='')}",
            params={"fields": "sheets(properties(title))"},
        )
        return {
            s.get("properties", {}).get("title")
            for s in data.get("sheets", [])
            if s.get("properties", {}).get("title")
        }

    def ensure_sheets(self, spreadsheet_id: str) -> List[str]:
        """Add any missing sheets with their headers; existing headers are left alone"""
        existing = self.get_sheet_titles(spreadsheet_id)
        missing = [t for t in SHEET_HEADERS if t not in existing]
        if missing:
            print(f"[Google] Adding missing sheets: {missing}")
            self._json(
                "POST",
                f"{SHEETS_API}/{quote(spreadsheet_id, safe='')}:batchUpdate",
                json={"requests": [{"addSheet": {"properties": {"title": t}}} for t in missing]},
            )
            for title in missing:
                self.write_header_row(spreadsheet_id, title, SHEET_HEADERS[title])
        return missing

    # ==================== EXISTENCE ====================

    def spreadsheet_status(self, spreadsheet_id: str) -> str:
        """
        Return STATUS_EXISTS, STATUS_TRASHED or STATUS_NOT_FOUND.

        Drive is asked first because only Drive reports trashed files; if Drive
        answers with something other than a clear yes/no, the Sheets API decides.
        Transport failures raise RemoteUnavailableError instead of guessing.
        """
        drive = self._request(
            "GET",
            f"{DRIVE_FILES_API}/{quote(spreadsheet_id, safe='')}",
            scopes=[SPREADSHEETS_SCOPE, DRIVE_FILE_SCOPE],
            params={"fields": "id,trashed,mimeType", "supportsAllDrives": "true"},
        )
        if drive.is_success:
            try:
                body = drive.json()
            except ValueError as e:
                raise SheetsError(f"Unexpected non-JSON response from Drive for {spreadsheet_id}") from e
            return STATUS_TRASHED if body.get("trashed") is True else STATUS_EXISTS
        if drive.status_code in (403, 404):
            return STATUS_NOT_FOUND
        print(f"[Google] ⚠️ Drive exists check returned {drive.status_code}, falling back to Sheets")

        sheets = self._request(
            "GET",
            f"{SHEETS_API}/{quote(spreadsheet_id, safe='')}",
            params={"fields": "spreadsheetId"},
        )
        if sheets.is_success:
            return STATUS_EXISTS
        if sheets.status_code in (403, 404):
            return STATUS_NOT_FOUND
        raise RemoteUnavailableError(f"Existence check failed with HTTP {sheets.status_code}")

    def require_spreadsheet(self, spreadsheet_id: str):
        status = self.spreadsheet_status(spreadsheet_id)
        if status == STATUS_TRASHED:
            raise SpreadsheetTrashedError(f"Spreadsheet {spreadsheet_id} is in the trash")
        if status == STATUS_NOT_FOUND:
            raise SpreadsheetNotFoundError(f"Spreadsheet {spreadsheet_id} does not exist or is not shared")

    # ==================== ROWS ====================

    def append_rows(self, spreadsheet_id: str, sheet: str, rows: List[List[Cell]]) -> Dict[str, Any]:
        if not rows:
            return {}
        url = f"{SHEETS_API}/{quote(spreadsheet_id, safe='')}/values/{_a1(sheet)}:append"
        result = self._json(
            "POST",
            url,
            params={"valueInputOption": "RAW", "insertDataOption": "INSERT_ROWS"},
            json={"range": f"{sheet}!A1", "majorDimension": "ROWS", "values": rows},
        )
        print(f"[Google] ✅ Appended {len(rows)} row(s) to {sheet}")
        return result

    def read_rows(self, spreadsheet_id: str, sheet: str) -> List[Dict[str, str]]:
        """All data rows of a sheet as dicts keyed by the header row"""
        data = self._json("GET", f"{SHEETS_API}/{quote(spreadsheet_id, safe='')}/values/{quote(sheet, safe='')}")
        values = data.get("values", [])
        if not values:
            return []
        headers = [str(h) for h in values[0]]
        rows = []
        for raw in values[1:]:
            if not any(str(c).strip() for c in raw):
                continue
            padded = list(raw) + [""] * (len(headers) - len(raw))
            rows.append({h: str(padded[i]) for i, h in enumerate(headers)})
        return rows

    def clear_data_rows(self, spreadsheet_id: str, sheet: str):
        """Clear everything below the header row"""
        url = f"{SHEETS_API}/{quote(spreadsheet_id, safe='')}/values/{_a1(sheet, 'A2:ZZ')}:clear"
        self._json("POST", url, json={})
