"""
Google Sheets CRM backend
=========================
Customer support records kept one per row on a single tab (columns A:J).
Record ids are generated UUIDs stored in column A, so rows can be moved
or deleted by hand without breaking the ids of other records.

The Google API client is blocking; each request is executed off the event
loop with ``asyncio.to_thread``. Its httplib2 transport is not thread-safe,
so requests on one adapter run one at a time.
"""

import asyncio
import logging
import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from pydantic import Field

from ..errors import UpstreamError, ValidationError
from ..models import CustomerRecord, InvocationResult, RecordPriority, RecordStatus
from .base import BackendAdapter, ToolInput, capability

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]
SERVICE_NAME = "Google Sheets"

HEADERS = ["ID", "Name", "Email", "Phone", "Issue", "Status", "Priority", "Created At", "Updated At", "Notes"]
FIELDS = ["id", "name", "email", "phone", "issue", "status", "priority", "created_at", "updated_at", "notes"]


def column_letter(n: int) -> str:
    """Convert a 1-based column index to its letter (1 -> A, 27 -> AA)."""
    letters = ""
    while n > 0:
        n, rem = divmod(n - 1, 26)
        letters = chr(65 + rem) + letters
    return letters


LAST_COLUMN = column_letter(len(HEADERS))


def utc_timestamp(moment: Optional[datetime] = None) -> str:
    moment = moment or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> Optional[datetime]:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def next_timestamp(previous: str) -> str:
    """A timestamp strictly later than ``previous``, at millisecond resolution."""
    now = datetime.now(timezone.utc)
    prior = parse_timestamp(previous)
    if prior is not None and now < prior + timedelta(milliseconds=1):
        now = prior + timedelta(milliseconds=1)
    return utc_timestamp(now)


def digits_only(value: str) -> str:
    return re.sub(r"\D", "", value or "")


def record_to_row(record: CustomerRecord) -> List[str]:
    return [getattr(record, field) for field in FIELDS]


def row_to_record(row: List[Any]) -> CustomerRecord:
    padded = [str(cell) for cell in row] + [""] * (len(FIELDS) - len(row))
    return CustomerRecord(**dict(zip(FIELDS, padded)))


# ============================================================================
# ARGUMENT MODELS
# ============================================================================

class NewCustomerRecordInput(ToolInput):
    name: str = Field(..., description="Customer name", min_length=1)
    email: str = Field(..., description="Customer email address", min_length=1)
    phone: Optional[str] = Field(default=None, description="Customer phone number (optional)")
    issue: str = Field(..., description="Description of the customer issue or request", min_length=1)
    status: RecordStatus = Field(..., description="Current status of the ticket")
    priority: RecordPriority = Field(..., description="Priority level of the issue")
    notes: Optional[str] = Field(default=None, description="Additional notes (optional)")


class RecordIdInput(ToolInput):
    id: str = Field(..., description="The customer record ID", min_length=1)


class UpdateCustomerRecordInput(ToolInput):
    id: str = Field(..., description="The customer record ID to update", min_length=1)
    name: Optional[str] = Field(default=None, description="Customer name")
    email: Optional[str] = Field(default=None, description="Customer email address")
    phone: Optional[str] = Field(default=None, description="Customer phone number")
    issue: Optional[str] = Field(default=None, description="Description of the issue")
    status: Optional[RecordStatus] = Field(default=None, description="Current status")
    priority: Optional[RecordPriority] = Field(default=None, description="Priority level")
    notes: Optional[str] = Field(default=None, description="Additional notes")


class SearchCustomerRecordsInput(ToolInput):
    email: Optional[str] = Field(default=None, description="Search by email address")
    name: Optional[str] = Field(default=None, description="Search by customer name")
    status: Optional[str] = Field(default=None, description="Filter by status")
    priority: Optional[str] = Field(default=None, description="Filter by priority")


class CustomerHistoryInput(ToolInput):
    phone_number: str = Field(..., description="Customer phone number", min_length=1)


# ============================================================================
# ADAPTER
# ============================================================================

class SheetsAdapter(BackendAdapter):
    name = "sheets"
    title = "Google Sheets CRM"
    description = "Customer relationship management with Google Sheets integration"

    def __init__(self, service: Any, spreadsheet_id: str, sheet_name: str = "CustomerRecords"):
        self._service = service
        self.spreadsheet_id = spreadsheet_id
        self.sheet_name = sheet_name
        self._lock = asyncio.Lock()

    @classmethod
    def from_credentials_file(cls, credentials_path: str, spreadsheet_id: str, sheet_name: str = "CustomerRecords") -> "SheetsAdapter":
        credentials = service_account.Credentials.from_service_account_file(credentials_path, scopes=SCOPES)
        service = build("sheets", "v4", credentials=credentials, cache_discovery=False)
        logger.info(f"Google Sheets client initialized for spreadsheet {spreadsheet_id}")
        return cls(service, spreadsheet_id, sheet_name)

    def _a1(self, cells: str) -> str:
        quoted = self.sheet_name.replace("'", "''")
        return f"'{quoted}'!{cells}"

    async def _execute(self, request: Any) -> Dict[str, Any]:
        try:
            async with self._lock:
                return await asyncio.to_thread(request.execute) or {}
        except HttpError as e:
            body = e.content.decode("utf-8", errors="replace") if isinstance(e.content, bytes) else str(e.content)
            raise UpstreamError(SERVICE_NAME, e.resp.status, body[:500]) from None

    async def _read_records(self) -> List[Tuple[int, CustomerRecord]]:
        """All records with their 1-based sheet row numbers."""
        data = await self._execute(
            self._service.spreadsheets().values().get(
                spreadsheetId=self.spreadsheet_id,
                range=self._a1(f"A:{LAST_COLUMN}"),
            )
        )
        records = []
        for index, row in enumerate(data.get("values", [])):
            if not row or not str(row[0]).strip():
                continue
            if index == 0 and str(row[0]) == HEADERS[0]:
                continue
            records.append((index + 1, row_to_record(row)))
        return records

    async def _find(self, record_id: str) -> Tuple[int, CustomerRecord]:
        for row_number, record in await self._read_records():
            if record.id == record_id:
                return row_number, record
        raise ValidationError(f"No customer record found with ID: {record_id}")

    @capability(
        "initialize_sheet",
        "Initialize the Google Sheet with proper headers. Run this once when setting up a new sheet.",
    )
    async def initialize_sheet(self, params: ToolInput) -> InvocationResult:
        spreadsheet = await self._execute(
            self._service.spreadsheets().get(
                spreadsheetId=self.spreadsheet_id,
                fields="sheets.properties.title",
            )
        )
        titles = [sheet.get("properties", {}).get("title") for sheet in spreadsheet.get("sheets", [])]
        created = self.sheet_name not in titles
        if created:
            await self._execute(
                self._service.spreadsheets().batchUpdate(
                    spreadsheetId=self.spreadsheet_id,
                    body={"requests": [{"addSheet": {"properties": {"title": self.sheet_name}}}]},
                )
            )
        await self._execute(
            self._service.spreadsheets().values().update(
                spreadsheetId=self.spreadsheet_id,
                range=self._a1(f"A1:{LAST_COLUMN}1"),
                valueInputOption="RAW",
                body={"values": [HEADERS]},
            )
        )
        return InvocationResult.of_data({
            "success": True,
            "message": f"Sheet initialized successfully with headers: {', '.join(HEADERS)}",
            "sheet": self.sheet_name,
            "created": created,
        })

    @capability(
        "add_customer_record",
        "Add a new customer support record to the Google Sheet",
        NewCustomerRecordInput,
    )
    async def add_customer_record(self, params: NewCustomerRecordInput) -> InvocationResult:
        timestamp = utc_timestamp()
        record = CustomerRecord(
            id=str(uuid.uuid4()),
            name=params.name,
            email=params.email,
            phone=params.phone or "",
            issue=params.issue,
            status=params.status,
            priority=params.priority,
            created_at=timestamp,
            updated_at=timestamp,
            notes=params.notes or "",
        )
        await self._execute(
            self._service.spreadsheets().values().append(
                spreadsheetId=self.spreadsheet_id,
                range=self._a1(f"A:{LAST_COLUMN}"),
                valueInputOption="RAW",
                insertDataOption="INSERT_ROWS",
                body={"values": [record_to_row(record)]},
            )
        )
        logger.info(f"Customer record {record.id} appended")
        return InvocationResult.of_data({
            "success": True,
            "message": f"Customer record created successfully with ID: {record.id}",
            "record": record.to_wire(),
        })

    @capability("get_customer_record", "Retrieve a specific customer record by ID", RecordIdInput)
    async def get_customer_record(self, params: RecordIdInput) -> InvocationResult:
        _, record = await self._find(params.id)
        return InvocationResult.of_data(record.to_wire())

    @capability("update_customer_record", "Update an existing customer record", UpdateCustomerRecordInput)
    async def update_customer_record(self, params: UpdateCustomerRecordInput) -> InvocationResult:
        row_number, record = await self._find(params.id)
        changes = params.model_dump(exclude_unset=True, exclude_none=True, exclude={"id"})
        changes["updated_at"] = next_timestamp(record.updated_at)
        updated = record.model_copy(update=changes)
        await self._execute(
            self._service.spreadsheets().values().update(
                spreadsheetId=self.spreadsheet_id,
                range=self._a1(f"A{row_number}:{LAST_COLUMN}{row_number}"),
                valueInputOption="RAW",
                body={"values": [record_to_row(updated)]},
            )
        )
        return InvocationResult.of_data({
            "success": True,
            "message": f"Customer record {params.id} updated successfully",
            "record": updated.to_wire(),
        })

    @capability(
        "search_customer_records",
        "Search for customer records by email, name, status, or priority",
        SearchCustomerRecordsInput,
    )
    async def search_customer_records(self, params: SearchCustomerRecordsInput) -> InvocationResult:
        def matches(record: CustomerRecord) -> bool:
            if params.email and record.email.lower() != params.email.lower():
                return False
            if params.name and params.name.lower() not in record.name.lower():
                return False
            if params.status and record.status != params.status:
                return False
            if params.priority and record.priority != params.priority:
                return False
            return True

        found = [record.to_wire() for _, record in await self._read_records() if matches(record)]
        return InvocationResult.of_data({"count": len(found), "records": found})

    @capability("list_all_customers", "List all customer records in the sheet")
    async def list_all_customers(self, params: ToolInput) -> InvocationResult:
        records = [record.to_wire() for _, record in await self._read_records()]
        return InvocationResult.of_data({"total": len(records), "records": records})

    @capability("check_customer_history", "Check customer history by phone number", CustomerHistoryInput)
    async def check_customer_history(self, params: CustomerHistoryInput) -> InvocationResult:
        wanted = digits_only(params.phone_number)
        if not wanted:
            raise ValidationError("phone_number must contain digits")
        found = [
            record.to_wire()
            for _, record in await self._read_records()
            if digits_only(record.phone) == wanted
        ]
        return InvocationResult.of_data({"phone": params.phone_number, "count": len(found), "records": found})
