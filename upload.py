import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, List, Optional, Union

from csvparse import ParseConfig, ParseFailure, ParsedTable, parse_csv, sanitize
from sheets import (Destination, ErrorKind, SheetsAPIError, SheetsClient, SheetWriter,
                    UploadMode, WriteResult)

log = logging.getLogger(__name__)

class UploadState(str, Enum):
    RECEIVED = "RECEIVED"
    SANITIZED = "SANITIZED"
    PARSED = "PARSED"
    DESTINATION_RESOLVED = "DESTINATION_RESOLVED"
    WRITTEN = "WRITTEN"
    REPORTED = "REPORTED"
    FAILED = "FAILED"

@dataclass
class UploadReport:
    result: WriteResult
    destination: Destination
    mode: UploadMode
    rows_uploaded: int
    columns_detected: int
    delimiter: str
    has_headers: bool
    truncated: bool = False
    states: List[UploadState] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "success": True,
            "spreadsheetId": self.destination.spreadsheet_id,
            "sheetName": self.destination.sheet_name,
            "spreadsheetUrl": self.result.destination_url,
            "mode": self.mode.value,
            "rowsUploaded": self.rows_uploaded,
            "rowsWritten": self.result.rows_written,
            "columnsDetected": self.columns_detected,
            "updatedRange": self.result.updated_range,
            "delimiter": self.delimiter,
            "hasHeaders": self.has_headers,
            "truncated": self.truncated,
        }

@dataclass
class OrchestratorFailure:
    state: UploadState                       # last state reached before failing
    reason: str
    error_kind: Optional[ErrorKind] = None   # None means the caller's input was bad
    parse_failure: Optional[ParseFailure] = None
    states: List[UploadState] = field(default_factory=list)

    @property
    def client_error(self) -> bool:
        return self.error_kind is None

    def to_dict(self) -> dict:
        return {
            "success": False,
            "error": self.reason,
            "errorKind": self.error_kind.value if self.error_kind else None,
            "failedAfter": self.state.value,
            "needsReauth": self.error_kind == ErrorKind.AUTH_EXPIRED,
        }

UploadOutcome = Union[UploadReport, OrchestratorFailure]

def upload(destination: Destination, raw_text: str, config: Optional[ParseConfig], mode: UploadMode,
           token: str, client_factory: Callable[[str], SheetsClient] = SheetsClient,
           auto_format: Optional[bool] = None) -> UploadOutcome:
    """
    Run one upload end to end:
    RECEIVED -> SANITIZED -> PARSED -> DESTINATION_RESOLVED -> WRITTEN -> REPORTED.

    The first failure stops the machine and is returned unchanged; nothing is retried.
    `client_factory` builds the request-scoped remote client from the token.
    """
    states = [UploadState.RECEIVED]

    def fail(reason, kind=None, parse_failure=None):
        log.info("Upload failed after %s: %s (%s)", states[-1].value, reason, kind.value if kind else "client")
        return OrchestratorFailure(states[-1], reason, kind, parse_failure, states + [UploadState.FAILED])

    if not destination.spreadsheet_id and mode != UploadMode.CREATE_SPREADSHEET_THEN_WRITE:
        return fail("spreadsheetId is required for mode " + mode.value)
    if mode == UploadMode.CREATE_TAB_THEN_WRITE and not (destination.sheet_name or "").strip():
        return fail("Tab name cannot be empty")

    text = sanitize(raw_text)
    states.append(UploadState.SANITIZED)

    cfg = config or ParseConfig()
    if cfg.preview_only:
        cfg = replace(cfg, preview_only=False)
    table = parse_csv(text, cfg)
    if isinstance(table, ParseFailure):
        return fail(table.reason, parse_failure=table)
    if not table.sheet_data:
        miss = ParseFailure("No data rows to write")
        return fail(miss.reason, parse_failure=miss)
    states.append(UploadState.PARSED)

    writer = SheetWriter(client_factory(token))
    if auto_format is not None:
        writer.auto_format = auto_format
    try:
        writer.validate_token()
        resolved = writer.resolve_destination(destination, mode, table.sheet_data)
    except SheetsAPIError as e:
        return fail(e.reason, e.kind)
    states.append(UploadState.DESTINATION_RESOLVED)

    result = writer.write(resolved, mode, table.sheet_data, header_row=table.headers is not None)
    if not result.success:
        return fail(result.reason or "Upload failed", result.error_kind or ErrorKind.REMOTE_ERROR)
    states.append(UploadState.WRITTEN)

    report = _report(table, resolved, mode, result)
    states.append(UploadState.REPORTED)
    report.states = states
    log.info("Uploaded %d rows to %s/%s (%s)", report.rows_uploaded, resolved.spreadsheet_id,
             resolved.sheet_name, mode.value)
    return report

def _report(table: ParsedTable, destination: Destination, mode: UploadMode, result: WriteResult) -> UploadReport:
    return UploadReport(
        result=result,
        destination=destination,
        mode=mode,
        rows_uploaded=len(table.data_rows),
        columns_detected=table.column_count,
        delimiter=table.delimiter_used,
        has_headers=table.headers is not None,
        truncated=table.truncated,
    )
