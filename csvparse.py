import re
import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Union

log = logging.getLogger(__name__)

# ---------- Config ----------
DELIMITERS = [",", ";", "\t", "|"]   # detection order doubles as tie-break order
AUTO = "auto"

class HeaderMode(str, Enum):
    USE = "use"
    SKIP = "skip"
    NONE = "none"

@dataclass
class ParseConfig:
    delimiter: str = AUTO
    header_mode: HeaderMode = HeaderMode.USE
    trim_whitespace: bool = True
    skip_empty_rows: bool = True
    preview_only: bool = False
    preview_row_limit: int = 10
    max_rows: Optional[int] = None

@dataclass
class ParsedTable:
    headers: Optional[List[str]]
    data_rows: List[List[str]]
    sheet_data: List[List[str]]
    delimiter_used: str
    row_count_original: int
    row_count_data: int
    column_count: int
    truncated: bool = False

    def to_dict(self) -> dict:
        return {
            "headers": self.headers,
            "rows": self.data_rows,
            "delimiter": self.delimiter_used,
            "totalRows": self.row_count_data,
            "metadata": {
                "originalRowCount": self.row_count_original,
                "columnCount": self.column_count,
                "hasHeaders": self.headers is not None,
                "truncated": self.truncated,
            },
        }

@dataclass
class ParseFailure:
    reason: str
    kind: str = "no_data"   # 'no_data' | 'bad_config'

    def to_dict(self) -> dict:
        return {"success": False, "error": self.reason, "kind": self.kind}

ParseResult = Union[ParsedTable, ParseFailure]

def config_from_options(options: Optional[dict], preview: bool = False,
                        preview_rows: int = 10, max_rows: Optional[int] = None) -> Union[ParseConfig, ParseFailure]:
    """
    Build a ParseConfig from the loose option dict sent by clients
    (keys: delimiter, headerHandling, trimWhitespace, skipEmptyRows).
    Missing keys fall back to the defaults; unknown values are a bad_config failure.
    """
    o = options or {}
    delim = o.get("delimiter") or AUTO
    if delim == "\\t" or str(delim).lower() == "tab":
        delim = "\t"
    if delim != AUTO and delim not in DELIMITERS:
        return ParseFailure(f"Unsupported delimiter: {delim!r}", kind="bad_config")
    try:
        header_mode = HeaderMode(str(o.get("headerHandling") or "use").lower())
    except ValueError:
        return ParseFailure(f"Unsupported headerHandling: {o.get('headerHandling')!r}", kind="bad_config")
    limit = o.get("previewRows", preview_rows)
    try:
        limit = int(limit)
    except (TypeError, ValueError):
        return ParseFailure(f"previewRows must be an integer, got {limit!r}", kind="bad_config")
    return ParseConfig(
        delimiter=delim,
        header_mode=header_mode,
        trim_whitespace=o.get("trimWhitespace") is not False,
        skip_empty_rows=o.get("skipEmptyRows") is not False,
        preview_only=preview,
        preview_row_limit=limit,
        max_rows=None if preview else max_rows,
    )

# ---------- Sanitizer ----------
_file_uri_re = re.compile(r"file://[^\s,]*")
_bare_url_line_re = re.compile(r"^[ \t]*https?://[^\s,;|]+[ \t]*$", re.MULTILINE)
_blank_run_re = re.compile(r"\n(?:[ \t]*\n){2,}")
_ws_only_line_re = re.compile(r"^[ \t]+$", re.MULTILINE)

def sanitize(raw_text: str) -> str:
    """Strip file:// handles and stray whole-line URLs left by upstream capture steps."""
    text = (raw_text or "").replace("\r\n", "\n")
    text = _file_uri_re.sub("", text)
    text = _bare_url_line_re.sub("", text)
    text = _ws_only_line_re.sub("", text)
    text = _blank_run_re.sub("\n\n", text)
    return text.strip()

# ---------- Detector ----------
def detect_delimiter(raw_text: str) -> str:
    # Quoting is not considered here: a quoted field full of the
    # minority delimiter can win the count.
    first_line = (raw_text or "").split("\n", 1)[0]
    best, best_count = ",", 0
    for d in DELIMITERS:
        n = first_line.count(d)
        if n > best_count:
            best, best_count = d, n
    return best

# ---------- Tokenizer ----------
def parse_line(line: str, delimiter: str) -> List[str]:
    if delimiter not in DELIMITERS:
        raise ValueError(f"delimiter must be resolved before tokenizing, got {delimiter!r}")
    fields: List[str] = []
    current = []
    in_quotes = False
    i, n = 0, len(line)
    while i < n:
        ch = line[i]
        if ch == '"':
            if not in_quotes:
                in_quotes = True
            elif i + 1 < n and line[i + 1] == '"':
                current.append('"')
                i += 1
            else:
                in_quotes = False
        elif ch == delimiter and not in_quotes:
            fields.append("".join(current).strip())
            current = []
        else:
            current.append(ch)
        i += 1
    # unterminated quote: closed at end of line
    fields.append("".join(current).strip())
    return fields

# ---------- Parser ----------
def parse_csv(raw_text: str, config: Optional[ParseConfig] = None) -> ParseResult:
    config = config or ParseConfig()
    if config.delimiter != AUTO and config.delimiter not in DELIMITERS:
        return ParseFailure(f"Unsupported delimiter: {config.delimiter!r}", kind="bad_config")
    if config.preview_only and config.preview_row_limit < 0:
        return ParseFailure("previewRowLimit must be >= 0", kind="bad_config")
    try:
        header_mode = config.header_mode if isinstance(config.header_mode, HeaderMode) \
            else HeaderMode(str(config.header_mode).lower())
    except ValueError:
        return ParseFailure(f"Unsupported header mode: {config.header_mode!r}", kind="bad_config")

    text = raw_text or ""
    delim = detect_delimiter(text) if config.delimiter == AUTO else config.delimiter

    lines = text.split("\n")
    if config.trim_whitespace:
        lines = [ln.strip() for ln in lines]
    if config.skip_empty_rows:
        lines = [ln for ln in lines if len(ln) > 0]

    truncated = False
    if config.max_rows and len(lines) > config.max_rows:
        log.warning("CSV truncated from %d to %d lines", len(lines), config.max_rows)
        lines = lines[:config.max_rows]
        truncated = True

    total_lines = len(lines)
    work = lines[:config.preview_row_limit + 1] if config.preview_only else lines

    rows = []
    for ln in work:
        fields = parse_line(ln, delim)
        if len(fields) > 0:
            rows.append(fields)

    if not rows:
        return ParseFailure("No data found in CSV")

    headers = None
    data_rows = rows
    if header_mode == HeaderMode.USE:
        headers, data_rows = rows[0], rows[1:]
    elif header_mode == HeaderMode.SKIP:
        data_rows = rows[1:]

    sheet_data = [headers] + data_rows if headers else data_rows

    if config.preview_only:
        row_count_data = total_lines - 1 if header_mode != HeaderMode.NONE else total_lines
    else:
        row_count_data = len(data_rows)

    if headers is not None:
        column_count = len(headers)
    elif data_rows:
        column_count = len(data_rows[0])
    else:
        column_count = 0

    return ParsedTable(
        headers=headers,
        data_rows=data_rows,
        sheet_data=sheet_data,
        delimiter_used=delim,
        row_count_original=total_lines,
        row_count_data=max(0, row_count_data),
        column_count=column_count,
        truncated=truncated,
    )

def parse(raw_text: str, config: Optional[ParseConfig] = None) -> ParseResult:
    """Sanitize then parse; the entry point every caller should use."""
    return parse_csv(sanitize(raw_text), config)
