# Backup - CSV Reading/Writing
#
# RFC 4180 flavour shared with the companion client:
#   - UTF-8 with a leading BOM
#   - fields containing , " CR or LF are quoted, quotes doubled
#   - CRLF row separator; a bare LF is accepted on read
#
# Quoted fields may contain raw newlines, so rows are recovered with a
# character-level state machine rather than by splitting lines.

from typing import Iterable, List, Sequence

BOM = "\ufeff"
ROW_SEPARATOR = "\r\n"

ENTRY_HEADERS = (
    "ID", "Type", "Title", "Data", "Notes", "IsFavorite",
    "ImagePaths", "CreatedAt", "UpdatedAt",
)

# Password CSV written alongside the JSON records in backup archives.
PASSWORD_HEADERS = (
    "ID", "Title", "Username", "Password", "Website", "Notes",
    "IsFavorite", "CreatedAt", "UpdatedAt",
)


def escape_field(value) -> str:
    text = "" if value is None else str(value)
    if any(ch in text for ch in ',"\r\n'):
        return '"' + text.replace('"', '""') + '"'
    return text


def format_row(fields: Iterable) -> str:
    return ",".join(escape_field(f) for f in fields)


def write_csv(header: Sequence[str], rows: Iterable[Sequence]) -> str:
    """Render a whole document, BOM first, one CRLF after every row."""
    lines = [format_row(header)]
    lines.extend(format_row(row) for row in rows)
    return BOM + ROW_SEPARATOR.join(lines) + ROW_SEPARATOR


def strip_bom(text: str) -> str:
    return text[1:] if text.startswith(BOM) else text


def parse_csv(text: str) -> List[List[str]]:
    """
    Split CSV text into rows of fields.

    States: outside quotes / inside quotes. A doubled quote inside a
    quoted field is a literal quote; CR, LF and CRLF outside quotes end
    a row. Blank lines produce no row. A final row without a trailing
    newline is kept.
    """
    text = strip_bom(text)
    rows: List[List[str]] = []
    row: List[str] = []
    field: List[str] = []
    in_quotes = False
    row_started = False
    i = 0
    n = len(text)

    while i < n:
        ch = text[i]
        if in_quotes:
            if ch == '"':
                if i + 1 < n and text[i + 1] == '"':
                    field.append('"')
                    i += 1
                else:
                    in_quotes = False
            else:
                field.append(ch)
        elif ch == '"':
            in_quotes = True
            row_started = True
        elif ch == ",":
            row.append("".join(field))
            field = []
            row_started = True
        elif ch in "\r\n":
            if ch == "\r" and i + 1 < n and text[i + 1] == "\n":
                i += 1
            if row_started or field:
                row.append("".join(field))
                rows.append(row)
            row, field, row_started = [], [], False
        else:
            field.append(ch)
            row_started = True
        i += 1

    if row_started or field:
        row.append("".join(field))
        rows.append(row)
    return rows


def is_password_layout(header: Sequence[str]) -> bool:
    """True for the backup password CSV (Username/Password columns, no Type)."""
    names = [h.strip() for h in header]
    return "Type" not in names and "Username" in names and "Password" in names


def is_entry_layout(header: Sequence[str]) -> bool:
    return len(header) >= len(ENTRY_HEADERS) and header[1].strip() == "Type"
