#!/usr/bin/env python3
# task_export_viewer: Terminal explorer for task-tracker CSV exports
#
# Hotkeys
#   /    search name, id and notes (type to filter, Enter confirm, Esc cancel)
#   s    open status multi-select (space toggles, Enter/Esc closes)
#   a/A  cycle assignee filter forward/backward ("all" included)
#   m/M  cycle completion month filter forward/backward
#   D    set/clear completion date prefix (YYYY-MM-DD, or any leading part)
#   n/p  next / previous page (also right / left)
#   g/G  first / last page (also home / end)
#   y    copy every filtered row to the clipboard (TSV + HTML table)
#   c    clear all filters
#   o    open another CSV export
#   ?    help
#   q    quit
#
# Input
# - A CSV export with a header row. Recognised columns:
#     Task ID, Name, Section/Column, Assignee, Notes, Created At,
#     Completed At, Tags
#   Other columns are kept on the record but not shown.
#
# Config highlights (optional YAML passed with --config)
#     page_size: 20
#     indicator_seconds: 2.0
#     clipboard:
#       command: ["xclip", "-selection", "clipboard"]

from __future__ import annotations

import argparse
import asyncio
import calendar
import csv
import datetime as dt
import html
import io
import logging
import math
import os
import re
import shutil
import subprocess
import sys
import time
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from typing import Callable, Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

import yaml
from prompt_toolkit import Application
from prompt_toolkit.clipboard import ClipboardData, InMemoryClipboard
from prompt_toolkit.filters import Condition
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.keys import Keys
from prompt_toolkit.layout import HSplit, Layout, Window
from prompt_toolkit.layout.containers import ConditionalContainer, Float, FloatContainer
from prompt_toolkit.layout.controls import FormattedTextControl
from prompt_toolkit.layout.dimension import Dimension
from prompt_toolkit.styles import Style
from prompt_toolkit.utils import get_cwidth
from prompt_toolkit.widgets import Frame

LOGGER_NAME = 'task_export_viewer'
log = logging.getLogger(LOGGER_NAME)

DEFAULT_PAGE_SIZE = 20
DEFAULT_INDICATOR_SECONDS = 2.0
DEFAULT_LOG_FILE = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'task_export_viewer.log')
PLACEHOLDER = '-'

MIME_TEXT = 'text/plain'
MIME_HTML = 'text/html'

_NEWLINES = re.compile(r'\r\n|\r|\n')


# -----------------------------
# Config models
# -----------------------------
@dataclass
class ClipboardConfig:
    command: Optional[List[str]] = None   # None => auto-detect


@dataclass
class Config:
    page_size: int = DEFAULT_PAGE_SIZE
    indicator_seconds: float = DEFAULT_INDICATOR_SECONDS
    clipboard: ClipboardConfig = field(default_factory=ClipboardConfig)


def _compile_clipboard(raw: dict) -> ClipboardConfig:
    """Accept clipboard.command as a list of args or a single shell-style string."""
    section = raw.get("clipboard") or {}
    if not isinstance(section, dict):
        raise ValueError("Config: 'clipboard' must be a mapping.")
    cmd = section.get("command")
    if cmd is None:
        return ClipboardConfig()
    if isinstance(cmd, str):
        cmd = cmd.split()
    if not isinstance(cmd, list) or not cmd:
        raise ValueError("Config: 'clipboard.command' must be a non-empty list.")
    return ClipboardConfig(command=[str(part) for part in cmd])


def load_config(path: str) -> Config:
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError("Config: top level must be a mapping.")
    page_size = raw.get("page_size", DEFAULT_PAGE_SIZE)
    if isinstance(page_size, bool) or not isinstance(page_size, int) or page_size <= 0:
        raise ValueError("Config: 'page_size' must be a positive integer.")
    try:
        seconds = float(raw.get("indicator_seconds", DEFAULT_INDICATOR_SECONDS))
    except (TypeError, ValueError):
        raise ValueError("Config: 'indicator_seconds' must be a number.")
    return Config(page_size=page_size, indicator_seconds=max(0.0, seconds), clipboard=_compile_clipboard(raw))


# -----------------------------
# Records
# -----------------------------
HEADER_FIELDS: Dict[str, str] = {
    "Task ID": "task_id",
    "Name": "name",
    "Section/Column": "section",
    "Assignee": "assignee",
    "Notes": "notes",
    "Created At": "created_at",
    "Completed At": "completed_at",
    "Tags": "tags",
}


@dataclass(frozen=True)
class Record:
    task_id: Optional[str] = None
    name: Optional[str] = None
    section: Optional[str] = None        # status bucket
    assignee: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[str] = None
    completed_at: Optional[str] = None
    tags: Optional[str] = None           # comma-joined
    extra: Tuple[Tuple[str, str], ...] = ()

    @classmethod
    def from_row(cls, row: Mapping[Optional[str], Optional[str]]) -> "Record":
        known: Dict[str, str] = {}
        extra: List[Tuple[str, str]] = []
        for header, value in row.items():
            if header is None or value is None:
                continue
            key = header.strip()
            attr = HEADER_FIELDS.get(key)
            if attr:
                known[attr] = value
            else:
                extra.append((key, value))
        return cls(extra=tuple(extra), **known)

    def get(self, header: str) -> Optional[str]:
        """Look up a value by its CSV header name."""
        attr = HEADER_FIELDS.get(header)
        if attr:
            return getattr(self, attr)
        for key, value in self.extra:
            if key == header:
                return value
        return None


@dataclass(frozen=True)
class Column:
    key: str      # CSV header
    label: str    # display label


VISIBLE_COLUMNS: Tuple[Column, ...] = (
    Column("Task ID", "ID"),
    Column("Name", "Task Name"),
    Column("Section/Column", "Section"),
    Column("Assignee", "Assignee"),
    Column("Notes", "Description"),
    Column("Created At", "Created"),
    Column("Completed At", "Completed"),
    Column("Tags", "Tags"),
)


class RecordStore:
    """Currently loaded records. Replaced wholesale on every load."""

    def __init__(self) -> None:
        self._records: Tuple[Record, ...] = ()

    def load(self, records: Iterable[Record]) -> None:
        self._records = tuple(records)

    def is_empty(self) -> bool:
        return not self._records

    @property
    def records(self) -> Tuple[Record, ...]:
        return self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[Record]:
        return iter(self._records)


# -----------------------------
# Ingestion
# -----------------------------
class IngestError(Exception):
    """Raised when an export file cannot be read or parsed."""


def parse_csv_text(text: str) -> List[Record]:
    """Parse CSV text with a header row into records.

    Blank rows are dropped. Rows carrying more cells than the header are
    malformed and skipped; short rows keep only the cells they have.
    """
    reader = csv.DictReader(io.StringIO(text))
    records: List[Record] = []
    skipped = 0
    try:
        if not reader.fieldnames:
            raise IngestError("File has no header row")
        for row in reader:
            if None in row:
                skipped += 1
                log.debug("Skipping malformed row at line %d (%d extra cells)", reader.line_num, len(row[None]))
                continue
            if not any((v or "").strip() for v in row.values()):
                continue
            records.append(Record.from_row(row))
    except csv.Error as exc:
        raise IngestError(f"CSV parse error near line {reader.line_num}: {exc}") from exc
    if skipped:
        log.info("Skipped %d malformed rows", skipped)
    return records


def read_export_file(path: str) -> List[Record]:
    try:
        with open(path, "r", encoding="utf-8-sig", newline="") as f:
            text = f.read()
    except (OSError, UnicodeDecodeError) as exc:
        raise IngestError(f"Unable to read {path}: {exc}") from exc
    return parse_csv_text(text)


# -----------------------------
# Dates & facets
# -----------------------------
_EXTRA_DATE_FORMATS = ("%m/%d/%Y", "%Y/%m/%d")


def parse_timestamp(raw: Optional[str]) -> Optional[dt.date]:
    """Return the calendar date of a timestamp, or None when it does not parse."""
    s = (raw or "").strip()
    if not s:
        return None
    try:
        return dt.date.fromisoformat(s)
    except ValueError:
        pass
    iso = s[:-1] + "+00:00" if s[-1] in "Zz" else s
    try:
        return dt.datetime.fromisoformat(iso).date()
    except ValueError:
        pass
    for fmt in _EXTRA_DATE_FORMATS:
        try:
            return dt.datetime.strptime(s, fmt).date()
        except ValueError:
            continue
    return None


def month_label(d: dt.date) -> str:
    return f"{calendar.month_name[d.month]} {d.year}"


def display_date(raw: Optional[str]) -> str:
    d = parse_timestamp(raw)
    return d.isoformat() if d else PLACEHOLDER


def _distinct_sorted(values: Iterable[Optional[str]]) -> List[str]:
    return sorted({v for v in values if v})


def status_buckets(records: Iterable[Record]) -> List[str]:
    return _distinct_sorted(r.section for r in records)


def assignees(records: Iterable[Record]) -> List[str]:
    return _distinct_sorted(r.assignee for r in records)


def completion_months(records: Iterable[Record]) -> List[str]:
    """Month labels of parseable completion dates, most recent first."""
    firsts: Dict[str, dt.date] = {}
    for r in records:
        d = parse_timestamp(r.completed_at)
        if d is not None:
            firsts[month_label(d)] = d.replace(day=1)
    return sorted(firsts, key=firsts.__getitem__, reverse=True)


@dataclass(frozen=True)
class Facets:
    statuses: List[str]
    assignees: List[str]
    months: List[str]


def extract_facets(records: Sequence[Record]) -> Facets:
    return Facets(
        statuses=status_buckets(records),
        assignees=assignees(records),
        months=completion_months(records),
    )


# -----------------------------
# Filter state & query filter
# -----------------------------
class FilterState:
    """The five predicate inputs. Empty values are inactive.

    Listeners registered with subscribe() run synchronously after every
    mutation that changes a value.
    """

    def __init__(self) -> None:
        self._search_query = ""
        self._selected_statuses: FrozenSet[str] = frozenset()
        self._selected_assignee = ""
        self._completion_month = ""
        self._completion_date_prefix = ""
        self._listeners: List[Callable[[], None]] = []

    @classmethod
    def from_values(cls, search: str = "", statuses: Iterable[str] = (), assignee: str = "",
                    month: str = "", date_prefix: str = "") -> "FilterState":
        state = cls()
        state._search_query = search or ""
        state._selected_statuses = frozenset(s for s in statuses if s)
        state._selected_assignee = assignee or ""
        state._completion_month = month or ""
        state._completion_date_prefix = date_prefix or ""
        return state

    def subscribe(self, listener: Callable[[], None]) -> None:
        self._listeners.append(listener)

    def _changed(self) -> None:
        for listener in list(self._listeners):
            listener()

    @property
    def search_query(self) -> str:
        return self._search_query

    @property
    def selected_statuses(self) -> FrozenSet[str]:
        return self._selected_statuses

    @property
    def selected_assignee(self) -> str:
        return self._selected_assignee

    @property
    def completion_month(self) -> str:
        return self._completion_month

    @property
    def completion_date_prefix(self) -> str:
        return self._completion_date_prefix

    def set_search(self, query: str) -> None:
        query = query or ""
        if query != self._search_query:
            self._search_query = query
            self._changed()

    def toggle_status(self, status: str) -> None:
        if not status:
            return
        if status in self._selected_statuses:
            self._selected_statuses = self._selected_statuses - {status}
        else:
            self._selected_statuses = self._selected_statuses | {status}
        self._changed()

    def set_statuses(self, statuses: Iterable[str]) -> None:
        new = frozenset(s for s in statuses if s)
        if new != self._selected_statuses:
            self._selected_statuses = new
            self._changed()

    def set_assignee(self, assignee: str) -> None:
        assignee = assignee or ""
        if assignee != self._selected_assignee:
            self._selected_assignee = assignee
            self._changed()

    def set_completion_month(self, label: str) -> None:
        label = label or ""
        if label != self._completion_month:
            self._completion_month = label
            self._changed()

    def set_completion_date_prefix(self, prefix: str) -> None:
        prefix = prefix or ""
        if prefix != self._completion_date_prefix:
            self._completion_date_prefix = prefix
            self._changed()

    def clear(self) -> None:
        if not self.is_active():
            return
        self._search_query = ""
        self._selected_statuses = frozenset()
        self._selected_assignee = ""
        self._completion_month = ""
        self._completion_date_prefix = ""
        self._changed()

    def active_count(self) -> int:
        return sum(1 for v in (self._search_query, self._selected_statuses, self._selected_assignee,
                               self._completion_month, self._completion_date_prefix) if v)

    def is_active(self) -> bool:
        return self.active_count() > 0

    def __repr__(self) -> str:  # pragma: no cover - convenience only
        return (f"FilterState(search={self._search_query!r}, statuses={sorted(self._selected_statuses)}, "
                f"assignee={self._selected_assignee!r}, month={self._completion_month!r}, "
                f"date_prefix={self._completion_date_prefix!r})")


def _contains(value: Optional[str], needle: str) -> bool:
    return bool(value) and needle in value.lower()


def record_matches(record: Record, state: FilterState) -> bool:
    query = state.search_query
    if query:
        needle = query.lower()
        if not (_contains(record.name, needle) or _contains(record.task_id, needle) or _contains(record.notes, needle)):
            return False
    if state.selected_statuses and record.section not in state.selected_statuses:
        return False
    if state.selected_assignee and record.assignee != state.selected_assignee:
        return False
    if state.completion_month:
        d = parse_timestamp(record.completed_at)
        if d is None or month_label(d) != state.completion_month:
            return False
    if state.completion_date_prefix:
        if not (record.completed_at or "").startswith(state.completion_date_prefix):
            return False
    return True


def apply_filters(records: Sequence[Record], state: FilterState) -> List[Record]:
    """Records satisfying every active predicate, in input order."""
    out = [r for r in records if record_matches(r, state)]
    log.debug("apply_filters: %d of %d records match %r", len(out), len(records), state)
    return out


# -----------------------------
# Pagination
# -----------------------------
def total_pages(count: int, page_size: int) -> int:
    if page_size <= 0:
        raise ValueError("page_size must be positive")
    return math.ceil(count / page_size) if count > 0 else 0


def page_slice(filtered: Sequence[Record], page: int, page_size: int) -> List[Record]:
    if page < 1 or page_size <= 0:
        return []
    start = (page - 1) * page_size
    return list(filtered[start:start + page_size])


class Paginator:
    def __init__(self, page_size: int = DEFAULT_PAGE_SIZE) -> None:
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self.page_size = page_size
        self.current_page = 1

    def reset(self) -> None:
        self.current_page = 1

    def total_pages(self, count: int) -> int:
        return total_pages(count, self.page_size)

    def page(self, filtered: Sequence[Record]) -> List[Record]:
        return page_slice(filtered, self.current_page, self.page_size)

    def next_page(self, count: int) -> bool:
        if self.current_page < self.total_pages(count):
            self.current_page += 1
            return True
        return False

    def prev_page(self) -> bool:
        if self.current_page > 1:
            self.current_page -= 1
            return True
        return False

    def go_to(self, page: int, count: int) -> None:
        last = max(1, self.total_pages(count))
        self.current_page = max(1, min(int(page), last))


# -----------------------------
# Export formats
# -----------------------------
CELL_STYLE = "border: 1px solid #ccc; padding: 4px;"


def _export_value(record: Record, column: Column) -> str:
    return record.get(column.key) or ""


def to_delimited_text(records: Iterable[Record], columns: Sequence[Column] = VISIBLE_COLUMNS) -> str:
    header = "\t".join(c.label for c in columns)
    body = "\n".join(
        "\t".join(_NEWLINES.sub(" ", _export_value(r, c)) for c in columns)
        for r in records
    )
    return header + "\n" + body


def to_markup_table(records: Iterable[Record], columns: Sequence[Column] = VISIBLE_COLUMNS) -> str:
    head = "".join(f'<th style="{CELL_STYLE}">{html.escape(c.label)}</th>' for c in columns)
    rows: List[str] = []
    for r in records:
        cells = "".join(
            f'<td style="{CELL_STYLE}">{_NEWLINES.sub("<br>", html.escape(_export_value(r, c)))}</td>'
            for c in columns
        )
        rows.append(f"<tr>{cells}</tr>")
    return (
        '<table style="border-collapse: collapse;">'
        f"<thead><tr>{head}</tr></thead>"
        f"<tbody>{''.join(rows)}</tbody>"
        "</table>"
    )


PDF_COLUMN_WIDTHS_MM: Dict[str, int] = {
    "Task ID": 22, "Name": 58, "Section/Column": 28, "Assignee": 28,
    "Notes": 60, "Created At": 21, "Completed At": 21, "Tags": 19,
}


def write_pdf(records: Sequence[Record], path: str, columns: Sequence[Column] = VISIBLE_COLUMNS,
              title: str = "Task export") -> int:
    """Render records as a landscape A4 table. Returns the number of pages."""
    from reportlab.lib import colors
    from reportlab.lib.pagesizes import A4, landscape
    from reportlab.lib.units import mm
    from reportlab.pdfgen import canvas

    page_w, page_h = landscape(A4)
    left = 20 * mm
    line_h = 5 * mm
    widths = [PDF_COLUMN_WIDTHS_MM.get(col.key, 25) * mm for col in columns]
    generated = dt.datetime.now().strftime('%Y-%m-%d %H:%M')
    c = canvas.Canvas(path, pagesize=landscape(A4))

    def fit(text: str, width: float) -> str:
        text = _NEWLINES.sub(" ", text)
        if c.stringWidth(text, 'Helvetica', 8) <= width:
            return text
        while text and c.stringWidth(text + '…', 'Helvetica', 8) > width:
            text = text[:-1]
        return text + '…'

    def draw_header(page_no: int) -> float:
        c.setFillColor(colors.HexColor('#111111'))
        c.setFont('Helvetica-Bold', 14)
        c.drawString(left, page_h - 15 * mm, title)
        c.setFont('Helvetica', 9)
        c.setFillColor(colors.HexColor('#555555'))
        c.drawString(left, page_h - 21 * mm, f"{len(records)} tasks  •  Generated: {generated}")
        c.setFont('Helvetica', 8)
        c.setFillColor(colors.HexColor('#888888'))
        c.drawRightString(page_w - left, 10 * mm, f"Page {page_no}")
        y = page_h - 30 * mm
        c.setFillColor(colors.HexColor('#f0f3ff'))
        c.rect(left, y - 1.5 * mm, sum(widths), line_h, stroke=0, fill=True)
        c.setFillColor(colors.HexColor('#222222'))
        c.setFont('Helvetica-Bold', 8)
        x = left
        for col, w in zip(columns, widths):
            c.drawString(x + 1, y, col.label)
            x += w
        return y - line_h

    page_no = 1
    y = draw_header(page_no)
    for i, record in enumerate(records):
        if y < 15 * mm:
            c.showPage()
            page_no += 1
            y = draw_header(page_no)
        if i % 2:
            c.setFillColor(colors.HexColor('#fafafa'))
            c.rect(left, y - 1.5 * mm, sum(widths), line_h, stroke=0, fill=True)
        c.setFillColor(colors.HexColor('#222222'))
        c.setFont('Helvetica', 8)
        x = left
        for col, w in zip(columns, widths):
            if col.key in ("Created At", "Completed At"):
                value = display_date(record.get(col.key))
            else:
                value = record.get(col.key) or PLACEHOLDER
            c.drawString(x + 1, y, fit(value, w - 2))
            x += w
        y -= line_h
    c.showPage()
    c.save()
    log.info("Wrote %d rows to %s (%d pages)", len(records), path, page_no)
    return page_no


# -----------------------------
# Clipboard
# -----------------------------
class ClipboardError(Exception):
    """Raised when a clipboard cannot accept a payload."""


CLIPBOARD_CANDIDATES: Tuple[Tuple[str, ...], ...] = (
    ("wl-copy",),
    ("xclip", "-selection", "clipboard"),
    ("xsel", "--clipboard", "--input"),
    ("pbcopy",),
    ("clip.exe",),
)


def detect_clipboard_command() -> Optional[List[str]]:
    for cmd in CLIPBOARD_CANDIDATES:
        if shutil.which(cmd[0]):
            return list(cmd)
    return None


class CommandClipboard:
    """Pipes plain text into an external clipboard program.

    These programs take one format per invocation, so multi-format payloads
    are rejected and the caller falls back to plain text.
    """

    def __init__(self, command: Sequence[str], timeout: float = 5.0) -> None:
        self.command = list(command)
        self.timeout = timeout

    def write(self, payload: Mapping[str, str]) -> None:
        if set(payload) != {MIME_TEXT}:
            raise ClipboardError(f"{self.command[0]} accepts only {MIME_TEXT}")
        try:
            subprocess.run(self.command, input=payload[MIME_TEXT], text=True, check=True,
                           timeout=self.timeout, capture_output=True)
        except (OSError, subprocess.SubprocessError) as exc:
            raise ClipboardError(f"{self.command[0]} failed: {exc}") from exc


class InProcessClipboard:
    """Keeps every format in memory; plain text is mirrored to prompt_toolkit's clipboard."""

    def __init__(self, app_clipboard: Optional[InMemoryClipboard] = None) -> None:
        self.app_clipboard = app_clipboard or InMemoryClipboard()
        self.payload: Dict[str, str] = {}

    def write(self, payload: Mapping[str, str]) -> None:
        if MIME_TEXT not in payload:
            raise ClipboardError(f"payload needs {MIME_TEXT}")
        self.payload = dict(payload)
        self.app_clipboard.set_data(ClipboardData(payload[MIME_TEXT]))


def build_clipboard(cfg: Config):
    cmd = cfg.clipboard.command or detect_clipboard_command()
    if cmd:
        log.debug("Using clipboard command %s", cmd)
        return CommandClipboard(cmd)
    log.debug("No clipboard program found; using in-process clipboard")
    return InProcessClipboard()


@dataclass
class ExportOutcome:
    ok: bool
    rows: int
    fallback: bool = False
    message: str = ""


class ClipboardExporter:
    """Two-step clipboard write: TSV + HTML together, then TSV alone."""

    def __init__(self, clipboard, columns: Sequence[Column] = VISIBLE_COLUMNS) -> None:
        self.clipboard = clipboard
        self.columns = tuple(columns)

    async def export(self, records: Iterable[Record]) -> ExportOutcome:
        rows = list(records)
        text = to_delimited_text(rows, self.columns)
        markup = to_markup_table(rows, self.columns)
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self.clipboard.write, {MIME_TEXT: text, MIME_HTML: markup})
        except ClipboardError as exc:
            log.warning("Rich clipboard write rejected (%s); retrying with plain text", exc)
        else:
            log.info("Copied %d rows as TSV + HTML", len(rows))
            return ExportOutcome(ok=True, rows=len(rows), message=f"Copied {len(rows)} rows")
        try:
            await loop.run_in_executor(None, self.clipboard.write, {MIME_TEXT: text})
        except ClipboardError as exc:
            log.error("Clipboard export failed: %s", exc)
            return ExportOutcome(ok=False, rows=len(rows), fallback=True, message=f"Copy failed: {exc}")
        log.info("Copied %d rows as plain text", len(rows))
        return ExportOutcome(ok=True, rows=len(rows), fallback=True, message=f"Copied {len(rows)} rows (plain text)")


# -----------------------------
# Session
# -----------------------------
def cycle_choice(options: Sequence[str], current: str, delta: int) -> str:
    """Step through "" (all) followed by options, wrapping at both ends."""
    ring = [""] + list(options)
    try:
        idx = ring.index(current)
    except ValueError:
        idx = 0
    return ring[(idx + delta) % len(ring)]


class ExplorerSession:
    """Record store, filter state and page cursor behind one object.

    Derived views (facets, filtered rows, the current page) are recomputed
    on every call from the current state.
    """

    def __init__(self, page_size: int = DEFAULT_PAGE_SIZE, clipboard=None,
                 indicator_seconds: float = DEFAULT_INDICATOR_SECONDS,
                 columns: Sequence[Column] = VISIBLE_COLUMNS) -> None:
        self.store = RecordStore()
        self.filters = FilterState()
        self.paginator = Paginator(page_size)
        self.filters.subscribe(self.paginator.reset)
        self.columns = tuple(columns)
        self.exporter = ClipboardExporter(clipboard if clipboard is not None else InProcessClipboard(), self.columns)
        self.indicator_seconds = indicator_seconds
        self.source_path: Optional[str] = None
        self.loading = False
        self.error: Optional[str] = None
        self.status_line = ""
        self._notice = ""
        self._notice_until = 0.0
        self._ingest_generation = 0
        self.on_change: Optional[Callable[[], None]] = None

    @classmethod
    def from_config(cls, cfg: Config) -> "ExplorerSession":
        return cls(page_size=cfg.page_size, clipboard=build_clipboard(cfg), indicator_seconds=cfg.indicator_seconds)

    def _notify(self) -> None:
        if self.on_change is not None:
            self.on_change()

    # ---- derivations ----
    def facets(self) -> Facets:
        return extract_facets(self.store.records)

    def filtered(self) -> List[Record]:
        return apply_filters(self.store.records, self.filters)

    def total_pages(self) -> int:
        return self.paginator.total_pages(len(self.filtered()))

    def current_page_rows(self) -> List[Record]:
        return self.paginator.page(self.filtered())

    # ---- loading ----
    def load_records(self, records: Iterable[Record], source: Optional[str] = None) -> None:
        self.store.load(records)
        self.source_path = source
        self.error = None
        self.paginator.reset()
        log.info("Loaded %d records from %s", len(self.store), source or "<memory>")

    async def ingest(self, path: str) -> bool:
        """Parse path off the event loop and replace the store on success.

        On failure the previous records stay loaded and self.error is set.
        When another ingest starts before this one finishes, this result is
        dropped and the newer one owns the loading flag.
        """
        self._ingest_generation += 1
        generation = self._ingest_generation
        self.loading = True
        self.status_line = f"Loading {os.path.basename(path)}…"
        self._notify()
        loop = asyncio.get_running_loop()
        try:
            records = await loop.run_in_executor(None, read_export_file, path)
        except IngestError as exc:
            if generation != self._ingest_generation:
                log.info("Dropping failed ingest of %s; a newer load is pending", path)
                return False
            self.error = str(exc)
            self.status_line = ""
            ok = False
            log.error("Ingest failed for %s: %s", path, exc)
        else:
            if generation != self._ingest_generation:
                log.info("Dropping stale ingest of %s; a newer load is pending", path)
                return False
            self.load_records(records, source=path)
            self.status_line = f"Loaded {len(records)} tasks"
            ok = True
        self.loading = False
        self._notify()
        return ok

    # ---- navigation ----
    def next_page(self) -> bool:
        return self.paginator.next_page(len(self.filtered()))

    def prev_page(self) -> bool:
        return self.paginator.prev_page()

    def first_page(self) -> None:
        self.paginator.go_to(1, len(self.filtered()))

    def last_page(self) -> None:
        count = len(self.filtered())
        self.paginator.go_to(self.paginator.total_pages(count), count)

    def clear_filters(self) -> None:
        self.filters.clear()
        self.paginator.reset()

    def cycle_assignee(self, delta: int = 1) -> str:
        value = cycle_choice(self.facets().assignees, self.filters.selected_assignee, delta)
        self.filters.set_assignee(value)
        return value

    def cycle_month(self, delta: int = 1) -> str:
        value = cycle_choice(self.facets().months, self.filters.completion_month, delta)
        self.filters.set_completion_month(value)
        return value

    # ---- export ----
    async def export(self) -> ExportOutcome:
        outcome = await self.exporter.export(self.filtered())
        if outcome.ok:
            self.status_line = ""
            self.flash(outcome.message)
        else:
            self.status_line = outcome.message
        self._notify()
        return outcome

    def flash(self, message: str, now: Optional[float] = None) -> None:
        self._notice = message
        self._notice_until = (time.monotonic() if now is None else now) + self.indicator_seconds

    def active_notice(self, now: Optional[float] = None) -> str:
        now = time.monotonic() if now is None else now
        return self._notice if self._notice and now < self._notice_until else ""


# -----------------------------
# Rendering helpers
# -----------------------------
TABLE_WIDTHS: Dict[str, int] = {
    "Task ID": 12, "Name": 34, "Section/Column": 14, "Assignee": 14,
    "Notes": 30, "Created At": 10, "Completed At": 10, "Tags": 16,
}


def _truncate(s: Optional[str], maxlen: int) -> str:
    """Truncate to a display width, ending with an ellipsis when cut."""
    s = _NEWLINES.sub(" ", s or "")
    if maxlen <= 0:
        return ""
    if get_cwidth(s) <= maxlen:
        return s
    out: List[str] = []
    width = 0
    for ch in s:
        ch_w = get_cwidth(ch)
        if width + ch_w + 1 > maxlen:
            break
        out.append(ch)
        width += ch_w
    return "".join(out) + "…"


def _pad(text: Optional[str], width: int) -> str:
    raw = _truncate(text, width)
    return raw + " " * max(0, width - get_cwidth(raw))


def display_value(record: Record, column: Column) -> str:
    if column.key in ("Created At", "Completed At"):
        return display_date(record.get(column.key))
    return record.get(column.key) or PLACEHOLDER


def build_table_fragments(rows: Sequence[Record], has_records: bool = True,
                          columns: Sequence[Column] = VISIBLE_COLUMNS) -> List[Tuple[str, str]]:
    """Return (style, text) tuples for FormattedTextControl."""
    if not has_records:
        return [("bold", "Nothing loaded."), ("", " Press "), ("bold", "o"), ("", " to open a CSV export.")]
    if not rows:
        return [("italic", "(no tasks match filters)"), ("", " Press "), ("bold", "c"), ("", " to clear filters.")]
    frags: List[Tuple[str, str]] = []
    header = "  ".join(_pad(c.label, TABLE_WIDTHS.get(c.key, 12)) for c in columns)
    frags.append(("class:table.header", header.rstrip()))
    frags.append(("", "\n"))
    for i, r in enumerate(rows):
        line = "  ".join(_pad(display_value(r, c), TABLE_WIDTHS.get(c.key, 12)) for c in columns)
        frags.append(("class:table.row.alt" if i % 2 else "class:table.row", line.rstrip()))
        frags.append(("", "\n"))
    frags.pop()
    return frags


def header_text(session: ExplorerSession) -> List[Tuple[str, str]]:
    src = os.path.basename(session.source_path) if session.source_path else "(no file)"
    filtered = session.filtered()
    pages = session.paginator.total_pages(len(filtered))
    page_label = f"{session.paginator.current_page}/{pages}" if pages else "0/0"
    frags = [("class:header", f" {src}  Tasks: {len(session.store)}  Shown: {len(filtered)}  Page: {page_label}")]
    if session.loading:
        frags.append(("class:notice", "  Loading…"))
    if session.error:
        frags.append(("class:error", f"  Error: {session.error}"))
    return frags


def filters_text(session: ExplorerSession) -> str:
    f = session.filters
    statuses = ", ".join(sorted(f.selected_statuses)) or PLACEHOLDER
    return (f" Search: {f.search_query or PLACEHOLDER}  | Status: {statuses}  | Assignee: "
            f"{f.selected_assignee or PLACEHOLDER}  | Month: {f.completion_month or PLACEHOLDER}  | "
            f"Completed: {f.completion_date_prefix or PLACEHOLDER}")


# -----------------------------
# TUI
# -----------------------------
TYPING_MODES = ("search", "date", "open")
MODE_LABELS = {
    "browse": "BROWSE", "search": "SEARCH", "date": "DATE", "open": "OPEN",
    "status": "STATUS", "help": "HELP",
}
HELP_LINES = [
    "Filters",
    "  /                   Search name, id, notes",
    "  s                   Status multi-select",
    "  a / A               Next / previous assignee",
    "  m / M               Next / previous completion month",
    "  D                   Completion date prefix",
    "  c                   Clear all filters",
    "",
    "Pages",
    "  n / right           Next page",
    "  p / left            Previous page",
    "  g / home            First page",
    "  G / end             Last page",
    "",
    "Other",
    "  y                   Copy filtered rows (TSV + HTML)",
    "  o                   Open CSV export",
    "  ? / q / Esc         Close help",
    "  q                   Quit",
]

UI_STYLE: Dict[str, str] = {
    'header': 'bold #ffd75f',
    'filters': '#87d7ff',
    'table.header': 'bold #ffd75f',
    'table.row': '#f0f0f0',
    'table.row.alt': '#d0d0d0',
    'status': 'reverse',
    'notice': 'bold #87ff5f',
    'error': 'bold #ff8787',
    'popup': 'bg:#1c1c1c #f0f0f0',
    'popup.cursor': 'reverse',
}


@dataclass
class UIState:
    mode: str = "browse"
    buffer: str = ""
    previous: str = ""        # value restored when a search is cancelled
    status_cursor: int = 0


def status_bar_text(session: ExplorerSession, ui: UIState, now: Optional[float] = None) -> List[Tuple[str, str]]:
    mode = MODE_LABELS.get(ui.mode, ui.mode.upper())
    if ui.mode == "search":
        prompt = f" Search: {ui.buffer}"
    elif ui.mode == "date":
        prompt = f" Completed prefix: {ui.buffer}"
    elif ui.mode == "open":
        prompt = f" Open: {ui.buffer}"
    else:
        prompt = ""
    frags = [("class:status", f" {mode} "), ("", prompt)]
    notice = session.active_notice(now)
    if notice:
        frags.append(("class:notice", f"  {notice}"))
    elif session.status_line:
        frags.append(("", f"  {session.status_line}"))
    frags.append(("", "  (? help)"))
    return frags


def status_popup_fragments(session: ExplorerSession, ui: UIState) -> List[Tuple[str, str]]:
    options = session.facets().statuses
    if not options:
        return [("", "(no status values)")]
    frags: List[Tuple[str, str]] = []
    for i, name in enumerate(options):
        mark = "[x]" if name in session.filters.selected_statuses else "[ ]"
        style = "class:popup.cursor" if i == ui.status_cursor else ""
        frags.append((style, f"{mark} {name}"))
        frags.append(("", "\n"))
    frags.pop()
    return frags


def build_key_bindings(session: ExplorerSession, ui: UIState,
                       schedule: Callable[[object], object]) -> KeyBindings:
    """Key bindings for the explorer. schedule() receives coroutines to run in the background."""
    kb = KeyBindings()
    is_browse = Condition(lambda: ui.mode == "browse")
    is_typing = Condition(lambda: ui.mode in TYPING_MODES)
    is_status = Condition(lambda: ui.mode == "status")
    is_help = Condition(lambda: ui.mode == "help")

    def refresh(event) -> None:
        event.app.invalidate()

    def close_mode(event) -> None:
        ui.mode = "browse"
        ui.buffer = ""
        refresh(event)

    @kb.add('q', filter=is_browse)
    def _(event):
        event.app.exit()

    @kb.add('n', filter=is_browse)
    @kb.add('right', filter=is_browse)
    def _(event):
        session.next_page()
        refresh(event)

    @kb.add('p', filter=is_browse)
    @kb.add('left', filter=is_browse)
    def _(event):
        session.prev_page()
        refresh(event)

    @kb.add('g', filter=is_browse)
    @kb.add('home', filter=is_browse)
    def _(event):
        session.first_page()
        refresh(event)

    @kb.add('G', filter=is_browse)
    @kb.add('end', filter=is_browse)
    def _(event):
        session.last_page()
        refresh(event)

    @kb.add('a', filter=is_browse)
    def _(event):
        session.cycle_assignee(1)
        refresh(event)

    @kb.add('A', filter=is_browse)
    def _(event):
        session.cycle_assignee(-1)
        refresh(event)

    @kb.add('m', filter=is_browse)
    def _(event):
        session.cycle_month(1)
        refresh(event)

    @kb.add('M', filter=is_browse)
    def _(event):
        session.cycle_month(-1)
        refresh(event)

    @kb.add('c', filter=is_browse)
    def _(event):
        session.clear_filters()
        session.status_line = "Filters cleared"
        refresh(event)

    @kb.add('y', filter=is_browse)
    def _(event):
        schedule(session.export())

    @kb.add('/', filter=is_browse)
    def _(event):
        ui.mode = "search"
        ui.previous = session.filters.search_query
        ui.buffer = session.filters.search_query
        refresh(event)

    @kb.add('D', filter=is_browse)
    def _(event):
        ui.mode = "date"
        ui.buffer = session.filters.completion_date_prefix
        refresh(event)

    @kb.add('o', filter=is_browse)
    def _(event):
        ui.mode = "open"
        ui.buffer = session.source_path or ""
        refresh(event)

    @kb.add('s', filter=is_browse)
    def _(event):
        if not session.facets().statuses:
            session.status_line = "No status values loaded"
            refresh(event)
            return
        ui.mode = "status"
        ui.status_cursor = 0
        refresh(event)

    @kb.add('?', filter=is_browse)
    def _(event):
        ui.mode = "help"
        refresh(event)

    # typed input (search / date prefix / file path)
    @kb.add(Keys.Any, filter=is_typing)
    def _(event):
        ch = event.data or ""
        if not ch.isprintable():
            return
        ui.buffer += ch
        if ui.mode == "search":
            session.filters.set_search(ui.buffer)
        refresh(event)

    @kb.add('backspace', filter=is_typing)
    def _(event):
        if ui.buffer:
            ui.buffer = ui.buffer[:-1]
            if ui.mode == "search":
                session.filters.set_search(ui.buffer)
        refresh(event)

    @kb.add('enter', filter=is_typing)
    def _(event):
        if ui.mode == "date":
            session.filters.set_completion_date_prefix(ui.buffer.strip())
        elif ui.mode == "open":
            path = os.path.expanduser(ui.buffer.strip())
            if path:
                schedule(session.ingest(path))
        close_mode(event)

    # status multi-select
    @kb.add('j', filter=is_status)
    @kb.add('down', filter=is_status)
    def _(event):
        options = session.facets().statuses
        if options:
            ui.status_cursor = min(ui.status_cursor + 1, len(options) - 1)
        refresh(event)

    @kb.add('k', filter=is_status)
    @kb.add('up', filter=is_status)
    def _(event):
        ui.status_cursor = max(0, ui.status_cursor - 1)
        refresh(event)

    @kb.add('space', filter=is_status)
    def _(event):
        options = session.facets().statuses
        if 0 <= ui.status_cursor < len(options):
            session.filters.toggle_status(options[ui.status_cursor])
        refresh(event)

    @kb.add('enter', filter=is_status)
    @kb.add('s', filter=is_status)
    def _(event):
        close_mode(event)

    @kb.add('?', filter=is_help)
    @kb.add('q', filter=is_help)
    def _(event):
        close_mode(event)

    @kb.add('escape', filter=~is_browse)
    def _(event):
        if ui.mode == "search":
            session.filters.set_search(ui.previous)
        close_mode(event)

    @kb.add('c-c')
    def _(event):
        event.app.exit()

    return kb


def setup_logging(log_level: str = 'ERROR', log_path: Optional[str] = None) -> logging.Logger:
    """Route the module logger to a rotating file; level applies to the handler."""
    if log_path is None:
        log_path = DEFAULT_LOG_FILE
    logger = logging.getLogger(LOGGER_NAME)
    # Always reset handlers so --log-level reliably controls file output.
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    logger.setLevel(logging.DEBUG)
    fh = RotatingFileHandler(log_path, maxBytes=2000000, backupCount=2, encoding='utf-8')
    lvl = getattr(logging, str(log_level).upper(), None)
    fh.setLevel(lvl if isinstance(lvl, int) else logging.ERROR)
    fh.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(message)s'))
    logger.addHandler(fh)
    return logger


def run_ui(session: ExplorerSession, path: Optional[str] = None) -> None:
    """Full-screen browser over the session; path (if given) is loaded after start-up."""
    ui = UIState()

    table_control = FormattedTextControl(
        text=lambda: build_table_fragments(session.current_page_rows(), has_records=not session.store.is_empty(),
                                           columns=session.columns))
    body = HSplit([
        Window(height=1, content=FormattedTextControl(text=lambda: header_text(session))),
        Window(height=1, content=FormattedTextControl(text=lambda: filters_text(session)), style="class:filters"),
        Window(content=table_control, wrap_lines=False, always_hide_cursor=True),
        Window(height=1, content=FormattedTextControl(text=lambda: status_bar_text(session, ui))),
    ])
    status_popup = Frame(
        body=Window(content=FormattedTextControl(text=lambda: status_popup_fragments(session, ui)),
                    width=Dimension(preferred=36, max=60), always_hide_cursor=True),
        title="Status", style="class:popup")
    help_popup = Frame(
        body=Window(content=FormattedTextControl(text="\n".join(HELP_LINES)), width=60, always_hide_cursor=True),
        title="Help", style="class:popup")
    container = FloatContainer(content=body, floats=[
        Float(content=ConditionalContainer(status_popup, filter=Condition(lambda: ui.mode == "status")), top=3, left=4),
        Float(content=ConditionalContainer(help_popup, filter=Condition(lambda: ui.mode == "help")), top=2, left=2),
    ])

    kb = build_key_bindings(session, ui, schedule=lambda coro: app.create_background_task(coro))
    app: Application = Application(layout=Layout(container), key_bindings=kb, full_screen=True,
                                   style=Style.from_dict(UI_STYLE), mouse_support=False)
    session.on_change = app.invalidate

    # Refresh while the copy indicator is showing so it disappears on time.
    async def _ticker():
        while True:
            await asyncio.sleep(0.5)
            if session.active_notice() or session.loading:
                app.invalidate()

    def _start() -> None:
        app.create_background_task(_ticker())
        if path:
            app.create_background_task(session.ingest(path))

    app.run(pre_run=_start)
    session.on_change = None


# -----------------------------
# CLI
# -----------------------------
def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Explore a task-tracker CSV export")
    ap.add_argument("path", nargs="?", help="CSV export to load")
    ap.add_argument("--config", help="Path to YAML config")
    ap.add_argument("--log-level", default="ERROR", help="File log level (DEBUG, INFO, WARNING, ERROR)")
    ap.add_argument("--log-file", help="Log file path (default: next to this script)")
    ap.add_argument("--no-ui", action="store_true", help="Print a summary instead of starting the UI")
    ap.add_argument("--export", choices=["tsv", "html", "pdf"], help="Write the filtered rows and exit")
    ap.add_argument("--output", metavar="PATH", help="Export destination (stdout when omitted; required for pdf)")
    ap.add_argument("--search", default="", help="Search text (name, id, notes)")
    ap.add_argument("--status", action="append", default=[], help="Status bucket; repeat to OR several")
    ap.add_argument("--assignee", default="", help="Exact assignee")
    ap.add_argument("--month", default="", help="Completion month label, e.g. 'March 2024'")
    ap.add_argument("--date-prefix", default="", help="Completion date prefix, e.g. 2024-03")
    return ap


def _print_summary(session: ExplorerSession) -> None:
    filtered = session.filtered()
    facets = session.facets()
    print(f"Tasks: {len(session.store)}  Shown: {len(filtered)}  Pages: {session.paginator.total_pages(len(filtered))}")
    print("Statuses:", ", ".join(facets.statuses) or PLACEHOLDER)
    print("Assignees:", ", ".join(facets.assignees) or PLACEHOLDER)
    print("Months:", ", ".join(facets.months) or PLACEHOLDER)


def main(argv: Optional[List[str]] = None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)
    setup_logging(args.log_level, args.log_file)

    cfg = load_config(args.config) if args.config else Config()
    session = ExplorerSession.from_config(cfg)

    if not (args.no_ui or args.export):
        run_ui(session, path=args.path)
        return 0

    if not args.path:
        print("A CSV path is required with --no-ui/--export.", file=sys.stderr)
        return 2
    try:
        session.load_records(read_export_file(args.path), source=args.path)
    except IngestError as exc:
        print(f"Failed to load {args.path}: {exc}", file=sys.stderr)
        return 2

    f = session.filters
    f.set_search(args.search)
    f.set_statuses(args.status)
    f.set_assignee(args.assignee)
    f.set_completion_month(args.month)
    f.set_completion_date_prefix(args.date_prefix)

    if not args.export:
        _print_summary(session)
        return 0

    rows = session.filtered()
    if args.export == "pdf":
        if not args.output:
            print("--export pdf needs --output PATH", file=sys.stderr)
            return 2
        write_pdf(rows, args.output, session.columns)
        print(f"Wrote PDF to {args.output}")
        return 0
    text = to_delimited_text(rows, session.columns) if args.export == "tsv" else to_markup_table(rows, session.columns)
    if args.output:
        with open(args.output, "w", encoding="utf-8") as out:
            out.write(text)
    else:
        sys.stdout.write(text + "\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
