"""Filtering, sorting and rendering of cached redirections.

Everything here is a pure function over a sequence of records: inputs are
never mutated and nothing touches the network or the cache file.
"""

from __future__ import annotations

import csv
import io
import json
import shutil
from typing import Any, List, Optional, Sequence, Union

from rich import box
from rich.console import Console
from rich.table import Table
from rich.text import Text

from ovh_redirections.snapshot import Redirection

SORT_COLUMNS = ("from", "to", "id")
FORMATS = ("table", "json", "csv")

# Columns wider than this may be truncated when the table does not fit.
TRUNCATE_THRESHOLD = 20
# One visible character plus the ellipsis.
MIN_CELL_WIDTH = 2
ELLIPSIS = "…"
MISSING_PLACEHOLDER = "-"

DOMAIN_STYLE = "grey50"
ID_STYLE = "grey50"
SPAM_STYLE = "bold red"

Cell = Union[str, Text]


# =============================================================================
# Filters
# =============================================================================


def filter_by_search(records: Sequence[Redirection], query: Optional[str]) -> List[Redirection]:
    """Case-insensitive substring match on id, from or to."""
    needle = (query or "").strip().lower()
    if not needle:
        return list(records)
    return [
        r
        for r in records
        if needle in str(r.id).lower()
        or needle in r.from_addr.lower()
        or needle in r.to_addr.lower()
    ]


def filter_spam(
    records: Sequence[Redirection], spam_address: str, include_spam: bool = False
) -> List[Redirection]:
    """Drop redirections pointing at the spam sink unless asked to keep them."""
    if include_spam or not spam_address:
        return list(records)
    return [r for r in records if r.to_addr != spam_address]


def sort_redirections(
    records: Sequence[Redirection], column: str = "from", descending: bool = False
) -> List[Redirection]:
    """Stable sort on one column; unknown columns sort by ``from``."""
    if column not in SORT_COLUMNS:
        column = "from"
    return sorted(records, key=lambda r: _column_value(r, column), reverse=descending)


def _column_value(record: Redirection, column: str) -> str:
    if column == "id":
        return str(record.id)
    if column == "to":
        return record.to_addr
    return record.from_addr


# =============================================================================
# Table Layout
# =============================================================================


def table_overhead(columns: int) -> int:
    """Border and padding characters added by the table box around the cells."""
    return 3 * columns + 1 if columns else 0


def fit_column_widths(widths: Sequence[int], terminal_width: int) -> List[int]:
    """Shrink wide columns so the table fits in ``terminal_width``.

    Only columns wider than TRUNCATE_THRESHOLD are shrunk, all to the same
    limit, and never below MIN_CELL_WIDTH.
    """
    fitted = list(widths)
    if sum(fitted) + table_overhead(len(fitted)) <= terminal_width:
        return fitted

    wide = [i for i, w in enumerate(fitted) if w > TRUNCATE_THRESHOLD]
    if not wide:
        return fitted

    narrow_total = sum(w for i, w in enumerate(fitted) if i not in wide)
    budget = terminal_width - table_overhead(len(fitted)) - narrow_total
    limit = max(MIN_CELL_WIDTH, budget // len(wide))
    for i in wide:
        fitted[i] = min(fitted[i], limit)
    return fitted


def truncate_cell(text: str, width: int) -> str:
    if len(text) <= width:
        return text
    width = max(MIN_CELL_WIDTH, width)
    return text[: width - 1] + ELLIPSIS


def render_table(
    headers: Sequence[str],
    rows: Sequence[Sequence[Any]],
    *,
    width: Optional[int] = None,
    color: bool = False,
    stylers: Optional[Sequence[Any]] = None,
    justify: Optional[Sequence[str]] = None,
) -> str:
    """Render rows as a boxed text table sized for the terminal.

    ``stylers`` holds, per column, an optional callable turning the
    (already truncated) cell text and the original value into a rich Text.
    """
    terminal_width = width or shutil.get_terminal_size(fallback=(120, 24)).columns
    cells = [[_missing(v) for v in row] for row in rows]

    natural = [len(h) for h in headers]
    for row in cells:
        for i, value in enumerate(row):
            natural[i] = max(natural[i], len(value))
    widths = fit_column_widths(natural, terminal_width)

    table = Table(box=box.SQUARE, show_lines=False, pad_edge=True)
    for i, header in enumerate(headers):
        table.add_column(
            header,
            no_wrap=True,
            overflow="ellipsis",
            justify=(justify[i] if justify else "left"),
        )

    for row, original in zip(cells, rows):
        rendered: List[Cell] = []
        for i, value in enumerate(row):
            shown = truncate_cell(value, widths[i])
            styler = stylers[i] if stylers else None
            rendered.append(styler(shown, original[i]) if styler else Text(shown))
        table.add_row(*rendered)

    buffer = io.StringIO()
    console = Console(
        file=buffer,
        width=terminal_width,
        force_terminal=color,
        color_system="standard" if color else None,
        highlight=False,
        emoji=False,
    )
    console.print(table)
    return buffer.getvalue()


def _missing(value: Any) -> str:
    if value is None or value == "":
        return MISSING_PLACEHOLDER
    return str(value)


# =============================================================================
# Redirection Rendering
# =============================================================================


def pretty_address(shown: str, address: Any, spam_address: str = "") -> Text:
    """Flag the spam sink; dim the domain part of any other address."""
    if spam_address and address == spam_address:
        return Text(shown, style=SPAM_STYLE)
    local, sep, rest = shown.partition("@")
    if not sep:
        return Text(shown)
    return Text.assemble(local, (sep + rest, DOMAIN_STYLE))


def render_redirections(
    records: Sequence[Redirection],
    fmt: str = "table",
    *,
    spam_address: str = "",
    width: Optional[int] = None,
    color: bool = False,
) -> str:
    """Render redirections as ``table``, ``json`` or ``csv`` text."""
    if fmt == "json":
        return json.dumps([r.to_dict() for r in records], indent=2) + "\n"

    rows = [[r.id, r.from_addr, r.to_addr] for r in records]

    if fmt == "csv":
        buffer = io.StringIO()
        writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
        writer.writerow(["id", "from", "to"])
        for row in rows:
            writer.writerow([_missing(v) for v in row])
        return buffer.getvalue()

    if fmt == "table":

        def address(shown: str, original: Any) -> Text:
            return pretty_address(shown, original, spam_address)

        return render_table(
            ["id", "from", "to"],
            rows,
            width=width,
            color=color,
            stylers=[lambda shown, _: Text(shown, style=ID_STYLE), address, address],
            justify=["left", "right", "right"],
        )

    raise ValueError(f"Unsupported format '{fmt}'. Supported formats: {', '.join(FORMATS)}")
