"""Unit tests for filtering, sorting and rendering of redirections."""

import csv
import io
import json

import pytest

from ovh_redirections.query import (
    ELLIPSIS,
    MISSING_PLACEHOLDER,
    TRUNCATE_THRESHOLD,
    filter_by_search,
    filter_spam,
    fit_column_widths,
    render_redirections,
    render_table,
    sort_redirections,
    table_overhead,
    truncate_cell,
)
from ovh_redirections.snapshot import Redirection

SPAM = "spam@example.com"

RECORDS = [
    Redirection(id="10", from_addr="alice@example.com", to_addr="alice@mail.org"),
    Redirection(id="2", from_addr="Bob@example.com", to_addr=SPAM),
    Redirection(id="33", from_addr="carol@example.com", to_addr="box@mail.org"),
]

# =============================================================================
# Filters
# =============================================================================


def test_search_empty_query_is_identity() -> None:
    assert filter_by_search(RECORDS, None) == RECORDS
    assert filter_by_search(RECORDS, "   ") == RECORDS


def test_search_is_case_insensitive_on_all_columns() -> None:
    assert filter_by_search(RECORDS, "BOB") == [RECORDS[1]]
    assert filter_by_search(RECORDS, "box@") == [RECORDS[2]]
    assert filter_by_search(RECORDS, "33") == [RECORDS[2]]


def test_filter_spam_excludes_sink_by_default() -> None:
    assert filter_spam(RECORDS, SPAM) == [RECORDS[0], RECORDS[2]]


def test_filter_spam_keeps_sink_when_included() -> None:
    assert filter_spam(RECORDS, SPAM, include_spam=True) == RECORDS


def test_filters_do_not_mutate_input() -> None:
    records = list(RECORDS)

    filter_by_search(records, "alice")
    filter_spam(records, SPAM)
    sort_redirections(records, "to", descending=True)

    assert records == RECORDS


def test_filters_compose_in_any_order() -> None:
    a = sort_redirections(filter_spam(filter_by_search(RECORDS, "example"), SPAM), "id")
    b = filter_by_search(filter_spam(sort_redirections(RECORDS, "id"), SPAM), "example")
    assert a == b


# =============================================================================
# Sorting
# =============================================================================


def test_sort_by_from_is_ordinal() -> None:
    assert [r.id for r in sort_redirections(RECORDS, "from")] == ["2", "10", "33"]


def test_sort_by_id_is_lexicographic() -> None:
    assert [r.id for r in sort_redirections(RECORDS, "id")] == ["10", "2", "33"]


def test_sort_descending() -> None:
    assert [r.id for r in sort_redirections(RECORDS, "to", descending=True)] == ["2", "33", "10"]


def test_sort_unknown_column_falls_back_to_from() -> None:
    assert sort_redirections(RECORDS, "nope") == sort_redirections(RECORDS, "from")


def test_sort_is_stable() -> None:
    same = [
        Redirection(id="1", from_addr="a@example.com", to_addr="x@mail.org"),
        Redirection(id="2", from_addr="b@example.com", to_addr="x@mail.org"),
        Redirection(id="3", from_addr="c@example.com", to_addr="x@mail.org"),
    ]
    assert [r.id for r in sort_redirections(same, "to")] == ["1", "2", "3"]
    assert [r.id for r in sort_redirections(same, "to", descending=True)] == ["1", "2", "3"]


# =============================================================================
# Table Layout
# =============================================================================


def test_fit_column_widths_keeps_widths_when_table_fits() -> None:
    assert fit_column_widths([4, 30, 30], 200) == [4, 30, 30]


def test_fit_column_widths_shrinks_only_wide_columns() -> None:
    widths = fit_column_widths([4, 40, 40], 60)

    assert widths[0] == 4
    assert widths[1] == widths[2] == (60 - table_overhead(3) - 4) // 2
    assert sum(widths) + table_overhead(3) <= 60


def test_fit_column_widths_leaves_narrow_columns_alone() -> None:
    narrow = [TRUNCATE_THRESHOLD] * 5
    assert fit_column_widths(narrow, 20) == narrow


def test_fit_column_widths_never_below_one_visible_character() -> None:
    assert fit_column_widths([4, 40, 40], 5) == [4, 2, 2]


def test_truncate_cell() -> None:
    assert truncate_cell("abcdef", 10) == "abcdef"
    assert truncate_cell("abcdef", 4) == "abc" + ELLIPSIS
    assert truncate_cell("abcdef", 0) == "a" + ELLIPSIS


# =============================================================================
# Rendering
# =============================================================================

LONG = [
    Redirection(
        id="1001",
        from_addr="a-rather-long-local-part-for-testing@example.com",
        to_addr="another-fairly-long-destination@mail.example.org",
    )
]


def test_render_table_truncates_on_narrow_terminal() -> None:
    output = render_redirections(LONG, "table", width=60)

    assert ELLIPSIS in output
    assert LONG[0].from_addr not in output
    assert all(len(line) <= 60 for line in output.splitlines())


def test_render_table_untruncated_on_wide_terminal() -> None:
    output = render_redirections(LONG, "table", width=200)

    assert ELLIPSIS not in output
    assert LONG[0].from_addr in output
    assert LONG[0].to_addr in output


def test_render_table_highlights_spam_sink_with_color() -> None:
    output = render_redirections(RECORDS, "table", spam_address=SPAM, width=200, color=True)

    assert "\x1b[" in output
    assert SPAM in output


def test_render_table_plain_without_color() -> None:
    output = render_redirections(RECORDS, "table", spam_address=SPAM, width=200)

    assert "\x1b[" not in output
    assert "alice@example.com" in output


def test_render_json_is_structural_dump() -> None:
    assert json.loads(render_redirections(RECORDS, "json")) == [r.to_dict() for r in RECORDS]


def test_render_csv_quotes_every_field() -> None:
    output = render_redirections(RECORDS[:1], "csv")

    assert output.splitlines() == [
        '"id","from","to"',
        '"10","alice@example.com","alice@mail.org"',
    ]


def test_render_csv_uses_placeholder_for_missing_values() -> None:
    record = Redirection(id="5", from_addr="a@example.com", to_addr="")

    rows = list(csv.reader(io.StringIO(render_redirections([record], "csv"))))

    assert rows[1] == ["5", "a@example.com", MISSING_PLACEHOLDER]


def test_render_rejects_unknown_format() -> None:
    with pytest.raises(ValueError):
        render_redirections(RECORDS, "xml")


def test_render_table_generic_rows_show_placeholder() -> None:
    output = render_table(["id", "target"], [[1, None]], width=80)

    assert MISSING_PLACEHOLDER in output
