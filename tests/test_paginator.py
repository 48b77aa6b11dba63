import pytest

import task_export_viewer as tev


def _records(count):
    return [tev.Record(task_id=str(i)) for i in range(count)]


def test_total_pages_rounds_up():
    assert tev.total_pages(45, 20) == 3
    assert tev.total_pages(40, 20) == 2
    assert tev.total_pages(1, 20) == 1
    assert tev.total_pages(0, 20) == 0
    with pytest.raises(ValueError):
        tev.total_pages(10, 0)


def test_last_page_holds_remainder():
    rows = _records(45)
    assert len(tev.page_slice(rows, 3, 20)) == 5


@pytest.mark.parametrize("count, size", [(0, 20), (1, 20), (20, 20), (45, 20), (41, 7), (100, 1)])
def test_pages_cover_filtered_sequence_exactly(count, size):
    rows = _records(count)
    pages = [tev.page_slice(rows, p, size) for p in range(1, tev.total_pages(count, size) + 1)]
    assert [r for page in pages for r in page] == rows
    for page in pages[:-1]:
        assert len(page) == size
    if pages:
        assert len(pages[-1]) == (count % size or size)


def test_out_of_range_pages_are_empty():
    rows = _records(5)
    assert tev.page_slice(rows, 2, 5) == []
    assert tev.page_slice(rows, 0, 5) == []
    assert tev.page_slice(rows, -1, 5) == []


def test_navigation_is_noop_at_bounds():
    pager = tev.Paginator(page_size=10)
    assert pager.prev_page() is False
    assert pager.current_page == 1
    assert pager.next_page(25) is True
    assert pager.next_page(25) is True
    assert pager.next_page(25) is False
    assert pager.current_page == 3
    assert pager.next_page(0) is False


def test_go_to_clamps():
    pager = tev.Paginator(page_size=10)
    pager.go_to(99, 25)
    assert pager.current_page == 3
    pager.go_to(-4, 25)
    assert pager.current_page == 1
    pager.go_to(2, 0)
    assert pager.current_page == 1


def test_paginator_rejects_bad_page_size():
    with pytest.raises(ValueError):
        tev.Paginator(page_size=0)


@pytest.mark.parametrize("mutate", [
    lambda f: f.set_search("Task"),
    lambda f: f.toggle_status("Done"),
    lambda f: f.set_statuses(["Backlog", "Doing", "Done"]),
    lambda f: f.set_assignee("Ann"),
    lambda f: f.set_completion_month("March 2024"),
    lambda f: f.set_completion_date_prefix("2024"),
])
def test_any_filter_change_returns_to_first_page(many_records, mutate):
    session = tev.ExplorerSession(page_size=10)
    session.load_records(many_records)
    session.next_page()
    session.next_page()
    assert session.paginator.current_page == 3

    mutate(session.filters)

    # regardless of whether the old page still exists
    assert session.paginator.current_page == 1
    assert session.current_page_rows() == session.filtered()[:10]


def test_clear_filters_resets_page_without_active_filters(many_records):
    session = tev.ExplorerSession(page_size=10)
    session.load_records(many_records)
    session.next_page()
    session.clear_filters()
    assert session.paginator.current_page == 1
    assert session.filtered() == many_records


def test_empty_result_has_no_pages(many_records):
    session = tev.ExplorerSession(page_size=10)
    session.load_records(many_records)
    session.filters.set_search("no such task")
    assert session.total_pages() == 0
    assert session.current_page_rows() == []
    assert session.next_page() is False
