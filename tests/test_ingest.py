import asyncio
import time

import pytest

import task_export_viewer as tev


def test_parse_csv_text_maps_headers_and_skips_bad_rows(csv_path):
    records = tev.read_export_file(str(csv_path))

    assert [r.task_id for r in records] == ["1", "2", "4"]
    first = records[0]
    assert first.name == "Fix bug"
    assert first.section == "Done"
    assert first.notes == "line one\nline two"
    assert first.completed_at == "2024-03-01"
    # unrecognised headers are kept but not mapped to a field
    assert first.get("Projects") == "Alpha"
    assert first.get("Name") == "Fix bug"


def test_short_rows_leave_missing_fields_absent(csv_path):
    short = tev.read_export_file(str(csv_path))[-1]
    assert short.name == "Short row"
    assert short.section == "Backlog"
    assert short.assignee is None
    assert short.completed_at is None


def test_empty_cells_stay_empty_strings(csv_path):
    second = tev.read_export_file(str(csv_path))[1]
    assert second.notes == ""
    assert second.completed_at == ""


def test_record_with_no_recognised_fields_is_kept():
    records = tev.parse_csv_text("Foo,Bar\nx,y\n")
    assert records == [tev.Record(extra=(("Foo", "x"), ("Bar", "y")))]


def test_parse_handles_bom_and_header_whitespace(tmp_path):
    path = tmp_path / "bom.csv"
    path.write_bytes("\ufeffTask ID, Name \n7,Seven\n".encode("utf-8"))
    records = tev.read_export_file(str(path))
    assert records[0].task_id == "7"
    assert records[0].name == "Seven"


def test_parse_without_header_raises():
    with pytest.raises(tev.IngestError):
        tev.parse_csv_text("")


def test_missing_file_raises_ingest_error(tmp_path):
    with pytest.raises(tev.IngestError):
        tev.read_export_file(str(tmp_path / "nope.csv"))


def test_record_store_replaces_wholesale(scenario_records, mixed_records):
    store = tev.RecordStore()
    assert store.is_empty()
    store.load(mixed_records)
    store.load(scenario_records)
    assert list(store) == scenario_records
    assert len(store) == 2
    assert not store.is_empty()


def test_session_ingest_success(csv_path):
    session = tev.ExplorerSession()
    ok = asyncio.run(session.ingest(str(csv_path)))
    assert ok is True
    assert len(session.store) == 3
    assert session.source_path == str(csv_path)
    assert session.error is None
    assert session.loading is False


def test_session_ingest_failure_keeps_previous_records(csv_path, tmp_path):
    session = tev.ExplorerSession()
    asyncio.run(session.ingest(str(csv_path)))
    before = session.store.records

    empty = tmp_path / "empty.csv"
    empty.write_text("", encoding="utf-8")
    ok = asyncio.run(session.ingest(str(empty)))

    assert ok is False
    assert session.store.records == before
    assert session.source_path == str(csv_path)
    assert "header" in session.error
    assert session.loading is False


def test_successful_ingest_clears_previous_error(csv_path, tmp_path):
    session = tev.ExplorerSession()
    asyncio.run(session.ingest(str(tmp_path / "missing.csv")))
    assert session.error
    asyncio.run(session.ingest(str(csv_path)))
    assert session.error is None


def test_store_keeps_old_content_while_ingest_pending(csv_path, scenario_records):
    session = tev.ExplorerSession()
    session.load_records(scenario_records)
    seen = []

    def on_change():
        seen.append((session.loading, len(session.store)))

    session.on_change = on_change
    asyncio.run(session.ingest(str(csv_path)))

    # first notification fires while loading with the previous two records
    assert seen[0] == (True, 2)
    assert seen[-1] == (False, 3)


def test_reload_resets_page(many_records):
    session = tev.ExplorerSession(page_size=10)
    session.load_records(many_records)
    session.next_page()
    session.next_page()
    assert session.paginator.current_page == 3
    session.load_records(many_records[:5])
    assert session.paginator.current_page == 1


def test_newer_ingest_wins_over_slower_earlier_one(monkeypatch):
    delays = {"old.csv": 0.3, "new.csv": 0.05}

    def slow_read(path):
        time.sleep(delays[path])
        return [tev.Record(name=path)]

    monkeypatch.setattr(tev, "read_export_file", slow_read)
    session = tev.ExplorerSession()
    loading_after_first = []

    async def open_twice():
        old = asyncio.ensure_future(session.ingest("old.csv"))
        await asyncio.sleep(0.01)
        new = asyncio.ensure_future(session.ingest("new.csv"))
        new_ok = await new
        loading_after_first.append(session.loading)
        return await old, new_ok

    old_ok, new_ok = asyncio.run(open_twice())

    assert (old_ok, new_ok) == (False, True)
    assert session.source_path == "new.csv"
    assert [r.name for r in session.store] == ["new.csv"]
    assert loading_after_first == [False]
    assert session.loading is False


def test_stale_failure_does_not_set_error(monkeypatch, csv_path):
    real_read = tev.read_export_file

    def read(path):
        if path == "broken.csv":
            time.sleep(0.2)
            raise tev.IngestError("unreadable")
        return real_read(path)

    monkeypatch.setattr(tev, "read_export_file", read)
    session = tev.ExplorerSession()

    async def open_twice():
        broken = asyncio.ensure_future(session.ingest("broken.csv"))
        await asyncio.sleep(0.01)
        await session.ingest(str(csv_path))
        return await broken

    assert asyncio.run(open_twice()) is False
    assert session.error is None
    assert session.source_path == str(csv_path)


def test_loading_stays_set_until_newest_ingest_finishes(monkeypatch):
    delays = {"old.csv": 0.05, "new.csv": 0.3}

    def slow_read(path):
        time.sleep(delays[path])
        return [tev.Record(name=path)]

    monkeypatch.setattr(tev, "read_export_file", slow_read)
    session = tev.ExplorerSession()
    session.load_records([tev.Record(name="before")])
    seen = []

    async def open_twice():
        old = asyncio.ensure_future(session.ingest("old.csv"))
        await asyncio.sleep(0.01)
        new = asyncio.ensure_future(session.ingest("new.csv"))
        await old
        seen.append((session.loading, [r.name for r in session.store]))
        await new

    asyncio.run(open_twice())

    # the superseded load finished first but changed nothing
    assert seen == [(True, ["before"])]
    assert session.loading is False
    assert session.source_path == "new.csv"
