import os
import sys

import pytest

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

import task_export_viewer as tev  # noqa: E402


CSV_HEADER = "Task ID,Name,Section/Column,Assignee,Notes,Created At,Completed At,Tags,Projects\n"


@pytest.fixture
def scenario_records():
    """Two-row store used by the documented filter scenarios."""
    return [
        tev.Record(name="Fix bug", section="Done", assignee="Ann", completed_at="2024-03-01"),
        tev.Record(name="Write docs", section="In Progress", assignee="Bob", completed_at=""),
    ]


@pytest.fixture
def mixed_records():
    return [
        tev.Record(task_id="101", name="Fix login bug", section="Done", assignee="Ann",
                   notes="Users locked out\nafter reset", created_at="2024-01-02",
                   completed_at="2024-03-01", tags="bug,auth"),
        tev.Record(task_id="102", name="Write docs", section="In Progress", assignee="Bob",
                   created_at="2024-01-05", completed_at=""),
        tev.Record(task_id="103", name="Release 1.2", section="Done", assignee="Ann",
                   notes="Ship it", completed_at="2024-02-14T16:30:00.000Z"),
        tev.Record(task_id="104", name="Plan Q3", section="Backlog", assignee="Cara",
                   completed_at="not a date"),
        tev.Record(task_id="105", name="Audit BUG tracker", section="Done", assignee="Bob",
                   completed_at="03/20/2024"),
        tev.Record(task_id="106", name="Untitled"),
    ]


@pytest.fixture
def many_records():
    sections = ("Backlog", "Doing", "Done")
    return [
        tev.Record(task_id=str(i), name=f"Task {i}", section=sections[i % 3],
                   assignee=("Ann", "Bob")[i % 2], completed_at=f"2024-{(i % 12) + 1:02d}-15")
        for i in range(45)
    ]


@pytest.fixture
def csv_path(tmp_path):
    path = tmp_path / "export.csv"
    path.write_text(
        CSV_HEADER
        + '1,Fix bug,Done,Ann,"line one\nline two",2024-01-01,2024-03-01,bug,Alpha\n'
        + "2,Write docs,In Progress,Bob,,2024-01-02,,,Alpha\n"
        + "\n"
        + "3,Broken,Done,Ann,,,,,,extra,cells\n"
        + "4,Short row,Backlog\n",
        encoding="utf-8",
    )
    return path


class RecordingClipboard:
    """Clipboard double that records payloads and can reject some of them."""

    def __init__(self, reject_multi=False, reject_all=False):
        self.reject_multi = reject_multi
        self.reject_all = reject_all
        self.writes = []

    def write(self, payload):
        self.writes.append(dict(payload))
        if self.reject_all:
            raise tev.ClipboardError("clipboard unavailable")
        if self.reject_multi and len(payload) > 1:
            raise tev.ClipboardError("multi-format not supported")


@pytest.fixture
def clipboard():
    return RecordingClipboard()


@pytest.fixture
def clipboard_factory():
    return RecordingClipboard


@pytest.fixture(autouse=True)
def isolated_log_file(tmp_path, monkeypatch):
    """Keep CLI runs from writing a log next to the module."""
    monkeypatch.setattr(tev, "DEFAULT_LOG_FILE", str(tmp_path / "task_export_viewer.log"))
    yield
    logger = tev.logging.getLogger(tev.LOGGER_NAME)
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
