import io
import json
import re
from datetime import datetime, timezone

import pytest

from batchkit.events import JSONLines, LogEvent, LogEventStatus, random_id
from batchkit.service import Repository, UnsupportedRepoSet
from batchkit.workspaces import Step, Task


def _events(stream):
    return [json.loads(line) for line in stream.getvalue().splitlines()]


def _record(action):
    """Run ``action`` against a fresh JSONLines and return the decoded events."""
    stream = io.StringIO()
    ui = JSONLines(stream)
    action(ui)
    return [json.loads(line) for line in stream.getvalue().splitlines()]


@pytest.fixture
def stream():
    return io.StringIO()


@pytest.fixture
def ui(stream):
    return JSONLines(stream)


def _parse_start_and_success(ui):
    ui.parsing_batch_spec()
    ui.parsing_batch_spec_success()


def test_start_and_success_share_operation():
    events = _record(_parse_start_and_success)
    assert len(events) == 2
    assert events[0]["operation"] == events[1]["operation"]
    assert [e["status"] for e in events] == [
        LogEventStatus.STARTED.value,
        LogEventStatus.SUCCESS.value,
    ]


def test_failure_carries_error():
    events = _record(lambda ui: ui.parsing_batch_spec_failure(ValueError("bad spec")))
    assert [e["metadata"]["error"] for e in events] == ["bad spec"]
    assert [e["status"] for e in events] == [LogEventStatus.FAILURE.value]


def _namespace_and_apply(ui):
    ui.resolving_namespace()
    ui.resolving_namespace_success("ns-id")
    ui.applying_batch_spec_success("https://example.com/batch")


def test_every_event_has_all_keys():
    events = _record(_namespace_and_apply)
    assert [sorted(e) for e in events] == [
        ["metadata", "operation", "status", "timestamp"]
    ] * 3
    assert events[1]["metadata"]["namespaceID"] == "ns-id"
    assert events[2]["metadata"]["batchChangeURL"] == "https://example.com/batch"


def test_uploading_success_reports_ids():
    events = _record(lambda ui: ui.uploading_changeset_specs_success(["a", "b"]))
    assert [e["metadata"] for e in events] == [{"ids": ["a", "b"], "done": 2, "total": 2}]


def _upload_then_nothing(ui):
    ui.uploading_changeset_specs(3)
    ui.no_changeset_specs()


def test_no_changeset_specs_is_empty_upload_success():
    events = _record(_upload_then_nothing)
    assert len(events) == 2
    assert events[1]["operation"] == events[0]["operation"]
    assert events[1]["status"] == LogEventStatus.SUCCESS.value
    assert [e["metadata"] for e in events] == [{"total": 3}, {}]


def test_zero_values_are_omitted():
    events = _record(lambda ui: ui.preparing_container_images_progress(0, 5))
    assert [e["metadata"] for e in events] == [{"total": 5}]
    assert [e["status"] for e in events] == [LogEventStatus.PROGRESS.value]


def test_resolving_repositories_done_counts():
    repos = [Repository(id=str(i), name=f"r{i}") for i in range(3)]
    events = _record(
        lambda ui: ui.resolving_repositories_done(repos, UnsupportedRepoSet([repos[0]]), None)
    )
    assert [e["metadata"] for e in events] == [{"count": 3, "unsupported": 1}]


def test_checking_cache_success():
    events = _record(lambda ui: ui.checking_cache_success(4, 7))
    assert [e["metadata"] for e in events] == [{"cachedSpecsFound": 4, "tasksToExecute": 7}]


def test_log_files_kept_one_event_per_file():
    events = _record(lambda ui: ui.log_files_kept(["/tmp/a.log", "/tmp/b.log"]))
    assert [e["metadata"]["path"] for e in events] == ["/tmp/a.log", "/tmp/b.log"]
    assert [e["status"] for e in events] == [LogEventStatus.SUCCESS.value] * 2


def test_creating_batch_spec_error_returns_error(ui, stream):
    err = RuntimeError("boom")
    assert ui.creating_batch_spec_error(err) is err
    (event,) = _events(stream)
    assert event["status"] == LogEventStatus.FAILURE.value


def test_log_event_to_json_timestamp():
    ts = datetime(2022, 1, 2, 3, 4, 5, 120000, tzinfo=timezone.utc)
    event = LogEvent("OP", LogEventStatus.SUCCESS, {"k": "v"}, ts)
    decoded = json.loads(event.to_json())
    assert decoded["timestamp"] == "2022-01-02T03:04:05.12Z"
    assert decoded["metadata"] == {"k": "v"}
    assert decoded["operation"] == "OP"


def test_log_event_escapes_html():
    event = LogEvent("OP", LogEventStatus.FAILURE, {"error": "<x>"})
    line = event.to_json()
    assert "\\u003c" in line
    assert json.loads(line)["metadata"]["error"] == "<x>"


def test_timestamps_are_truncated_to_milliseconds():
    events = _record(lambda ui: ui.checking_cache())
    assert len(events) == 1
    stamp = events[0]["timestamp"]
    assert stamp.endswith("Z")
    fraction = stamp[:-1].partition(".")[2]
    assert len(fraction) <= 3


def test_random_id_format():
    ids = {random_id() for _ in range(20)}
    assert all(re.fullmatch(r"[0-9a-zA-Z]+", i) for i in ids)
    assert len(ids) > 1


def _tasks():
    return [
        Task(repository=Repository(name="github.com/sourcegraph/sourcegraph"), steps=[Step(run="echo 1")]),
        Task(repository=Repository(name="github.com/sourcegraph/src-cli"), path="a/b"),
    ]


def test_task_execution_lifecycle():
    tasks = _tasks()

    def action(ui):
        execution = ui.executing_tasks(False, 2)
        execution.start(tasks)
        execution.task_started(tasks[1])
        execution.task_finished(tasks[1], RuntimeError("failed hard"))

    events = _record(action)
    assert len(events) == 3
    started, task_started, task_finished = events

    lines_tasks = started["metadata"]["tasks"]
    assert [t["repository"] for t in lines_tasks] == [
        "github.com/sourcegraph/sourcegraph",
        "github.com/sourcegraph/src-cli",
    ]
    assert lines_tasks[0]["steps"] == [{"run": "echo 1"}]
    assert lines_tasks[1]["workspace"] == "a/b"
    assert lines_tasks[0]["id"] != lines_tasks[1]["id"]
    assert task_started["metadata"]["taskID"] == lines_tasks[1]["id"]
    assert task_finished["status"] == LogEventStatus.FAILURE.value
    assert task_finished["metadata"]["error"] == "failed hard"


def test_unknown_task_raises(ui):
    execution = ui.executing_tasks(False, 1)
    execution.start(_tasks())
    with pytest.raises(LookupError):
        execution.task_started(Task(repository=Repository(name="other")))


def test_steps_execution_events():
    tasks = _tasks()

    def action(ui):
        execution = ui.executing_tasks(True, 1)
        execution.start(tasks)
        steps = execution.steps_execution_ui(tasks[0])
        steps.archive_download_started()
        steps.archive_download_finished(None)
        steps.step_started(1, "echo 1", {"A": "b"})
        steps.step_finished(1, "diff text", {"out": 1})
        steps.step_failed(2, RuntimeError("exit"), 42)

    all_events = _record(action)
    assert len(all_events) == 6
    task_id = all_events[0]["metadata"]["tasks"][0]["id"]
    events = all_events[1:]

    assert all(e["metadata"]["taskID"] == task_id for e in events)
    assert events[1]["status"] == LogEventStatus.SUCCESS.value
    assert events[2]["metadata"]["env"] == {"A": "b"}
    assert events[3]["metadata"]["diff"] == "diff text"
    assert events[3]["metadata"]["outputs"] == {"out": 1}
    assert events[4]["metadata"]["exitCode"] == 42
    assert events[4]["metadata"]["error"] == "exit"


def test_step_output_writer_logs_progress():
    tasks = _tasks()

    def action(ui):
        execution = ui.executing_tasks(True, 1)
        execution.start(tasks)
        steps = execution.steps_execution_ui(tasks[0])
        with steps.step_output_writer(tasks[0], 3) as writer:
            writer.stdout_writer().write("hello")

    events = _record(action)
    event = events[-1]
    assert event["status"] == LogEventStatus.PROGRESS.value
    assert event["metadata"]["out"] == "stdout: hello\n"
    assert event["metadata"]["step"] == 3