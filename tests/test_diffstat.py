import re
from datetime import datetime, timedelta, timezone

import pytest

from batchkit.diffstat import (
    DiffParseError,
    DiffStat,
    FileDiff,
    StepsStatusReporter,
    TaskStatus,
    diff_stat_description,
    diff_stat_diagram,
    parse_multi_file_diff,
    verbose_diff_summary,
)

PROGRESS_PRINTER_DIFF = """diff --git README.md README.md
new file mode 100644
index 0000000..3363c39
--- /dev/null
+++ README.md
@@ -0,0 +1,3 @@
+# README
+
+This is the readme
diff --git a/b/c/c.txt a/b/c/c.txt
deleted file mode 100644
index 5da75cf..0000000
--- a/b/c/c.txt
+++ /dev/null
@@ -1 +0,0 @@
-this is c
diff --git x/x.txt x/x.txt
index 627c2ae..88f1836 100644
--- x/x.txt
+++ x/x.txt
@@ -1 +1 @@
-this is x
+this is x (or is it?)
"""

ANSI = re.compile(r"\x1b\[[0-9;]*m")


def strip(text):
    return ANSI.sub("", text)


def test_parse_multi_file_diff_names():
    diffs = parse_multi_file_diff(PROGRESS_PRINTER_DIFF)
    assert [d.display_name() for d in diffs] == ["README.md", "a/b/c/c.txt", "x/x.txt"]
    assert diffs[0].orig_name == "/dev/null"
    assert diffs[1].new_name == "/dev/null"


def test_parse_multi_file_diff_stats():
    diffs = parse_multi_file_diff(PROGRESS_PRINTER_DIFF)
    assert diffs[0].stat() == DiffStat(added=3)
    assert diffs[1].stat() == DiffStat(deleted=1)
    assert diffs[2].stat() == DiffStat(changed=1)


def test_verbose_diff_summary_matches_expected_output():
    lines = verbose_diff_summary(parse_multi_file_diff(PROGRESS_PRINTER_DIFF))
    assert [strip(line) for line in lines] == [
        "\tREADME.md   | 3 +++",
        "\ta/b/c/c.txt | 1 -",
        "\tx/x.txt     | 2 +-",
        "  3 files changed, 4 insertions, 2 deletions",
    ]


def test_diff_stat_description_plural():
    diffs = parse_multi_file_diff(PROGRESS_PRINTER_DIFF)
    assert diff_stat_description(diffs) == "3 files changed"
    assert diff_stat_description(diffs[:1]) == "1 file changed"


def test_diff_stat_diagram_is_capped_at_twenty():
    diagram = strip(diff_stat_diagram(DiffStat(added=30, deleted=10)))
    assert len(diagram) <= 20
    assert diagram.count("+") > diagram.count("-")
    assert set(diagram) <= {"+", "-"}


def test_diff_stat_diagram_small_values_exact():
    assert strip(diff_stat_diagram(DiffStat(added=3))) == "+++"
    assert strip(diff_stat_diagram(DiffStat(changed=1))) == "+-"


def test_parse_rejects_malformed_hunk_header():
    with pytest.raises(DiffParseError):
        parse_multi_file_diff("--- a\n+++ a\n@@ bogus @@\n")


def test_parse_rejects_truncated_hunk():
    with pytest.raises(DiffParseError):
        parse_multi_file_diff("--- a\n+++ a\n@@ -1,2 +1,2 @@\n-x\n")


def test_file_diff_without_hunks_has_empty_stat():
    assert FileDiff(orig_name="a", new_name="a").stat() == DiffStat()


def test_task_status_execution_time_truncated():
    start = datetime(2022, 1, 1, tzinfo=timezone.utc)
    status = TaskStatus(
        display_name="github.com/sourcegraph/automation-testing",
        started_at=start,
        finished_at=start + timedelta(seconds=10, microseconds=500),
    )
    assert status.finished_execution()
    assert status.execution_time() == timedelta(seconds=10)
    assert str(status) == "Done!"


def test_task_status_while_running():
    status = TaskStatus(display_name="repo", started_at=datetime.now())
    assert not status.finished_execution()
    assert str(status) == "..."
    status.currently_executing = "echo Hello World > README.md"
    assert str(status) == "echo Hello World > README.md"
    status.currently_executing = "gofmt\nmore"
    assert str(status) == "gofmt ..."


def test_task_status_with_error():
    now = datetime.now()

    class TextError(Exception):
        def status_text(self):
            return "custom status"

    assert str(TaskStatus(started_at=now, finished_at=now, err=RuntimeError("boom"))) == "boom"
    assert str(TaskStatus(started_at=now, finished_at=now, err=TextError("x"))) == "custom status"


def test_steps_status_reporter_messages():
    messages = []
    reporter = StepsStatusReporter(messages.append)
    reporter.archive_download_started()
    reporter.workspace_initialization_started()
    reporter.skipping_steps_upto(1)
    reporter.skipping_steps_upto(3)
    reporter.step_skipped(2)
    reporter.step_preparing_start(4)
    reporter.step_started(4, "rm -rf ~/.horse-ascii-art", {})
    reporter.calculating_diff_started()
    assert messages == [
        "Downloading archive",
        "Initializing workspace",
        "Skipping step 1. Found cached result.",
        "Skipping steps 1 to 3. Found cached results.",
        "Skipping step 2",
        "Preparing step 4",
        "rm -rf ~/.horse-ascii-art",
        "Calculating diff",
    ]