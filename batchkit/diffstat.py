"""Diff statistics and status texts shown while tasks execute."""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from datetime import datetime, timedelta

STYLE_LINES_ADDED = "\x1b[32m"
STYLE_LINES_DELETED = "\x1b[31m"
STYLE_RESET = "\x1b[0m"

_MAX_DIAGRAM_WIDTH = 20
_DEV_NULL = "/dev/null"
_HUNK_HEADER = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")


class DiffParseError(ValueError):
    """Raised when a unified diff cannot be parsed."""


@dataclass(frozen=True)
class DiffStat:
    """Counts of added, changed and deleted lines."""

    added: int = 0
    changed: int = 0
    deleted: int = 0

    def __add__(self, other: DiffStat) -> DiffStat:
        return DiffStat(
            self.added + other.added,
            self.changed + other.changed,
            self.deleted + other.deleted,
        )


def _hunk_stat(body: Iterable[str]) -> DiffStat:
    added = changed = deleted = 0
    last = ""
    for line in body:
        tag = line[:1]
        if tag == "-":
            if last == "+":
                added -= 1
                changed += 1
                last = ""
            else:
                deleted += 1
                last = tag
        elif tag == "+":
            if last == "-":
                deleted -= 1
                changed += 1
                last = ""
            else:
                added += 1
                last = tag
        else:
            last = ""
    return DiffStat(added, changed, deleted)


@dataclass
class FileDiff:
    """One file's part of a unified diff."""

    orig_name: str = ""
    new_name: str = ""
    extended: list[str] = field(default_factory=list)
    hunks: list[list[str]] = field(default_factory=list)

    def display_name(self) -> str:
        """The new name, or the original one if the file was deleted."""
        return self.orig_name if self.new_name == _DEV_NULL else self.new_name

    def stat(self) -> DiffStat:
        """Sum the line statistics over all hunks."""
        total = DiffStat()
        for hunk in self.hunks:
            total += _hunk_stat(hunk)
        return total


def _header_name(value: str) -> str:
    return value.split("\t", 1)[0]


def _read_hunk(lines: Iterator[str], orig: int, new: int) -> list[str]:
    body: list[str] = []
    while orig > 0 or new > 0:
        line = next(lines, None)
        if line is None:
            raise DiffParseError("unexpected end of diff inside hunk")
        tag = line[:1]
        if tag in (" ", ""):
            orig -= 1
            new -= 1
        elif tag == "-":
            orig -= 1
        elif tag == "+":
            new -= 1
        elif tag != "\\":
            raise DiffParseError(f"unexpected line in hunk: {line!r}")
        body.append(line)
    return body


def parse_multi_file_diff(text: str) -> list[FileDiff]:
    """Parse a unified diff that may span several files."""
    raw = text.split("\n")
    if raw and raw[-1] == "":
        raw.pop()
    lines = iter(raw)

    diffs: list[FileDiff] = []
    current: FileDiff | None = None
    seen_orig = False

    for line in lines:
        if line.startswith("diff "):
            current = FileDiff(extended=[line])
            diffs.append(current)
            seen_orig = False
            parts = line.split(" ")
            if len(parts) == 4:
                current.orig_name, current.new_name = parts[2], parts[3]
        elif line.startswith("--- ") and (current is None or current.hunks or seen_orig):
            current = FileDiff(orig_name=_header_name(line[4:]))
            diffs.append(current)
            seen_orig = True
        elif line.startswith("--- "):
            assert current is not None
            current.orig_name = _header_name(line[4:])
            seen_orig = True
        elif line.startswith("+++ "):
            if current is None:
                raise DiffParseError("'+++' header without a file")
            current.new_name = _header_name(line[4:])
        elif line.startswith("@@"):
            if current is None:
                raise DiffParseError("hunk without a file header")
            match = _HUNK_HEADER.match(line)
            if match is None:
                raise DiffParseError(f"malformed hunk header: {line!r}")
            orig_count = int(match.group(2)) if match.group(2) is not None else 1
            new_count = int(match.group(4)) if match.group(4) is not None else 1
            current.hunks.append(_read_hunk(lines, orig_count, new_count))
        elif line.startswith("\\") and current is not None and current.hunks:
            current.hunks[-1].append(line)
        elif current is not None and not current.hunks:
            current.extended.append(line)
        else:
            raise DiffParseError(f"unexpected line: {line!r}")

    return diffs


def diff_stat_description(file_diffs: list[FileDiff]) -> str:
    """Describe how many files changed."""
    plural = "s" if len(file_diffs) > 1 else ""
    return f"{len(file_diffs)} file{plural} changed"


def diff_stat_diagram(stat: DiffStat) -> str:
    """Draw a coloured bar of pluses and minuses, at most 20 wide."""
    added = float(stat.added + stat.changed)
    deleted = float(stat.deleted + stat.changed)
    total = added + deleted
    if total > _MAX_DIAGRAM_WIDTH:
        scale = _MAX_DIAGRAM_WIDTH / total
        added *= scale
        deleted *= scale
    return (
        f"{STYLE_LINES_ADDED}{'+' * int(added)}"
        f"{STYLE_LINES_DELETED}{'-' * int(deleted)}"
        f"{STYLE_RESET}"
    )


def verbose_diff_summary(file_diffs: list[FileDiff]) -> list[str]:
    """Summarise a diff per file, followed by a totals line."""
    file_stats: dict[str, str] = {}
    names: list[str] = []
    sum_insertions = 0
    sum_deletions = 0

    for file_diff in file_diffs:
        name = file_diff.display_name()
        names.append(name)
        stat = file_diff.stat()
        sum_insertions += stat.added + stat.changed
        sum_deletions += stat.deleted + stat.changed
        num = stat.added + 2 * stat.changed + stat.deleted
        file_stats[name] = f"{num} {diff_stat_diagram(stat)}"

    width = max((len(name) for name in names), default=0)
    lines = [f"\t{name:<{width}} | {file_stats[name]}" for name in sorted(names)]

    insertions_plural = "s" if sum_insertions != 0 else ""
    deletions_plural = "s" if sum_deletions != 1 else ""
    lines.append(
        f"  {diff_stat_description(file_diffs)}, "
        f"{sum_insertions} insertion{insertions_plural}, "
        f"{sum_deletions} deletion{deletions_plural}"
    )
    return lines


@dataclass
class TaskStatus:
    """What a task is doing, for display in its status bar."""

    display_name: str = ""
    started_at: datetime | None = None
    finished_at: datetime | None = None
    currently_executing: str = ""
    err: BaseException | None = None

    def finished_execution(self) -> bool:
        """True once the task has both started and finished."""
        return self.started_at is not None and self.finished_at is not None

    def execution_time(self) -> timedelta:
        """How long the task ran, truncated to milliseconds."""
        if self.started_at is None or self.finished_at is None:
            return timedelta(0)
        micros = (self.finished_at - self.started_at) // timedelta(microseconds=1)
        millis = abs(micros) // 1000
        return timedelta(milliseconds=millis if micros >= 0 else -millis)

    def __str__(self) -> str:
        if self.finished_execution():
            if self.err is None:
                return "Done!"
            status_text = getattr(self.err, "status_text", None)
            return status_text() if callable(status_text) else str(self.err)
        if self.currently_executing:
            first, *rest = self.currently_executing.split("\n")
            return f"{first} ..." if rest else first
        return "..."


class StepsStatusReporter:
    """Turns step execution events into short status-bar messages."""

    def __init__(self, update_status: Callable[[str], None]) -> None:
        self._update_status = update_status

    def archive_download_started(self) -> None:
        self._update_status("Downloading archive")

    def workspace_initialization_started(self) -> None:
        self._update_status("Initializing workspace")

    def skipping_steps_upto(self, start_step: int) -> None:
        if start_step == 1:
            self._update_status("Skipping step 1. Found cached result.")
        else:
            self._update_status(
                f"Skipping steps 1 to {start_step}. Found cached results."
            )

    def step_skipped(self, step: int) -> None:
        self._update_status(f"Skipping step {step}")

    def step_preparing_start(self, step: int) -> None:
        self._update_status(f"Preparing step {step}")

    def step_started(self, step: int, run_script: str, env: dict[str, str]) -> None:
        self._update_status(run_script)

    def calculating_diff_started(self) -> None:
        self._update_status("Calculating diff")