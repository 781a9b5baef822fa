"""Report the progress of a batch change run as JSON lines."""

from __future__ import annotations

import enum
import json
import random
import string
import sys
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, TextIO

from batchkit.interval_writer import IntervalProcessWriter
from batchkit.workspaces import Step, Task

_STEP_FLUSH_INTERVAL = 0.5
_BASE62 = string.digits + string.ascii_letters
_JSON_ESCAPES = str.maketrans(
    {
        "<": "\\u003c",
        ">": "\\u003e",
        "&": "\\u0026",
        "\u2028": "\\u2028",
        "\u2029": "\\u2029",
    }
)


class _Operation(enum.Enum):
    PARSING_BATCH_SPEC = "PARSING_BATCH_SPEC"
    RESOLVING_NAMESPACE = "RESOLVING_NAMESPACE"
    PREPARING_DOCKER_IMAGES = "PREPARING_DOCKER_IMAGES"
    RESOLVING_REPOSITORIES = "RESOLVING_REPOSITORIES"
    DETERMINING_WORKSPACES = "DETERMINING_WORKSPACES"
    CHECKING_CACHE = "CHECKING_CACHE"
    EXECUTING_TASKS = "EXECUTING_TASKS"
    LOG_FILE_KEPT = "LOG_FILE_KEPT"
    UPLOADING_CHANGESET_SPECS = "UPLOADING_CHANGESET_SPECS"
    CREATING_BATCH_SPEC = "CREATING_BATCH_SPEC"
    APPLYING_BATCH_SPEC = "APPLYING_BATCH_SPEC"
    BATCH_SPEC_EXECUTION = "BATCH_SPEC_EXECUTION"
    EXECUTING_TASK = "EXECUTING_TASK"
    TASK_BUILD_CHANGESET_SPECS = "TASK_BUILD_CHANGESET_SPECS"
    TASK_DOWNLOADING_ARCHIVE = "TASK_DOWNLOADING_ARCHIVE"
    TASK_INITIALIZING_WORKSPACE = "TASK_INITIALIZING_WORKSPACE"
    TASK_SKIPPING_STEPS = "TASK_SKIPPING_STEPS"
    TASK_STEP_SKIPPED = "TASK_STEP_SKIPPED"
    TASK_PREPARING_STEP = "TASK_PREPARING_STEP"
    TASK_STEP = "TASK_STEP"
    TASK_CALCULATING_DIFF = "TASK_CALCULATING_DIFF"


class LogEventStatus(enum.Enum):
    """The phase of an operation that an event reports."""

    STARTED = "STARTED"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    PROGRESS = "PROGRESS"


def _now() -> datetime:
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def _format_timestamp(ts: datetime) -> str:
    ts = ts.replace(tzinfo=timezone.utc) if ts.tzinfo is None else ts.astimezone(timezone.utc)
    text = ts.strftime("%Y-%m-%dT%H:%M:%S")
    fraction = f"{ts.microsecond:06d}".rstrip("0")
    if fraction:
        text += "." + fraction
    return text + "Z"


def _is_empty(value: Any) -> bool:
    if value is None or value is False:
        return True
    if isinstance(value, (str, list, tuple, dict)):
        return len(value) == 0
    return isinstance(value, int) and not isinstance(value, bool) and value == 0


def _meta(fields: Mapping[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in fields.items() if not _is_empty(value)}


def _step_json(step: Step) -> dict[str, Any]:
    return _meta(
        {"run": step.run, "container": step.container, "env": step.env, "if": step.if_}
    )


@dataclass
class LogEvent:
    """One line of the JSON log."""

    operation: str
    status: LogEventStatus
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_now)

    def to_json(self) -> str:
        """Encode the event as a single line of JSON, without a newline."""
        encoded = json.dumps(
            {
                "operation": self.operation,
                "timestamp": _format_timestamp(self.timestamp),
                "status": self.status.value,
                "metadata": self.metadata,
            },
            ensure_ascii=False,
            separators=(",", ":"),
            default=str,
        )
        return encoded.translate(_JSON_ESCAPES)


_Log = Callable[[_Operation, LogEventStatus, Mapping[str, Any]], None]


def random_id() -> str:
    """A random identifier made of digits and ASCII letters."""
    number = random.getrandbits(63)
    digits: list[str] = []
    while True:
        number, rest = divmod(number, len(_BASE62))
        digits.append(_BASE62[rest])
        if number == 0:
            break
    return "".join(reversed(digits))


class JSONLines:
    """Writes one JSON event per line for every stage of a run."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream

    def _log(self, op: _Operation, status: LogEventStatus, metadata: Mapping[str, Any]) -> None:
        stream = self._stream if self._stream is not None else sys.stdout
        event = LogEvent(op.value, status, _meta(metadata))
        try:
            line = event.to_json()
        except (TypeError, ValueError) as err:
            print(err, file=sys.stderr)
            return
        stream.write(line + "\n")
        stream.flush()

    def parsing_batch_spec(self) -> None:
        self._log(_Operation.PARSING_BATCH_SPEC, LogEventStatus.STARTED, {})

    def parsing_batch_spec_success(self) -> None:
        self._log(_Operation.PARSING_BATCH_SPEC, LogEventStatus.SUCCESS, {})

    def parsing_batch_spec_failure(self, err: BaseException) -> None:
        self._log(_Operation.PARSING_BATCH_SPEC, LogEventStatus.FAILURE, {"error": str(err)})

    def resolving_namespace(self) -> None:
        self._log(_Operation.RESOLVING_NAMESPACE, LogEventStatus.STARTED, {})

    def resolving_namespace_success(self, namespace: str) -> None:
        self._log(
            _Operation.RESOLVING_NAMESPACE, LogEventStatus.SUCCESS, {"namespaceID": namespace}
        )

    def preparing_container_images(self) -> None:
        self._log(_Operation.PREPARING_DOCKER_IMAGES, LogEventStatus.STARTED, {})

    def preparing_container_images_progress(self, done: int, total: int) -> None:
        self._log(
            _Operation.PREPARING_DOCKER_IMAGES,
            LogEventStatus.PROGRESS,
            {"done": done, "total": total},
        )

    def preparing_container_images_success(self) -> None:
        self._log(_Operation.PREPARING_DOCKER_IMAGES, LogEventStatus.SUCCESS, {})

    def resolving_repositories(self) -> None:
        self._log(_Operation.RESOLVING_REPOSITORIES, LogEventStatus.STARTED, {})

    def resolving_repositories_done(
        self,
        repos: Iterable[Any],
        unsupported: Iterable[Any] | None,
        ignored: Iterable[Any] | None,
    ) -> None:
        self._log(
            _Operation.RESOLVING_REPOSITORIES,
            LogEventStatus.SUCCESS,
            {
                "unsupported": len(list(unsupported or ())),
                "ignored": len(list(ignored or ())),
                "count": len(list(repos)),
            },
        )

    def determining_workspaces(self) -> None:
        self._log(_Operation.DETERMINING_WORKSPACES, LogEventStatus.STARTED, {})

    def determining_workspaces_success(self, num: int) -> None:
        self._log(_Operation.DETERMINING_WORKSPACES, LogEventStatus.SUCCESS, {"count": num})

    def checking_cache(self) -> None:
        self._log(_Operation.CHECKING_CACHE, LogEventStatus.STARTED, {})

    def checking_cache_success(self, cached_specs_found: int, tasks_to_execute: int) -> None:
        self._log(
            _Operation.CHECKING_CACHE,
            LogEventStatus.SUCCESS,
            {"cachedSpecsFound": cached_specs_found, "tasksToExecute": tasks_to_execute},
        )

    def executing_tasks(self, verbose: bool, parallelism: int) -> TaskExecutionJSONLines:
        return TaskExecutionJSONLines(self._log, verbose, parallelism)

    def executing_tasks_skipping_errors(self, err: BaseException) -> None:
        self._log(
            _Operation.EXECUTING_TASKS,
            LogEventStatus.SUCCESS,
            {"skipped": True, "error": str(err)},
        )

    def log_files_kept(self, files: Iterable[str]) -> None:
        for path in files:
            self._log(_Operation.LOG_FILE_KEPT, LogEventStatus.SUCCESS, {"path": path})

    def no_changeset_specs(self) -> None:
        self.uploading_changeset_specs_success([])

    def uploading_changeset_specs(self, num: int) -> None:
        self._log(
            _Operation.UPLOADING_CHANGESET_SPECS,
            LogEventStatus.STARTED,
            {"done": 0, "total": num},
        )

    def uploading_changeset_specs_progress(self, done: int, total: int) -> None:
        self._log(
            _Operation.UPLOADING_CHANGESET_SPECS,
            LogEventStatus.PROGRESS,
            {"done": done, "total": total},
        )

    def uploading_changeset_specs_success(self, ids: Iterable[str]) -> None:
        id_list = [str(spec_id) for spec_id in ids]
        self._log(
            _Operation.UPLOADING_CHANGESET_SPECS,
            LogEventStatus.SUCCESS,
            {"done": len(id_list), "total": len(id_list), "ids": id_list},
        )

    def creating_batch_spec(self) -> None:
        self._log(_Operation.CREATING_BATCH_SPEC, LogEventStatus.STARTED, {})

    def creating_batch_spec_success(self, preview_url: str) -> None:
        self._log(
            _Operation.CREATING_BATCH_SPEC, LogEventStatus.SUCCESS, {"previewURL": preview_url}
        )

    def creating_batch_spec_error(self, err: BaseException) -> BaseException:
        """Log the failure and hand the error back unchanged."""
        self._log(_Operation.CREATING_BATCH_SPEC, LogEventStatus.FAILURE, {})
        return err

    def applying_batch_spec(self) -> None:
        self._log(_Operation.APPLYING_BATCH_SPEC, LogEventStatus.STARTED, {})

    def applying_batch_spec_success(self, batch_change_url: str) -> None:
        self._log(
            _Operation.APPLYING_BATCH_SPEC,
            LogEventStatus.SUCCESS,
            {"batchChangeURL": batch_change_url},
        )

    def execution_error(self, err: BaseException) -> None:
        self._log(_Operation.BATCH_SPEC_EXECUTION, LogEventStatus.FAILURE, {"error": str(err)})


class TaskExecutionJSONLines:
    """Logs the execution of a set of tasks, each under a random ID."""

    def __init__(self, log: _Log, verbose: bool, parallelism: int) -> None:
        self._log = log
        self.verbose = verbose
        self.parallelism = parallelism
        self._ids: dict[Task, str] = {}

    def _task_id(self, task: Task) -> str:
        try:
            return self._ids[task]
        except KeyError:
            raise LookupError("unknown task started") from None

    def start(self, tasks: Iterable[Task]) -> None:
        self._ids = {}
        lines_tasks: list[dict[str, Any]] = []
        for task in tasks:
            task_id = random_id()
            self._ids[task] = task_id
            lines_tasks.append(
                _meta(
                    {
                        "id": task_id,
                        "repository": task.repository.name,
                        "workspace": task.path,
                        "steps": [_step_json(step) for step in task.steps],
                        "cachedStepResultsFound": task.cached_result_found,
                        "startStep": task.cached_step_index,
                    }
                )
            )
        self._log(_Operation.EXECUTING_TASKS, LogEventStatus.STARTED, {"tasks": lines_tasks})

    def success(self) -> None:
        self._log(_Operation.EXECUTING_TASKS, LogEventStatus.SUCCESS, {})

    def failed(self, err: BaseException) -> None:
        self._log(_Operation.EXECUTING_TASKS, LogEventStatus.FAILURE, {"error": str(err)})

    def task_started(self, task: Task) -> None:
        task_id = self._task_id(task)
        self._log(_Operation.EXECUTING_TASK, LogEventStatus.STARTED, {"taskID": task_id})

    def task_finished(self, task: Task, err: BaseException | None) -> None:
        task_id = self._task_id(task)
        if err is not None:
            self._log(
                _Operation.EXECUTING_TASK,
                LogEventStatus.FAILURE,
                {"taskID": task_id, "error": str(err)},
            )
            return
        self._log(_Operation.EXECUTING_TASK, LogEventStatus.SUCCESS, {"taskID": task_id})

    def task_changeset_specs_built(self, task: Task, specs: Iterable[Any]) -> None:
        task_id = self._task_id(task)
        self._log(
            _Operation.TASK_BUILD_CHANGESET_SPECS, LogEventStatus.SUCCESS, {"taskID": task_id}
        )

    def steps_execution_ui(self, task: Task) -> StepsExecutionJSONLines:
        return StepsExecutionJSONLines(self._log, self._task_id(task))


class StepsExecutionJSONLines:
    """Logs the steps of one task."""

    def __init__(self, log: _Log, task_id: str) -> None:
        self._log = log
        self.task_id = task_id

    def _emit(self, op: _Operation, status: LogEventStatus, **fields: Any) -> None:
        self._log(op, status, {"taskID": self.task_id, **fields})

    def archive_download_started(self) -> None:
        self._emit(_Operation.TASK_DOWNLOADING_ARCHIVE, LogEventStatus.STARTED)

    def archive_download_finished(self, err: BaseException | None) -> None:
        if err is not None:
            self._emit(_Operation.TASK_DOWNLOADING_ARCHIVE, LogEventStatus.FAILURE, error=str(err))
        else:
            self._emit(_Operation.TASK_DOWNLOADING_ARCHIVE, LogEventStatus.SUCCESS)

    def workspace_initialization_started(self) -> None:
        self._emit(_Operation.TASK_INITIALIZING_WORKSPACE, LogEventStatus.STARTED)

    def workspace_initialization_finished(self) -> None:
        self._emit(_Operation.TASK_INITIALIZING_WORKSPACE, LogEventStatus.SUCCESS)

    def skipping_steps_upto(self, start_step: int) -> None:
        self._emit(_Operation.TASK_SKIPPING_STEPS, LogEventStatus.PROGRESS, startStep=start_step)

    def step_skipped(self, step: int) -> None:
        self._emit(_Operation.TASK_STEP_SKIPPED, LogEventStatus.PROGRESS, step=step)

    def step_preparing_start(self, step: int) -> None:
        self._emit(_Operation.TASK_PREPARING_STEP, LogEventStatus.STARTED, step=step)

    def step_preparing_success(self, step: int) -> None:
        self._emit(_Operation.TASK_PREPARING_STEP, LogEventStatus.SUCCESS, step=step)

    def step_preparing_failed(self, step: int, err: BaseException) -> None:
        self._emit(
            _Operation.TASK_PREPARING_STEP, LogEventStatus.FAILURE, step=step, error=str(err)
        )

    def step_started(self, step: int, run_script: str, env: Mapping[str, str]) -> None:
        self._emit(_Operation.TASK_STEP, LogEventStatus.STARTED, step=step, env=dict(env))

    def step_output_writer(self, task: Task, step: int) -> IntervalProcessWriter:
        """A writer whose output is logged as progress of the step every half second."""

        def sink(data: str) -> None:
            self._emit(_Operation.TASK_STEP, LogEventStatus.PROGRESS, step=step, out=data)

        return IntervalProcessWriter(sink, _STEP_FLUSH_INTERVAL)

    def step_finished(self, step: int, diff: str, outputs: Mapping[str, Any]) -> None:
        self._emit(
            _Operation.TASK_STEP,
            LogEventStatus.SUCCESS,
            step=step,
            diff=diff,
            outputs=dict(outputs),
        )

    def step_failed(self, step: int, err: BaseException, exit_code: int) -> None:
        self._emit(
            _Operation.TASK_STEP,
            LogEventStatus.FAILURE,
            step=step,
            error=str(err),
            exitCode=exit_code,
        )

    def calculating_diff_started(self) -> None:
        self._emit(_Operation.TASK_CALCULATING_DIFF, LogEventStatus.STARTED)

    def calculating_diff_finished(self) -> None:
        self._emit(_Operation.TASK_CALCULATING_DIFF, LogEventStatus.SUCCESS)