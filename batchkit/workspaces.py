"""Work out the workspaces a batch spec runs in and the tasks built from them."""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from batchkit.service import OnQueryOrRepository, Repository
from batchkit.util import TemplatingRepo, new_templating_repo


class ValidationError(ValueError):
    """The batch spec is well-formed but describes something impossible."""


@dataclass
class Step:
    """One step of a batch spec; ``if_`` holds its optional condition."""

    run: str = ""
    container: str = ""
    env: Any = None
    if_: bool | str | None = None

    def if_condition(self) -> str:
        """The condition as text, or "" when there is none."""
        if self.if_ is None:
            return ""
        if isinstance(self.if_, bool):
            return "true" if self.if_ else "false"
        return str(self.if_)


@dataclass(frozen=True)
class WorkspaceConfiguration:
    """Places workspaces at every location of a file in matching repositories."""

    root_at_location_of: str = ""
    in_: str = ""
    only_fetch_workspace: bool = False


@dataclass
class BatchSpec:
    """The parts of a batch spec needed to determine workspaces and tasks."""

    name: str = ""
    description: str = ""
    on: list[OnQueryOrRepository] = field(default_factory=list)
    workspaces: list[WorkspaceConfiguration] = field(default_factory=list)
    steps: list[Step] = field(default_factory=list)
    transform_changes: Any = None
    import_changesets: list[Any] = field(default_factory=list)
    changeset_template: Any = None


@dataclass
class RepoWorkspace:
    """A directory in a repository in which the steps run."""

    repo: Repository
    path: str = ""
    steps: list[Step] = field(default_factory=list)
    only_fetch_workspace: bool = False


@dataclass(eq=False)
class Task:
    """The execution of a batch spec's steps in one workspace."""

    repository: Repository
    path: str = ""
    steps: list[Step] = field(default_factory=list)
    only_fetch_workspace: bool = False
    transform_changes: Any = None
    template: Any = None
    batch_change_name: str = ""
    batch_change_description: str = ""
    cached_result_found: bool = False
    cached_step_index: int = 0


class _DirectoryFinder(Protocol):
    def find_directories_in_repos(
        self, file_name: str, *repos: Repository
    ) -> Mapping[Repository, list[str]]:
        ...


def compile_glob(pattern: str) -> re.Pattern[str]:
    """Compile a glob (``*``, ``?``, ``[...]``, ``{a,b}``, ``\\``) to a regex.

    ``*`` matches any run of characters, separators included. Use
    ``fullmatch`` on the result.
    """
    out: list[str] = []
    depth = 0
    i = 0
    n = len(pattern)
    while i < n:
        char = pattern[i]
        if char == "\\":
            i += 1
            if i >= n:
                raise ValueError("unexpected end of pattern after escape")
            out.append(re.escape(pattern[i]))
        elif char == "*":
            while i + 1 < n and pattern[i + 1] == "*":
                i += 1
            out.append(".*")
        elif char == "?":
            out.append(".")
        elif char == "[":
            end = pattern.find("]", i + 1)
            if end == -1:
                raise ValueError("unclosed character class")
            body = pattern[i + 1 : end]
            negate = body.startswith("!")
            if negate:
                body = body[1:]
            if not body:
                raise ValueError("empty character class")
            translated = "".join("-" if c == "-" else re.escape(c) for c in body)
            out.append(f"[{'^' if negate else ''}{translated}]")
            i = end
        elif char == "{":
            depth += 1
            out.append("(?:")
        elif char == "}" and depth > 0:
            depth -= 1
            out.append(")")
        elif char == "," and depth > 0:
            out.append("|")
        else:
            out.append(re.escape(char))
        i += 1
    if depth:
        raise ValueError("unclosed alternation")
    return re.compile("".join(out), re.DOTALL)


_UNKNOWN = object()
_EXPRESSION = re.compile(r"\$\{\{(.*?)\}\}", re.DOTALL)
_LEXEME_PATTERN = re.compile(
    r"\s*(?:(?P<str>\"(?:\\.|[^\"\\])*\")|(?P<raw>`[^`]*`)|(?P<paren>[()])"
    r"|(?P<num>-?\d+)|(?P<word>\.?[A-Za-z_][\w.]*))"
)


class _Unparseable(Exception):
    pass


@dataclass(frozen=True)
class _Ident:
    name: str


def _tokenize(text: str) -> list[tuple[str, str]]:
    lexemes: list[tuple[str, str]] = []
    pos = 0
    while pos < len(text):
        if text[pos:].strip() == "":
            break
        match = _LEXEME_PATTERN.match(text, pos)
        if match is None:
            raise _Unparseable(text[pos:])
        kind = match.lastgroup
        assert kind is not None
        lexemes.append((kind, match.group(kind)))
        pos = match.end()
    return lexemes


def _parse_command(lexemes: list[tuple[str, str]], pos: int) -> tuple[list[Any], int]:
    nodes: list[Any] = []
    while pos < len(lexemes):
        kind, text = lexemes[pos]
        if kind == "paren" and text == ")":
            return nodes, pos
        if kind == "paren":
            sub, pos = _parse_command(lexemes, pos + 1)
            if pos >= len(lexemes):
                raise _Unparseable("unclosed parenthesis")
            nodes.append(sub)
        elif kind == "str":
            nodes.append(json.loads(text))
        elif kind == "raw":
            nodes.append(text[1:-1])
        elif kind == "num":
            nodes.append(int(text))
        elif text in ("true", "false"):
            nodes.append(text == "true")
        else:
            nodes.append(_Ident(text.lstrip(".")))
        pos += 1
    return nodes, pos


def _truthy(value: Any) -> bool:
    return bool(value)


def _to_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return "[" + " ".join(_to_text(item) for item in value) + "]"
    return str(value)


def _eq(first: Any, *others: Any) -> bool:
    if not others:
        raise TypeError("eq needs at least two arguments")
    return any(first == other for other in others)


def _matches(value: Any, pattern: Any) -> bool:
    return compile_glob(str(pattern)).fullmatch(_to_text(value)) is not None


def _and(*values: Any) -> Any:
    for value in values:
        if not _truthy(value):
            return value
    return values[-1]


def _or(*values: Any) -> Any:
    for value in values:
        if _truthy(value):
            return value
    return values[-1]


_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "eq": _eq,
    "ne": lambda a, b: a != b,
    "not": lambda a: not _truthy(a),
    "and": _and,
    "or": _or,
    "matches": _matches,
    "join": lambda items, sep: str(sep).join(_to_text(item) for item in items),
    "split": lambda text, sep: str(text).split(str(sep)),
    "replace": lambda text, old, new: str(text).replace(str(old), str(new)),
}


def _resolve(name: str, context: Mapping[str, Any]) -> Any:
    value: Any = context
    for part in name.split("."):
        if not isinstance(value, Mapping) or part not in value:
            return _UNKNOWN
        value = value[part]
    return value


def _evaluate(node: Any, context: Mapping[str, Any]) -> Any:
    if isinstance(node, list):
        return _evaluate_command(node, context)
    if isinstance(node, _Ident):
        if node.name in _FUNCTIONS:
            return _evaluate_command([node], context)
        return _resolve(node.name, context)
    return node


def _evaluate_command(nodes: list[Any], context: Mapping[str, Any]) -> Any:
    if not nodes:
        raise _Unparseable("empty command")
    head, *args = nodes
    if isinstance(head, _Ident) and head.name in _FUNCTIONS:
        values = [_evaluate(arg, context) for arg in args]
        if any(value is _UNKNOWN for value in values):
            return _UNKNOWN
        try:
            return _FUNCTIONS[head.name](*values)
        except (TypeError, ValueError, IndexError):
            return _UNKNOWN
    if args:
        return _UNKNOWN
    return _evaluate(head, context)


def _evaluate_expression(text: str, context: Mapping[str, Any]) -> Any:
    try:
        lexemes = _tokenize(text)
        nodes, pos = _parse_command(lexemes, 0)
        if pos != len(lexemes):
            raise _Unparseable("unbalanced parenthesis")
        return _evaluate_command(nodes, context)
    except _Unparseable:
        return _UNKNOWN


def _static_condition(condition: str, context: Mapping[str, Any]) -> bool | None:
    """The condition's value if it can be decided now, otherwise None."""
    parts: list[str] = []
    pos = 0
    for match in _EXPRESSION.finditer(condition):
        parts.append(condition[pos : match.start()])
        value = _evaluate_expression(match.group(1), context)
        if value is _UNKNOWN:
            return None
        parts.append(_to_text(value))
        pos = match.end()
    parts.append(condition[pos:])
    return "".join(parts).strip() == "true"


def steps_for_repo(spec: BatchSpec, repo: TemplatingRepo) -> list[Step]:
    """The steps of ``spec`` whose conditions do not rule out ``repo``."""
    context = {
        "repository": {"name": repo.name, "search_result_paths": list(repo.file_matches)},
        "batch_change": {"name": spec.name, "description": spec.description},
    }
    steps: list[Step] = []
    for step in spec.steps:
        condition = step.if_condition()
        if not condition or _static_condition(condition, context) is not False:
            steps.append(step)
    return steps


def find_workspaces(
    spec: BatchSpec, finder: _DirectoryFinder, repos: Iterable[Repository]
) -> list[RepoWorkspace]:
    """Match repositories to workspace configurations and locate their workspaces.

    Repositories that match no configuration get a single workspace at their
    root. The result is sorted by repository name, then path.
    """
    matchers: list[re.Pattern[str]] = []
    for conf in spec.workspaces:
        # An empty 'in' matches everything rather than nothing.
        pattern = conf.in_ or "*"
        try:
            matchers.append(compile_glob(pattern))
        except ValueError as err:
            raise ValidationError(
                f"failed to compile glob {json.dumps(pattern)}: {err}"
            ) from err

    root: list[Repository] = []
    matched: dict[int, list[Repository]] = {}
    for repo in repos:
        found = False
        for index, (conf, matcher) in enumerate(zip(spec.workspaces, matchers)):
            if matcher.fullmatch(repo.name) is None:
                continue
            if found:
                raise ValidationError(
                    f"repository {repo.name} matches multiple workspaces.in globs "
                    f"in the batch spec. glob: {json.dumps(conf.in_)}"
                )
            matched.setdefault(index, []).append(repo)
            found = True
        if not found:
            root.append(repo)

    by_key: dict[tuple[str, str], tuple[Repository, list[str], bool]] = {}
    for index, matched_repos in sorted(matched.items()):
        conf = spec.workspaces[index]
        found_dirs = finder.find_directories_in_repos(conf.root_at_location_of, *matched_repos)
        for repo, dirs in found_dirs.items():
            if not dirs:
                continue
            by_key[(repo.id, repo.branch.name)] = (repo, list(dirs), conf.only_fetch_workspace)

    for repo in root:
        # A repository that already has workspaces keeps only those.
        by_key.setdefault((repo.id, repo.branch.name), (repo, [""], False))

    workspaces: list[RepoWorkspace] = []
    for repo, paths, only_fetch in by_key.values():
        steps = steps_for_repo(spec, new_templating_repo(repo.name, repo.file_matches))
        if not steps:
            continue
        for path in paths:
            workspaces.append(
                RepoWorkspace(
                    repo=repo,
                    path=path,
                    steps=steps,
                    only_fetch_workspace=only_fetch if path else False,
                )
            )

    workspaces.sort(key=lambda ws: (ws.repo.name, ws.path))
    return workspaces


def build_tasks(spec: BatchSpec, workspaces: Sequence[RepoWorkspace]) -> list[Task]:
    """One task per workspace, carrying what the spec says about the batch change."""
    return [
        Task(
            repository=ws.repo,
            path=ws.path,
            steps=ws.steps,
            only_fetch_workspace=ws.only_fetch_workspace,
            transform_changes=spec.transform_changes,
            template=spec.changeset_template,
            batch_change_name=spec.name,
            batch_change_description=spec.description,
        )
        for ws in workspaces
    ]