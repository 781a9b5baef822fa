# batchkit

Building blocks for running a *batch change*: a set of steps run across many
repositories, with the resulting diffs turned into changesets.

batchkit covers the parts of that workflow that need neither a container
runtime nor a particular HTTP stack. It has no runtime dependencies.

## What is in it

- **`batchkit.service`**: `Service` talks to a GraphQL API through a client you
  supply. The client is any object with a
  `request(query, variables=None)` method that returns the decoded response
  body (a dict with `"data"` and, optionally, `"errors"`). With it `Service`
  can:
  - resolve `OnQueryOrRepository` rules (a `repositories_matching_query`
    search, or an explicit `repository` with optional `branch` /
    `branch_list`) into `Repository` objects with `resolve_repositories`,
    `resolve_repositories_on`, `resolve_repository_name`,
    `resolve_repository_name_and_branch` and `resolve_repository_search`.
    Repositories on code hosts other than GitHub, GitLab and Bitbucket Server
    are reported by raising `UnsupportedRepoSet`; repositories holding a
    `.batchignore` file by raising `IgnoredRepoSet`. Both exceptions carry the
    repositories that were kept in their `resolved` attribute. Pass
    `allow_unsupported=True` or `allow_ignored=True` to keep them instead.
  - find the directories that hold a given file with
    `find_directories_in_repos` (queried in batches of 50 repositories).
  - resolve a user or organisation name to its ID with `resolve_namespace`
    (the logged-in user when the name is empty).
  - upload a `ChangesetSpec` with `create_changeset_spec`, and fetch the
    instance version with `get_sourcegraph_version`.
  - check that no two changeset specs push to the same branch of one
    repository with `validate_changeset_specs`, which raises
    `DuplicateBranchesError`.
  - write an example batch spec to a new file with `generate_example_spec`,
    taking the commit author from `git config user.name` / `user.email` when
    both are set.

  GraphQL errors in a response are raised as `GraphQLError`; other failures
  as `ServiceError` or its subclasses.
- **`batchkit.workspaces`**: `BatchSpec`, `Step` and `WorkspaceConfiguration`
  describe what to run. `find_workspaces` matches repositories against
  `workspaces.in` globs (`compile_glob`), locates workspace roots through a
  directory finder such as `Service`, and keeps only the steps whose `if:`
  condition is not statically false (`steps_for_repo`). `build_tasks` turns
  the resulting `RepoWorkspace` objects into `Task` objects.
- **`batchkit.events`**: `JSONLines` writes one JSON `LogEvent` per line for
  each stage of a run; `executing_tasks` returns a `TaskExecutionJSONLines`
  that tags every task with an ID from `random_id`, and its
  `steps_execution_ui` gives a `StepsExecutionJSONLines` for the steps of one
  task.
- **`batchkit.interval_writer`**: `IntervalProcessWriter` collects output from
  `stdout_writer()` and `stderr_writer()`, prefixes every line with
  `stdout: ` or `stderr: `, and hands it to a sink at a fixed interval, or only
  on `flush()` / `close()` when the interval is `None`.
- **`batchkit.diffstat`**: `parse_multi_file_diff` parses a unified diff;
  `verbose_diff_summary` gives per-file line counts with coloured `+`/`-`
  bars and a totals line. `TaskStatus` and `StepsStatusReporter` produce the
  short status texts shown while a task runs.
- **`batchkit.util`**: `slug_for_repo`, `slug_for_path_in_repo`,
  `ensure_ref_prefix` and `new_templating_repo`.

## Installation

```
pip install batchkit
```

## Examples

Summarise a diff:

```python
from batchkit.diffstat import parse_multi_file_diff, verbose_diff_summary

with open("changes.diff") as handle:
    diffs = parse_multi_file_diff(handle.read())
for line in verbose_diff_summary(diffs):
    print(line)
```

Add a default result count to a search query:

```python
from batchkit.service import set_default_query_count

set_default_query_count("repo:foo")    # "repo:foo count:999999"
set_default_query_count("count:10")    # unchanged
```

Resolve repositories with your own client:

```python
from batchkit.service import OnQueryOrRepository, Service

class Client:
    def request(self, query, variables=None):
        ...  # send the query, return the decoded JSON body

service = Service(Client(), allow_unsupported=True, allow_ignored=True)
repos = service.resolve_repositories(
    [OnQueryOrRepository(repositories_matching_query="file:README.md")]
)
```

Buffer process output and flush it every half second:

```python
from batchkit.interval_writer import IntervalProcessWriter

with IntervalProcessWriter(print, 0.5) as writer:
    writer.stdout_writer().write(b"building")
    writer.stderr_writer().write(b"warning: deprecated")
```

Emit progress as JSON lines:

```python
import sys
from batchkit.events import JSONLines

ui = JSONLines(sys.stdout)
ui.resolving_repositories()
ui.determining_workspaces_success(3)
```

## What batchkit does not do

- It has no command-line program.
- It does not run steps: there is no container handling, no repository
  archive download and no diff capture. `Task` objects are built, not
  executed.
- It does not parse batch spec YAML; `BatchSpec` and its parts are built in
  Python.
- It does not send HTTP requests itself; you supply the GraphQL client.
- It has no interactive terminal progress display, only the JSON lines
  output and the status texts in `batchkit.diffstat`.

## Development

```
pip install -e ".[test]"
pytest
```