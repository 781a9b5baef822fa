"""Resolve repositories, namespaces and changeset specs through a GraphQL API."""

from __future__ import annotations

import enum
import json
import posixpath
import re
import subprocess
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol


class GraphQLClient(Protocol):
    """Anything that sends a GraphQL request and returns the decoded response body."""

    def request(
        self, query: str, variables: Mapping[str, Any] | None = None
    ) -> dict[str, Any]:
        ...


class ServiceError(Exception):
    """Base class of the errors raised by :class:`Service`."""


class GraphQLError(ServiceError):
    """The API answered with one or more GraphQL errors."""

    def __init__(self, errors: list[Any]) -> None:
        self.errors = list(errors)
        messages = [
            error.get("message", str(error)) if isinstance(error, dict) else str(error)
            for error in self.errors
        ]
        super().__init__("; ".join(messages) or "GraphQL error")


class MalformedOnQueryOrRepositoryError(ServiceError):
    """An 'on' rule names neither a repository nor a query."""

    def __init__(self) -> None:
        super().__init__(
            "malformed 'on' field; missing either a repository name or a query"
        )


@dataclass(frozen=True)
class Target:
    """The commit a branch points to."""

    oid: str = ""


@dataclass(frozen=True)
class Branch:
    """A named branch and its target commit."""

    name: str = ""
    target: Target = field(default_factory=Target)


def _branch_from_json(data: Mapping[str, Any]) -> Branch:
    target = data.get("target") or {}
    return Branch(name=data.get("name") or "", target=Target(target.get("oid") or ""))


@dataclass(eq=False)
class Repository:
    """A repository as returned by the API; compared and hashed by identity."""

    id: str = ""
    name: str = ""
    url: str = ""
    external_service_type: str = ""
    default_branch: Branch | None = None
    branch: Branch = field(default_factory=Branch)
    commit: Target = field(default_factory=Target)
    file_matches: dict[str, bool] = field(default_factory=dict)

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> Repository:
        """Build a repository from the fields of a GraphQL ``Repository`` object."""
        default_branch = data.get("defaultBranch")
        external = data.get("externalRepository") or {}
        commit = data.get("commit") or {}
        return cls(
            id=data.get("id") or "",
            name=data.get("name") or "",
            url=data.get("url") or "",
            external_service_type=external.get("serviceType") or "",
            default_branch=_branch_from_json(default_branch) if default_branch else None,
            commit=Target(commit.get("oid") or ""),
        )

    def has_branch(self) -> bool:
        """True if an explicit branch or a default branch is known."""
        if self.branch.name:
            return True
        return self.default_branch is not None and bool(self.default_branch.name)

    def rev(self) -> str:
        """The commit to work on: the explicit branch's, else the default branch's."""
        if self.branch.target.oid:
            return self.branch.target.oid
        if self.default_branch is not None:
            return self.default_branch.target.oid
        return ""

    def _branch_name(self) -> str:
        if self.branch.name:
            return self.branch.name
        return self.default_branch.name if self.default_branch else ""


@dataclass
class OnQueryOrRepository:
    """One rule of a batch spec's ``on`` list."""

    repositories_matching_query: str = ""
    repository: str = ""
    branch: str = ""
    branch_list: tuple[str, ...] = ()

    def branches(self) -> list[str]:
        """The branches named by the rule; raises if both forms are used."""
        if self.branch and self.branch_list:
            raise ValueError("both branch and branches specified")
        if self.branch:
            return [self.branch]
        return list(self.branch_list)

    def __str__(self) -> str:
        if self.repositories_matching_query:
            return f"repositoriesMatchingQuery: {self.repositories_matching_query}"
        return f"repository: {self.repository}"


@dataclass
class ChangesetSpec:
    """A changeset to create on a code host, or an existing one to import."""

    base_repository: str = ""
    base_ref: str = ""
    base_rev: str = ""
    head_repository: str = ""
    head_ref: str = ""
    title: str = ""
    body: str = ""
    commits: list[dict[str, Any]] = field(default_factory=list)
    published: Any = None
    external_id: str = ""

    def is_imported(self) -> bool:
        """True if this spec imports an existing changeset."""
        return bool(self.external_id)

    def to_dict(self) -> dict[str, Any]:
        """The JSON form sent to the API."""
        if self.is_imported():
            return {"baseRepository": self.base_repository, "externalID": self.external_id}
        result: dict[str, Any] = {
            "baseRepository": self.base_repository,
            "baseRef": self.base_ref,
            "baseRev": self.base_rev,
            "headRepository": self.head_repository,
            "headRef": self.head_ref,
            "title": self.title,
            "body": self.body,
            "commits": self.commits,
        }
        if self.published is not None:
            result["published"] = self.published
        return result


class DuplicateBranchesError(ServiceError):
    """Several changeset specs push to the same branch of one repository."""

    def __init__(self, duplicates: dict[Repository, dict[str, int]]) -> None:
        self.duplicates = duplicates
        lines = ["Multiple changeset specs have the same branch:\n\n"]
        for repo, branches in duplicates.items():
            for branch, count in branches.items():
                short = branch.removeprefix("refs/heads/")
                lines.append(
                    f"\t* {repo.name}: {count} changeset specs have the branch "
                    f"{json.dumps(short)}\n"
                )
        lines.append(
            "\nMake sure that the changesetTemplate.branch field in the batch spec "
            "produces unique values for each changeset in a single repository and "
            "rerun this command."
        )
        super().__init__("".join(lines))


class _RepoSetError(ServiceError):
    """A set of skipped repositories, raised together with the repositories kept."""

    _description = ""

    def __init__(
        self, repos: Iterable[Repository] = (), resolved: Iterable[Repository] = ()
    ) -> None:
        super().__init__()
        self._repos: dict[Repository, None] = dict.fromkeys(repos)
        self.resolved: list[Repository] = list(resolved)

    def append(self, repo: Repository) -> None:
        self._repos[repo] = None

    def __contains__(self, repo: object) -> bool:
        return repo in self._repos

    def __iter__(self) -> Iterator[Repository]:
        return iter(self._repos)

    def __len__(self) -> int:
        return len(self._repos)

    def __str__(self) -> str:
        names = ", ".join(repo.name for repo in self._repos)
        return f"found {len(self._repos)} {self._description}: {names}"


class UnsupportedRepoSet(_RepoSetError):
    """Repositories hosted on code hosts that batch changes do not support."""

    _description = "repositories on unsupported code hosts"


class IgnoredRepoSet(_RepoSetError):
    """Repositories that contain a .batchignore file."""

    _description = "repositories containing .batchignore files"


class RepositoryRuleType(enum.Enum):
    QUERY = "query"
    EXPLICIT = "explicit"


class _RevisionAggregator:
    """Collects repository revisions over all rules.

    Revisions named explicitly replace those a query found for the same repository.
    """

    def __init__(self) -> None:
        self._order: dict[str, None] = {}
        self._by_type: dict[RepositoryRuleType, dict[str, dict[str, Repository]]] = {
            RepositoryRuleType.QUERY: {},
            RepositoryRuleType.EXPLICIT: {},
        }

    def add(self, rule_type: RepositoryRuleType, repo: Repository) -> None:
        self._order.setdefault(repo.id)
        revisions = self._by_type[rule_type].setdefault(repo.id, {})
        revisions.setdefault(repo._branch_name(), repo)

    def revisions(self) -> list[Repository]:
        explicit = self._by_type[RepositoryRuleType.EXPLICIT]
        query = self._by_type[RepositoryRuleType.QUERY]
        result: list[Repository] = []
        for repo_id in self._order:
            result.extend((explicit.get(repo_id) or query[repo_id]).values())
        return result


_SUPPORTED_CODE_HOSTS = frozenset({"github", "gitlab", "bitbucketserver"})
_FIND_DIRECTORIES_BATCH_SIZE = 50
_DEFAULT_QUERY_COUNT = re.compile(r"\bcount:(\d+|all)\b")
HARD_CODED_COUNT = " count:999999"
_GO_REGEX_SPECIALS = frozenset("\\.+*?()|[]{}^$")

_VERSION_QUERY = """query SourcegraphVersion {
	site {
	  productVersion
	}
  }
  """

_CREATE_CHANGESET_SPEC_MUTATION = """
mutation CreateChangesetSpec($spec: String!) {
    createChangesetSpec(changesetSpec: $spec) {
        ... on HiddenChangesetSpec {
            id
        }
        ... on VisibleChangesetSpec {
            id
        }
    }
}
"""

_NAMESPACE_QUERY = """
query NamespaceQuery($name: String!) {
    user(username: $name) {
        id
    }

    organization(name: $name) {
        id
    }
}
"""

_USERNAME_QUERY = """
query GetCurrentUserID {
    currentUser {
        id
    }
}
"""

_REPOSITORY_FIELDS_FRAGMENT = """
fragment repositoryFields on Repository {
    id
    name
    url
    externalRepository {
        serviceType
    }
    defaultBranch {
        name
        target {
            oid
        }
    }
    commit(rev: $rev) @include(if: $queryCommit) {
        oid
    }
}
"""

_REPOSITORY_NAME_QUERY = (
    """
query Repository($name: String!, $queryCommit: Boolean!, $rev: String!) {
    repository(name: $name) {
        ...repositoryFields
    }
}
"""
    + _REPOSITORY_FIELDS_FRAGMENT
)

_REPOSITORY_SEARCH_QUERY = (
    """
query ChangesetRepos(
    $query: String!,
	$queryCommit: Boolean!,
	$rev: String!,
) {
    search(query: $query, version: V2) {
        results {
            results {
                __typename
                ... on Repository {
                    ...repositoryFields
                }
                ... on FileMatch {
                    file { path }
                    repository {
                        ...repositoryFields
                    }
                }
            }
        }
    }
}
"""
    + _REPOSITORY_FIELDS_FRAGMENT
)

_SEARCH_QUERY_TMPL = """%s: search(query: %s, version: V2) {
	results {
		results {
			__typename
			... on FileMatch {
				file { path }
			}
		}
	}
}
"""

_EXAMPLE_SPEC = """name: NAME-OF-YOUR-BATCH-CHANGE
description: DESCRIPTION-OF-YOUR-BATCH-CHANGE

# "on" specifies on which repositories to execute the "steps".
on:
  # Example: find all repositories that contain a README.md file.
  - repositoriesMatchingQuery: file:README.md

# "steps" are run in each repository. Each step is run in a Docker container
# with the repository as the working directory. Once complete, each
# repository's resulting diff is captured.
steps:
  # Example: append "Hello World" to every README.md
  - run: echo "Hello World" | tee -a $(find -name README.md)
    container: alpine:3

# "changesetTemplate" describes the changeset (e.g., GitHub pull request) that
# will be created for each repository.
changesetTemplate:
  title: Hello World
  body: This adds Hello World to the README

  branch: BRANCH-NAME-IN-EACH-REPOSITORY # Push the commit to this branch.

  commit:
    author:
      name: {author_name}
      email: {author_email}
    message: Append Hello World to all README.md files
"""

_EXAMPLE_SPEC_PUBLISH_FLAG = """
  # Change published to true once you're ready to create changesets on the code host.
  published: false
"""

_DEFAULT_AUTHOR_NAME = "Sourcegraph"
_DEFAULT_AUTHOR_EMAIL = "[email]"

_HTML_ESCAPES = str.maketrans(
    {"&": "&amp;", "'": "&#39;", "<": "&lt;", ">": "&gt;", '"': "&#34;", "\0": "\ufffd"}
)


def _quote_meta(text: str) -> str:
    return "".join("\\" + char if char in _GO_REGEX_SPECIALS else char for char in text)


def _workspace_dir(file_path: str) -> str:
    directory = posixpath.dirname(file_path)
    # The root of the repository is represented by an empty path.
    return "" if directory in ("", ".") else directory


def _git_config(attribute: str) -> str | None:
    try:
        completed = subprocess.run(
            ["git", "config", "--get", attribute],
            capture_output=True,
            text=True,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError):
        return None
    return completed.stdout.strip()


def set_default_query_count(query: str) -> str:
    """Append a large ``count:`` to a search query unless it sets one itself."""
    if _DEFAULT_QUERY_COUNT.search(query):
        return query
    return query + HARD_CODED_COUNT


def parse_search_result(data: Mapping[str, Any]) -> Repository:
    """Turn one search result (a Repository or a FileMatch) into a repository."""
    typename = data.get("__typename")
    if typename == "FileMatch":
        repo = Repository.from_json(data.get("repository") or {})
        path = (data.get("file") or {}).get("path") or ""
        repo.file_matches = {path: True}
        return repo
    if typename == "Repository":
        repo = Repository.from_json(data)
        repo.file_matches = {}
        return repo
    raise ValueError(f"unknown GraphQL type {json.dumps(typename)}")


class Service:
    """Talks to the API on behalf of batch change commands."""

    def __init__(
        self,
        client: GraphQLClient,
        allow_unsupported: bool = False,
        allow_ignored: bool = False,
    ) -> None:
        self._client = client
        self.allow_unsupported = allow_unsupported
        self.allow_ignored = allow_ignored
        self.allow_optional_published = False

    def _query_raw(
        self, query: str, variables: Mapping[str, Any] | None = None
    ) -> dict[str, Any]:
        return self._client.request(query, variables)

    def _query(
        self, query: str, variables: Mapping[str, Any] | None = None
    ) -> dict[str, Any]:
        response = self._query_raw(query, variables)
        errors = response.get("errors")
        if errors:
            raise GraphQLError(errors)
        return response.get("data") or {}

    def get_sourcegraph_version(self) -> str:
        """The product version of the instance."""
        data = self._query(_VERSION_QUERY)
        return (data.get("site") or {}).get("productVersion") or ""

    def create_changeset_spec(self, spec: ChangesetSpec) -> str:
        """Upload a changeset spec and return its ID."""
        data = self._query(
            _CREATE_CHANGESET_SPEC_MUTATION, {"spec": json.dumps(spec.to_dict())}
        )
        return (data.get("createChangesetSpec") or {}).get("id") or ""

    def validate_changeset_specs(
        self, repos: Iterable[Repository], specs: Iterable[ChangesetSpec]
    ) -> None:
        """Raise DuplicateBranchesError if specs share a branch in one repository."""
        repo_by_id = {repo.id: repo for repo in repos}

        by_repo_and_branch: dict[str, dict[str, int]] = {}
        for spec in specs:
            # Imported changesets can never collide on a branch name.
            if spec.is_imported():
                continue
            branches = by_repo_and_branch.setdefault(spec.head_repository, {})
            branches[spec.head_ref] = branches.get(spec.head_ref, 0) + 1

        duplicates: dict[Repository, dict[str, int]] = {}
        for repo_id, branches in by_repo_and_branch.items():
            for branch, count in branches.items():
                if count < 2:
                    continue
                repo = repo_by_id.get(repo_id) or Repository(id=repo_id, name=repo_id)
                duplicates.setdefault(repo, {})[branch] = count

        if duplicates:
            raise DuplicateBranchesError(duplicates)

    def generate_example_spec(self, file_name: str) -> None:
        """Write an example batch spec to a new file; refuse to overwrite one."""
        try:
            handle = open(file_name, "x", encoding="utf-8")
        except FileExistsError as err:
            raise FileExistsError(f"file {file_name} already exists") from err
        except OSError as err:
            raise ServiceError(f"failed to create file {file_name}: {err}") from err

        author_name, author_email = _DEFAULT_AUTHOR_NAME, _DEFAULT_AUTHOR_EMAIL
        git_name = _git_config("user.name")
        git_email = _git_config("user.email")
        if git_name and git_email:
            author_name, author_email = git_name, git_email

        template = _EXAMPLE_SPEC
        if not self.allow_optional_published:
            template += _EXAMPLE_SPEC_PUBLISH_FLAG

        with handle:
            handle.write(
                template.format(
                    author_name=author_name.translate(_HTML_ESCAPES),
                    author_email=author_email.translate(_HTML_ESCAPES),
                )
            )

    def resolve_namespace(self, namespace: str) -> str:
        """The ID of a user or organisation; the current user's if none is given."""
        if not namespace:
            try:
                response = self._query_raw(_USERNAME_QUERY)
            except Exception as err:
                raise ServiceError(
                    f"failed to resolve namespace: no user logged in: {err}"
                ) from err
            current_user = (response.get("data") or {}).get("currentUser") or {}
            user_id = current_user.get("id") or ""
            if not user_id:
                raise ServiceError("cannot resolve current user")
            return user_id

        response = self._query_raw(_NAMESPACE_QUERY, {"name": namespace})
        data = response.get("data") or {}
        for kind in ("user", "organization"):
            entry = data.get(kind)
            if entry is not None:
                return entry.get("id") or ""
        raise ServiceError(
            f"failed to resolve namespace {json.dumps(namespace)}: "
            "no user or organization found"
        )

    def resolve_repositories(
        self, on_rules: Iterable[OnQueryOrRepository]
    ) -> list[Repository]:
        """Resolve every rule to repositories with a branch.

        Raises UnsupportedRepoSet or IgnoredRepoSet when repositories were
        skipped; the repositories kept are on the exception's ``resolved``.
        """
        aggregator = _RevisionAggregator()
        unsupported = UnsupportedRepoSet()
        ignored = IgnoredRepoSet()

        for on in on_rules:
            try:
                repos, rule_type = self.resolve_repositories_on(on)
            except (ServiceError, ValueError) as err:
                raise ServiceError(f"resolving {json.dumps(str(on))}: {err}") from err

            with_branch = [repo for repo in repos if repo.has_branch()]

            batch_ignores: dict[Repository, list[str]] = {}
            if not self.allow_ignored:
                batch_ignores = self.find_directories_in_repos(".batchignore", *with_branch)

            for repo in with_branch:
                aggregator.add(rule_type, repo)
                if (
                    repo.external_service_type.lower() not in _SUPPORTED_CODE_HOSTS
                    and not self.allow_unsupported
                ):
                    unsupported.append(repo)
                if not self.allow_ignored and batch_ignores.get(repo):
                    ignored.append(repo)

        final = [
            repo
            for repo in aggregator.revisions()
            if repo not in unsupported and repo not in ignored
        ]
        if len(unsupported):
            unsupported.resolved = final
            raise unsupported
        if len(ignored):
            ignored.resolved = final
            raise ignored
        return final

    def resolve_repositories_on(
        self, on: OnQueryOrRepository
    ) -> tuple[list[Repository], RepositoryRuleType]:
        """Resolve one rule to repositories and tell which kind of rule it was."""
        if on.repositories_matching_query:
            return (
                self.resolve_repository_search(on.repositories_matching_query),
                RepositoryRuleType.QUERY,
            )
        if on.repository:
            branches = on.branches()
            if branches:
                repos = [
                    self.resolve_repository_name_and_branch(on.repository, branch)
                    for branch in branches
                ]
                return repos, RepositoryRuleType.EXPLICIT
            return [self.resolve_repository_name(on.repository)], RepositoryRuleType.EXPLICIT
        raise MalformedOnQueryOrRepositoryError()

    def resolve_repository_name(self, name: str) -> Repository:
        """Look a repository up by name."""
        data = self._query(
            _REPOSITORY_NAME_QUERY, {"name": name, "queryCommit": False, "rev": ""}
        )
        repository = data.get("repository")
        if repository is None:
            raise ServiceError("no repository found")
        return Repository.from_json(repository)

    def resolve_repository_name_and_branch(self, name: str, branch: str) -> Repository:
        """Look a repository up by name, pinned to the given branch."""
        data = self._query(
            _REPOSITORY_NAME_QUERY, {"name": name, "queryCommit": True, "rev": branch}
        )
        repository = data.get("repository")
        if repository is None:
            raise ServiceError("no repository found")
        repo = Repository.from_json(repository)
        if not repo.commit.oid:
            raise ServiceError(
                f"no branch matching {json.dumps(branch)} found for repository {name}"
            )
        repo.branch = Branch(name=branch, target=repo.commit)
        return repo

    def resolve_repository_search(self, query: str) -> list[Repository]:
        """Run a search and fold its results into one repository per ID."""
        data = self._query(
            _REPOSITORY_SEARCH_QUERY,
            {"query": set_default_query_count(query), "queryCommit": False, "rev": ""},
        )
        results = ((data.get("search") or {}).get("results") or {}).get("results") or []

        by_id: dict[str, Repository] = {}
        for result in results:
            repo = parse_search_result(result)
            existing = by_id.get(repo.id)
            if existing is None:
                by_id[repo.id] = repo
            else:
                existing.file_matches.update(dict.fromkeys(repo.file_matches, True))
        return list(by_id.values())

    def find_directories_in_repos(
        self, file_name: str, *args: Repository
    ) -> dict[Repository, list[str]]:
        """Map each given repository to the directories holding ``file_name``.

        Directories are relative to the repository root, which is "".
        """
        repos = list(args)
        by_query_id: dict[str, Repository] = {}
        query_id_for: dict[Repository, str] = {}
        for index, repo in enumerate(repos):
            query_id = f"repo_{index}"
            by_query_id[query_id] = repo
            query_id_for[repo] = query_id

        results: dict[Repository, list[str]] = {}
        for start in range(0, len(repos), _FIND_DIRECTORIES_BATCH_SIZE):
            batch = repos[start : start + _FIND_DIRECTORIES_BATCH_SIZE]
            parts = ["query DirectoriesContainingFile {\n"]
            for repo in batch:
                search = (
                    f"file:(^|/){_quote_meta(file_name)}$ "
                    f"repo:^{_quote_meta(repo.name)}$@{repo.rev()} "
                    "type:path count:99999"
                )
                parts.append(_SEARCH_QUERY_TMPL % (query_id_for[repo], json.dumps(search)))
            parts.append("}")

            data = self._query("".join(parts))
            for query_id, search_data in data.items():
                repo = by_query_id.get(query_id)
                if repo is None:
                    raise ServiceError(
                        f"result for query {json.dumps(query_id)} did not match any repository"
                    )
                found = ((search_data or {}).get("results") or {}).get("results") or []
                files = dict.fromkeys(
                    path for result in found for path in parse_search_result(result).file_matches
                )
                results[repo] = [_workspace_dir(path) for path in files]

        return results