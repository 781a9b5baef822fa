import base64
import hashlib

from batchkit.util import (
    TemplatingRepo,
    ensure_ref_prefix,
    new_templating_repo,
    slug_for_path_in_repo,
    slug_for_repo,
)

REPO_NAME = "github.com/sourcegraph/src-cli"
COMMIT = "d34db33f"


def test_new_templating_repo_takes_all_file_matches():
    repo = new_templating_repo(REPO_NAME, {"README.md": True, "main.go": True})
    assert isinstance(repo, TemplatingRepo)
    assert repo.name == REPO_NAME
    assert sorted(repo.file_matches) == ["README.md", "main.go"]


def test_new_templating_repo_includes_keys_regardless_of_flag():
    repo = new_templating_repo(REPO_NAME, {"a.txt": False})
    assert repo.file_matches == ["a.txt"]


def test_new_templating_repo_empty():
    assert new_templating_repo(REPO_NAME, {}).file_matches == []


def test_slug_for_repo_replaces_slashes():
    assert slug_for_repo(REPO_NAME, COMMIT) == "github.com-sourcegraph-src-cli-d34db33f"


def test_slug_for_path_without_path_equals_repo_slug():
    assert slug_for_path_in_repo(REPO_NAME, COMMIT, "") == slug_for_repo(REPO_NAME, COMMIT)


def test_slug_for_path_embeds_hash_of_path():
    path = "examples/project3"
    slug = slug_for_path_in_repo(REPO_NAME, COMMIT, path)
    prefix = slug_for_repo(REPO_NAME, "")
    suffix = "-" + COMMIT
    assert slug.startswith(prefix)
    assert slug.endswith(suffix)
    encoded = slug[len(prefix):-len(suffix)]
    assert "=" not in encoded
    decoded = base64.urlsafe_b64decode(encoded + "=")
    assert decoded == hashlib.sha256(path.encode()).digest()


def test_slug_for_path_has_no_slashes_and_differs_per_path():
    first = slug_for_path_in_repo(REPO_NAME, COMMIT, "a/b")
    second = slug_for_path_in_repo(REPO_NAME, COMMIT, "a/c")
    assert "/" not in first
    assert "/" not in second
    assert first != second
    assert len(first) == len(second)


def test_ensure_ref_prefix_adds_prefix():
    assert ensure_ref_prefix("main") == "refs/heads/main"


def test_ensure_ref_prefix_is_idempotent():
    once = ensure_ref_prefix("my-batch-change")
    assert ensure_ref_prefix(once) == once
    assert ensure_ref_prefix("refs/heads/branch-1") == "refs/heads/branch-1"