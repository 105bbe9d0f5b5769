"""
Manifest repository working copy: fetch + hard reset, then add/commit/push.

All functions here block on git subprocesses; async callers run them in a
worker thread.
"""
import re
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import git

from image_updater.errors import PushError, SyncError
from image_updater.logging import get_logger

log = get_logger(__name__)

TRACKED_BRANCH = "main"
REMOTE_NAME = "origin"
COMMIT_MESSAGE = "Updated images"
DEFAULT_AUTHOR = git.Actor("Automatic image updater", "nobody@bananium.fr")

# user@host:path or ssh://user@host[:port]/path
PATTERN_SCP_USER = re.compile(r"^(?P<user>[^@/:]+)@[^:/]+:")
PATTERN_SSH_URL_USER = re.compile(r"^ssh://(?P<user>[^@/]+)@")

PUSH_FAILURE_FLAGS = (
    git.PushInfo.ERROR
    | git.PushInfo.REJECTED
    | git.PushInfo.REMOTE_REJECTED
    | git.PushInfo.REMOTE_FAILURE
)


def url_username(remote_url: str) -> Optional[str]:
    """Return the username embedded in an SSH remote URL, if any."""
    for pattern in (PATTERN_SSH_URL_USER, PATTERN_SCP_USER):
        match = pattern.match(remote_url)
        if match:
            return match.group("user")
    return None


@dataclass(frozen=True)
class SshKeyCredentials:
    """Public-key credentials handed to every git network operation."""

    key_path: Path
    default_username: str = "git"

    def username_for(self, requested: Optional[str]) -> str:
        return requested or self.default_username

    def ssh_command(self, requested_username: Optional[str] = None) -> str:
        """GIT_SSH_COMMAND authenticating with the key as the requested user (or git)."""
        parts = [
            "ssh",
            "-i", str(self.key_path),
            "-o", "IdentitiesOnly=yes",
            "-o", "BatchMode=yes",
            "-l", self.username_for(requested_username),
        ]
        return " ".join(shlex.quote(p) for p in parts)

    def environment(self, remote_url: str) -> dict[str, str]:
        return {"GIT_SSH_COMMAND": self.ssh_command(url_username(remote_url))}


@dataclass
class RepositoryHandle:
    repo: git.Repo
    path: Path
    remote_url: str


def _open_or_init(local_path: Path) -> git.Repo:
    try:
        return git.Repo(local_path)
    except git.InvalidGitRepositoryError:
        # Refuse to turn a non-empty, non-git directory into a working copy
        if any(local_path.iterdir()):
            raise
        return git.Repo.init(local_path)
    except git.NoSuchPathError:
        local_path.mkdir(parents=True)
        return git.Repo.init(local_path)


def sync_to_tracked_branch(
    remote_url: str, local_path: Path, credentials: SshKeyCredentials
) -> RepositoryHandle:
    """
    Make local_path an exact copy of the remote's main branch tip.

    Local commits, modifications and untracked files are discarded.
    """
    local_path = Path(local_path)
    log.info("syncing_repository", remote=remote_url, path=str(local_path))

    try:
        repo = _open_or_init(local_path)

        if REMOTE_NAME in [r.name for r in repo.remotes]:
            origin = repo.remote(REMOTE_NAME)
            if origin.url != remote_url:
                origin.set_url(remote_url)
        else:
            origin = repo.create_remote(REMOTE_NAME, remote_url)

        with repo.git.custom_environment(**credentials.environment(remote_url)):
            origin.fetch(TRACKED_BRANCH)

        repo.git.checkout("--force", "-B", TRACKED_BRANCH, "FETCH_HEAD")
        repo.git.reset("--hard", "FETCH_HEAD")
        repo.git.clean("-f", "-d")
    except (git.GitError, OSError, ValueError) as e:
        raise SyncError(f"Failed to sync {remote_url} into {local_path}: {type(e).__name__}: {e}") from e

    log.info("repository_synced", commit=repo.head.commit.hexsha)
    return RepositoryHandle(repo=repo, path=local_path, remote_url=remote_url)


def commit_and_push(
    handle: RepositoryHandle,
    credentials: SshKeyCredentials,
    author: git.Actor = DEFAULT_AUTHOR,
) -> str:
    """
    Stage the whole tree, commit it and push main to origin.

    Only call this when something changed: an empty commit is never wanted.
    Returns the pushed commit sha. No retry, no rebase.
    """
    repo = handle.repo
    try:
        repo.git.add(all=True)
        commit = repo.index.commit(COMMIT_MESSAGE, author=author, committer=author)
    except (git.GitError, OSError) as e:
        raise PushError(f"Failed to commit in {handle.path}: {type(e).__name__}: {e}") from e

    log.info("pushing", commit=commit.hexsha, branch=TRACKED_BRANCH, remote=handle.remote_url)
    try:
        origin = repo.remote(REMOTE_NAME)
        with repo.git.custom_environment(**credentials.environment(handle.remote_url)):
            results = origin.push(f"HEAD:refs/heads/{TRACKED_BRANCH}")
    except (git.GitError, OSError, ValueError) as e:
        raise PushError(f"Failed to push to {handle.remote_url}: {type(e).__name__}: {e}") from e

    if not results:
        raise PushError(f"Push to {handle.remote_url} reported no result")
    for info in results:
        if info.flags & PUSH_FAILURE_FLAGS:
            raise PushError(f"Push to {handle.remote_url} rejected: {info.summary.strip()}")

    return commit.hexsha
