"""
Update cycle: sync -> extract -> resolve/patch per candidate -> commit/push.

One ImageUpdater owns the working copy; its lock serializes cycles so resets,
patches and pushes of two triggers never interleave.
"""
import asyncio
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import aiohttp
import structlog

from image_updater.config import Settings
from image_updater.errors import ImageUpdaterError, PushError
from image_updater.logging import get_logger
from image_updater.manifests import Candidate, find_candidates
from image_updater.overrides import override_path, patch
from image_updater.registry import RegistryAuth, RegistryClient
from image_updater.repository import (
    RepositoryHandle,
    SshKeyCredentials,
    commit_and_push,
    sync_to_tracked_branch,
)
from image_updater.tags import resolve_latest_tag

log = get_logger(__name__)


@dataclass
class ImageChange:
    app: str
    image: str
    parameter: str
    path: str
    previous: str
    tag: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "app": self.app,
            "image": self.image,
            "parameter": self.parameter,
            "path": self.path,
            "from": self.previous,
            "to": self.tag,
        }


@dataclass
class CandidateFailure:
    app: str
    image: str
    registry_url: str
    error: str


@dataclass
class UpdateReport:
    """Outcome of one update cycle."""

    candidates: int = 0
    changes: List[ImageChange] = field(default_factory=list)
    errors: List[CandidateFailure] = field(default_factory=list)
    commit: Optional[str] = None
    dry_run: bool = False

    @property
    def has_changes(self) -> bool:
        return bool(self.changes)

    def summary(self) -> Dict[str, Any]:
        return {
            "candidates": self.candidates,
            "changed": len(self.changes),
            "failed": len(self.errors),
            "commit": self.commit,
            "dry_run": self.dry_run,
        }


class ImageUpdater:
    """Runs update cycles against one manifest repository working copy."""

    def __init__(self, settings: Settings, registry_scheme: str = "https") -> None:
        self._remote_url = settings.repository_url
        self._repo_dir = Path(settings.repo_dir)
        self._credentials = SshKeyCredentials(settings.ssh_key_path)
        self._auth = RegistryAuth(settings.github_username, settings.github_key.get_secret_value())
        self._registry_scheme = registry_scheme
        self._registry_timeout = settings.registry_timeout
        self._registry_concurrency = settings.registry_concurrency
        self._dry_run = settings.dry_run
        self._lock = asyncio.Lock()

    @property
    def is_busy(self) -> bool:
        return self._lock.locked()

    async def sync(self) -> RepositoryHandle:
        """Reset the working copy to the remote main tip (also used at startup)."""
        async with self._lock:
            return await self._sync()

    async def run(self) -> UpdateReport:
        """Run one full update cycle; waits for any cycle already in progress."""
        async with self._lock:
            with structlog.contextvars.bound_contextvars(run_id=uuid.uuid4().hex[:12]):
                return await self._do_run()

    async def _sync(self) -> RepositoryHandle:
        return await asyncio.to_thread(
            sync_to_tracked_branch, self._remote_url, self._repo_dir, self._credentials
        )

    async def _do_run(self) -> UpdateReport:
        start_time = time.monotonic()
        report = UpdateReport(dry_run=self._dry_run)

        handle = await self._sync()
        candidates = await asyncio.to_thread(find_candidates, self._repo_dir)
        report.candidates = len(candidates)

        semaphore = asyncio.Semaphore(self._registry_concurrency)
        async with aiohttp.ClientSession() as session:
            client = RegistryClient(
                session,
                self._auth,
                scheme=self._registry_scheme,
                timeout=self._registry_timeout,
            )
            tasks = [self._update_candidate(client, semaphore, c) for c in candidates]
            results = await asyncio.gather(*tasks, return_exceptions=True)

        for candidate, result in zip(candidates, results):
            self._record(report, candidate, result)

        if not report.has_changes:
            log.info("no_image_changes", **report.summary())
            return report

        if self._dry_run:
            log.info("dry_run_skipping_commit", **report.summary())
            return report

        try:
            report.commit = await asyncio.to_thread(commit_and_push, handle, self._credentials)
        except PushError as e:
            log.error("push_failed", error=str(e), changed=len(report.changes))
            raise

        log.info(
            "update_cycle_complete",
            duration=round(time.monotonic() - start_time, 2),
            **report.summary(),
        )
        return report

    async def _update_candidate(
        self, client: RegistryClient, semaphore: asyncio.Semaphore, candidate: Candidate
    ) -> Optional[ImageChange]:
        async with semaphore:
            tag = await resolve_latest_tag(candidate, client)

        previous = await patch(self._repo_dir, candidate, tag, dry_run=self._dry_run)
        if not previous:
            log.debug("up_to_date", app=candidate.app_name, image=candidate.image_name, tag=tag)
            return None

        return ImageChange(
            app=candidate.app_name,
            image=candidate.image_name,
            parameter=candidate.override_parameter_name,
            path=str(override_path(self._repo_dir, candidate).relative_to(self._repo_dir)),
            previous=previous[0],
            tag=tag,
        )

    def _record(
        self,
        report: UpdateReport,
        candidate: Candidate,
        result: Union[Optional[ImageChange], BaseException],
    ) -> None:
        if isinstance(result, BaseException) and not isinstance(result, Exception):
            raise result
        if isinstance(result, Exception):
            context = {
                "app": candidate.app_name,
                "image": candidate.image_name,
                "registry_url": candidate.registry_url,
                "path": candidate.source_file,
                "error": f"{type(result).__name__}: {result}",
            }
            if isinstance(result, ImageUpdaterError):
                log.warning("candidate_skipped", **context)
            else:
                log.error("candidate_failed", exc_info=result, **context)
            report.errors.append(
                CandidateFailure(
                    app=candidate.app_name,
                    image=candidate.image_name,
                    registry_url=candidate.registry_url,
                    error=context["error"],
                )
            )
        elif result is not None:
            report.changes.append(result)
