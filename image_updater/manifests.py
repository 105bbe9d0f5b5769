"""
Discover image-update candidates from Argo CD Application manifests.

An Application opts in through ``argocd-image-updater.argoproj.io`` annotations:

    metadata:
      name: api
      annotations:
        argocd-image-updater.argoproj.io/image-list: api=ghcr.io/org/api
        argocd-image-updater.argoproj.io/api.allow-tags: regexp:^v\\d+$
        argocd-image-updater.argoproj.io/api.helm.image-tag: image.tag
    spec:
      source:
        path: apps/api

Every ``name=registry_url`` pair with both per-image annotations yields one
Candidate.
"""
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from image_updater.errors import ParseError
from image_updater.logging import get_logger

log = get_logger(__name__)

ARGO_API_VERSION = "argoproj.io/v1alpha1"
ARGO_KIND = "Application"

ANNOTATION_PREFIX = "argocd-image-updater.argoproj.io"
IMAGE_LIST_ANNOTATION = f"{ANNOTATION_PREFIX}/image-list"

YAML_SUFFIXES = (".yaml", ".yml")


@dataclass(frozen=True)
class Candidate:
    """One (Application, declared image) pair eligible for tag resolution."""

    app_name: str
    registry_url: str
    allow_tags: str
    override_parameter_name: str
    manifest_relative_path: str
    image_name: str = ""
    source_file: str = ""


@dataclass(frozen=True)
class ExtractionIssue:
    """Why a document or a single image was skipped."""

    source: str
    reason: str
    app_name: str | None = None
    image_name: str | None = None


def allow_tags_annotation(image_name: str) -> str:
    return f"{ANNOTATION_PREFIX}/{image_name}.allow-tags"


def helm_image_tag_annotation(image_name: str) -> str:
    return f"{ANNOTATION_PREFIX}/{image_name}.helm.image-tag"


def _get_mapping(data: dict, key: str) -> dict | None:
    value = data.get(key)
    return value if isinstance(value, dict) else None


def _get_str(data: dict, key: str) -> str | None:
    value = data.get(key)
    return value if isinstance(value, str) else None


def is_argo_app(document: dict) -> bool:
    """Check whether a parsed document is an Argo CD Application."""
    return (
        document.get("apiVersion") == ARGO_API_VERSION
        and document.get("kind") == ARGO_KIND
    )


def parse_image_list(image_list: str) -> list[tuple[str, str]]:
    """
    Split an ``image-list`` annotation into ``(name, registry_url)`` pairs.

    Entries are comma separated and split on the first ``=``; entries without
    ``=`` are dropped.

    Examples:
        >>> parse_image_list("api=ghcr.io/org/api, worker=ghcr.io/org/worker")
        [('api', 'ghcr.io/org/api'), ('worker', 'ghcr.io/org/worker')]
    """
    pairs = []
    for entry in image_list.split(","):
        entry = entry.strip()
        if "=" not in entry:
            continue
        name, url = entry.split("=", 1)
        pairs.append((name, url))
    return pairs


def candidates_from_document(
    document: dict[str, Any], source: str = ""
) -> tuple[list[Candidate], list[ExtractionIssue]]:
    """
    Extract candidates from a single parsed Application document.

    Returns (candidates, issues). Missing fields never raise: the document, or
    the single image concerned, is skipped and the reason recorded in issues.
    """
    candidates: list[Candidate] = []
    issues: list[ExtractionIssue] = []

    metadata = _get_mapping(document, "metadata") or {}
    annotations = _get_mapping(metadata, "annotations")
    app_name = _get_str(metadata, "name")
    if annotations is None:
        issues.append(ExtractionIssue(source, "no metadata.annotations", app_name))
        return candidates, issues
    if not app_name:
        issues.append(ExtractionIssue(source, "no metadata.name"))
        return candidates, issues

    image_list = _get_str(annotations, IMAGE_LIST_ANNOTATION)
    if image_list is None:
        issues.append(ExtractionIssue(source, "no image-list annotation", app_name))
        return candidates, issues

    spec = _get_mapping(document, "spec") or {}
    spec_source = _get_mapping(spec, "source") or {}
    path = _get_str(spec_source, "path")
    if path is None:
        issues.append(ExtractionIssue(source, "no spec.source.path", app_name))
        return candidates, issues

    for name, url in parse_image_list(image_list):
        allow_tags = _get_str(annotations, allow_tags_annotation(name))
        if allow_tags is None:
            issues.append(ExtractionIssue(source, "image without allow-tags", app_name, name))
            continue
        helm_image_tag = _get_str(annotations, helm_image_tag_annotation(name))
        if helm_image_tag is None:
            issues.append(ExtractionIssue(source, "image without helm.image-tag", app_name, name))
            continue

        candidates.append(
            Candidate(
                app_name=app_name,
                registry_url=url,
                allow_tags=allow_tags,
                override_parameter_name=helm_image_tag,
                manifest_relative_path=path,
                image_name=name,
                source_file=source,
            )
        )

    return candidates, issues


def load_documents(path: Path) -> list[Any]:
    """Load every YAML document of a (possibly multi-document) file."""
    try:
        with path.open("r", encoding="utf-8") as f:
            return [doc for doc in yaml.safe_load_all(f)]
    except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
        raise ParseError(f"{path}: {type(e).__name__}: {e}") from e


def candidates_from_file(path: Path, repo_root: Path | None = None) -> list[Candidate]:
    """Extract candidates from one manifest file, logging every skip."""
    source = str(path.relative_to(repo_root)) if repo_root else str(path)
    candidates: list[Candidate] = []

    for document in load_documents(path):
        if not isinstance(document, dict):
            log.debug("document_not_a_mapping", path=source)
            continue
        if not is_argo_app(document):
            continue

        found, issues = candidates_from_document(document, source)
        for issue in issues:
            # A missing per-image annotation is most likely a typo; whole-document
            # skips are the common case of an Application without auto-update.
            if issue.image_name is not None:
                log.warning(
                    "image_skipped",
                    path=issue.source,
                    app=issue.app_name,
                    image=issue.image_name,
                    reason=issue.reason,
                )
            else:
                log.debug(
                    "application_skipped",
                    path=issue.source,
                    app=issue.app_name,
                    reason=issue.reason,
                )
        candidates.extend(found)

    return candidates


def iter_manifest_files(repo_root: Path) -> list[Path]:
    """Return every regular ``.yaml``/``.yml`` file under repo_root, sorted."""
    files = []
    for path in repo_root.rglob("*"):
        if ".git" in path.relative_to(repo_root).parts:
            continue
        if path.suffix in YAML_SUFFIXES and path.is_file():
            files.append(path)
    return sorted(files)


def find_candidates(repo_root: Path) -> list[Candidate]:
    """
    Walk the manifest repository and collect every image-update candidate.

    Files that fail to parse are skipped with a warning. An unreadable root
    raises ParseError.
    """
    repo_root = Path(repo_root)
    if not repo_root.is_dir():
        raise ParseError(f"Manifest repository root {repo_root} is not a directory")

    log.info("extracting_candidates", repo_root=str(repo_root))
    candidates: list[Candidate] = []

    for path in iter_manifest_files(repo_root):
        try:
            candidates.extend(candidates_from_file(path, repo_root))
        except ParseError as e:
            log.warning("manifest_parse_failed", path=str(path), error=str(e))
            continue

    log.info("candidates_extracted", count=len(candidates))
    return candidates
