"""Select the newest registry tag allowed by a candidate's allow-tags pattern."""
import re
from typing import Iterable, Optional

from image_updater.errors import NoMatchingTagError
from image_updater.logging import get_logger
from image_updater.manifests import Candidate
from image_updater.registry import RegistryClient

log = get_logger(__name__)

REGEXP_PREFIX = "regexp:"

PATTERN_DIGIT_RUNS = re.compile(r"(\d+)")


def natural_sort_key(tag: str) -> tuple:
    """
    Sort key comparing embedded digit runs as numbers.

    Non-digit runs compare lexically. The tag itself is the final tie-break,
    so "01" and "1" still have a stable order.

    Examples:
        >>> sorted(["v10", "v9", "v2"], key=natural_sort_key)
        ['v2', 'v9', 'v10']
        >>> max(["v1.2", "v1.10", "v1.9"], key=natural_sort_key)
        'v1.10'
    """
    parts = []
    for chunk in PATTERN_DIGIT_RUNS.split(tag):
        if not chunk:
            continue
        if chunk.isdigit():
            parts.append((0, int(chunk), ""))
        else:
            parts.append((1, 0, chunk))
    return tuple(parts), tag


def compile_allow_tags(allow_tags: str) -> re.Pattern:
    """
    Compile an allow-tags annotation value.

    The value is always a regular expression; a leading ``regexp:`` is
    accepted for compatibility with argocd-image-updater annotations.
    """
    return re.compile(allow_tags.removeprefix(REGEXP_PREFIX))


def select_latest_tag(tags: Iterable[str], pattern: re.Pattern) -> Optional[str]:
    """Return the highest tag fully matching pattern, or None."""
    matching = [t for t in tags if pattern.fullmatch(t)]
    if not matching:
        return None
    return max(matching, key=natural_sort_key)


async def resolve_latest_tag(candidate: Candidate, client: RegistryClient) -> str:
    """Query the registry and return the newest allowed tag for a candidate."""
    log.info("resolving_tag", app=candidate.app_name, registry_url=candidate.registry_url)

    try:
        pattern = compile_allow_tags(candidate.allow_tags)
    except re.error as e:
        raise NoMatchingTagError(
            f"Invalid allow-tags pattern {candidate.allow_tags!r} for {candidate.app_name}: {e}"
        ) from e

    tags = await client.list_tags(candidate.registry_url)
    latest = select_latest_tag(tags, pattern)
    if latest is None:
        raise NoMatchingTagError(
            f"No tags matched {pattern.pattern!r} for {candidate.app_name} "
            f"({candidate.registry_url}, {len(tags)} tags listed)"
        )

    log.debug("tag_resolved", app=candidate.app_name, registry_url=candidate.registry_url, tag=latest)
    return latest
