"""
Read and rewrite Argo CD ``.argocd-source-<app>.yaml`` parameter override files.

File format (consumed by Argo CD, must be reproduced exactly):

    helm:
      parameters:
      - name: image.tag
        value: v2
        forcestring: false
"""
import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

import aiofiles
import yaml

from image_updater.errors import PatchError
from image_updater.logging import get_logger
from image_updater.manifests import Candidate

log = get_logger(__name__)

# Writes to the same override file are serialized
FILE_WRITE_LOCKS: Dict[Path, asyncio.Lock] = defaultdict(asyncio.Lock)


@dataclass
class Parameter:
    name: str
    value: str
    force_string: bool = False


@dataclass
class OverrideDocument:
    parameters: List[Parameter] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> "OverrideDocument":
        """Build a document from parsed YAML, raising PatchError on a bad shape."""
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise PatchError("override document is not a mapping")

        helm = data.get("helm")
        if not isinstance(helm, dict):
            raise PatchError("override document has no helm mapping")
        entries = helm.get("parameters")
        if entries is None:
            entries = []
        if not isinstance(entries, list):
            raise PatchError("helm.parameters is not a list")

        parameters = []
        for idx, entry in enumerate(entries):
            if not isinstance(entry, dict) or not isinstance(entry.get("name"), str):
                raise PatchError(f"helm.parameters[{idx}] has no name")
            value = entry.get("value")
            if value is None or isinstance(value, (dict, list)):
                raise PatchError(f"helm.parameters[{idx}] ({entry['name']}) has no scalar value")
            parameters.append(
                Parameter(
                    name=entry["name"],
                    value=str(value),
                    force_string=bool(entry.get("forcestring", False)),
                )
            )
        return cls(parameters=parameters)

    def to_dict(self) -> dict:
        return {
            "helm": {
                "parameters": [
                    {"name": p.name, "value": p.value, "forcestring": p.force_string}
                    for p in self.parameters
                ]
            }
        }

    def set_parameter(self, name: str, value: str) -> List[str]:
        """
        Set every parameter called name to value.

        Returns the previous values of the entries that actually changed.
        Duplicated names are all updated; missing names are never inserted.
        """
        previous = []
        for parameter in self.parameters:
            if parameter.name == name and parameter.value != value:
                previous.append(parameter.value)
                parameter.value = value
        return previous


def override_path(repo_root: Path, candidate: Candidate) -> Path:
    """
    Location of the override file for a candidate's application.

    Raises PatchError when the source path points outside repo_root.
    """
    path = (
        Path(repo_root)
        / candidate.manifest_relative_path
        / f".argocd-source-{candidate.app_name}.yaml"
    )
    if not path.resolve().is_relative_to(Path(repo_root).resolve()):
        raise PatchError(
            f"{candidate.app_name}: source path {candidate.manifest_relative_path!r} "
            "is outside the repository"
        )
    return path


def dump_overrides(document: OverrideDocument) -> str:
    return yaml.safe_dump(document.to_dict(), default_flow_style=False, sort_keys=False)


async def load_overrides(path: Path) -> OverrideDocument:
    """Load an override file; a missing file is an empty document."""
    if not path.exists():
        return OverrideDocument()
    try:
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            content = await f.read()
        return OverrideDocument.from_dict(yaml.safe_load(content))
    except PatchError as e:
        raise PatchError(f"{path}: {e}") from e
    except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
        raise PatchError(f"{path}: {type(e).__name__}: {e}") from e


async def write_overrides(path: Path, document: OverrideDocument) -> None:
    try:
        async with aiofiles.open(path, "w", encoding="utf-8") as f:
            await f.write(dump_overrides(document))
    except OSError as e:
        raise PatchError(f"{path}: {type(e).__name__}: {e}") from e


async def patch(repo_root: Path, candidate: Candidate, resolved_tag: str, dry_run: bool = False) -> List[str]:
    """
    Pin candidate's parameter to resolved_tag in its override file.

    Returns the previous values that were replaced (empty when nothing
    changed). The file is rewritten in full only when something changed.
    """
    path = override_path(repo_root, candidate)

    async with FILE_WRITE_LOCKS[path.resolve()]:
        document = await load_overrides(path)
        previous = document.set_parameter(candidate.override_parameter_name, resolved_tag)
        if not previous:
            return previous

        log.info(
            "updating_parameter",
            app=candidate.app_name,
            registry_url=candidate.registry_url,
            parameter=candidate.override_parameter_name,
            previous=previous[0],
            tag=resolved_tag,
            path=str(path),
            dry_run=dry_run,
        )
        if not dry_run:
            await write_overrides(path, document)

    return previous


async def apply(repo_root: Path, candidate: Candidate, resolved_tag: str, dry_run: bool = False) -> bool:
    """Patch the override file and report whether any parameter changed."""
    return bool(await patch(repo_root, candidate, resolved_tag, dry_run=dry_run))
