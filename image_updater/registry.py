"""
Container registry tag listing over the Docker Registry HTTP API V2.

Works against any distribution-compatible registry (ghcr.io, Docker Hub, quay.io,
self-hosted). Credentials are sent as HTTP Basic first; registries that answer
with a ``WWW-Authenticate: Bearer`` challenge get a token exchange using the same
credentials.
"""
import asyncio
import re
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import urljoin

import aiohttp

from image_updater.errors import RegistryError
from image_updater.logging import get_logger

log = get_logger(__name__)

DOCKER_HUB = "docker.io"
DOCKER_HUB_API = "registry-1.docker.io"

# Repository path components as defined by the distribution reference grammar
PATH_COMPONENT = r"[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*"
PATTERN_REPOSITORY = re.compile(rf"^{PATH_COMPONENT}(?:/{PATH_COMPONENT})*$")
PATTERN_LINK_NEXT = re.compile(r'<([^>]+)>;\s*rel="next"')
PATTERN_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')

PAGE_SIZE = 1000


@dataclass(frozen=True)
class RegistryAuth:
    """Registry credentials, shared by every query of the process."""

    username: str
    token: str = field(repr=False)

    def basic(self) -> aiohttp.BasicAuth:
        return aiohttp.BasicAuth(self.username, self.token)


@dataclass(frozen=True)
class ImageReference:
    """A parsed ``[registry/]repository[:tag][@digest]`` reference."""

    registry: str
    repository: str

    @property
    def api_host(self) -> str:
        return DOCKER_HUB_API if self.registry == DOCKER_HUB else self.registry

    @classmethod
    def parse(cls, reference: str) -> "ImageReference":
        """
        Parse an image reference into registry host and repository path.

        Examples:
            ghcr.io/org/api -> ("ghcr.io", "org/api")
            nginx:1.25 -> ("docker.io", "library/nginx")
            localhost:5000/app@sha256:abc -> ("localhost:5000", "app")
        """
        ref = reference.strip()
        if not ref:
            raise RegistryError("Empty image reference")

        # Drop digest, then tag (a ':' after the last '/')
        ref = ref.split("@", 1)[0]
        head, _, last = ref.rpartition("/")
        if ":" in last:
            last = last.rsplit(":", 1)[0]
        ref = f"{head}/{last}" if head else last

        parts = ref.split("/")
        if len(parts) > 1 and ("." in parts[0] or ":" in parts[0] or parts[0] == "localhost"):
            registry = parts[0]
            repository = "/".join(parts[1:])
        else:
            registry = DOCKER_HUB
            repository = ref if len(parts) > 1 else f"library/{ref}"

        if not PATTERN_REPOSITORY.match(repository):
            raise RegistryError(f"Invalid image reference: {reference!r}")

        return cls(registry=registry, repository=repository)


def parse_bearer_challenge(header: str) -> Optional[dict[str, str]]:
    """
    Parse a ``WWW-Authenticate: Bearer realm=...,service=...,scope=...`` header.

    Returns None when the challenge is not a Bearer challenge.
    """
    scheme, _, params = header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return dict(PATTERN_CHALLENGE_PARAM.findall(params))


class RegistryClient:
    """Lists tags of image references using one shared aiohttp session."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        auth: Optional[RegistryAuth] = None,
        scheme: str = "https",
        timeout: float = 30.0,
    ) -> None:
        self._session = session
        self._auth = auth
        self._scheme = scheme
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def list_tags(self, reference: str) -> list[str]:
        """Return every tag of the referenced repository, following pagination."""
        image = ImageReference.parse(reference)
        base = f"{self._scheme}://{image.api_host}"
        url: Optional[str] = f"{base}/v2/{image.repository}/tags/list?n={PAGE_SIZE}"

        headers: dict[str, str] = {}
        if self._auth:
            headers["Authorization"] = self._auth.basic().encode()

        tags: list[str] = []
        token_exchanged = False

        try:
            while url:
                async with self._session.get(url, headers=headers, timeout=self._timeout) as resp:
                    if resp.status == 401 and not token_exchanged:
                        challenge = parse_bearer_challenge(resp.headers.get("WWW-Authenticate", ""))
                        if challenge and challenge.get("realm"):
                            token = await self._fetch_token(challenge, image)
                            headers["Authorization"] = f"Bearer {token}"
                            token_exchanged = True
                            continue
                    if resp.status >= 400:
                        raise RegistryError(
                            f"{image.registry}/{image.repository}: tag listing returned HTTP {resp.status}"
                        )
                    data = await resp.json(content_type=None)
                    if not isinstance(data, dict):
                        raise RegistryError(
                            f"{image.registry}/{image.repository}: unexpected tag listing payload"
                        )
                    tags.extend(data.get("tags") or [])

                    # Link: </v2/repo/tags/list?n=1000&last=tag>; rel="next"
                    match = PATTERN_LINK_NEXT.search(resp.headers.get("Link", ""))
                    url = urljoin(base, match.group(1)) if match else None
        except (asyncio.TimeoutError, aiohttp.ClientError, ValueError) as e:
            error_msg = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__
            raise RegistryError(f"{image.registry}/{image.repository}: {error_msg}") from e

        log.debug("tags_listed", registry=image.registry, repository=image.repository, count=len(tags))
        return tags

    async def _fetch_token(self, challenge: dict[str, str], image: ImageReference) -> str:
        params = {"scope": challenge.get("scope") or f"repository:{image.repository}:pull"}
        if challenge.get("service"):
            params["service"] = challenge["service"]

        async with self._session.get(
            challenge["realm"],
            params=params,
            headers={"Authorization": self._auth.basic().encode()} if self._auth else None,
            timeout=self._timeout,
        ) as resp:
            if resp.status >= 400:
                raise RegistryError(
                    f"{image.registry}/{image.repository}: token request returned HTTP {resp.status}"
                )
            data = await resp.json(content_type=None)

        token = data.get("token") or data.get("access_token") if isinstance(data, dict) else None
        if not token:
            raise RegistryError(f"{image.registry}/{image.repository}: token response had no token")
        return token
