"""Pytest configuration and fixtures."""

from pathlib import Path
from typing import Optional

import aiohttp
import git
import pytest
import yaml
from aiohttp import web
from aiohttp.test_utils import TestServer

from image_updater.config import Settings
from image_updater.registry import RegistryAuth, RegistryClient

ACTOR = git.Actor("Test Author", "test@example.com")

REGISTRY_USER = "bot"
REGISTRY_TOKEN = "s3cret-token"
BEARER_TOKEN = "bearer-abc"


def make_application(
    name: str = "api",
    path: Optional[str] = "apps/api",
    images: Optional[dict] = None,
    extra_annotations: Optional[dict] = None,
) -> dict:
    """Build an Argo CD Application document with image-updater annotations.

    images maps image alias -> (registry_url, allow_tags, helm_image_tag).
    """
    if images is None:
        images = {"api": ("registry.example/org/api", r"regexp:^v\d+$", "image.tag")}

    annotations = {
        "argocd-image-updater.argoproj.io/image-list": ", ".join(
            f"{alias}={url}" for alias, (url, _, _) in images.items()
        )
    }
    for alias, (_, allow_tags, helm_tag) in images.items():
        if allow_tags is not None:
            annotations[f"argocd-image-updater.argoproj.io/{alias}.allow-tags"] = allow_tags
        if helm_tag is not None:
            annotations[f"argocd-image-updater.argoproj.io/{alias}.helm.image-tag"] = helm_tag
    annotations.update(extra_annotations or {})

    source = {"repoURL": "git@github.com:org/manifests.git"}
    if path is not None:
        source["path"] = path

    return {
        "apiVersion": "argoproj.io/v1alpha1",
        "kind": "Application",
        "metadata": {"name": name, "annotations": annotations},
        "spec": {"source": source},
    }


def override_yaml(*parameters: tuple) -> str:
    """Render an override file from (name, value[, forcestring]) tuples."""
    return yaml.safe_dump(
        {
            "helm": {
                "parameters": [
                    {"name": p[0], "value": p[1], "forcestring": p[2] if len(p) > 2 else False}
                    for p in parameters
                ]
            }
        },
        sort_keys=False,
    )


class ManifestRemote:
    """A bare repository standing in for the remote manifest repository."""

    def __init__(self, root: Path):
        self.url = str(root / "remote.git")
        git.Repo.init(self.url, bare=True)
        self.seed_path = root / "seed"
        self.seed = git.Repo.init(self.seed_path)
        self.seed.create_remote("origin", self.url)

    def commit(self, files: dict, message: str = "seed") -> str:
        for rel, content in files.items():
            target = self.seed_path / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        self.seed.git.add(all=True)
        commit = self.seed.index.commit(message, author=ACTOR, committer=ACTOR)
        self.seed.remote("origin").push("HEAD:refs/heads/main")
        return commit.hexsha

    @property
    def bare(self) -> git.Repo:
        return git.Repo(self.url)

    def head(self) -> git.Commit:
        return self.bare.commit("main")

    def read(self, rel: str) -> str:
        return self.bare.git.show(f"main:{rel}")


@pytest.fixture
def remote(tmp_path):
    return ManifestRemote(tmp_path)


@pytest.fixture
def make_settings(tmp_path):
    """Factory for Settings that never reads the environment's .env file."""

    def _make(**overrides) -> Settings:
        values = {
            "repository_url": "git@github.com:org/manifests.git",
            "ssh_key_path": tmp_path / "id_ed25519",
            "repo_dir": tmp_path / "work",
            "github_username": REGISTRY_USER,
            "github_key": REGISTRY_TOKEN,
            "secret": "webhook-secret",
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make


class FakeRegistry:
    """Minimal Docker Registry V2 tag listing endpoint."""

    def __init__(self):
        self.tags: dict = {}
        self.page_size: Optional[int] = None
        self.require_token = False
        self.requests: list = []
        self.token_requests: list = []
        self.token_auth: list = []
        self.host = ""

    async def handle_tags(self, request: web.Request) -> web.Response:
        repository = request.match_info["repository"]
        auth = request.headers.get("Authorization", "")
        self.requests.append({"repository": repository, "auth": auth, "query": dict(request.query)})

        if self.require_token and auth != f"Bearer {BEARER_TOKEN}":
            origin = str(request.url.origin())
            challenge = (
                f'Bearer realm="{origin}/token",service="fake-registry",'
                f'scope="repository:{repository}:pull"'
            )
            return web.Response(status=401, headers={"WWW-Authenticate": challenge})

        if repository not in self.tags:
            return web.json_response({"errors": [{"code": "NAME_UNKNOWN"}]}, status=404)

        tags = self.tags[repository]
        if not self.page_size:
            return web.json_response({"name": repository, "tags": tags})

        last = request.query.get("last")
        start = tags.index(last) + 1 if last else 0
        page = tags[start:start + self.page_size]
        headers = {}
        if start + self.page_size < len(tags):
            headers["Link"] = (
                f'</v2/{repository}/tags/list?n={self.page_size}&last={page[-1]}>; rel="next"'
            )
        return web.json_response({"name": repository, "tags": page}, headers=headers)

    async def handle_token(self, request: web.Request) -> web.Response:
        self.token_requests.append(dict(request.query))
        header = request.headers.get("Authorization", "")
        self.token_auth.append(header)
        try:
            credentials = aiohttp.BasicAuth.decode(header)
        except ValueError:
            return web.Response(status=401)
        if (credentials.login, credentials.password) != (REGISTRY_USER, REGISTRY_TOKEN):
            return web.Response(status=401)
        return web.json_response({"token": BEARER_TOKEN})

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/v2/{repository:.+}/tags/list", self.handle_tags)
        app.router.add_get("/token", self.handle_token)
        return app


@pytest.fixture
async def registry():
    fake = FakeRegistry()
    async with TestServer(fake.create_app()) as server:
        fake.host = f"{server.host}:{server.port}"
        yield fake


@pytest.fixture
async def registry_client(registry):
    async with aiohttp.ClientSession() as session:
        yield RegistryClient(session, RegistryAuth(REGISTRY_USER, REGISTRY_TOKEN), scheme="http")
