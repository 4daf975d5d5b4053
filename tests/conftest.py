"""In-memory registry and toolchain fakes for reconciler tests."""

import hashlib
import json

import pytest

from ecrpush.errors import (
    BuildFailed,
    ImmutableTagConflict,
    ManifestNotFound,
    PushFailed,
    RepositoryNotFound,
    TagNotFound,
)
from ecrpush.inspector import RepositorySnapshot
from ecrpush.models import DesiredImageSpec, Mutability, ReconcileContext
from ecrpush.reconciler import LifecycleReconciler

ACCOUNT_ID = "123456789012"
REGION = "eu-central-1"
DOCKERFILE = b"FROM alpine:3.19\nRUN echo hello\n"


def _split_remote(ref: str) -> tuple[str, str]:
    path = ref.split("/", 1)[1]
    repository, _, tag = path.rpartition(":")
    return repository, tag


class FakeRegistry:
    """Repositories keyed by name, each with a mutability and a tag -> manifest map."""

    def __init__(self):
        self.repositories = {}
        self.calls = []

    def add_repository(self, name, mutability=Mutability.MUTABLE, tags=None):
        self.repositories[name] = {"mutability": mutability, "tags": dict(tags or {})}

    def tags(self, name):
        return self.repositories[name]["tags"]

    def write_calls(self):
        return [call for call in self.calls if call[0] in ("build", "tag", "push", "put_manifest", "delete_tag")]


class FakeInspector:
    def __init__(self, registry):
        self.registry = registry

    def snapshot(self, repository_name, region):
        self.registry.calls.append(("snapshot", repository_name))
        repo = self.registry.repositories.get(repository_name)
        if repo is None:
            return RepositorySnapshot(self, repository_name, region, exists=False, mutability=None)
        return RepositorySnapshot(self, repository_name, region, exists=True, mutability=repo["mutability"])

    def tag_exists(self, repository_name, tag, region):
        self.registry.calls.append(("tag_exists", repository_name, tag))
        if repository_name not in self.registry.repositories:
            raise RepositoryNotFound(repository_name)
        return tag in self.registry.tags(repository_name)

    def get_manifest(self, repository_name, tag, region):
        self.registry.calls.append(("get_manifest", repository_name, tag))
        if repository_name not in self.registry.repositories:
            raise RepositoryNotFound(repository_name)
        manifest = self.registry.tags(repository_name).get(tag)
        if manifest is None:
            raise ManifestNotFound(f"{repository_name}:{tag}")
        return manifest

    def get_account_id(self, region):
        return ACCOUNT_ID


class FakeBuilder:
    def __init__(self, registry):
        self.registry = registry
        self.running = True
        self.fail_build = False
        self.images = {}

    def is_running(self):
        return self.running

    def build(self, local_ref, context_path, context=None):
        self.registry.calls.append(("build", local_ref, context_path))
        if self.fail_build:
            raise BuildFailed(f"Error building Docker image {local_ref}", cause="step 2/2 failed")
        with open(f"{context_path}/Dockerfile", "rb") as f:
            self.images[local_ref] = f.read()

    def tag(self, local_ref, target_ref):
        self.registry.calls.append(("tag", local_ref, target_ref))
        self.images[target_ref] = self.images[local_ref]


class FakeMutator:
    def __init__(self, registry, builder):
        self.registry = registry
        self.builder = builder
        self.fail_push = False

    def push_image(self, remote_ref, region, registry_host, context=None):
        self.registry.calls.append(("push", remote_ref, registry_host))
        if self.fail_push:
            raise PushFailed(f"Error pushing Docker image {remote_ref}", cause="broken pipe", progress="1 of 3 layers uploaded")
        repository, tag = _split_remote(remote_ref)
        repo = self.registry.repositories[repository]
        if repo["mutability"] == Mutability.IMMUTABLE and tag in repo["tags"]:
            raise ImmutableTagConflict(tag)
        content = self.builder.images[remote_ref]
        repo["tags"][tag] = json.dumps(
            {
                "schemaVersion": 2,
                "mediaType": "application/vnd.docker.distribution.manifest.v2+json",
                "config": {"digest": "sha256:" + hashlib.sha256(content).hexdigest()},
            }
        )

    def put_manifest(self, repository_name, tag, manifest, region):
        self.registry.calls.append(("put_manifest", repository_name, tag))
        repo = self.registry.repositories[repository_name]
        if repo["mutability"] == Mutability.IMMUTABLE and tag in repo["tags"]:
            raise ImmutableTagConflict(tag)
        repo["tags"][tag] = manifest

    def delete_tag(self, repository_name, tag, region, missing_ok=False):
        self.registry.calls.append(("delete_tag", repository_name, tag))
        tags = self.registry.tags(repository_name)
        if tag not in tags:
            if missing_ok:
                return
            raise TagNotFound(tag)
        del tags[tag]


@pytest.fixture
def registry():
    return FakeRegistry()


@pytest.fixture
def builder(registry):
    return FakeBuilder(registry)


@pytest.fixture
def mutator(registry, builder):
    return FakeMutator(registry, builder)


@pytest.fixture
def reconciler(registry, builder, mutator):
    return LifecycleReconciler(inspector=FakeInspector(registry), mutator=mutator, builder=builder)


@pytest.fixture
def ctx():
    return ReconcileContext(region=REGION)


@pytest.fixture
def build_context(tmp_path):
    (tmp_path / "Dockerfile").write_bytes(DOCKERFILE)
    return str(tmp_path)


@pytest.fixture
def spec_factory(build_context):
    def _make(repository_name="repo-1", image_name="myapp", image_tag="v1"):
        return DesiredImageSpec(
            repository_name=repository_name,
            image_name=image_name,
            image_tag=image_tag,
            build_context_path=build_context,
        )

    return _make
