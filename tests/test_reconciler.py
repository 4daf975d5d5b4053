"""Lifecycle tests for LifecycleReconciler against the in-memory registry."""

import hashlib
import time
from pathlib import Path

import pytest

from ecrpush.errors import (
    BuildFailed,
    DeadlineExceeded,
    ImmutableTagConflict,
    InvalidSpec,
    PushFailed,
    RepositoryNotFound,
    StaleTagReference,
    TagNotFound,
    ToolchainUnavailable,
)
from ecrpush.models import Mutability, ReconcileContext, ResourceState, UpdatePlan

from .conftest import DOCKERFILE, REGION

REMOTE_V1 = "123456789012.dkr.ecr.eu-central-1.amazonaws.com/repo-1:v1"
FINGERPRINT = hashlib.sha256(DOCKERFILE).hexdigest()


def _created(reconciler, registry, spec_factory, ctx, mutability=Mutability.MUTABLE):
    registry.add_repository("repo-1", mutability=mutability)
    spec = spec_factory()
    state = reconciler.create(spec, ctx)
    registry.calls.clear()
    return spec, state


class TestCreate:
    def test_builds_tags_pushes_and_records_manifest(self, reconciler, registry, spec_factory, ctx):
        registry.add_repository("repo-1")

        state = reconciler.create(spec_factory(), ctx)

        assert registry.write_calls() == [
            ("build", "myapp:v1", spec_factory().build_context_path),
            ("tag", "myapp:v1", REMOTE_V1),
            ("push", REMOTE_V1, "123456789012.dkr.ecr.eu-central-1.amazonaws.com"),
        ]
        assert state.id == registry.tags("repo-1")["v1"]
        assert state.content_fingerprint == FINGERPRINT
        assert state.exists

    def test_toolchain_down_fails_before_registry_calls(self, reconciler, registry, builder, spec_factory, ctx):
        registry.add_repository("repo-1")
        builder.running = False

        with pytest.raises(ToolchainUnavailable):
            reconciler.create(spec_factory(), ctx)
        assert registry.calls == []

    def test_missing_repository(self, reconciler, registry, spec_factory, ctx):
        with pytest.raises(RepositoryNotFound):
            reconciler.create(spec_factory(), ctx)
        assert registry.write_calls() == []

    def test_immutable_repository_with_existing_tag_is_rejected(self, reconciler, registry, spec_factory, ctx):
        registry.add_repository("repo-2", mutability=Mutability.IMMUTABLE, tags={"v1": "{}"})

        with pytest.raises(ImmutableTagConflict):
            reconciler.create(spec_factory(repository_name="repo-2", image_name="x"), ctx)
        assert registry.write_calls() == []
        assert registry.tags("repo-2") == {"v1": "{}"}

    def test_mutable_repository_existing_tag_is_overwritten(self, reconciler, registry, spec_factory, ctx):
        registry.add_repository("repo-1", tags={"v1": "{}"})

        state = reconciler.create(spec_factory(), ctx)

        assert registry.tags("repo-1")["v1"] != "{}"
        assert state.id == registry.tags("repo-1")["v1"]

    def test_immutable_repository_new_tag_is_pushed(self, reconciler, registry, spec_factory, ctx):
        registry.add_repository("repo-1", mutability=Mutability.IMMUTABLE, tags={"v0": "{}"})

        state = reconciler.create(spec_factory(), ctx)

        assert set(registry.tags("repo-1")) == {"v0", "v1"}
        assert state.exists

    def test_build_failure_stops_before_push(self, reconciler, registry, builder, spec_factory, ctx):
        registry.add_repository("repo-1")
        builder.fail_build = True

        with pytest.raises(BuildFailed):
            reconciler.create(spec_factory(), ctx)
        assert [call[0] for call in registry.write_calls()] == ["build"]
        assert registry.tags("repo-1") == {}

    def test_push_failure_carries_progress(self, reconciler, registry, mutator, spec_factory, ctx):
        registry.add_repository("repo-1")
        mutator.fail_push = True

        with pytest.raises(PushFailed) as exc_info:
            reconciler.create(spec_factory(), ctx)
        assert exc_info.value.progress == "1 of 3 layers uploaded"
        assert registry.tags("repo-1") == {}

    def test_missing_dockerfile_fails_before_build(self, reconciler, registry, spec_factory, ctx, build_context):
        registry.add_repository("repo-1")
        (Path(build_context) / "Dockerfile").unlink()

        with pytest.raises(InvalidSpec):
            reconciler.create(spec_factory(), ctx)
        assert registry.write_calls() == []

    def test_expired_deadline_aborts_before_side_effects(self, reconciler, registry, spec_factory):
        registry.add_repository("repo-1")
        expired = ReconcileContext(region=REGION, deadline=time.monotonic() - 1)

        with pytest.raises(DeadlineExceeded):
            reconciler.create(spec_factory(), expired)
        assert registry.write_calls() == []

    def test_deadline_passing_after_push_still_records_image(self, reconciler, registry, mutator, spec_factory,
                                                              monkeypatch):
        registry.add_repository("repo-1", mutability=Mutability.IMMUTABLE)
        ctx = ReconcileContext(region=REGION, deadline=time.monotonic() + 0.5)
        push_image = mutator.push_image

        def slow_push(remote_ref, region, registry_host, context=None):
            push_image(remote_ref, region, registry_host, context=context)
            time.sleep(max(0.0, ctx.remaining()) + 0.01)

        monkeypatch.setattr(mutator, "push_image", slow_push)

        state = reconciler.create(spec_factory(), ctx)

        assert ctx.remaining() <= 0
        assert state.id == registry.tags("repo-1")["v1"]
        assert state.content_fingerprint == FINGERPRINT


class TestRead:
    def test_read_is_idempotent(self, reconciler, registry, spec_factory, ctx):
        spec, state = _created(reconciler, registry, spec_factory, ctx)

        first = reconciler.read(spec, state, ctx)
        second = reconciler.read(spec, first, ctx)

        assert first.id == second.id == state.id
        assert second.content_fingerprint == state.content_fingerprint

    def test_missing_repository_clears_state(self, reconciler, registry, spec_factory, ctx):
        spec, state = _created(reconciler, registry, spec_factory, ctx)
        del registry.repositories["repo-1"]

        refreshed = reconciler.read(spec, state, ctx)

        assert refreshed.id == ""
        assert not refreshed.exists

    def test_missing_tag_clears_state(self, reconciler, registry, spec_factory, ctx):
        spec, state = _created(reconciler, registry, spec_factory, ctx)
        registry.tags("repo-1").clear()

        assert reconciler.read(spec, state, ctx).id == ""

    def test_repository_deleted_after_snapshot_clears_state(self, reconciler, registry, spec_factory, ctx,
                                                             monkeypatch):
        spec, state = _created(reconciler, registry, spec_factory, ctx)
        take_snapshot = reconciler.inspector.snapshot

        def snapshot_then_drop(repository_name, region):
            snapshot = take_snapshot(repository_name, region)
            del registry.repositories[repository_name]
            return snapshot

        monkeypatch.setattr(reconciler.inspector, "snapshot", snapshot_then_drop)

        refreshed = reconciler.read(spec, state, ctx)

        assert refreshed.id == ""
        assert refreshed.content_fingerprint == state.content_fingerprint

    def test_refreshes_externally_changed_manifest(self, reconciler, registry, spec_factory, ctx):
        spec, state = _created(reconciler, registry, spec_factory, ctx)
        registry.tags("repo-1")["v1"] = '{"schemaVersion": 2}'

        assert reconciler.read(spec, state, ctx).id == '{"schemaVersion": 2}'

    def test_read_never_writes(self, reconciler, registry, spec_factory, ctx):
        spec, state = _created(reconciler, registry, spec_factory, ctx)
        reconciler.read(spec, state, ctx)
        assert registry.write_calls() == []


class TestPlan:
    def test_unchanged_spec_is_noop(self, reconciler, registry, spec_factory, ctx):
        spec, state = _created(reconciler, registry, spec_factory, ctx)

        plan = reconciler.plan(spec, state, spec)

        assert plan.is_noop
        assert plan.fingerprint == FINGERPRINT

    def test_edited_dockerfile_is_drift(self, reconciler, registry, spec_factory, ctx, build_context):
        spec, state = _created(reconciler, registry, spec_factory, ctx)
        (Path(build_context) / "Dockerfile").write_bytes(DOCKERFILE + b"RUN true\n")

        plan = reconciler.plan(spec, state)

        assert plan.content_drift
        assert not plan.tag_change
        assert plan.fingerprint != FINGERPRINT

    def test_tag_change(self, reconciler, registry, spec_factory, ctx):
        spec, state = _created(reconciler, registry, spec_factory, ctx)

        plan = reconciler.plan(spec, state, spec.with_tag("v2"))

        assert plan.tag_change
        assert not plan.content_drift

    def test_no_identity_reports_no_drift(self, reconciler, spec_factory):
        plan = reconciler.plan(spec_factory(), ResourceState(content_fingerprint="stale"))
        assert not plan.content_drift

    def test_repository_change_is_rejected(self, reconciler, registry, spec_factory, ctx):
        spec, state = _created(reconciler, registry, spec_factory, ctx)
        with pytest.raises(InvalidSpec):
            reconciler.plan(spec, state, spec_factory(repository_name="repo-9"))


class TestUpdate:
    def test_noop_update_makes_no_calls(self, reconciler, registry, spec_factory, ctx):
        spec, state = _created(reconciler, registry, spec_factory, ctx)

        result = reconciler.update(spec, state, spec, ctx)

        assert result == state
        assert registry.calls == []

    def test_tag_change_retags_without_rebuild(self, reconciler, registry, spec_factory, ctx):
        spec, state = _created(reconciler, registry, spec_factory, ctx)
        manifest_before = registry.tags("repo-1")["v1"]

        result = reconciler.update(spec, state, spec.with_tag("v2"), ctx)

        assert registry.tags("repo-1") == {"v2": manifest_before}
        assert result.id == manifest_before
        assert result.content_fingerprint == state.content_fingerprint
        writes = [call[0] for call in registry.write_calls()]
        assert writes == ["put_manifest", "delete_tag"]

        refreshed = reconciler.read(spec.with_tag("v2"), result, ctx)
        assert refreshed.id == manifest_before
        assert reconciler.read(spec, result, ctx).id == ""

    def test_stale_old_tag(self, reconciler, registry, spec_factory, ctx):
        spec, state = _created(reconciler, registry, spec_factory, ctx)
        registry.tags("repo-1").clear()

        with pytest.raises(StaleTagReference):
            reconciler.update(spec, state, spec.with_tag("v2"), ctx)
        assert registry.write_calls() == []

    def test_immutable_new_tag_conflict_leaves_old_tag(self, reconciler, registry, spec_factory, ctx):
        spec, state = _created(reconciler, registry, spec_factory, ctx, mutability=Mutability.IMMUTABLE)
        registry.tags("repo-1")["v2"] = "{}"

        with pytest.raises(ImmutableTagConflict):
            reconciler.update(spec, state, spec.with_tag("v2"), ctx)
        assert registry.write_calls() == []
        assert registry.tags("repo-1")["v1"] == state.id

    def test_content_drift_rebuilds_under_current_tag(self, reconciler, registry, spec_factory, ctx, build_context):
        spec, state = _created(reconciler, registry, spec_factory, ctx)
        new_dockerfile = DOCKERFILE + b"RUN true\n"
        (Path(build_context) / "Dockerfile").write_bytes(new_dockerfile)

        result = reconciler.update(spec, state, spec, ctx)

        assert [call[0] for call in registry.write_calls()] == ["build", "tag", "push"]
        assert result.content_fingerprint == hashlib.sha256(new_dockerfile).hexdigest()
        assert result.id == registry.tags("repo-1")["v1"]
        assert result.id != state.id

    def test_immutable_rebuild_deletes_then_pushes_same_tag(self, reconciler, registry, spec_factory, ctx, build_context):
        spec, state = _created(reconciler, registry, spec_factory, ctx, mutability=Mutability.IMMUTABLE)
        (Path(build_context) / "Dockerfile").write_bytes(DOCKERFILE + b"RUN true\n")

        result = reconciler.update(spec, state, spec, ctx)

        writes = [(call[0], call[-1]) for call in registry.write_calls()]
        assert writes[2:] == [("delete_tag", "v1"), ("push", "123456789012.dkr.ecr.eu-central-1.amazonaws.com")]
        assert result.id == registry.tags("repo-1")["v1"]

    def test_tag_change_and_drift_together(self, reconciler, registry, spec_factory, ctx, build_context):
        spec, state = _created(reconciler, registry, spec_factory, ctx)
        (Path(build_context) / "Dockerfile").write_bytes(DOCKERFILE + b"RUN true\n")
        new_spec = spec.with_tag("v2")

        result = reconciler.update(spec, state, new_spec, ctx)

        writes = [call[0] for call in registry.write_calls()]
        assert writes == ["put_manifest", "delete_tag", "build", "tag", "push"]
        assert set(registry.tags("repo-1")) == {"v2"}
        assert result.id == registry.tags("repo-1")["v2"]
        assert result.content_fingerprint != state.content_fingerprint

    def test_failed_rebuild_keeps_fingerprint(self, reconciler, registry, builder, spec_factory, ctx, build_context):
        spec, state = _created(reconciler, registry, spec_factory, ctx)
        (Path(build_context) / "Dockerfile").write_bytes(DOCKERFILE + b"RUN true\n")
        builder.fail_build = True

        with pytest.raises(BuildFailed) as exc_info:
            reconciler.update(spec, state, spec, ctx)
        assert exc_info.value.state is None
        assert registry.tags("repo-1")["v1"] == state.id

    def test_failed_rebuild_after_retag_reports_partial_state(self, reconciler, registry, mutator, spec_factory, ctx,
                                                              build_context):
        spec, state = _created(reconciler, registry, spec_factory, ctx)
        (Path(build_context) / "Dockerfile").write_bytes(DOCKERFILE + b"RUN true\n")
        mutator.fail_push = True

        with pytest.raises(PushFailed) as exc_info:
            reconciler.update(spec, state, spec.with_tag("v2"), ctx)
        partial = exc_info.value.state
        assert partial.id == registry.tags("repo-1")["v2"]
        assert partial.content_fingerprint == state.content_fingerprint

    def test_failed_immutable_rebuild_clears_identity(self, reconciler, registry, mutator, spec_factory, ctx,
                                                      build_context):
        spec, state = _created(reconciler, registry, spec_factory, ctx, mutability=Mutability.IMMUTABLE)
        (Path(build_context) / "Dockerfile").write_bytes(DOCKERFILE + b"RUN true\n")
        mutator.fail_push = True

        with pytest.raises(PushFailed) as exc_info:
            reconciler.update(spec, state, spec, ctx)

        assert registry.tags("repo-1") == {}
        assert exc_info.value.state == ResourceState(id="", content_fingerprint=state.content_fingerprint)

    def test_failed_immutable_rebuild_after_retag_clears_identity(self, reconciler, registry, mutator, spec_factory,
                                                                  ctx, build_context):
        spec, state = _created(reconciler, registry, spec_factory, ctx, mutability=Mutability.IMMUTABLE)
        (Path(build_context) / "Dockerfile").write_bytes(DOCKERFILE + b"RUN true\n")
        mutator.fail_push = True

        with pytest.raises(PushFailed) as exc_info:
            reconciler.update(spec, state, spec.with_tag("v2"), ctx)

        assert registry.tags("repo-1") == {}
        assert exc_info.value.state.id == ""
        assert exc_info.value.state.content_fingerprint == state.content_fingerprint

    def test_uses_supplied_plan(self, reconciler, registry, spec_factory, ctx):
        spec, state = _created(reconciler, registry, spec_factory, ctx)

        result = reconciler.update(spec, state, spec, ctx, plan=UpdatePlan())

        assert result is state
        assert registry.calls == []


class TestDelete:
    def test_delete_clears_identity(self, reconciler, registry, spec_factory, ctx):
        spec, state = _created(reconciler, registry, spec_factory, ctx)

        result = reconciler.delete(spec, state, ctx)

        assert result.id == ""
        assert "v1" not in registry.tags("repo-1")
        assert not reconciler.read(spec, result, ctx).exists

    def test_missing_repository(self, reconciler, registry, spec_factory, ctx):
        spec, state = _created(reconciler, registry, spec_factory, ctx)
        del registry.repositories["repo-1"]

        with pytest.raises(RepositoryNotFound):
            reconciler.delete(spec, state, ctx)

    def test_missing_tag_is_an_error(self, reconciler, registry, spec_factory, ctx):
        spec, state = _created(reconciler, registry, spec_factory, ctx)
        registry.tags("repo-1").clear()

        with pytest.raises(TagNotFound):
            reconciler.delete(spec, state, ctx)
        assert registry.write_calls() == []

    def test_empty_tag_rejected_before_registry_calls(self, reconciler, registry, spec_factory, ctx):
        spec, state = _created(reconciler, registry, spec_factory, ctx)

        with pytest.raises(InvalidSpec):
            reconciler.delete(spec.with_tag(""), state, ctx)
        assert registry.calls == []
