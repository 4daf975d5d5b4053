"""
Image lifecycle reconciliation.

LifecycleReconciler turns a DesiredImageSpec and the last persisted
ResourceState into registry and toolchain actions for the four lifecycle
operations (create, read, update, delete), plus the plan-time drift check
that decides whether an update has to rebuild.

Rules enforced here:
    - A tag that already exists in an IMMUTABLE repository is never written,
      except by the delete-then-push sequence of an update rebuild.
    - A non-empty id means the tag is believed to exist in the registry.
    - The stored fingerprint only ever describes a successfully pushed image.
    - Failures never change the caller's state; new states are returned, the
      ones passed in are never mutated.
"""

import logging
from dataclasses import replace

from .errors import (
    ImmutableTagConflict,
    InvalidSpec,
    ManifestNotFound,
    ReconcileError,
    RepositoryNotFound,
    StaleTagReference,
    TagNotFound,
    ToolchainUnavailable,
)
from .fingerprint import compute_fingerprint
from .models import DesiredImageSpec, ReconcileContext, ResourceState, UpdatePlan, registry_host, remote_ref
from .validation import manifest_digest

logger = logging.getLogger(__name__)


class LifecycleReconciler:
    """
    Orchestrates registry inspection, fingerprinting, build and push.

    Args:
        inspector: RegistryInspector (read-only registry queries)
        mutator: RegistryMutator (push, retag, delete)
        builder: ImageBuilder (local toolchain)
        fingerprint: Callable (context_path) -> fingerprint string

    The reconciler holds no per-resource state and can serve any number of
    resources concurrently, provided calls for one resource are serialized
    by the caller.
    """

    def __init__(self, inspector, mutator, builder, fingerprint=compute_fingerprint):
        self.inspector = inspector
        self.mutator = mutator
        self.builder = builder
        self._fingerprint = fingerprint

    # -------------------------------
    # Shared steps
    # -------------------------------

    def _require_toolchain(self) -> None:
        if not self.builder.is_running():
            logger.error("The Docker daemon is not running")
            raise ToolchainUnavailable("The Docker daemon is not running, please start it before applying")

    def _existing_repository(self, spec: DesiredImageSpec, ctx: ReconcileContext):
        ctx.check_deadline(f"lookup of repository '{spec.repository_name}'")
        snapshot = self.inspector.snapshot(spec.repository_name, ctx.region)
        if not snapshot.exists:
            logger.error(f"Repository '{spec.repository_name}' does not exist in {ctx.region}")
            raise RepositoryNotFound(f"The provided repository does not exist: '{spec.repository_name}'")
        return snapshot

    def _build_and_push(self, spec: DesiredImageSpec, snapshot, ctx: ReconcileContext,
                        fingerprint: str, replaced: ResourceState | None = None) -> ResourceState:
        """
        Build, tag, push and fetch the resulting manifest, strictly in that order.

        Args:
            replaced: State of the image whose remote tag is deleted right before
                the push; used to rebuild a tag in an immutable repository.
                Once that tag is gone, a failure carries replaced.cleared()
                as error.state.

        Returns:
            New ResourceState carrying the pushed manifest and fingerprint
        """
        logger.info("Retrieving AWS account Id")
        account_id = self.inspector.get_account_id(ctx.region)
        host = registry_host(account_id, ctx.region)
        target = remote_ref(account_id, ctx.region, spec.repository_name, spec.image_tag)

        ctx.check_deadline(f"build of {spec.local_ref}")
        self.builder.build(spec.local_ref, spec.build_context_path, context=ctx)
        ctx.check_deadline(f"tag of {spec.local_ref}")
        self.builder.tag(spec.local_ref, target)

        if replaced is not None:
            logger.info(f"Replacing tag '{spec.image_tag}' in immutable repository '{spec.repository_name}'")
            self.mutator.delete_tag(spec.repository_name, spec.image_tag, ctx.region, missing_ok=True)

        try:
            self.mutator.push_image(target, ctx.region, host, context=ctx)
            logger.info(f"Docker image successfully pushed to {target}")
            # No deadline check once the tag is published
            manifest = snapshot.manifest(spec.image_tag)
        except ReconcileError as e:
            if replaced is not None:
                logger.error(f"Tag '{spec.image_tag}' was removed from '{spec.repository_name}' and not replaced")
                e.state = replaced.cleared()
            raise
        logger.info(f"Image manifest for {target}: {manifest_digest(manifest)}")
        return ResourceState(id=manifest, content_fingerprint=fingerprint)

    # -------------------------------
    # Lifecycle operations
    # -------------------------------

    def create(self, spec: DesiredImageSpec, ctx: ReconcileContext) -> ResourceState:
        """
        Build the image described by spec and push it to the registry.

        Checks, each fatal and performed before any side effect:
            1. The Docker daemon is running (ToolchainUnavailable)
            2. The repository exists (RepositoryNotFound)
            3. The tag is not taken in an immutable repository (ImmutableTagConflict)

        Returns:
            ResourceState with the pushed manifest as id and the Dockerfile fingerprint

        Raises:
            ReconcileError: the kind of the first failing check or step. Nothing
                is rolled back; a local image or uploaded layers may remain.
        """
        logger.info(f"Create: {spec.local_ref} -> {spec.repository_name} in {ctx.region}")
        self._require_toolchain()
        snapshot = self._existing_repository(spec, ctx)

        if snapshot.tag_exists(spec.image_tag):
            if snapshot.is_immutable:
                logger.error(f"Tag '{spec.image_tag}' already exists in immutable repository '{spec.repository_name}'")
                raise ImmutableTagConflict(
                    "The repository is immutable and you are trying to push an image "
                    f"with a tag that already exists in it: '{spec.image_tag}'"
                )
            logger.warning(f"Tag '{spec.image_tag}' already exists in '{spec.repository_name}' and will be overwritten")

        fingerprint = self._fingerprint(spec.build_context_path)
        return self._build_and_push(spec, snapshot, ctx, fingerprint)

    def read(self, spec: DesiredImageSpec, state: ResourceState, ctx: ReconcileContext) -> ResourceState:
        """
        Refresh the identity of an existing resource.

        A missing repository or tag is expected drift, not a failure: the
        returned state has an empty id, meaning the resource is gone.
        """
        logger.debug(f"Read: {spec.repository_name}:{spec.image_tag} in {ctx.region}")
        snapshot = self.inspector.snapshot(spec.repository_name, ctx.region)
        if not snapshot.exists:
            logger.warning(f"Repository '{spec.repository_name}' no longer exists, clearing state")
            return state.cleared()

        try:
            if not snapshot.tag_exists(spec.image_tag):
                logger.warning(f"Tag '{spec.image_tag}' no longer exists in '{spec.repository_name}', clearing state")
                return state.cleared()
            manifest = snapshot.manifest(spec.image_tag)
        except (ManifestNotFound, RepositoryNotFound):
            logger.warning(f"Tag '{spec.image_tag}' disappeared from '{spec.repository_name}', clearing state")
            return state.cleared()

        if manifest != state.id:
            logger.info(f"Manifest of '{spec.repository_name}:{spec.image_tag}' is now {manifest_digest(manifest)}")
        return replace(state, id=manifest)

    def plan(self, old_spec: DesiredImageSpec, state: ResourceState,
             new_spec: DesiredImageSpec | None = None) -> UpdatePlan:
        """
        Compute the drift between stored state and desired state.

        The Dockerfile fingerprint is recomputed for the (new) build context;
        a difference from the stored fingerprint forces an in-place rebuild.
        Resources without an identity yet report no content drift.

        Raises:
            InvalidSpec: if the repository changes (the resource must be
                replaced, not updated) or the Dockerfile cannot be read
        """
        new_spec = new_spec or old_spec
        if new_spec.repository_name != old_spec.repository_name:
            raise InvalidSpec(
                f"Repository cannot change in place ('{old_spec.repository_name}' -> "
                f"'{new_spec.repository_name}'); replace the resource instead"
            )

        tag_change = new_spec.image_tag != old_spec.image_tag
        if not state.exists:
            return UpdatePlan(tag_change=tag_change, content_drift=False, fingerprint=state.content_fingerprint)

        fingerprint = self._fingerprint(new_spec.build_context_path)
        content_drift = fingerprint != state.content_fingerprint
        if content_drift:
            logger.info(f"Dockerfile in {new_spec.build_context_path} changed, image will be rebuilt")
        return UpdatePlan(tag_change=tag_change, content_drift=content_drift, fingerprint=fingerprint)

    def update(self, old_spec: DesiredImageSpec, state: ResourceState, new_spec: DesiredImageSpec,
               ctx: ReconcileContext, plan: UpdatePlan | None = None) -> ResourceState:
        """
        Converge an existing resource on a changed spec.

        Two independent signals, both of which may fire:
            - tag change: the existing manifest is published under the new
              tag, then the old tag is deleted (no rebuild)
            - content drift: the image is rebuilt and pushed under the
              current tag, exactly like create

        If neither fires, no registry or toolchain call is made.

        Args:
            plan: Plan computed at plan time; recomputed when omitted

        Returns:
            The new ResourceState

        Raises:
            ReconcileError: on the first failing step. When the retag
                succeeded but the rebuild failed, error.state holds the
                state after the retag. When an immutable tag was deleted for
                the rebuild and the push failed, error.state has an empty id.
        """
        plan = plan or self.plan(old_spec, state, new_spec)
        if plan.is_noop:
            logger.info("No updates")
            return state

        current = state
        if plan.tag_change:
            current = self._retag(old_spec, new_spec, current, ctx)

        if plan.content_drift:
            try:
                current = self._rebuild(new_spec, current, plan.fingerprint, ctx)
            except ReconcileError as e:
                if e.state is None and current is not state:
                    e.state = current
                raise

        logger.info("Docker image successfully updated")
        return current

    def _retag(self, old_spec: DesiredImageSpec, new_spec: DesiredImageSpec,
               state: ResourceState, ctx: ReconcileContext) -> ResourceState:
        old_tag, new_tag = old_spec.image_tag, new_spec.image_tag
        repository = new_spec.repository_name
        logger.info(f"Retagging '{repository}:{old_tag}' as '{new_tag}'")

        snapshot = self._existing_repository(new_spec, ctx)
        if not snapshot.tag_exists(old_tag):
            logger.error(f"Previous tag '{old_tag}' no longer exists in '{repository}'")
            raise StaleTagReference(f"The previous image tag '{old_tag}' does not exist anymore in the repository")

        if snapshot.is_immutable and snapshot.tag_exists(new_tag):
            logger.error(f"Tag '{new_tag}' already exists in immutable repository '{repository}'")
            raise ImmutableTagConflict(
                "The repository is immutable and you are trying to update an image "
                f"with a tag that already exists in it: '{new_tag}'"
            )

        ctx.check_deadline(f"retag of '{repository}:{old_tag}'")
        manifest = snapshot.manifest(old_tag)
        # New tag first, so the image stays referenced if the delete fails
        self.mutator.put_manifest(repository, new_tag, manifest, ctx.region)
        self.mutator.delete_tag(repository, old_tag, ctx.region, missing_ok=True)
        logger.info(f"'{repository}:{new_tag}' now points at {manifest_digest(manifest)}")
        return replace(state, id=manifest)

    def _rebuild(self, spec: DesiredImageSpec, state: ResourceState, fingerprint: str,
                 ctx: ReconcileContext) -> ResourceState:
        logger.info(f"Rebuilding {spec.local_ref} for '{spec.repository_name}'")
        self._require_toolchain()
        snapshot = self._existing_repository(spec, ctx)
        replaced = state if snapshot.is_immutable and snapshot.tag_exists(spec.image_tag) else None
        fingerprint = fingerprint or self._fingerprint(spec.build_context_path)
        return self._build_and_push(spec, snapshot, ctx, fingerprint, replaced=replaced)

    def delete(self, spec: DesiredImageSpec, state: ResourceState, ctx: ReconcileContext) -> ResourceState:
        """
        Remove the registry tag of a resource.

        Unlike the retry path inside update, an already-missing tag is an
        error here so the caller can tell "already absent" from "removed".
        Local images and unreferenced layers are left alone.

        Raises:
            InvalidSpec: if repository name or tag is empty
            RepositoryNotFound: if the repository does not exist
            TagNotFound: if the tag does not exist
        """
        if not spec.repository_name:
            raise InvalidSpec("repository_name is not set")
        if not spec.image_tag:
            raise InvalidSpec("image_tag is not set")

        snapshot = self.inspector.snapshot(spec.repository_name, ctx.region)
        if not snapshot.exists:
            raise RepositoryNotFound(f"The provided repository does not exist: '{spec.repository_name}'")
        if not snapshot.tag_exists(spec.image_tag):
            raise TagNotFound(f"The provided image tag '{spec.image_tag}' does not exist in the repository")

        ctx.check_deadline(f"delete of '{spec.repository_name}:{spec.image_tag}'")
        self.mutator.delete_tag(spec.repository_name, spec.image_tag, ctx.region)
        logger.info(f"Docker image '{spec.repository_name}:{spec.image_tag}' successfully removed")
        return state.cleared()
