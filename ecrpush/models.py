"""
Typed records exchanged between the declarative engine and the reconciler.

DesiredImageSpec is what the caller wants, ResourceState is what the caller
persists between calls, and ReconcileContext carries the per-call account
context (region and deadline) instead of process-wide settings.
"""

import enum
import time
from dataclasses import dataclass, replace

from .errors import DeadlineExceeded, InvalidSpec
from .validation import validate_image_name, validate_region, validate_repository_name, validate_tag

BUILD_INSTRUCTIONS_FILE = "Dockerfile"


class Mutability(str, enum.Enum):
    """Repository-wide tag mutability policy."""

    MUTABLE = "MUTABLE"
    IMMUTABLE = "IMMUTABLE"

    @classmethod
    def from_policy(cls, value: str | None) -> "Mutability":
        """
        Map a registry imageTagMutability value to a Mutability.

        Any IMMUTABLE variant (e.g. IMMUTABLE_WITH_EXCLUSION) is treated as
        IMMUTABLE; everything else, including a missing value, is MUTABLE.
        """
        if value and value.upper().startswith(cls.IMMUTABLE.value):
            return cls.IMMUTABLE
        return cls.MUTABLE


def registry_host(account_id: str, region: str) -> str:
    """Registry host for an account and region."""
    return f"{account_id}.dkr.ecr.{region}.amazonaws.com"


def remote_ref(account_id: str, region: str, repository_name: str, image_tag: str) -> str:
    """
    Fully-qualified remote image reference.

    Example:
        >>> remote_ref("123456789012", "eu-central-1", "repo-1", "v1")
        '123456789012.dkr.ecr.eu-central-1.amazonaws.com/repo-1:v1'
    """
    return f"{registry_host(account_id, region)}/{repository_name}:{image_tag}"


@dataclass(frozen=True)
class DesiredImageSpec:
    """
    Desired state of one pushed image.

    Attributes:
        repository_name: Target registry repository; must already exist
        image_name: Local image name used for the build
        image_tag: Tag used locally and in the registry
        build_context_path: Directory holding the Dockerfile
    """

    repository_name: str
    image_name: str
    image_tag: str
    build_context_path: str = "."

    @property
    def local_ref(self) -> str:
        return f"{self.image_name}:{self.image_tag}"

    def validate(self) -> "DesiredImageSpec":
        """Validate all fields, raising InvalidSpec on the first bad one."""
        validate_repository_name(self.repository_name)
        validate_image_name(self.image_name)
        validate_tag(self.image_tag)
        if not self.build_context_path:
            raise InvalidSpec("Invalid build context path: must not be empty")
        return self

    def with_tag(self, image_tag: str) -> "DesiredImageSpec":
        return replace(self, image_tag=image_tag)

    @classmethod
    def from_dict(cls, data: dict) -> "DesiredImageSpec":
        """
        Build and validate a spec from a JSON-style mapping.

        Raises:
            InvalidSpec: if a required key is missing or a value is invalid
        """
        if not isinstance(data, dict):
            raise InvalidSpec("Invalid spec: expected an object")
        missing = [key for key in ("repository_name", "image_name", "image_tag") if not data.get(key)]
        if missing:
            raise InvalidSpec(f"Invalid spec: missing {', '.join(missing)}")
        spec = cls(
            repository_name=str(data["repository_name"]),
            image_name=str(data["image_name"]),
            image_tag=str(data["image_tag"]),
            build_context_path=str(data.get("build_context_path") or "."),
        )
        return spec.validate()

    def to_dict(self) -> dict:
        return {
            "repository_name": self.repository_name,
            "image_name": self.image_name,
            "image_tag": self.image_tag,
            "build_context_path": self.build_context_path,
        }


@dataclass(frozen=True)
class ResourceState:
    """
    Persisted identity of a pushed image.

    An empty id means no image currently exists for the resource. The
    fingerprint is the SHA-256 of the Dockerfile last successfully pushed.
    """

    id: str = ""
    content_fingerprint: str = ""

    @property
    def exists(self) -> bool:
        return bool(self.id)

    def cleared(self) -> "ResourceState":
        return replace(self, id="")

    @classmethod
    def from_dict(cls, data: dict | None) -> "ResourceState":
        data = data or {}
        if not isinstance(data, dict):
            raise InvalidSpec("Invalid state: expected an object")
        return cls(
            id=str(data.get("id") or ""),
            content_fingerprint=str(data.get("content_fingerprint") or ""),
        )

    def to_dict(self) -> dict:
        return {"id": self.id, "content_fingerprint": self.content_fingerprint}


@dataclass(frozen=True)
class UpdatePlan:
    """
    Plan-time diff between stored state and desired state.

    Attributes:
        tag_change: The image tag differs from the one last applied
        content_drift: The Dockerfile fingerprint differs from the stored one
        fingerprint: Fingerprint of the current Dockerfile ("" if not computed)
    """

    tag_change: bool = False
    content_drift: bool = False
    fingerprint: str = ""

    @property
    def is_noop(self) -> bool:
        return not (self.tag_change or self.content_drift)

    def to_dict(self) -> dict:
        return {
            "tag_change": self.tag_change,
            "content_drift": self.content_drift,
            "fingerprint": self.fingerprint,
        }


@dataclass(frozen=True)
class ReconcileContext:
    """
    Account context threaded through every reconciler call.

    Attributes:
        region: Registry region (e.g. "eu-central-1")
        deadline: time.monotonic() value after which the call is cancelled,
            or None for no deadline
    """

    region: str
    deadline: float | None = None

    @classmethod
    def create(cls, region: str, timeout: float | None = None) -> "ReconcileContext":
        """Build a context, turning a relative timeout into an absolute deadline."""
        validate_region(region)
        deadline = time.monotonic() + timeout if timeout else None
        return cls(region=region, deadline=deadline)

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    def check_deadline(self, step: str) -> None:
        """
        Raise DeadlineExceeded if the deadline has passed.

        Args:
            step: Name of the step about to run or running, for the error text
        """
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise DeadlineExceeded(f"Deadline exceeded during {step}")
