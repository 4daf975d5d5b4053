"""
Error taxonomy for the image reconciliation service.

Every failure surfaced by the reconciler is a ReconcileError subclass. Each
carries the kind name, a human-readable message, the underlying cause text
and the HTTP status code used when it is rendered by the Flask layer.
"""


class ReconcileError(Exception):
    """
    Base class for all structured reconciliation failures.

    Attributes:
        kind: Taxonomy name (e.g. "ImmutableTagConflict")
        message: Human-readable description
        cause: Text of the underlying error, if any
        state: ResourceState reached before the failure, when part of an
            Update already took effect (None otherwise)
    """

    kind = "ReconcileError"
    status_code = 500

    def __init__(self, message: str, cause=None, state=None):
        super().__init__(message)
        self.message = message
        self.cause = str(cause) if cause is not None else None
        self.state = state

    def __str__(self):
        if self.cause:
            return f"{self.message}: {self.cause}"
        return self.message

    def to_dict(self) -> dict:
        """Serialize the error for JSON responses."""
        return {
            "kind": self.kind,
            "message": self.message,
            "cause": self.cause,
        }


class InvalidSpec(ReconcileError):
    kind = "InvalidSpec"
    status_code = 400


class ToolchainUnavailable(ReconcileError):
    kind = "ToolchainUnavailable"
    status_code = 503


class RepositoryNotFound(ReconcileError):
    kind = "RepositoryNotFound"
    status_code = 404


class TagNotFound(ReconcileError):
    kind = "TagNotFound"
    status_code = 404


class StaleTagReference(ReconcileError):
    kind = "StaleTagReference"
    status_code = 409


class ImmutableTagConflict(ReconcileError):
    kind = "ImmutableTagConflict"
    status_code = 409


class BuildFailed(ReconcileError):
    kind = "BuildFailed"
    status_code = 500


class PushFailed(ReconcileError):
    """
    Image push failed.

    The progress note records how far the upload got (e.g. "2 of 5 layers
    uploaded") so the caller can tell an early refusal from a broken upload.
    """

    kind = "PushFailed"
    status_code = 502

    def __init__(self, message: str, cause=None, state=None, progress: str = ""):
        super().__init__(message, cause=cause, state=state)
        self.progress = progress

    def __str__(self):
        text = super().__str__()
        if self.progress:
            return f"{text} ({self.progress})"
        return text

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["progress"] = self.progress
        return data


class AuthenticationFailed(ReconcileError):
    kind = "AuthenticationFailed"
    status_code = 401


class RegistryUnreachable(ReconcileError):
    kind = "RegistryUnreachable"
    status_code = 503


class RegistryRequestFailed(ReconcileError):
    kind = "RegistryRequestFailed"
    status_code = 502


class ManifestNotFound(ReconcileError):
    kind = "ManifestNotFound"
    status_code = 404


class DeadlineExceeded(ReconcileError):
    kind = "DeadlineExceeded"
    status_code = 504
