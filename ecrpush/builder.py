"""
Docker builder module for the image reconciliation service.

Drives the local Docker daemon through the docker SDK: health check, image
build, local tag and authenticated push. Build and push progress is
streamed from the daemon's JSON messages and logged line by line at DEBUG.
"""

import logging
import math

import docker
import requests
from docker.errors import DockerException

from .config import config
from .errors import BuildFailed, PushFailed, ToolchainUnavailable
from .models import BUILD_INSTRUCTIONS_FILE

logger = logging.getLogger(__name__)


def split_ref(ref: str) -> tuple[str, str]:
    """
    Split an image reference into repository and tag.

    Example:
        >>> split_ref("123.dkr.ecr.eu-central-1.amazonaws.com/repo-1:v1")
        ('123.dkr.ecr.eu-central-1.amazonaws.com/repo-1', 'v1')
    """
    repository, sep, tag = ref.rpartition(":")
    if not sep or "/" in tag:
        return ref, "latest"
    return repository, tag


def _socket_timeout(context) -> int:
    """Docker API read timeout in seconds, capped by the time left before the deadline."""
    remaining = context.remaining() if context is not None else None
    if remaining is None:
        return config.DOCKER_TIMEOUT
    return max(1, min(config.DOCKER_TIMEOUT, math.ceil(remaining)))


def _stream_error(message: dict) -> str | None:
    """Return the error text carried by a daemon JSON message, if any."""
    if message.get("error"):
        return message["error"]
    detail = message.get("errorDetail")
    if detail:
        return detail.get("message") or str(detail)
    return None


class ImageBuilder:
    """
    Local image toolchain backed by the Docker daemon.

    Args:
        client: Optional docker.DockerClient. When omitted, a client is
            created from the environment (DOCKER_HOST etc.) on first use.
    """

    def __init__(self, client: docker.DockerClient | None = None):
        self._client = client

    def _docker(self) -> docker.DockerClient:
        if self._client is None:
            try:
                self._client = docker.from_env(timeout=config.DOCKER_TIMEOUT)
            except DockerException as e:
                logger.error(f"Cannot connect to the Docker daemon: {e}")
                raise ToolchainUnavailable("Cannot connect to the Docker daemon", cause=e)
        return self._client

    def is_running(self) -> bool:
        """Return True if the Docker daemon answers a ping."""
        try:
            return bool(self._docker().ping())
        except ToolchainUnavailable:
            return False
        except (DockerException, requests.exceptions.RequestException) as e:
            logger.warning(f"Docker daemon ping failed: {e}")
            return False

    def build(self, local_ref: str, context_path: str, context=None) -> None:
        """
        Build an image from the Dockerfile in a build context.

        Args:
            local_ref: Local image reference "name:tag"
            context_path: Directory containing the Dockerfile
            context: Optional ReconcileContext whose deadline bounds the build

        Raises:
            BuildFailed: if the daemon rejects the build or a build step fails
            DeadlineExceeded: if the deadline passes while the build is running
                or the daemon stops sending output past the deadline
        """
        logger.info(f"Building Docker image {local_ref} from {context_path}")
        try:
            stream = self._docker().api.build(
                path=context_path,
                tag=local_ref,
                dockerfile=BUILD_INSTRUCTIONS_FILE,
                rm=True,
                decode=True,
                timeout=_socket_timeout(context),
            )
            for message in stream:
                if context is not None:
                    context.check_deadline(f"build of {local_ref}")
                error = _stream_error(message)
                if error:
                    logger.error(f"Docker build of {local_ref} failed: {error}")
                    raise BuildFailed(f"Error building Docker image {local_ref}", cause=error)
                line = message.get("stream", "").rstrip()
                if line:
                    logger.debug(f"[build] {line}")
        except (DockerException, requests.exceptions.RequestException) as e:
            if context is not None:
                context.check_deadline(f"build of {local_ref}")
            logger.error(f"Docker build of {local_ref} failed: {e}")
            raise BuildFailed(f"Error building Docker image {local_ref}", cause=e)
        logger.info(f"Build complete: {local_ref}")

    def tag(self, local_ref: str, target_ref: str) -> None:
        """
        Tag a local image with a second reference.

        Raises:
            BuildFailed: if the source image does not exist or tagging fails
        """
        repository, tag = split_ref(target_ref)
        logger.info(f"Tagging Docker image {local_ref} as {target_ref}")
        try:
            tagged = self._docker().api.tag(local_ref, repository, tag=tag)
        except (DockerException, requests.exceptions.RequestException) as e:
            logger.error(f"Tagging {local_ref} as {target_ref} failed: {e}")
            raise BuildFailed(f"Error tagging Docker image {local_ref}", cause=e)
        if not tagged:
            raise BuildFailed(f"Error tagging Docker image {local_ref}", cause="daemon reported failure")

    def push(self, target_ref: str, auth_config: dict, context=None) -> None:
        """
        Push a tagged image to its registry.

        The deadline is checked between progress messages. A stalled upload
        that sends nothing is cut off by the client read timeout
        (DOCKER_TIMEOUT), not by the deadline: the docker SDK takes no
        per-call timeout for pushes.

        Args:
            target_ref: Remote reference "host/repository:tag"
            auth_config: Registry credentials {"username", "password", "serveraddress"}
            context: Optional ReconcileContext whose deadline bounds the push

        Raises:
            PushFailed: if the push is refused or a layer upload fails; the
                error carries a note of how many layers were uploaded
            DeadlineExceeded: if the deadline passes mid-push
        """
        repository, tag = split_ref(target_ref)
        layers = set()
        uploaded = set()

        def progress() -> str:
            return f"{len(uploaded)} of {len(layers)} layers uploaded"

        logger.info(f"Pushing Docker image {target_ref}")
        try:
            stream = self._docker().api.push(
                repository,
                tag=tag,
                stream=True,
                decode=True,
                auth_config=auth_config,
            )
            for message in stream:
                if context is not None:
                    context.check_deadline(f"push of {target_ref} ({progress()})")
                error = _stream_error(message)
                if error:
                    logger.error(f"Push of {target_ref} failed after {progress()}: {error}")
                    raise PushFailed(f"Error pushing Docker image {target_ref}", cause=error, progress=progress())

                layer_id = message.get("id")
                status = message.get("status", "")
                if layer_id and "progressDetail" in message:
                    layers.add(layer_id)
                if layer_id and status in ("Pushed", "Layer already exists"):
                    layers.add(layer_id)
                    uploaded.add(layer_id)
                if status and not message.get("progressDetail"):
                    logger.debug(f"[push] {layer_id + ': ' if layer_id else ''}{status}")
        except (DockerException, requests.exceptions.RequestException) as e:
            if context is not None:
                context.check_deadline(f"push of {target_ref} ({progress()})")
            logger.error(f"Push of {target_ref} failed after {progress()}: {e}")
            raise PushFailed(f"Error pushing Docker image {target_ref}", cause=e, progress=progress())
        logger.info(f"Push complete: {target_ref} ({progress()})")
