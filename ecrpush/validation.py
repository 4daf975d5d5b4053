"""
Input validation module for the image reconciliation service.

Provides validation functions for repository names, image names, tags and
regions, plus the digest helper used when logging manifests.
"""

import hashlib
import logging
import re

from .config import config
from .errors import InvalidSpec

logger = logging.getLogger(__name__)

# ECR repository names: lowercase path components separated by "/"
_REPOSITORY_RE = re.compile(r"^(?:[a-z0-9]+(?:[._-][a-z0-9]+)*/)*[a-z0-9]+(?:[._-][a-z0-9]+)*$")
_IMAGE_NAME_RE = re.compile(r"^[a-z0-9]+(?:[._-][a-z0-9]+)*(?:/[a-z0-9]+(?:[._-][a-z0-9]+)*)*$")
_TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]*$")
_REGION_RE = re.compile(r"^[a-z]{2}(?:-[a-z]+)+-\d+$")


def compute_sha256(data: bytes) -> str:
    """
    Compute SHA256 digest in OCI/Docker format.

    Args:
        data: Bytes to hash

    Returns:
        String in format "sha256:<64 hex chars>"

    Example:
        >>> compute_sha256(b"hello")
        'sha256:2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824'
    """
    h = hashlib.sha256()
    h.update(data)
    return "sha256:" + h.hexdigest()


def manifest_digest(manifest: str) -> str:
    """
    Digest of a registry manifest string, as the registry computes it.

    Used to log manifests by content address instead of dumping the JSON.
    """
    return compute_sha256(manifest.encode("utf-8"))


def validate_repository_name(name: str) -> None:
    """
    Validate a registry repository name.

    Args:
        name: Repository name (e.g., "repo-1" or "team/service")

    Raises:
        InvalidSpec: if the name is empty, too long or malformed

    Validation Rules:
        - Must be 2-{MAX_REPOSITORY_NAME_LENGTH} characters (configurable)
        - Lowercase alphanumeric components separated by dots, hyphens,
          underscores, with "/" between path components
    """
    if not name or len(name) < 2 or len(name) > config.MAX_REPOSITORY_NAME_LENGTH:
        logger.warning(f"Invalid repository name length: {len(name or '')}")
        raise InvalidSpec(
            f"Invalid repository name: must be 2-{config.MAX_REPOSITORY_NAME_LENGTH} characters"
        )

    if not _REPOSITORY_RE.match(name):
        logger.warning(f"Invalid repository name format: {name}")
        raise InvalidSpec(
            "Invalid repository name: only lowercase alphanumeric components "
            "separated by dots, hyphens, underscores and slashes allowed"
        )

    logger.debug(f"Repository name validated: {name}")


def validate_image_name(name: str) -> None:
    """
    Validate the local image name used for the build.

    Args:
        name: Image name without tag (e.g., "myapp")

    Raises:
        InvalidSpec: if the name is empty, too long or malformed
    """
    if not name or len(name) > config.MAX_IMAGE_NAME_LENGTH:
        logger.warning(f"Invalid image name length: {len(name or '')}")
        raise InvalidSpec(f"Invalid image name: must be 1-{config.MAX_IMAGE_NAME_LENGTH} characters")

    if not _IMAGE_NAME_RE.match(name):
        logger.warning(f"Invalid image name format: {name}")
        raise InvalidSpec(
            "Invalid image name: only lowercase alphanumeric, dots, hyphens, underscores and slashes allowed"
        )

    logger.debug(f"Image name validated: {name}")


def validate_tag(tag: str) -> None:
    """
    Validate container image tag.

    Args:
        tag: Tag name to validate

    Raises:
        InvalidSpec: if tag is invalid

    Validation Rules:
        - Must be 1-{MAX_TAG_LENGTH} characters (configurable)
        - Only alphanumeric characters, dots (.), hyphens (-), and underscores (_)
        - Must not start with a dot or hyphen
    """
    if not tag or len(tag) > config.MAX_TAG_LENGTH:
        logger.warning(f"Invalid tag length: {len(tag or '')}")
        raise InvalidSpec(f"Invalid tag: must be 1-{config.MAX_TAG_LENGTH} characters")

    if not _TAG_RE.match(tag):
        logger.warning(f"Invalid tag format: {tag}")
        raise InvalidSpec(
            "Invalid tag: only alphanumeric, dots, hyphens, and underscores allowed, "
            "and it must not start with a dot or hyphen"
        )

    logger.debug(f"Tag validated: {tag}")


def validate_region(region: str) -> None:
    """Validate an AWS region name such as "eu-central-1"."""
    if not region or not _REGION_RE.match(region):
        logger.warning(f"Invalid region: {region!r}")
        raise InvalidSpec(f"Invalid region: {region!r}")
