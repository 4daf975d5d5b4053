"""
Build input fingerprinting.

The fingerprint is a SHA-256 hex digest over the raw bytes of the Dockerfile
only. Changes to other files in the build context (files copied into the
image) are not detected; this is a known limitation of the drift check.
"""

import hashlib
import logging
import os

from .errors import InvalidSpec
from .models import BUILD_INSTRUCTIONS_FILE

logger = logging.getLogger(__name__)


def read_build_instructions(context_path: str) -> bytes:
    """
    Read the Dockerfile from a build context directory.

    Args:
        context_path: Directory containing a file named exactly "Dockerfile"

    Returns:
        Raw bytes of the Dockerfile

    Raises:
        InvalidSpec: if the directory or the Dockerfile does not exist or cannot be read
    """
    path = os.path.join(context_path, BUILD_INSTRUCTIONS_FILE)
    try:
        with open(path, "rb") as f:
            return f.read()
    except FileNotFoundError as e:
        logger.error(f"Dockerfile not found in build context: {context_path}")
        raise InvalidSpec(f"No {BUILD_INSTRUCTIONS_FILE} found in build context '{context_path}'", cause=e)
    except OSError as e:
        logger.error(f"Cannot read {path}: {e}")
        raise InvalidSpec(f"Cannot read {BUILD_INSTRUCTIONS_FILE} in build context '{context_path}'", cause=e)


def compute_fingerprint(context_path: str) -> str:
    """
    Compute the content fingerprint of a build context.

    Args:
        context_path: Directory containing the Dockerfile

    Returns:
        64-character lowercase hex SHA-256 digest of the Dockerfile bytes

    Example:
        >>> compute_fingerprint("examples/promtail")  # doctest: +SKIP
        '5f1c...'
    """
    fingerprint = hashlib.sha256(read_build_instructions(context_path)).hexdigest()
    logger.debug(f"Fingerprint of {context_path}: {fingerprint}")
    return fingerprint
