"""
Configuration module for the image reconciliation service.

Every setting is read once from the environment at import time.
"""

import os


class Config:
    """
    Service configuration from environment variables.

    Reconciler, registry client and HTTP server settings.
    Each attribute is overridden by the environment variable of the same name.

    Region and deadline are only defaults for the HTTP layer; the reconciler
    receives them explicitly through a ReconcileContext on every call.
    """

    def __init__(self):
        """
        Initialize configuration from environment variables.

        Environment Variables:
            LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR). Default: INFO
            FLASK_HOST: Server bind address. Default: 0.0.0.0
            FLASK_PORT: Server bind port. Default: 8088
            AWS_REGION: Region used when a request names none. Default: empty
            AWS_CONNECT_TIMEOUT: Registry API connect timeout in seconds. Default: 10
            AWS_READ_TIMEOUT: Registry API read timeout in seconds. Default: 60
            DOCKER_TIMEOUT: Docker API socket timeout in seconds. Default: 300
            OPERATION_TIMEOUT: Default per-call deadline in seconds, 0 disables. Default: 0
            MAX_REPOSITORY_NAME_LENGTH: Maximum repository name length. Default: 256
            MAX_IMAGE_NAME_LENGTH: Maximum local image name length. Default: 255
            MAX_TAG_LENGTH: Maximum tag length. Default: 128
        """
        # Logging
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

        # Server
        self.FLASK_HOST = os.getenv("FLASK_HOST", "0.0.0.0")
        self.FLASK_PORT = int(os.getenv("FLASK_PORT", "8088"))

        # Registry
        self.AWS_REGION = os.getenv("AWS_REGION", "")
        self.AWS_CONNECT_TIMEOUT = int(os.getenv("AWS_CONNECT_TIMEOUT", "10"))  # seconds
        self.AWS_READ_TIMEOUT = int(os.getenv("AWS_READ_TIMEOUT", "60"))  # seconds

        # Docker toolchain
        self.DOCKER_TIMEOUT = int(os.getenv("DOCKER_TIMEOUT", "300"))  # seconds

        # Lifecycle calls
        self.OPERATION_TIMEOUT = int(os.getenv("OPERATION_TIMEOUT", "0"))  # seconds

        # Validation limits
        self.MAX_REPOSITORY_NAME_LENGTH = int(os.getenv("MAX_REPOSITORY_NAME_LENGTH", "256"))
        self.MAX_IMAGE_NAME_LENGTH = int(os.getenv("MAX_IMAGE_NAME_LENGTH", "255"))
        self.MAX_TAG_LENGTH = int(os.getenv("MAX_TAG_LENGTH", "128"))

    def __repr__(self):
        """String representation for logging."""
        return (
            f"Config(LOG_LEVEL={self.LOG_LEVEL}, "
            f"FLASK_HOST={self.FLASK_HOST}, "
            f"FLASK_PORT={self.FLASK_PORT}, "
            f"AWS_REGION={self.AWS_REGION or '<unset>'}, "
            f"DOCKER_TIMEOUT={self.DOCKER_TIMEOUT}, "
            f"OPERATION_TIMEOUT={self.OPERATION_TIMEOUT})"
        )


# Global config instance
config = Config()
