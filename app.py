"""
ECR build-and-push reconciliation service.

Serves the image lifecycle (create, read, plan, update, delete) over JSON
HTTP for a declarative infrastructure engine. Each request carries the
desired spec and the last persisted state; the service builds images with
the local Docker daemon and talks to Amazon ECR with the ambient AWS
credentials.

Lifecycle Endpoints:
    - GET  /v1/                 - Service and Docker daemon check
    - POST /v1/images/create    - Build and push an image
    - POST /v1/images/read      - Refresh the pushed manifest
    - POST /v1/images/plan      - Detect tag change and Dockerfile drift
    - POST /v1/images/update    - Retag and/or rebuild
    - POST /v1/images/delete    - Remove the registry tag

Environment Variables:
    LOG_LEVEL, FLASK_HOST, FLASK_PORT, AWS_REGION, AWS_CONNECT_TIMEOUT,
    AWS_READ_TIMEOUT, DOCKER_TIMEOUT, OPERATION_TIMEOUT,
    MAX_REPOSITORY_NAME_LENGTH, MAX_IMAGE_NAME_LENGTH, MAX_TAG_LENGTH

Example:
    $ AWS_REGION=eu-central-1 LOG_LEVEL=DEBUG python app.py
    $ curl -X POST localhost:8088/v1/images/create -H 'Content-Type: application/json' \\
        -d '{"spec": {"repository_name": "repo-1", "image_name": "myapp", "image_tag": "v1",
             "build_context_path": "./examples/promtail"}}'
"""

import logging

from ecrpush.config import config
from ecrpush.routes import app

# Configure logging
logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def main():
    """Main entry point for the reconciliation service."""
    debug_mode = logger.getEffectiveLevel() == logging.DEBUG
    logger.info(f"Starting image reconciliation service on {config.FLASK_HOST}:{config.FLASK_PORT}")
    logger.info(f"Configuration: {config}")
    logger.info(f"Log level: {logging.getLevelName(logger.getEffectiveLevel())}")
    if debug_mode:
        logger.info("Flask debug mode enabled")
    app.run(host=config.FLASK_HOST, port=config.FLASK_PORT, debug=debug_mode)


if __name__ == "__main__":
    main()
