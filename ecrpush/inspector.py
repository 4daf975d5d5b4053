"""
Read-only registry queries.

Nothing here is cached: repository existence, tag mutability and tags can be
changed by other actors between calls, so every reconciliation call fetches
a fresh RepositorySnapshot.
"""

import logging

from botocore.exceptions import BotoCoreError, ClientError

from .aws import error_code, make_client, translate_aws_error
from .errors import ManifestNotFound, RepositoryNotFound
from .models import Mutability

logger = logging.getLogger(__name__)

# Manifest types returned verbatim by batch_get_image
ACCEPTED_MEDIA_TYPES = [
    "application/vnd.docker.distribution.manifest.v2+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.oci.image.index.v1+json",
]


class RepositorySnapshot:
    """
    Registry state of one repository, fetched for a single reconciliation call.

    Existence and mutability are read once when the snapshot is taken; tag
    and manifest lookups go to the registry on every call.
    """

    def __init__(self, inspector: "RegistryInspector", repository_name: str, region: str,
                 exists: bool, mutability: Mutability | None):
        self._inspector = inspector
        self.repository_name = repository_name
        self.region = region
        self.exists = exists
        self.mutability = mutability

    @property
    def is_immutable(self) -> bool:
        return self.mutability == Mutability.IMMUTABLE

    def tag_exists(self, tag: str) -> bool:
        return self._inspector.tag_exists(self.repository_name, tag, self.region)

    def manifest(self, tag: str) -> str:
        return self._inspector.get_manifest(self.repository_name, tag, self.region)

    def __repr__(self):
        return (
            f"RepositorySnapshot(repository={self.repository_name}, region={self.region}, "
            f"exists={self.exists}, mutability={self.mutability.value if self.mutability else None})"
        )


class RegistryInspector:
    """
    Read-only view of the container registry.

    Args:
        client_factory: Callable (service, region) -> boto3 client. Defaults to
            a factory creating a fresh, non-retrying client per call.
    """

    def __init__(self, client_factory=make_client):
        self._client_factory = client_factory

    def _describe_repository(self, repository_name: str, region: str) -> dict | None:
        ecr = self._client_factory("ecr", region)
        try:
            response = ecr.describe_repositories(repositoryNames=[repository_name])
        except ClientError as e:
            if error_code(e) == "RepositoryNotFoundException":
                logger.debug(f"Repository '{repository_name}' not found in {region}")
                return None
            raise translate_aws_error(e, f"describe repository '{repository_name}'")
        except BotoCoreError as e:
            raise translate_aws_error(e, f"describe repository '{repository_name}'")

        repositories = response.get("repositories", [])
        return repositories[0] if repositories else None

    def snapshot(self, repository_name: str, region: str) -> RepositorySnapshot:
        """
        Fetch existence and mutability of a repository in a single call.

        Returns:
            RepositorySnapshot; mutability is None when the repository does not exist
        """
        repository = self._describe_repository(repository_name, region)
        if repository is None:
            snapshot = RepositorySnapshot(self, repository_name, region, exists=False, mutability=None)
        else:
            mutability = Mutability.from_policy(repository.get("imageTagMutability"))
            snapshot = RepositorySnapshot(self, repository_name, region, exists=True, mutability=mutability)
        logger.debug(f"Fetched {snapshot}")
        return snapshot

    def repository_exists(self, repository_name: str, region: str) -> bool:
        return self._describe_repository(repository_name, region) is not None

    def repository_mutability(self, repository_name: str, region: str) -> Mutability:
        """
        Tag mutability policy of a repository.

        Raises:
            RepositoryNotFound: if the repository does not exist
        """
        repository = self._describe_repository(repository_name, region)
        if repository is None:
            raise RepositoryNotFound(f"Repository '{repository_name}' does not exist in {region}")
        return Mutability.from_policy(repository.get("imageTagMutability"))

    def tag_exists(self, repository_name: str, tag: str, region: str) -> bool:
        """
        Check whether a tag exists in a repository.

        Raises:
            RepositoryNotFound: if the repository does not exist
        """
        ecr = self._client_factory("ecr", region)
        try:
            ecr.describe_images(repositoryName=repository_name, imageIds=[{"imageTag": tag}])
        except ClientError as e:
            code = error_code(e)
            if code == "ImageNotFoundException":
                logger.debug(f"Tag '{tag}' not found in '{repository_name}'")
                return False
            if code == "RepositoryNotFoundException":
                raise RepositoryNotFound(f"Repository '{repository_name}' does not exist in {region}", cause=e)
            raise translate_aws_error(e, f"look up tag '{tag}' in '{repository_name}'")
        except BotoCoreError as e:
            raise translate_aws_error(e, f"look up tag '{tag}' in '{repository_name}'")
        return True

    def get_manifest(self, repository_name: str, tag: str, region: str) -> str:
        """
        Fetch the manifest JSON currently published under a tag.

        Returns:
            The manifest document exactly as stored by the registry

        Raises:
            RepositoryNotFound: if the repository does not exist
            ManifestNotFound: if no image carries the tag
        """
        ecr = self._client_factory("ecr", region)
        try:
            response = ecr.batch_get_image(
                repositoryName=repository_name,
                imageIds=[{"imageTag": tag}],
                acceptedMediaTypes=ACCEPTED_MEDIA_TYPES,
            )
        except ClientError as e:
            if error_code(e) == "RepositoryNotFoundException":
                raise RepositoryNotFound(f"Repository '{repository_name}' does not exist in {region}", cause=e)
            raise translate_aws_error(e, f"get manifest of '{repository_name}:{tag}'")
        except BotoCoreError as e:
            raise translate_aws_error(e, f"get manifest of '{repository_name}:{tag}'")

        images = response.get("images", [])
        if not images or not images[0].get("imageManifest"):
            failures = response.get("failures", [])
            reason = failures[0].get("failureReason") if failures else None
            logger.warning(f"No manifest for '{repository_name}:{tag}'")
            raise ManifestNotFound(f"No image found with tag '{tag}' in repository '{repository_name}'", cause=reason)
        return images[0]["imageManifest"]

    def get_account_id(self, region: str) -> str:
        """Account id of the credentials in use."""
        sts = self._client_factory("sts", region)
        try:
            return sts.get_caller_identity()["Account"]
        except (ClientError, BotoCoreError) as e:
            raise translate_aws_error(e, "get caller identity")
