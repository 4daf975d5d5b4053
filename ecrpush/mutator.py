"""
Registry write operations: authenticated push, manifest retag and tag deletion.
"""

import base64
import binascii
import json
import logging

from botocore.exceptions import BotoCoreError, ClientError

from .aws import error_code, make_client, translate_aws_error
from .errors import (
    AuthenticationFailed,
    ImmutableTagConflict,
    RegistryRequestFailed,
    RepositoryNotFound,
    TagNotFound,
)
from .validation import manifest_digest

logger = logging.getLogger(__name__)

_MISSING_TAG_FAILURES = {"ImageNotFound", "ImageTagDoesNotMatchDigest"}


class RegistryMutator:
    """
    Write side of the container registry.

    Args:
        builder: ImageBuilder used to upload image layers
        client_factory: Callable (service, region) -> boto3 client
    """

    def __init__(self, builder, client_factory=make_client):
        self._builder = builder
        self._client_factory = client_factory

    def authenticate(self, region: str, registry_host: str) -> dict:
        """
        Obtain and decode a registry authorization token.

        Args:
            region: Registry region
            registry_host: Registry host the credentials are for

        Returns:
            Docker auth config {"username", "password", "serveraddress"}

        Raises:
            AuthenticationFailed: if no usable token could be obtained
            RegistryUnreachable: if the registry API could not be reached
        """
        ecr = self._client_factory("ecr", region)
        try:
            response = ecr.get_authorization_token()
        except (ClientError, BotoCoreError) as e:
            error = translate_aws_error(e, "get registry authorization token")
            if isinstance(error, RegistryRequestFailed):
                error = AuthenticationFailed("Registry authorization token request failed", cause=e)
            raise error

        auth_data = response.get("authorizationData", [])
        if not auth_data:
            raise AuthenticationFailed("No authorization data returned")

        try:
            token = base64.b64decode(auth_data[0]["authorizationToken"]).decode("utf-8")
        except (KeyError, binascii.Error, UnicodeDecodeError) as e:
            raise AuthenticationFailed("Error decoding authorization token", cause=e)

        username, sep, password = token.partition(":")
        if not sep or not username or not password:
            raise AuthenticationFailed("Invalid authorization token format")

        server = registry_host or auth_data[0].get("proxyEndpoint", "")
        logger.debug(f"Obtained registry credentials for {server} (user {username})")
        return {
            "username": username,
            "password": password,
            "serveraddress": server.removeprefix("https://"),
        }

    def push_image(self, remote_ref: str, region: str, registry_host: str, context=None) -> None:
        """
        Authenticate against the registry, then upload the image.

        Authentication completes before the upload starts, so an
        authentication failure never sends any layer bytes.

        Raises:
            AuthenticationFailed: if the registry token could not be obtained
            PushFailed: if the upload fails
            DeadlineExceeded: if the deadline passes before or during the upload
        """
        auth_config = self.authenticate(region, registry_host)
        if context is not None:
            context.check_deadline(f"push of {remote_ref}")
        self._builder.push(remote_ref, auth_config, context=context)

    def put_manifest(self, repository_name: str, tag: str, manifest: str, region: str) -> None:
        """
        Publish an existing manifest under a tag.

        The registry treats this as a new tag pointing at content it already
        stores; no layers are uploaded. Publishing a manifest under a tag that
        already points at it is a no-op.

        Raises:
            RepositoryNotFound: if the repository does not exist
            ImmutableTagConflict: if the repository is immutable and the tag is taken
        """
        params = {
            "repositoryName": repository_name,
            "imageManifest": manifest,
            "imageTag": tag,
        }
        try:
            media_type = json.loads(manifest).get("mediaType")
        except (ValueError, AttributeError):
            media_type = None
        if media_type:
            params["imageManifestMediaType"] = media_type

        digest = manifest_digest(manifest)
        logger.info(f"Publishing manifest {digest} as '{repository_name}:{tag}'")
        ecr = self._client_factory("ecr", region)
        try:
            ecr.put_image(**params)
        except ClientError as e:
            code = error_code(e)
            if code == "ImageAlreadyExistsException":
                logger.info(f"'{repository_name}:{tag}' already points at {digest}")
                return
            if code == "ImageTagAlreadyExistsException":
                raise ImmutableTagConflict(
                    f"Tag '{tag}' already exists in immutable repository '{repository_name}'", cause=e
                )
            if code == "RepositoryNotFoundException":
                raise RepositoryNotFound(f"Repository '{repository_name}' does not exist in {region}", cause=e)
            raise translate_aws_error(e, f"put image '{repository_name}:{tag}'")
        except BotoCoreError as e:
            raise translate_aws_error(e, f"put image '{repository_name}:{tag}'")

    def delete_tag(self, repository_name: str, tag: str, region: str, missing_ok: bool = False) -> None:
        """
        Delete a tag from a repository.

        Args:
            missing_ok: Treat an already-missing tag as success

        Raises:
            RepositoryNotFound: if the repository does not exist
            TagNotFound: if the tag is missing and missing_ok is False
            RegistryRequestFailed: if the registry reports another per-image failure
        """
        logger.info(f"Deleting tag '{repository_name}:{tag}'")
        ecr = self._client_factory("ecr", region)
        try:
            response = ecr.batch_delete_image(repositoryName=repository_name, imageIds=[{"imageTag": tag}])
        except ClientError as e:
            if error_code(e) == "RepositoryNotFoundException":
                raise RepositoryNotFound(f"Repository '{repository_name}' does not exist in {region}", cause=e)
            raise translate_aws_error(e, f"delete tag '{repository_name}:{tag}'")
        except BotoCoreError as e:
            raise translate_aws_error(e, f"delete tag '{repository_name}:{tag}'")

        for failure in response.get("failures", []):
            code = failure.get("failureCode", "")
            reason = failure.get("failureReason", code)
            if code in _MISSING_TAG_FAILURES:
                if missing_ok:
                    logger.info(f"Tag '{repository_name}:{tag}' already absent")
                    continue
                raise TagNotFound(f"Tag '{tag}' does not exist in repository '{repository_name}'", cause=reason)
            logger.error(f"Deleting '{repository_name}:{tag}' failed: {code}: {reason}")
            raise RegistryRequestFailed(f"Registry refused to delete tag '{repository_name}:{tag}'", cause=reason)
