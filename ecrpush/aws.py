"""
boto3 client construction and AWS error translation.

Clients are created per call and region with a fresh session, without
internal retries: every failure is surfaced to the caller, which owns the
retry policy.
"""

import logging

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError, PartialCredentialsError

from .config import config
from .errors import AuthenticationFailed, RegistryRequestFailed, RegistryUnreachable

logger = logging.getLogger(__name__)

AUTH_ERROR_CODES = {
    "AccessDeniedException",
    "UnrecognizedClientException",
    "ExpiredTokenException",
    "InvalidSignatureException",
    "InvalidClientTokenId",
    "AccessDenied",
}


def make_client(service: str, region: str):
    """
    Create a boto3 client for a service in a region.

    A new session is created for every client so concurrent reconciliations
    never share a session object.
    """
    client_config = BotoConfig(
        region_name=region,
        connect_timeout=config.AWS_CONNECT_TIMEOUT,
        read_timeout=config.AWS_READ_TIMEOUT,
        retries={"total_max_attempts": 1, "mode": "standard"},
    )
    return boto3.session.Session().client(service, region_name=region, config=client_config)


def error_code(exc: Exception) -> str:
    """Return the AWS error code of a ClientError, or "" for anything else."""
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code", "")
    return ""


def translate_aws_error(exc: Exception, action: str):
    """
    Map a botocore exception to a ReconcileError.

    Args:
        exc: ClientError or BotoCoreError raised by a client call
        action: Short description of the failed call, e.g. "describe repository 'repo-1'"

    Returns:
        AuthenticationFailed for credential and permission errors,
        RegistryUnreachable for transport-level errors, and
        RegistryRequestFailed for any other error response.
    """
    code = error_code(exc)
    logger.error(f"Registry call failed ({action}): {code or type(exc).__name__}: {exc}")
    if code in AUTH_ERROR_CODES or isinstance(exc, (NoCredentialsError, PartialCredentialsError)):
        return AuthenticationFailed(f"Not authorized to {action}", cause=exc)
    if isinstance(exc, BotoCoreError):
        return RegistryUnreachable(f"Registry unreachable while trying to {action}", cause=exc)
    return RegistryRequestFailed(f"Registry refused to {action}", cause=exc)
