"""
Input validation module for the shim registry.

Provides validation functions for layer ids, repository names, tags,
checksums and layer metadata sent by the daemon during a push.
"""

import hashlib
import json
import logging
import re
from flask import abort

from .config import config

logger = logging.getLogger(__name__)

CHECKSUM_PATTERN = re.compile(r'^(sha256|tarsum(\.[a-z0-9]+)?\+sha256):[a-f0-9]{64}$')


def compute_sha256(data: bytes) -> str:
    """
    Compute SHA256 digest in registry format.

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


def validate_layer_id(layer_id: str) -> None:
    """
    Validate a layer id taken from a request path.

    The id becomes a directory name under the output directory, so it must
    never contain path separators or start with a dot.

    Args:
        layer_id: Layer id to validate

    Raises:
        HTTPException: 400 Bad Request if the id is invalid

    Validation Rules:
        - Must be 1-{MAX_LAYER_ID_LENGTH} characters (configurable)
        - Must start with an alphanumeric character
        - Only alphanumeric characters, dots (.), hyphens (-) and underscores (_)

    Examples:
        >>> validate_layer_id("5f70bf18a086")  # OK
        >>> validate_layer_id("../etc")  # Raises 400
    """
    if not layer_id or len(layer_id) > config.MAX_LAYER_ID_LENGTH:
        logger.warning(f"Invalid layer id length: {len(layer_id)}")
        abort(400, f"Invalid layer id: must be 1-{config.MAX_LAYER_ID_LENGTH} characters")

    if not re.match(r'^[a-zA-Z0-9][a-zA-Z0-9._-]*$', layer_id):
        logger.warning(f"Invalid layer id format: {layer_id}")
        abort(400, "Invalid layer id: only alphanumeric, dots, hyphens, and underscores allowed")

    logger.debug(f"Layer id validated: {layer_id}")


def validate_repository(name: str) -> None:
    """
    Validate repository name.

    Args:
        name: Repository name (e.g., "layergrab_push_staging_tmp" or "library/busybox")

    Raises:
        HTTPException: 400 Bad Request if name is invalid

    Validation Rules:
        - Must be 1-{MAX_REPOSITORY_NAME_LENGTH} characters (configurable)
        - Only alphanumeric characters, dots (.), hyphens (-), underscores (_), and slashes (/)
    """
    if not name or len(name) > config.MAX_REPOSITORY_NAME_LENGTH:
        logger.warning(f"Invalid repository name length: {len(name)}")
        abort(400, f"Invalid repository name: must be 1-{config.MAX_REPOSITORY_NAME_LENGTH} characters")

    if not re.match(r'^[a-zA-Z0-9._/-]+$', name):
        logger.warning(f"Invalid repository name format: {name}")
        abort(400, "Invalid repository name: only alphanumeric, dots, hyphens, underscores, and slashes allowed")

    logger.debug(f"Repository validated: {name}")


def validate_tag(tag: str) -> None:
    """
    Validate image tag.

    Args:
        tag: Tag name to validate

    Raises:
        HTTPException: 400 Bad Request if tag is invalid

    Validation Rules:
        - Must be 1-{MAX_TAG_LENGTH} characters (configurable)
        - Only alphanumeric characters, dots (.), hyphens (-), and underscores (_)
    """
    if not tag or len(tag) > config.MAX_TAG_LENGTH:
        logger.warning(f"Invalid tag length: {len(tag)}")
        abort(400, f"Invalid tag: must be 1-{config.MAX_TAG_LENGTH} characters")

    if not re.match(r'^[a-zA-Z0-9._-]+$', tag):
        logger.warning(f"Invalid tag format: {tag}")
        abort(400, "Invalid tag: only alphanumeric, dots, hyphens, and underscores allowed")

    logger.debug(f"Tag validated: {tag}")


def validate_checksum(checksum: str | None) -> None:
    """
    Validate a checksum sent with ``PUT /v1/images/<id>/checksum``.

    Format:
        sha256:<64 hex chars> for payload checksums, or
        tarsum[.<version>]+sha256:<64 hex chars> from older daemons.
    """
    if not checksum:
        logger.warning("Missing layer checksum header")
        abort(400, "Missing layer checksum")

    if not CHECKSUM_PATTERN.match(checksum):
        logger.warning(f"Invalid checksum format: {checksum}")
        abort(400, "Invalid checksum: must be sha256:<64 hex characters> or a tarsum")

    logger.debug(f"Checksum validated: {checksum}")


def parse_metadata(layer_id: str, data: bytes) -> dict:
    """
    Check that a metadata body is well-formed enough to store.

    The raw bytes are what gets persisted; parsing only guards against
    bodies that are not a JSON object or that describe another layer.

    Args:
        layer_id: Layer id from the request path
        data: Raw request body

    Returns:
        The decoded JSON object

    Raises:
        HTTPException: 400 if the body is empty, not a JSON object, or its
            ``id`` key names a different layer
    """
    if not data:
        logger.warning(f"Empty metadata for layer {layer_id}")
        abort(400, "Invalid JSON: empty body")

    try:
        metadata = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        logger.warning(f"Undecodable metadata for layer {layer_id}")
        abort(400, "Invalid JSON")

    if not isinstance(metadata, dict):
        logger.warning(f"Metadata for layer {layer_id} is not an object")
        abort(400, "Invalid JSON: expected an object")

    if "id" in metadata and metadata["id"] != layer_id:
        logger.warning(f"Metadata id {metadata['id']} does not match layer {layer_id}")
        abort(400, "JSON data contains invalid id")

    return metadata
