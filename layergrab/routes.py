"""
Flask application and shim registry endpoints.

Implements the push side of the registry API v1, enough for a daemon to push
one layer. The layer's artifacts are written to disk by the ``ShimContext``
the app was created with instead of being stored in a registry.
"""

import json
import logging
from flask import Blueprint, Flask, Response, abort, current_app, jsonify, make_response, request

from . import __version__
from .config import config
from .errors import PersistenceError, ProtocolError
from .session import ShimContext
from .validation import (
    parse_metadata,
    validate_checksum,
    validate_layer_id,
    validate_repository,
    validate_tag,
)

logger = logging.getLogger(__name__)

registry = Blueprint("registry", __name__)


def create_app(context: ShimContext) -> Flask:
    """
    Create the shim registry app around a session context.

    Args:
        context: Shared push state; every handler reads it from
            ``current_app.extensions["layergrab"]``

    Returns:
        Flask app ready to be served
    """
    app = Flask(__name__)
    app.extensions["layergrab"] = context
    app.register_blueprint(registry)
    logger.debug(f"Shim registry app created for {context}")
    return app


def _context() -> ShimContext:
    return current_app.extensions["layergrab"]


def _load_json_body(expected_type: type):
    try:
        data = json.loads(request.get_data().decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        logger.warning(f"Undecodable JSON body on {request.path}")
        abort(400, "Error Decoding JSON")
    if not isinstance(data, expected_type):
        logger.warning(f"Unexpected JSON body on {request.path}: {type(data).__name__}")
        abort(400, "Invalid data")
    return data


def _read_bounded(stream, limit: int) -> bytes:
    """Read a request body up to ``limit`` bytes. Short reads are retried."""
    data = bytearray()
    while len(data) < limit:
        chunk = stream.read(limit - len(data))
        if not chunk:
            break
        data += chunk
    return bytes(data)


def _require_layer_id() -> str:
    layer_id = _context().layer_id
    if layer_id is None:
        abort(404, "No layer is being exported")
    return layer_id


# -------------------------------
# Error Handling
# -------------------------------


@registry.app_errorhandler(ProtocolError)
@registry.app_errorhandler(PersistenceError)
def handle_push_error(error):
    """Turn push failures into JSON error responses the daemon reports."""
    if isinstance(error, PersistenceError):
        logger.error(f"{request.method} {request.path} failed: {error}")
    else:
        logger.warning(f"{request.method} {request.path} rejected ({error.status_code}): {error}")
    return jsonify({"error": str(error)}), error.status_code


@registry.after_app_request
def add_registry_headers(response):
    response.headers["X-Docker-Registry-Version"] = __version__
    return response


# -------------------------------
# Liveness
# -------------------------------


@registry.route("/_ping")
@registry.route("/v1/_ping")
def ping():
    """
    Liveness probe.

    Answers as soon as the listener is serving. Also tells the daemon this
    registry works without an index.
    """
    resp = make_response(jsonify(True))
    resp.headers["X-Docker-Registry-Standalone"] = "true"
    return resp


# -------------------------------
# Repository / Tag Endpoints
# -------------------------------


@registry.route("/v1/repositories/<path:repository>/", methods=["PUT"])
def put_repository(repository):
    """
    Start of a push: the daemon announces the images it is about to send.

    Response Headers:
        X-Docker-Token: Placeholder token, never checked
        X-Docker-Endpoints: This shim's own address, so layer uploads come back here
    """
    validate_repository(repository)
    images = _load_json_body(list)
    logger.info(f"Push started for repository '{repository}' ({len(images)} images announced)")

    token = f'Token signature=layergrab,repository="{repository}",access=write'
    resp = Response(status=200)
    resp.headers["X-Docker-Token"] = token
    resp.headers["WWW-Authenticate"] = token
    resp.headers["X-Docker-Endpoints"] = request.host
    return resp


@registry.route("/v1/repositories/<path:repository>/images", methods=["PUT"])
def put_repository_images(repository):
    """End of a push: the daemon sends the final image list."""
    validate_repository(repository)
    _load_json_body(list)
    logger.info(f"Push finished for repository '{repository}'")
    return Response(status=204)


@registry.route("/v1/repositories/<path:repository>/images", methods=["GET"])
def get_repository_images(repository):
    validate_repository(repository)
    layer_id = _require_layer_id()
    image = {"id": layer_id}
    checksum = _context().session(layer_id).checksum
    if checksum:
        image["checksum"] = checksum
    return jsonify([image])


@registry.route("/v1/repositories/<path:repository>/tags", methods=["GET"])
def get_tags(repository):
    """
    List tags of a repository.

    Every repository resolves to the exported layer; tags the daemon
    has set are listed, ``latest`` otherwise.
    """
    validate_repository(repository)
    layer_id = _require_layer_id()
    tags = _context().tags(repository) or {"latest": layer_id}
    return jsonify(tags)


@registry.route("/v1/repositories/<path:repository>/tags/<tag>", methods=["GET"])
def get_tag(repository, tag):
    validate_repository(repository)
    validate_tag(tag)
    layer_id = _context().tags(repository).get(tag) or _require_layer_id()
    logger.debug(f"Tag lookup: {repository}:{tag} -> {layer_id}")
    return jsonify(layer_id)


@registry.route("/v1/repositories/<path:repository>/tags/<tag>", methods=["PUT"])
def put_tag(repository, tag):
    """Point a tag at a layer. Only the exported layer can be tagged."""
    validate_repository(repository)
    validate_tag(tag)
    layer_id = _load_json_body(str)
    context = _context()
    context.target_session(layer_id)
    context.record_tag(repository, tag, layer_id)
    logger.info(f"Tagged {repository}:{tag} -> {layer_id}")
    return jsonify(True)


# -------------------------------
# Image Endpoints
# -------------------------------


@registry.route("/v1/images/<layer_id>/json", methods=["GET"])
def get_image_json(layer_id):
    """
    Does the registry already have this layer?

    Layers other than the exported one are reported as present so the
    daemon skips them. The exported layer is missing until it is persisted.
    """
    validate_layer_id(layer_id)
    context = _context()
    if not context.is_target(layer_id):
        logger.debug(f"Reporting layer {layer_id} as already present")
        return jsonify({"id": layer_id})

    session = context.session(layer_id)
    if not session.persisted:
        abort(404, "Image not found")

    checksums = session.checksums()
    resp = make_response(session.metadata)
    resp.headers["Content-Type"] = "application/json"
    resp.headers["X-Docker-Size"] = str(checksums["size"])
    if checksums["payload_checksum"]:
        resp.headers["X-Docker-Payload-Checksum"] = checksums["payload_checksum"]
    return resp


@registry.route("/v1/images/<layer_id>/ancestry", methods=["GET"])
def get_image_ancestry(layer_id):
    validate_layer_id(layer_id)
    return jsonify([layer_id])


@registry.route("/v1/images/<layer_id>/json", methods=["PUT"])
def put_image_json(layer_id):
    """
    Receive the layer metadata.

    The body is stored byte for byte as the layout's ``json`` file.

    Raises:
        400: Invalid layer id, not a JSON object, id mismatch, or not the exported layer
        413: Body larger than MAX_METADATA_SIZE
        409: Layer already persisted with different metadata
    """
    validate_layer_id(layer_id)
    session = _context().target_session(layer_id)

    if request.content_length is not None and request.content_length > config.MAX_METADATA_SIZE:
        abort(413, f"Metadata larger than {config.MAX_METADATA_SIZE} bytes")
    # chunked bodies have no Content-Length, so stop reading one byte past the limit
    data = _read_bounded(request.stream, config.MAX_METADATA_SIZE + 1)
    if len(data) > config.MAX_METADATA_SIZE:
        abort(413, f"Metadata larger than {config.MAX_METADATA_SIZE} bytes")
    parse_metadata(layer_id, data)

    session.receive_metadata(data)
    logger.info(f"Metadata received for layer {layer_id}")
    return jsonify(True)


@registry.route("/v1/images/<layer_id>/layer", methods=["PUT"])
def put_image_layer(layer_id):
    """
    Receive the layer blob.

    The body is streamed straight into the layout's blob file, chunked or
    sized, while the blob and payload checksums are computed.

    Raises:
        400: Invalid layer id, not the exported layer, or truncated body
        409: Layer already persisted with a different blob
        500: Writing the blob failed
    """
    validate_layer_id(layer_id)
    session = _context().target_session(layer_id)
    session.receive_blob(request.stream, request.content_length)
    logger.info(f"Layer blob received for layer {layer_id} ({session.blob_size} bytes)")
    return jsonify(True)


@registry.route("/v1/images/<layer_id>/checksum", methods=["PUT"])
def put_image_checksum(layer_id):
    """
    Receive the checksum of the pushed layer.

    Request Headers:
        X-Docker-Checksum-Payload: sha256 over metadata, newline and blob
        X-Docker-Checksum: tarsum, sent by older daemons instead
    """
    validate_layer_id(layer_id)
    checksum = request.headers.get("X-Docker-Checksum-Payload") or request.headers.get("X-Docker-Checksum")
    validate_checksum(checksum)
    session = _context().target_session(layer_id)
    session.receive_checksum(checksum)
    logger.info(f"Checksum received for layer {layer_id}: {checksum}")
    return jsonify(True)


@registry.route("/v1/images/<layer_id>/checksum", methods=["GET"])
def get_image_checksum(layer_id):
    """
    Report the checksums the shim computed while the blob streamed.

    Response Format:
        {"checksum": "sha256:...", "payload_checksum": "sha256:...", "size": 1234}
    """
    validate_layer_id(layer_id)
    session = _context().target_session(layer_id)
    return jsonify(session.checksums())
