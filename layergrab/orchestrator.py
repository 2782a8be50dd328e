"""
Daemon side of a layer grab.

Resolves the requested image to a layer id, tags it into a repository on the
shim registry's address, asks the daemon to push it there and removes the
temporary tags again. ``grab_layer`` runs the whole sequence.
"""

import logging
import os

import docker
import requests
from docker.errors import DockerException

from .errors import OrchestratorError, StartupError
from .layout import layout_for
from .routes import create_app
from .server import ShimServer
from .session import ShimContext

logger = logging.getLogger(__name__)

DAEMON_ERRORS = (DockerException, requests.RequestException)

STAGING_REPOSITORY = "layergrab_push_staging_tmp"
NICE_REPOSITORY = "layergrab_tmp"
TEMPORARY_TAG = "latest"


def strip_digest_prefix(image_id: str) -> str:
    """
    Layer id as used on disk and in the v1 push protocol.

    Example:
        >>> strip_digest_prefix("sha256:5f70bf18a086")
        '5f70bf18a086'
    """
    return image_id.split(":", 1)[1] if image_id.startswith("sha256:") else image_id


class PushOrchestrator:
    """
    Drives tag, push and untag against the daemon.

    Args:
        client: ``docker.DockerClient``
        registry_address: ``host:port`` of the running shim registry
        remove_tag: Also remove the nice temporary tag after the push.
            Can trigger layer deletion if nothing else references the layer.
    """

    def __init__(self, client, registry_address: str, remove_tag: bool = False):
        self.client = client
        self.registry_address = registry_address
        self.remove_tag = remove_tag

    @property
    def staging_repository(self) -> str:
        return f"{self.registry_address}/{STAGING_REPOSITORY}"

    def resolve(self, reference: str) -> str:
        """
        Resolve an image name or (short) id to the full layer id.

        Raises:
            OrchestratorError: if the daemon does not know the reference
        """
        try:
            image = self.client.images.get(reference)
        except DAEMON_ERRORS as e:
            raise OrchestratorError(f"Cannot resolve '{reference}': {e}", stage="resolve")

        layer_id = strip_digest_prefix(image.id)
        if layer_id != reference:
            logger.info(f"Full layer id found: {layer_id}")
        return layer_id

    def push(self, layer_id: str) -> None:
        """
        Push one layer to the shim registry.

        The image gets *two* temporary tags: removing the only tag of an
        image deletes it even with noprune, so the staging tag can go and
        the nicer one stays unless ``remove_tag`` was set.
        """
        logger.debug("Tagging image into temporary repo")
        try:
            image = self.client.images.get(layer_id)
            image.tag(self.staging_repository, TEMPORARY_TAG, force=True)
            image.tag(NICE_REPOSITORY, TEMPORARY_TAG, force=True)
        except DAEMON_ERRORS as e:
            raise OrchestratorError(f"Cannot tag layer {layer_id}: {e}", stage="tagging")

        logger.debug("Pushing image")
        try:
            for line in self.client.images.push(
                self.staging_repository, tag=TEMPORARY_TAG, stream=True, decode=True
            ):
                if "error" in line:
                    raise OrchestratorError(f"Push of layer {layer_id} failed: {line['error']}", stage="pushing")
                if "status" in line:
                    logger.debug(f"[push] {line['status']} {line.get('progress', '')}".rstrip())
        except DAEMON_ERRORS as e:
            raise OrchestratorError(f"Push of layer {layer_id} failed: {e}", stage="pushing")

        self.cleanup()

    def cleanup(self) -> None:
        logger.debug("Removing ugly temporary image tag")
        self._untag(f"{self.staging_repository}:{TEMPORARY_TAG}")
        if self.remove_tag:
            logger.debug("Removing nice temporary image tag")
            self._untag(f"{NICE_REPOSITORY}:{TEMPORARY_TAG}")

    def _untag(self, name: str) -> None:
        try:
            self.client.images.remove(name, force=False, noprune=True)
        except DAEMON_ERRORS as e:
            raise OrchestratorError(f"Cannot remove temporary tag {name}: {e}", stage="cleanup")


def grab_layer(
    reference: str,
    output_dir: str = ".",
    registry_format: bool = False,
    remove_tag: bool = False,
    client=None,
    sleeps_ms: list[int] | None = None,
) -> str:
    """
    Export one layer of a local image into ``output_dir/<layer id>``.

    Args:
        reference: Image name, or id of the layer to export
        output_dir: Directory the layer directory is created in
        registry_format: Write the registry layout instead of the export layout
        remove_tag: Remove the nice temporary tag afterwards
        client: Docker client. Default: ``docker.from_env()`` (honours DOCKER_HOST)
        sleeps_ms: Liveness back-off sequence. Default: PING_SLEEPS_MS

    Returns:
        Path of the written layer directory

    Raises:
        StartupError: output directory exists, bind failure or liveness timeout
        OrchestratorError: a daemon step failed or the push ended without
            the layer being persisted
    """
    if client is None:
        try:
            client = docker.from_env()
        except DockerException as e:
            raise OrchestratorError(f"Cannot connect to the docker daemon: {e}", stage="connect")

    if not os.path.isdir(output_dir):
        raise StartupError(f"Output directory {output_dir} does not exist")

    context = ShimContext(layout_for(output_dir, registry_format))
    server = ShimServer(create_app(context))
    try:
        orchestrator = PushOrchestrator(client, server.address, remove_tag=remove_tag)
        layer_id = orchestrator.resolve(reference)
        logger.info(f"Layer folder will be dumped into {output_dir}")
        session = context.expect(layer_id)

        server.start()
        server.wait_until_ready(sleeps_ms)
        orchestrator.push(layer_id)
    finally:
        server.shutdown()

    if not session.persisted:
        raise OrchestratorError(
            f"Push of layer {layer_id} completed but the layer was not fully received ({session.state.value})",
            stage="pushing",
        )

    logger.info("Export complete")
    return context.layout.layer_dir(layer_id)
