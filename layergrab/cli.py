"""
Command line entry point for the layer grabber.
"""

import logging
import os
import signal
import sys

import click

from . import __version__
from .config import config
from .errors import LayerGrabError
from .orchestrator import grab_layer

logger = logging.getLogger(__name__)


def configure_logging(debug: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else config.LOG_LEVEL,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _handle_signal(signum, frame):
    logger.debug(f"Received signal '{signal.Signals(signum).name}', exiting")
    # in-flight writes are abandoned, temporary tags are left in place
    os._exit(1)


def install_signal_handlers() -> None:
    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _handle_signal)


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(__version__, prog_name="layergrab")
@click.option(
    "-o",
    "--outdir",
    default=".",
    show_default=True,
    type=click.Path(file_okay=False),
    help="Directory to write layer to.",
)
@click.option(
    "--clean",
    is_flag=True,
    help="Remove the temporary tag after use. WARNING: can trigger layer deletion "
    "if run on a layer with no children or other references.",
)
@click.option("--debug", is_flag=True, help="Set log level to debug.")
@click.option(
    "--registry-format",
    is_flag=True,
    help="Output in the format a registry would use, rather than for an image export.",
)
@click.argument("layer")
def main(outdir: str, clean: bool, debug: bool, registry_format: bool, layer: str) -> None:
    """Export one layer of a local image.

    LAYER is the layer id to export, or an image name to export the top
    layer of. The DOCKER_HOST environment variable overrides the default
    location of the docker daemon.
    """
    if not layer:
        raise click.UsageError("LAYER must not be empty")

    configure_logging(debug)
    install_signal_handlers()
    logger.debug(f"layergrab version {__version__}")
    logger.debug(f"Configuration: {config}")

    try:
        grab_layer(layer, outdir, registry_format=registry_format, remove_tag=clean)
    except LayerGrabError as e:
        logger.error(f"{e.stage} failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
