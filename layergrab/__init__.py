"""
Single layer export through a shim registry.

Extracts one filesystem layer (and its metadata) of a local image by having
the docker daemon push it to a registry running on localhost, which writes
what it receives to disk instead of storing it.

Features:
    - Registry API v1 push endpoints, just enough for one layer
    - Streamed blob writes with running checksums
    - Export layout (VERSION, json, layer.tar) or registry layout (json, layer, checksum)
    - Idempotent replays of an already persisted push
    - Configurable via environment variables

Output Layouts:
    1. Export (default):
       <outdir>/<layer id>/VERSION, json, layer.tar

    2. Registry (--registry-format):
       <outdir>/<layer id>/json, layer, checksum

See DESIGN.md for the protocol details.
"""

__version__ = "0.1.0"

# Import key components for convenience
from .config import Config
from .errors import LayerGrabError, OrchestratorError, PersistenceError, ProtocolError, StartupError
from .layout import ExportLayout, LayoutWriter, RegistryLayout, layout_for
from .session import PushSession, PushState, ShimContext, transition
from .routes import create_app
from .server import ShimServer, wait_for_ping
from .orchestrator import PushOrchestrator, grab_layer

__all__ = [
    "Config",
    "LayerGrabError",
    "StartupError",
    "ProtocolError",
    "PersistenceError",
    "OrchestratorError",
    "LayoutWriter",
    "ExportLayout",
    "RegistryLayout",
    "layout_for",
    "PushSession",
    "PushState",
    "ShimContext",
    "transition",
    "create_app",
    "ShimServer",
    "wait_for_ping",
    "PushOrchestrator",
    "grab_layer",
]
