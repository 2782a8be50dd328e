"""
Error types for the layer grabber.

Every error carries the stage that failed so the command line can report
where a run stopped (startup, protocol, persistence, or one of the daemon steps).
"""


class LayerGrabError(Exception):
    """Base class for all layer grabber failures."""

    stage = "layergrab"

    def __init__(self, message: str, stage: str | None = None):
        super().__init__(message)
        if stage is not None:
            self.stage = stage


class StartupError(LayerGrabError):
    """Shim could not start: port bind, output directory or liveness timeout."""

    stage = "startup"


class ProtocolError(LayerGrabError):
    """
    A push request is malformed or inconsistent with the exported layer.

    Surfaced to the daemon as an HTTP error response with ``status_code``.
    """

    stage = "protocol"

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


class PersistenceError(LayerGrabError):
    """Writing an artifact to disk failed. Surfaced as HTTP 500."""

    stage = "persistence"
    status_code = 500


class OrchestratorError(LayerGrabError):
    """A daemon step (resolve, tagging, pushing, cleanup) failed."""

    stage = "orchestrator"
