"""
Push session state for the shim registry.

A ``ShimContext`` is created once at startup and handed to the Flask app. It
owns the output layout, the guarded id of the layer being exported and one
``PushSession`` per layer id seen in push requests.

Session states move through an explicit transition table::

    NOT_STARTED -> METADATA_RECEIVED -> BLOB_RECEIVED -> CHECKSUM_RECEIVED -> PERSISTED

A blob may arrive before its metadata (pipelined pushes); the session settles
into PERSISTED as soon as every artifact the layout needs is on disk.
"""

import hashlib
import logging
import threading
from enum import Enum
from typing import BinaryIO

from .config import config
from .errors import ProtocolError, StartupError
from .layout import LayoutWriter
from .validation import compute_sha256

logger = logging.getLogger(__name__)


class PushState(Enum):
    NOT_STARTED = "not_started"
    METADATA_RECEIVED = "metadata_received"
    BLOB_RECEIVED = "blob_received"
    CHECKSUM_RECEIVED = "checksum_received"
    PERSISTED = "persisted"


class PushEvent(Enum):
    METADATA = "metadata"
    BLOB = "blob"
    CHECKSUM = "checksum"


_TRANSITIONS = {
    (PushState.NOT_STARTED, PushEvent.METADATA): PushState.METADATA_RECEIVED,
    (PushState.NOT_STARTED, PushEvent.BLOB): PushState.BLOB_RECEIVED,
    (PushState.METADATA_RECEIVED, PushEvent.METADATA): PushState.METADATA_RECEIVED,
    (PushState.METADATA_RECEIVED, PushEvent.BLOB): PushState.BLOB_RECEIVED,
    (PushState.BLOB_RECEIVED, PushEvent.METADATA): PushState.BLOB_RECEIVED,
    (PushState.BLOB_RECEIVED, PushEvent.BLOB): PushState.BLOB_RECEIVED,
    (PushState.BLOB_RECEIVED, PushEvent.CHECKSUM): PushState.CHECKSUM_RECEIVED,
    (PushState.CHECKSUM_RECEIVED, PushEvent.METADATA): PushState.CHECKSUM_RECEIVED,
    # a re-sent blob invalidates the checksum that came with the previous one
    (PushState.CHECKSUM_RECEIVED, PushEvent.BLOB): PushState.BLOB_RECEIVED,
    (PushState.CHECKSUM_RECEIVED, PushEvent.CHECKSUM): PushState.CHECKSUM_RECEIVED,
    (PushState.PERSISTED, PushEvent.METADATA): PushState.PERSISTED,
    (PushState.PERSISTED, PushEvent.BLOB): PushState.PERSISTED,
    (PushState.PERSISTED, PushEvent.CHECKSUM): PushState.PERSISTED,
}


def transition(state: PushState, event: PushEvent) -> PushState:
    """
    Return the state reached by applying ``event`` in ``state``.

    Raises:
        ProtocolError: 409 when the event is not allowed yet, e.g. a checksum
            before any blob was received.
    """
    try:
        return _TRANSITIONS[(state, event)]
    except KeyError:
        raise ProtocolError(f"Cannot accept {event.value} while push is {state.value}", 409)


class PushSession:
    """
    In-flight push of one layer.

    ``_lock`` guards the state and the small artifacts (metadata, checksum),
    which are written while holding it. The blob streams outside of it under
    its own lock so metadata and blob can be written concurrently.
    """

    def __init__(self, layer_id: str, layout: LayoutWriter):
        self.layer_id = layer_id
        self.layout = layout
        self.state = PushState.NOT_STARTED
        self.metadata: bytes | None = None
        self.metadata_digest: str | None = None
        self.blob_checksum: str | None = None
        self.payload_checksum: str | None = None
        self.blob_size: int | None = None
        self.checksum: str | None = None
        self._lock = threading.Lock()
        self._blob_lock = threading.Lock()

    def __repr__(self):
        return f"PushSession(layer_id={self.layer_id!r}, state={self.state.value})"

    @property
    def persisted(self) -> bool:
        with self._lock:
            return self.state is PushState.PERSISTED

    def receive_metadata(self, data: bytes) -> bool:
        """
        Store the layer metadata verbatim.

        Returns:
            True if the metadata file was written, False for an identical
            replay after the layer was persisted.
        """
        digest = compute_sha256(data)
        with self._lock:
            if self.state is PushState.PERSISTED:
                self._check_replay("metadata", self.metadata_digest, digest)
                return False
            next_state = transition(self.state, PushEvent.METADATA)
            self.layout.write_metadata(self.layer_id, data)
            self.metadata = data
            self.metadata_digest = digest
            self.payload_checksum = None
            self.state = next_state
            self._settle()
        logger.debug(f"Metadata stored for layer {self.layer_id} ({len(data)} bytes)")
        return True

    def receive_blob(self, reader: BinaryIO, content_length: int | None = None) -> bool:
        """
        Stream the layer blob to disk, computing checksums as bytes arrive.

        Args:
            reader: File-like request body
            content_length: Declared body size, if the client sent one

        Returns:
            True if the blob file was written, False for an identical replay
            after the layer was persisted.

        Raises:
            ProtocolError: 400 if fewer bytes arrived than declared, 409 for a
                replay whose content differs from the persisted blob
            PersistenceError: if writing the blob failed
        """
        with self._blob_lock:
            with self._lock:
                persisted = self.state is PushState.PERSISTED
                metadata = self.metadata

            blob_hash = hashlib.sha256()
            if persisted:
                size = 0
                for chunk in iter(lambda: reader.read(config.BLOB_CHUNK_SIZE), b""):
                    blob_hash.update(chunk)
                    size += len(chunk)
                self._check_length(size, content_length)
                with self._lock:
                    self._check_replay("blob", self.blob_checksum, "sha256:" + blob_hash.hexdigest())
                return False

            handlers = [blob_hash.update]
            payload_hash = None
            if metadata is not None:
                payload_hash = hashlib.sha256(metadata + b"\n")
                handlers.append(payload_hash.update)

            # a failed upload keeps the blob and checksums of an earlier good one
            size = self.layout.write_blob(
                self.layer_id, reader, handlers, check=lambda n: self._check_length(n, content_length)
            )

            with self._lock:
                next_state = transition(self.state, PushEvent.BLOB)
                self.blob_checksum = "sha256:" + blob_hash.hexdigest()
                self.blob_size = size
                # metadata replaced mid-stream: recompute the payload checksum on demand
                if payload_hash is not None and self.metadata is metadata:
                    self.payload_checksum = "sha256:" + payload_hash.hexdigest()
                else:
                    self.payload_checksum = None
                if next_state is not PushState.PERSISTED:
                    self.checksum = None
                self.state = next_state
                self._settle()

        logger.debug(f"Blob stored for layer {self.layer_id} ({size} bytes, {self.blob_checksum})")
        return True

    def receive_checksum(self, checksum: str) -> bool:
        """
        Record the checksum the client computed for the pushed layer.

        ``sha256:`` checksums must match either the blob checksum or the
        payload checksum (metadata, newline, blob). ``tarsum`` checksums
        are recorded without verification.

        Returns:
            True if the checksum was recorded, False for an identical replay.
        """
        with self._lock:
            if self.state is PushState.PERSISTED and self.checksum is not None:
                if checksum != self.checksum:
                    raise ProtocolError(
                        f"Layer {self.layer_id} already persisted with checksum {self.checksum}", 409
                    )
                return False

            next_state = transition(self.state, PushEvent.CHECKSUM)
            self._verify_checksum(checksum)
            if next_state is not PushState.PERSISTED:
                self.layout.write_checksum(self.layer_id, checksum)
            self.checksum = checksum
            self.state = next_state
            self._settle()
        logger.debug(f"Checksum recorded for layer {self.layer_id}: {checksum}")
        return True

    def checksums(self) -> dict:
        """Checksums computed by the shim, for clients that ask for them."""
        with self._lock:
            if self.blob_checksum is None:
                raise ProtocolError(f"Layer {self.layer_id} has no blob yet", 404)
            return {
                "checksum": self.blob_checksum,
                "payload_checksum": self._payload_checksum(),
                "size": self.blob_size,
            }

    def _payload_checksum(self) -> str | None:
        if self.payload_checksum is None and self.metadata is not None and self.blob_checksum is not None:
            h = hashlib.sha256(self.metadata + b"\n")
            for chunk in self.layout.read_blob(self.layer_id):
                h.update(chunk)
            self.payload_checksum = "sha256:" + h.hexdigest()
        return self.payload_checksum

    def _verify_checksum(self, checksum: str) -> None:
        if checksum.startswith("tarsum"):
            logger.debug(f"Accepting unverified tarsum for layer {self.layer_id}")
            return
        expected = {self.blob_checksum, self._payload_checksum()} - {None}
        if checksum not in expected:
            logger.warning(
                f"Checksum mismatch for layer {self.layer_id}: provided {checksum}, expected one of {sorted(expected)}"
            )
            raise ProtocolError("Checksum mismatch")

    def _check_length(self, size: int, content_length: int | None) -> None:
        if content_length is not None and size != content_length:
            raise ProtocolError(
                f"Layer body for {self.layer_id} truncated: expected {content_length} bytes, got {size}"
            )

    def _check_replay(self, artifact: str, known: str | None, incoming: str) -> None:
        if known != incoming:
            raise ProtocolError(f"Layer {self.layer_id} already persisted with a different {artifact}", 409)
        logger.info(f"Layer {self.layer_id} already persisted, {artifact} replay acknowledged")

    def _settle(self) -> None:
        if self.state not in (PushState.BLOB_RECEIVED, PushState.CHECKSUM_RECEIVED):
            return
        if self.metadata_digest is None or self.blob_checksum is None:
            return
        if self.layout.writes_checksum and self.checksum is None:
            return
        self.state = PushState.PERSISTED
        logger.info(f"Layer {self.layer_id} persisted to {self.layout.layer_dir(self.layer_id)}")


class LayerGuard:
    """The id of the layer being exported, assigned exactly once."""

    def __init__(self):
        self._lock = threading.Lock()
        self._layer_id: str | None = None

    def assign(self, layer_id: str) -> None:
        with self._lock:
            if self._layer_id is not None:
                raise StartupError(f"Already exporting layer {self._layer_id}, cannot switch to {layer_id}")
            self._layer_id = layer_id

    @property
    def layer_id(self) -> str | None:
        with self._lock:
            return self._layer_id


class ShimContext:
    """
    Everything the shim's request handlers share.

    Args:
        layout: Writer selected at startup for the output directory
    """

    def __init__(self, layout: LayoutWriter):
        self.layout = layout
        self.guard = LayerGuard()
        self._sessions: dict[str, PushSession] = {}
        self._tags: dict[str, dict[str, str]] = {}
        self._lock = threading.Lock()

    def __repr__(self):
        return f"ShimContext(layout={self.layout!r}, layer_id={self.guard.layer_id!r})"

    @property
    def layer_id(self) -> str | None:
        return self.guard.layer_id

    def expect(self, layer_id: str) -> PushSession:
        """
        Fix the layer to export and create its output directory.

        Must be called before the daemon is asked to push.

        Raises:
            StartupError: if a layer was already assigned or the output
                directory already exists
        """
        self.guard.assign(layer_id)
        self.layout.create_layer_dir(layer_id)
        return self.session(layer_id)

    def is_target(self, layer_id: str) -> bool:
        return layer_id == self.guard.layer_id

    def target_session(self, layer_id: str) -> PushSession:
        """
        Session for a push request, checked against the guarded id.

        Raises:
            ProtocolError: 409 before a layer is assigned, 400 for any other id
        """
        target = self.guard.layer_id
        if target is None:
            raise ProtocolError("Shim is not expecting a push yet", 409)
        if layer_id != target:
            raise ProtocolError(f"Layer {layer_id} is not the layer being exported ({target})")
        return self.session(layer_id)

    def session(self, layer_id: str) -> PushSession:
        with self._lock:
            session = self._sessions.get(layer_id)
            if session is None:
                session = PushSession(layer_id, self.layout)
                self._sessions[layer_id] = session
            return session

    def record_tag(self, repository: str, tag: str, layer_id: str) -> None:
        with self._lock:
            self._tags.setdefault(repository, {})[tag] = layer_id

    def tags(self, repository: str) -> dict[str, str]:
        with self._lock:
            return dict(self._tags.get(repository, {}))
