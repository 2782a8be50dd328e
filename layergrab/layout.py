"""
On-disk layouts for a captured layer.

Two writers share one interface and differ only in file names and whether a
version marker is emitted:

    Export layout (loadable with an image tarball):
        <output>/<layer id>/VERSION     "1.0"
        <output>/<layer id>/json        layer metadata
        <output>/<layer id>/layer.tar   layer blob

    Registry layout (what a registry stores):
        <output>/<layer id>/json        layer metadata
        <output>/<layer id>/layer       layer blob
        <output>/<layer id>/checksum    checksum sent by the client
"""

import logging
import os
from contextlib import suppress
from typing import BinaryIO, Callable, Iterable

from .config import config
from .errors import PersistenceError, StartupError

logger = logging.getLogger(__name__)

DIR_MODE = 0o755


class LayoutWriter:
    """Base writer. Subclasses set the file names."""

    name = "layout"
    metadata_name = "json"
    blob_name = "layer"
    checksum_name: str | None = None
    version_marker: bytes | None = None

    def __init__(self, output_dir: str):
        self.output_dir = output_dir

    def __repr__(self):
        return f"{type(self).__name__}(output_dir={self.output_dir!r})"

    @property
    def writes_checksum(self) -> bool:
        return self.checksum_name is not None

    def layer_dir(self, layer_id: str) -> str:
        return os.path.join(self.output_dir, layer_id)

    def blob_path(self, layer_id: str) -> str:
        return os.path.join(self.layer_dir(layer_id), self.blob_name)

    def create_layer_dir(self, layer_id: str) -> str:
        """
        Create the output directory for a layer before any push starts.

        Raises:
            StartupError: if the directory already exists or cannot be created.
                Nothing is written in that case.
        """
        path = self.layer_dir(layer_id)
        try:
            os.mkdir(path, DIR_MODE)
        except FileExistsError:
            raise StartupError(f"Output directory {path} already exists, refusing to overwrite it")
        except OSError as e:
            raise StartupError(f"Cannot create output directory {path}: {e}")

        if self.version_marker is not None:
            try:
                self._write_file(layer_id, "VERSION", self.version_marker)
            except PersistenceError as e:
                raise StartupError(str(e))

        logger.debug(f"Created layer directory {path} ({self.name} layout)")
        return path

    def ensure_layer_dir(self, layer_id: str) -> str:
        """Create the layer directory lazily for requests that arrive first."""
        path = self.layer_dir(layer_id)
        try:
            os.makedirs(path, DIR_MODE, exist_ok=True)
        except OSError as e:
            raise PersistenceError(f"Cannot create layer directory {path}: {e}")
        return path

    def write_metadata(self, layer_id: str, data: bytes) -> str:
        return self._write_file(layer_id, self.metadata_name, data)

    def write_blob(
        self,
        layer_id: str,
        reader: BinaryIO,
        handlers: Iterable[Callable[[bytes], None]] = (),
        chunk_size: int | None = None,
        check: Callable[[int], None] | None = None,
    ) -> int:
        """
        Stream a blob from ``reader`` into the layout's blob file.

        Every chunk is passed to each handler as it is written, which is how
        checksums are computed without a second pass. Bytes land in a
        ``.partial`` file next to the blob, which replaces the blob file only
        once the body was read completely and ``check`` accepted its size. A
        failed upload leaves any previously stored blob untouched.

        Args:
            check: Called with the number of bytes read before the blob is
                replaced. Whatever it raises is propagated.

        Returns:
            Number of bytes written

        Raises:
            PersistenceError: on any read or write failure. The partial file
                is removed.
        """
        chunk_size = chunk_size or config.BLOB_CHUNK_SIZE
        self.ensure_layer_dir(layer_id)
        path = self.blob_path(layer_id)
        partial = self.partial_blob_path(layer_id)
        size = 0
        try:
            with open(partial, "wb") as f:
                while True:
                    chunk = reader.read(chunk_size)
                    if not chunk:
                        break
                    f.write(chunk)
                    for handler in handlers:
                        handler(chunk)
                    size += len(chunk)
            if check is not None:
                check(size)
            os.replace(partial, path)
        except (OSError, ValueError) as e:
            self.discard_partial_blob(layer_id)
            raise PersistenceError(f"Failed writing {path}: {e}")
        except Exception:
            # rejected by check, or the client went away mid-body
            # (werkzeug raises ClientDisconnected)
            self.discard_partial_blob(layer_id)
            raise

        logger.debug(f"Wrote {size} bytes to {path}")
        return size

    def partial_blob_path(self, layer_id: str) -> str:
        return self.blob_path(layer_id) + ".partial"

    def discard_partial_blob(self, layer_id: str) -> None:
        with suppress(OSError):
            os.unlink(self.partial_blob_path(layer_id))

    def read_blob(self, layer_id: str, chunk_size: int | None = None):
        """Yield the stored blob in chunks."""
        chunk_size = chunk_size or config.BLOB_CHUNK_SIZE
        try:
            with open(self.blob_path(layer_id), "rb") as f:
                while True:
                    chunk = f.read(chunk_size)
                    if not chunk:
                        return
                    yield chunk
        except OSError as e:
            raise PersistenceError(f"Failed reading {self.blob_path(layer_id)}: {e}")

    def write_checksum(self, layer_id: str, checksum: str) -> bool:
        """
        Persist the checksum if this layout keeps one.

        Returns:
            True if a file was written
        """
        if self.checksum_name is None:
            return False
        self._write_file(layer_id, self.checksum_name, checksum.encode("utf-8"))
        return True

    def _write_file(self, layer_id: str, name: str, data: bytes) -> str:
        path = os.path.join(self.ensure_layer_dir(layer_id), name)
        try:
            with open(path, "wb") as f:
                f.write(data)
        except OSError as e:
            raise PersistenceError(f"Failed writing {path}: {e}")
        logger.debug(f"Wrote {len(data)} bytes to {path}")
        return path


class ExportLayout(LayoutWriter):
    """Layout matching a directory inside an image export tarball."""

    name = "export"
    blob_name = "layer.tar"
    version_marker = b"1.0"


class RegistryLayout(LayoutWriter):
    """Layout matching the raw files a registry keeps per layer."""

    name = "registry"
    blob_name = "layer"
    checksum_name = "checksum"


def layout_for(output_dir: str, registry_format: bool = False) -> LayoutWriter:
    """Pick the writer once at startup."""
    if registry_format:
        return RegistryLayout(output_dir)
    return ExportLayout(output_dir)
