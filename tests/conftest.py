"""Shared test fixtures for layergrab."""

from __future__ import annotations

import hashlib
import json
from pathlib import Path

import pytest

from layergrab.layout import ExportLayout, RegistryLayout
from layergrab.routes import create_app
from layergrab.session import ShimContext

LAYER_ID = hashlib.sha256(b"layer").hexdigest()
PARENT_ID = hashlib.sha256(b"parent").hexdigest()


def make_metadata(layer_id: str = LAYER_ID, parent_id: str | None = PARENT_ID) -> bytes:
    data = {"id": layer_id, "created": "2014-06-01T00:00:00Z", "container_config": {"Cmd": ["/bin/sh"]}}
    if parent_id:
        data["parent"] = parent_id
    # key order and spacing must survive byte for byte
    return json.dumps(data, indent=1).encode("utf-8")


def make_blob(size: int) -> bytes:
    """Deterministic, non-repeating-ish bytes of the given size."""
    pattern = bytes(range(251))
    return (pattern * (size // len(pattern) + 1))[:size]


def payload_checksum(metadata: bytes, blob: bytes) -> str:
    return "sha256:" + hashlib.sha256(metadata + b"\n" + blob).hexdigest()


def blob_checksum(blob: bytes) -> str:
    return "sha256:" + hashlib.sha256(blob).hexdigest()


def push(client, layer_id: str, metadata: bytes, blob: bytes, checksum: str | None = None) -> list:
    """Run the metadata, layer and checksum PUTs of a v1 push; return the responses."""
    checksum = checksum or payload_checksum(metadata, blob)
    return [
        client.put(f"/v1/images/{layer_id}/json", data=metadata),
        client.put(f"/v1/images/{layer_id}/layer", data=blob),
        client.put(f"/v1/images/{layer_id}/checksum", headers={"X-Docker-Checksum-Payload": checksum}),
    ]


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------


@pytest.fixture()
def metadata() -> bytes:
    return make_metadata()


@pytest.fixture()
def blob() -> bytes:
    return make_blob(10_000)


# ---------------------------------------------------------------------------
# Shim contexts and clients
# ---------------------------------------------------------------------------


@pytest.fixture()
def outdir(tmp_path: Path) -> Path:
    d = tmp_path / "out"
    d.mkdir()
    return d


@pytest.fixture()
def export_context(outdir: Path) -> ShimContext:
    context = ShimContext(ExportLayout(str(outdir)))
    context.expect(LAYER_ID)
    return context


@pytest.fixture()
def registry_context(outdir: Path) -> ShimContext:
    context = ShimContext(RegistryLayout(str(outdir)))
    context.expect(LAYER_ID)
    return context


@pytest.fixture()
def export_client(export_context: ShimContext):
    return create_app(export_context).test_client()


@pytest.fixture()
def registry_client(registry_context: ShimContext):
    return create_app(registry_context).test_client()
