"""Tests for layergrab.orchestrator."""

from __future__ import annotations

from pathlib import Path

import pytest

from layergrab.errors import OrchestratorError, StartupError
from layergrab.orchestrator import (
    NICE_REPOSITORY,
    STAGING_REPOSITORY,
    PushOrchestrator,
    grab_layer,
    strip_digest_prefix,
)

from conftest import LAYER_ID, payload_checksum
from fake_docker import FakeDockerClient, failing_push, no_upload_push

REGISTRY = "127.0.0.1:5555"


@pytest.fixture()
def client(metadata: bytes, blob: bytes) -> FakeDockerClient:
    return FakeDockerClient(LAYER_ID, metadata, blob, names=["busybox:latest"])


# ---------------------------------------------------------------------------
# PushOrchestrator
# ---------------------------------------------------------------------------


class TestResolve:
    def test_strip_digest_prefix(self) -> None:
        assert strip_digest_prefix(f"sha256:{LAYER_ID}") == LAYER_ID
        assert strip_digest_prefix(LAYER_ID) == LAYER_ID

    @pytest.mark.parametrize("reference", ["busybox:latest", LAYER_ID[:12], LAYER_ID])
    def test_resolves_to_full_layer_id(self, client, reference: str) -> None:
        assert PushOrchestrator(client, REGISTRY).resolve(reference) == LAYER_ID

    def test_unknown_reference(self, client) -> None:
        with pytest.raises(OrchestratorError, match="nope") as exc:
            PushOrchestrator(client, REGISTRY).resolve("nope")
        assert exc.value.stage == "resolve"


class TestPush:
    def test_tags_push_and_untag(self, metadata, blob) -> None:
        client = FakeDockerClient(LAYER_ID, metadata, blob, pusher=no_upload_push)
        PushOrchestrator(client, REGISTRY).push(LAYER_ID)

        staging = f"{REGISTRY}/{STAGING_REPOSITORY}:latest"
        assert client.calls == [
            ("tag", staging),
            ("tag", f"{NICE_REPOSITORY}:latest"),
            ("push", staging),
            ("remove", staging, True),
        ]

    def test_clean_removes_both_tags(self, metadata, blob) -> None:
        client = FakeDockerClient(LAYER_ID, metadata, blob, pusher=no_upload_push)
        PushOrchestrator(client, REGISTRY, remove_tag=True).push(LAYER_ID)
        removed = [call[1] for call in client.calls if call[0] == "remove"]
        assert removed == [f"{REGISTRY}/{STAGING_REPOSITORY}:latest", f"{NICE_REPOSITORY}:latest"]

    def test_error_line_fails_push(self, metadata, blob) -> None:
        client = FakeDockerClient(LAYER_ID, metadata, blob, pusher=failing_push)
        with pytest.raises(OrchestratorError, match="Status 500") as exc:
            PushOrchestrator(client, REGISTRY).push(LAYER_ID)
        assert exc.value.stage == "pushing"
        assert not [call for call in client.calls if call[0] == "remove"]

    def test_tag_failure(self, client) -> None:
        with pytest.raises(OrchestratorError) as exc:
            PushOrchestrator(client, REGISTRY).push("unknown")
        assert exc.value.stage == "tagging"


# ---------------------------------------------------------------------------
# grab_layer end to end against the real shim
# ---------------------------------------------------------------------------


class TestGrabLayer:
    def test_export_layout(self, client, outdir: Path, metadata, blob) -> None:
        layer_dir = grab_layer("busybox:latest", str(outdir), client=client, sleeps_ms=[0, 10, 100])

        assert layer_dir == str(outdir / LAYER_ID)
        assert sorted(p.name for p in (outdir / LAYER_ID).iterdir()) == ["VERSION", "json", "layer.tar"]
        assert (outdir / LAYER_ID / "VERSION").read_bytes() == b"1.0"
        assert (outdir / LAYER_ID / "json").read_bytes() == metadata
        assert (outdir / LAYER_ID / "layer.tar").read_bytes() == blob
        assert ("remove", f"{NICE_REPOSITORY}:latest", True) not in client.calls

    def test_registry_layout(self, client, outdir: Path, metadata, blob) -> None:
        grab_layer(LAYER_ID[:12], str(outdir), registry_format=True, remove_tag=True, client=client)

        layer_dir = outdir / LAYER_ID
        assert sorted(p.name for p in layer_dir.iterdir()) == ["checksum", "json", "layer"]
        assert (layer_dir / "layer").read_bytes() == blob
        assert (layer_dir / "checksum").read_text() == payload_checksum(metadata, blob)
        assert ("remove", f"{NICE_REPOSITORY}:latest", True) in client.calls

    def test_push_without_upload_is_failure(self, metadata, blob, outdir: Path) -> None:
        client = FakeDockerClient(LAYER_ID, metadata, blob, pusher=no_upload_push)
        with pytest.raises(OrchestratorError, match="not fully received"):
            grab_layer(LAYER_ID, str(outdir), client=client)

    def test_existing_output_is_refused(self, client, outdir: Path) -> None:
        (outdir / LAYER_ID).mkdir()
        with pytest.raises(StartupError, match="already exists"):
            grab_layer(LAYER_ID, str(outdir), client=client)
        assert not [call for call in client.calls if call[0] == "push"]
        assert list((outdir / LAYER_ID).iterdir()) == []

    def test_missing_output_directory(self, client, tmp_path: Path) -> None:
        with pytest.raises(StartupError, match="does not exist"):
            grab_layer(LAYER_ID, str(tmp_path / "missing"), client=client)

    def test_liveness_timeout(self, client, outdir: Path, monkeypatch) -> None:
        def never_ready(url, sleeps_ms=None, timeout=None):
            raise StartupError("Shim registry took too long to come up")

        monkeypatch.setattr("layergrab.server.wait_for_ping", never_ready)
        with pytest.raises(StartupError, match="too long"):
            grab_layer(LAYER_ID, str(outdir), client=client)
        assert not [call for call in client.calls if call[0] == "push"]
