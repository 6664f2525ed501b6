"""
Tests for the manifest pull pipeline.

A fake registry serves one manifest and its blobs; the store is an in-memory
SQLite database seeded with the catalogued variants.
"""

from __future__ import annotations

import hashlib
from typing import TYPE_CHECKING
from unittest.mock import patch

import orjson
import pytest

from modelpull.config import AppConfig, ClientConfig
from modelpull.errors import (
    IntegrityError,
    NetworkError,
    SchemaMismatchError,
    StoreError,
    VariantNotFoundError,
)
from modelpull.registry.client import RegistryClient
from modelpull.registry.pull import ManifestPuller, resolve_variant
from modelpull.store.db import INIT_STATUS, MetadataStore, pull_status_flag
from modelpull.store.models import CatalogEntry, CompletionStatus, VariantRecord
from modelpull.transfer.types import DownloadStatus
from tests.fixtures.registry_server import ServerState, serve

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

CONFIG_MEDIA_TYPE = "application/vnd.docker.container.image.v1+json"
MODEL_MEDIA_TYPE = "application/vnd.ollama.image.model"
TEMPLATE_MEDIA_TYPE = "application/vnd.ollama.image.template"
MANIFEST_MEDIA_TYPE = "application/vnd.docker.distribution.manifest.v2+json"

CONFIG_BLOB = b'{"model_format":"gguf","model_family":"qwen2"}'
MODEL_BLOB = bytes(range(256)) * 600
TEMPLATE_BLOB = b"{{ .System }} {{ .Prompt }}"


def _sha(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _layer(media_type: str, data: bytes) -> dict[str, object]:
    return {"mediaType": media_type, "digest": f"sha256:{_sha(data)}", "size": len(data)}


def _manifest(schema_version: int = 2, model_digest_of: bytes = MODEL_BLOB) -> bytes:
    return orjson.dumps(
        {
            "schemaVersion": schema_version,
            "mediaType": MANIFEST_MEDIA_TYPE,
            "config": _layer(CONFIG_MEDIA_TYPE, CONFIG_BLOB),
            "layers": [
                _layer(MODEL_MEDIA_TYPE, model_digest_of),
                _layer(TEMPLATE_MEDIA_TYPE, TEMPLATE_BLOB),
            ],
        }
    )


def _blob_url_path(data: bytes) -> str:
    return f"/v2/library/qwen2/blobs/sha256-{_sha(data)}"


MANIFEST_URL_PATH = "/v2/library/qwen2/manifests/7b"


def _registry_state(manifest: bytes | None = None, **kwargs: object) -> ServerState:
    files = {
        MANIFEST_URL_PATH: manifest if manifest is not None else _manifest(),
        _blob_url_path(CONFIG_BLOB): CONFIG_BLOB,
        _blob_url_path(MODEL_BLOB): MODEL_BLOB,
        _blob_url_path(TEMPLATE_BLOB): TEMPLATE_BLOB,
    }
    return ServerState(files=files, **kwargs)  # type: ignore[arg-type]


class _NoSleep:
    def __init__(self) -> None:
        self.delays: list[int] = []

    async def __call__(self, delay_ms: int) -> None:
        self.delays.append(delay_ms)


@pytest.fixture
def store() -> Iterator[MetadataStore]:
    db = MetadataStore(":memory:")
    db.upsert_catalog_entry(
        CatalogEntry(title="qwen2", href="/library/qwen2"),
        [
            VariantRecord(name="qwen2:7b", href="/library/qwen2:7b"),
            VariantRecord(name="qwen2:latest", href="/library/qwen2:latest"),
        ],
    )
    yield db
    db.close()


def _app_config(tmp_path: Path, remote: str, **model_client: object) -> AppConfig:
    return AppConfig(
        data_dir=tmp_path,
        remote=remote,
        registry_client=ClientConfig(retry=0),
        model_client=ClientConfig(retry=2, backoff_time_ms=1, **model_client),  # type: ignore[arg-type]
    )


def _blob_requests(state: ServerState) -> list[str]:
    return [r.path for r in state.requests if "/blobs/" in r.path]


class TestResolveVariant:
    """Tests for mapping user requests to catalogued variants."""

    def test_explicit_category(self, store: MetadataStore) -> None:
        """name + category must be catalogued."""
        assert resolve_variant(store, "qwen2", "7b") == "qwen2:7b"

    def test_combined_name(self, store: MetadataStore) -> None:
        """name:category input is split."""
        assert resolve_variant(store, "qwen2:latest") == "qwen2:latest"

    def test_first_recorded_variant(self, store: MetadataStore) -> None:
        """Without a category the first recorded variant is used."""
        assert resolve_variant(store, "qwen2") == "qwen2:7b"

    def test_default_category_preferred(self, store: MetadataStore) -> None:
        """A catalogued default category wins over the first recorded variant."""
        assert resolve_variant(store, "qwen2", default_category="latest") == "qwen2:latest"

    def test_uncatalogued_default_category_falls_back(self, store: MetadataStore) -> None:
        """A default category missing from the catalog falls back to the first variant."""
        assert resolve_variant(store, "qwen2", default_category="72b") == "qwen2:7b"

    def test_unknown_category(self, store: MetadataStore) -> None:
        """Missing variant points the user at catalog sync."""
        with pytest.raises(VariantNotFoundError, match="catalog sync"):
            resolve_variant(store, "qwen2", "72b")

    def test_never_synced_catalog_hint(self, store: MetadataStore) -> None:
        """Before a completed sync the error says the catalog was never synced."""
        with pytest.raises(VariantNotFoundError, match="never been synced"):
            resolve_variant(store, "llama3")

    def test_synced_catalog_hint(self, store: MetadataStore) -> None:
        """After a completed sync the error suggests refreshing instead."""
        store.set_status(INIT_STATUS, CompletionStatus.COMPLETED)

        with pytest.raises(VariantNotFoundError, match="refresh") as exc_info:
            resolve_variant(store, "qwen2", "72b")

        assert "never been synced" not in str(exc_info.value)

    def test_unknown_model(self, store: MetadataStore) -> None:
        """Unknown model name is not found."""
        with pytest.raises(VariantNotFoundError):
            resolve_variant(store, "llama3")

    def test_like_wildcards_are_literal(self, store: MetadataStore) -> None:
        """Underscore in a name is not a wildcard."""
        with pytest.raises(VariantNotFoundError):
            resolve_variant(store, "qwen_")


class TestManifestPuller:
    """Tests for ManifestPuller.pull against a fake registry."""

    @pytest.mark.asyncio
    async def test_pull_downloads_and_registers_every_blob(
        self, tmp_path: Path, store: MetadataStore
    ) -> None:
        """Config then layers are fetched, verified and registered."""
        state = _registry_state()
        async with serve(state) as server:
            config = _app_config(tmp_path, str(server.make_url("/")))
            async with RegistryClient(config.remote, config.registry_client) as client:
                report = await ManifestPuller(store, client, config, sleep=_NoSleep()).pull("qwen2", "7b")

        directory = tmp_path / "model" / "qwen2_7b"
        assert report.variant == "qwen2:7b"
        assert report.directory == directory
        assert report.downloaded == 3
        assert report.skipped == 0
        assert [o.final_path for o in report.outcomes] == [
            directory / f"config-{_sha(CONFIG_BLOB)}.json",
            directory / f"model-{_sha(MODEL_BLOB)}.gguf",
            directory / f"template-{_sha(TEMPLATE_BLOB)}.txt",
        ]
        assert (directory / f"model-{_sha(MODEL_BLOB)}.gguf").read_bytes() == MODEL_BLOB

        variant = store.get_variant("qwen2:7b")
        assert variant is not None
        assert variant.path == str(directory / f"model-{_sha(MODEL_BLOB)}.gguf")
        assert variant.template_path == str(directory / f"template-{_sha(TEMPLATE_BLOB)}.txt")
        assert set(variant.blobs) == {"config", "model", "template"}
        assert variant.blobs["model"]["size"] == len(MODEL_BLOB)
        assert store.get_status(pull_status_flag("qwen2:7b")) == CompletionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_fetch_manifest_parses_and_checks_dialect(
        self, tmp_path: Path, store: MetadataStore
    ) -> None:
        """Manifest is fetched from the namespaced path and parsed."""
        state = _registry_state()
        async with serve(state) as server:
            config = _app_config(tmp_path, str(server.make_url("/")))
            async with RegistryClient(config.remote, config.registry_client) as client:
                manifest = await ManifestPuller(store, client, config).fetch_manifest("qwen2", "7b")

        assert manifest.schema_version == 2
        assert len(manifest.layers) == 2
        assert state.gets()[0].path == MANIFEST_URL_PATH

    @pytest.mark.asyncio
    async def test_second_pull_skips_every_blob_without_network(
        self, tmp_path: Path, store: MetadataStore
    ) -> None:
        """Re-running a completed pull verifies locally and fetches no blob."""
        state = _registry_state()
        async with serve(state) as server:
            config = _app_config(tmp_path, str(server.make_url("/")))
            async with RegistryClient(config.remote, config.registry_client) as client:
                puller = ManifestPuller(store, client, config, sleep=_NoSleep())
                await puller.pull("qwen2", "7b")
                state.requests.clear()
                report = await puller.pull("qwen2", "7b")

        assert report.skipped == 3
        assert report.downloaded == 0
        assert all(o.status == DownloadStatus.SKIPPED for o in report.outcomes)
        assert _blob_requests(state) == []
        assert store.get_status(pull_status_flag("qwen2:7b")) == CompletionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_checksum_mismatch_is_fatal(self, tmp_path: Path, store: MetadataStore) -> None:
        """A blob that does not match its digest fails the pull without retrying."""
        state = _registry_state(manifest=_manifest(model_digest_of=b"something else"))
        state.files[_blob_url_path(b"something else")] = MODEL_BLOB
        sleep = _NoSleep()
        async with serve(state) as server:
            config = _app_config(tmp_path, str(server.make_url("/")))
            async with RegistryClient(config.remote, config.registry_client) as client:
                with pytest.raises(IntegrityError) as exc_info:
                    await ManifestPuller(store, client, config, sleep=sleep).pull("qwen2", "7b")

        assert exc_info.value.digest == f"sha256:{_sha(b'something else')}"
        assert sleep.delays == []
        assert len(state.gets(_blob_url_path(b"something else"))) == 1
        assert store.get_status(pull_status_flag("qwen2:7b")) == CompletionStatus.FAILED

    @pytest.mark.asyncio
    async def test_schema_mismatch_is_fatal(self, tmp_path: Path, store: MetadataStore) -> None:
        """A manifest in another dialect stops the pull before any blob."""
        state = _registry_state(manifest=_manifest(schema_version=1))
        async with serve(state) as server:
            config = _app_config(tmp_path, str(server.make_url("/")))
            async with RegistryClient(config.remote, config.registry_client) as client:
                with pytest.raises(SchemaMismatchError):
                    await ManifestPuller(store, client, config).pull("qwen2", "7b")

        assert _blob_requests(state) == []
        assert store.get_status(pull_status_flag("qwen2:7b")) == CompletionStatus.FAILED

    @pytest.mark.asyncio
    async def test_transient_blob_failure_is_retried(
        self, tmp_path: Path, store: MetadataStore
    ) -> None:
        """A 503 on a blob transfer is retried under the model backoff."""
        state = _registry_state(fail_gets=1, fault_path=_blob_url_path(MODEL_BLOB))
        sleep = _NoSleep()
        async with serve(state) as server:
            config = _app_config(tmp_path, str(server.make_url("/")))
            async with RegistryClient(config.remote, config.registry_client) as client:
                report = await ManifestPuller(store, client, config, sleep=sleep).pull("qwen2", "7b")

        assert report.downloaded == 3
        assert sleep.delays == [1]
        assert len(state.gets(_blob_url_path(MODEL_BLOB))) == 2

    @pytest.mark.asyncio
    async def test_stalled_blob_resumes_from_flushed_bytes(
        self, tmp_path: Path, store: MetadataStore
    ) -> None:
        """A chunk timeout is retried and the retry resumes from the flushed offset."""
        flushed = 40_000
        state = _registry_state(stall_after=flushed, fault_path=_blob_url_path(MODEL_BLOB))
        async with serve(state) as server:
            config = _app_config(tmp_path, str(server.make_url("/")), chunk_timeout_s=0.3)
            async with RegistryClient(config.remote, config.registry_client) as client:
                report = await ManifestPuller(store, client, config, sleep=_NoSleep()).pull("qwen2", "7b")

        model_gets = state.gets(_blob_url_path(MODEL_BLOB))
        assert report.downloaded == 3
        assert len(model_gets) == 2
        assert model_gets[-1].range == f"bytes={flushed}-{len(MODEL_BLOB) - 1}"
        model_file = tmp_path / "model" / "qwen2_7b" / f"model-{_sha(MODEL_BLOB)}.gguf"
        assert model_file.read_bytes() == MODEL_BLOB

    @pytest.mark.asyncio
    async def test_retries_exhausted_marks_failed(self, tmp_path: Path, store: MetadataStore) -> None:
        """Persistent transfer failures propagate after the budget is spent."""
        state = _registry_state(fail_gets=10, fault_path=_blob_url_path(MODEL_BLOB))
        sleep = _NoSleep()
        async with serve(state) as server:
            config = _app_config(tmp_path, str(server.make_url("/")))
            async with RegistryClient(config.remote, config.registry_client) as client:
                with pytest.raises(NetworkError):
                    await ManifestPuller(store, client, config, sleep=sleep).pull("qwen2", "7b")

        assert sleep.delays == [1, 1]
        assert len(state.gets(_blob_url_path(MODEL_BLOB))) == 3
        assert store.get_status(pull_status_flag("qwen2:7b")) == CompletionStatus.FAILED

    @pytest.mark.asyncio
    async def test_corrupt_local_blob_is_replaced(self, tmp_path: Path, store: MetadataStore) -> None:
        """A completed file that fails verification is downloaded again in place."""
        directory = tmp_path / "model" / "qwen2_7b"
        directory.mkdir(parents=True)
        model_file = directory / f"model-{_sha(MODEL_BLOB)}.gguf"
        model_file.write_bytes(b"corrupted")

        state = _registry_state()
        async with serve(state) as server:
            config = _app_config(tmp_path, str(server.make_url("/")))
            async with RegistryClient(config.remote, config.registry_client) as client:
                report = await ManifestPuller(store, client, config, sleep=_NoSleep()).pull("qwen2", "7b")

        assert report.downloaded == 3
        assert model_file.read_bytes() == MODEL_BLOB
        assert sorted(p.name for p in directory.iterdir()) == sorted(
            [
                f"config-{_sha(CONFIG_BLOB)}.json",
                f"model-{_sha(MODEL_BLOB)}.gguf",
                f"template-{_sha(TEMPLATE_BLOB)}.txt",
            ]
        )

    @pytest.mark.asyncio
    async def test_interrupted_blob_resumes(self, tmp_path: Path, store: MetadataStore) -> None:
        """A placeholder plus partial staging file from a previous run is resumed."""
        directory = tmp_path / "model" / "qwen2_7b"
        directory.mkdir(parents=True)
        name = f"model-{_sha(MODEL_BLOB)}.gguf"
        (directory / name).touch()
        (directory / f"{name}.part").write_bytes(MODEL_BLOB[:1000])

        state = _registry_state()
        async with serve(state) as server:
            config = _app_config(tmp_path, str(server.make_url("/")))
            async with RegistryClient(config.remote, config.registry_client) as client:
                await ManifestPuller(store, client, config, sleep=_NoSleep()).pull("qwen2", "7b")

        assert state.gets(_blob_url_path(MODEL_BLOB))[0].range == f"bytes=1000-{len(MODEL_BLOB) - 1}"
        assert (directory / name).read_bytes() == MODEL_BLOB

    @pytest.mark.asyncio
    async def test_unknown_variant_does_not_touch_network(
        self, tmp_path: Path, store: MetadataStore
    ) -> None:
        """Resolution happens before any request or status change."""
        state = _registry_state()
        async with serve(state) as server:
            config = _app_config(tmp_path, str(server.make_url("/")))
            async with RegistryClient(config.remote, config.registry_client) as client:
                with pytest.raises(VariantNotFoundError):
                    await ManifestPuller(store, client, config).pull("qwen2", "72b")

        assert state.requests == []
        assert store.get_flag(pull_status_flag("qwen2:72b")) is None

    @pytest.mark.asyncio
    async def test_pull_without_category_uses_default_category(
        self, tmp_path: Path, store: MetadataStore
    ) -> None:
        """With no category given the configured default is pulled."""
        state = _registry_state()
        state.files["/v2/library/qwen2/manifests/latest"] = _manifest()
        async with serve(state) as server:
            config = _app_config(tmp_path, str(server.make_url("/")))
            async with RegistryClient(config.remote, config.registry_client) as client:
                report = await ManifestPuller(store, client, config, sleep=_NoSleep()).pull("qwen2")

        assert config.default_category == "latest"
        assert report.variant == "qwen2:latest"
        assert state.gets()[0].path == "/v2/library/qwen2/manifests/latest"
        assert store.get_status(pull_status_flag("qwen2:latest")) == CompletionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_store_error_on_register_marks_failed(
        self, tmp_path: Path, store: MetadataStore
    ) -> None:
        """A blob registration that cannot be written fails the pull."""
        state = _registry_state()
        async with serve(state) as server:
            config = _app_config(tmp_path, str(server.make_url("/")))
            async with RegistryClient(config.remote, config.registry_client) as client:
                puller = ManifestPuller(store, client, config, sleep=_NoSleep())
                with (
                    patch.object(store, "register_blob", side_effect=StoreError("disk full")),
                    pytest.raises(StoreError, match="disk full"),
                ):
                    await puller.pull("qwen2", "7b")

        assert store.get_status(pull_status_flag("qwen2:7b")) == CompletionStatus.FAILED
        assert store.get_variant("qwen2:7b").blobs == {}  # type: ignore[union-attr]
