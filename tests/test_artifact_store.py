from __future__ import annotations

import base64
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from oficina_nf.config import StorageSettings
from oficina_nf.services.artifact_store import (
    LocalArtifactStore,
    S3ArtifactStore,
    build_artifact_store,
)


class TestLocalArtifactStore:
    def test_save_bytes(self, tmp_path: Path):
        store = LocalArtifactStore(tmp_path)
        stored = store.save(b"%PDF", "nf_1.pdf")
        assert stored.backend == "local"
        assert stored.location == "storage/nf_1.pdf"
        assert (tmp_path / "storage" / "nf_1.pdf").read_bytes() == b"%PDF"

    def test_save_base64_text(self, tmp_path: Path):
        store = LocalArtifactStore(tmp_path)
        stored = store.save(base64.b64encode(b"<nfe/>").decode(), "nf_1.xml")
        assert store.path_for(stored.location).read_bytes() == b"<nfe/>"

    def test_overwrite_leaves_no_temp_files(self, tmp_path: Path):
        store = LocalArtifactStore(tmp_path)
        store.save(b"one", "nf_1.pdf")
        store.save(b"two", "nf_1.pdf")
        assert store.path_for("storage/nf_1.pdf").read_bytes() == b"two"
        assert [p.name for p in store.directory.iterdir()] == ["nf_1.pdf"]

    @pytest.mark.parametrize("name", ["../escape.pdf", "a/b.pdf", "a\\b.pdf", "", ".."])
    def test_rejects_path_names(self, tmp_path: Path, name: str):
        with pytest.raises(ValueError):
            LocalArtifactStore(tmp_path).save(b"x", name)

    def test_rejects_unknown_content(self, tmp_path: Path):
        with pytest.raises(TypeError):
            LocalArtifactStore(tmp_path).save(123, "nf_1.pdf")

    def test_list_files(self, tmp_path: Path):
        store = LocalArtifactStore(tmp_path)
        assert store.list_files() == []
        store.save(b"b", "nf_2.pdf")
        store.save(b"a", "nf_1.xml")
        assert store.list_files() == ["storage/nf_1.xml", "storage/nf_2.pdf"]


class TestS3ArtifactStore:
    def test_put_object(self):
        client = MagicMock()
        store = S3ArtifactStore(client, "notas")
        stored = store.save(b"%PDF-1.4", "nf_9.pdf")

        assert stored.backend == "s3"
        assert stored.location == "storage/nf_9.pdf"
        args, kwargs = client.put_object.call_args
        assert args[0] == "notas"
        assert args[1] == "storage/nf_9.pdf"
        assert args[2].read() == b"%PDF-1.4"
        assert kwargs["length"] == 8
        assert kwargs["content_type"] == "application/pdf"


class TestBuild:
    def test_local_default(self, tmp_path: Path):
        store = build_artifact_store(StorageSettings(provider="local", root=tmp_path))
        assert isinstance(store, LocalArtifactStore)
        assert store.root == tmp_path

    @patch("oficina_nf.services.artifact_store.Minio")
    def test_s3(self, mock_minio, tmp_path: Path):
        settings = StorageSettings(
            provider="s3",
            root=tmp_path,
            bucket="notas",
            region="sa-east-1",
            access_key="AK",
            secret_key="SK",
        )
        store = build_artifact_store(settings)
        assert isinstance(store, S3ArtifactStore)
        mock_minio.assert_called_once_with(
            "s3.amazonaws.com",
            access_key="AK",
            secret_key="SK",
            region="sa-east-1",
            secure=True,
        )

    def test_s3_requires_bucket(self, tmp_path: Path):
        with pytest.raises(ValueError, match="S3_BUCKET"):
            build_artifact_store(StorageSettings(provider="s3", root=tmp_path))
