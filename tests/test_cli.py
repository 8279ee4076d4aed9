"""Tests for the sortie CLI.

Tests cover:
- sortie init-db
- sortie create-run
- sortie export (zip written, unknown run)
- Blob store selection from config
- Missing subcommand
"""

from __future__ import annotations

import sys
import zipfile
from pathlib import Path

import pytest
import yaml

from sortie.__main__ import build_blob_store, main
from sortie.blob import HttpBlobStore, LocalBlobStore
from sortie.config import SortieConfig
from sortie.errors import AppError, ErrorCode


# ── Helpers ──────────────────────────────────────────────────────────────────


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    path = tmp_path / "sortie.yaml"
    path.write_text(
        yaml.dump(
            {
                "database": {"path": str(tmp_path / "db" / "sortie.db")},
                "blob": {"root": str(tmp_path / "blobs")},
            }
        )
    )
    return path


def _main(monkeypatch, config_path: Path, *argv: str) -> None:
    monkeypatch.setattr(sys, "argv", ["sortie", "--config", str(config_path), "--log-level", "WARNING", *argv])
    main()


# ── Tests: commands ──────────────────────────────────────────────────────────


class TestCommands:
    def test_init_db(self, monkeypatch, capsys, config_path, tmp_path):
        _main(monkeypatch, config_path, "init-db")
        assert (tmp_path / "db" / "sortie.db").exists()
        assert "Initialized database" in capsys.readouterr().out

    def test_create_run_then_export(self, monkeypatch, capsys, config_path, tmp_path):
        _main(monkeypatch, config_path, "init-db")
        capsys.readouterr()

        _main(
            monkeypatch,
            config_path,
            "create-run",
            "--project-id",
            "p1",
            "--slug",
            "demo",
            "--owner",
            "acme",
            "--repo",
            "widgets",
        )
        run_id = capsys.readouterr().out.strip()
        assert run_id

        output = tmp_path / "bundle.zip"
        _main(monkeypatch, config_path, "export", run_id, "--output", str(output), "--upload")
        out = capsys.readouterr().out
        assert f"Wrote {output}" in out
        assert "Uploaded to file://" in out

        with zipfile.ZipFile(output) as zf:
            names = zf.namelist()
        assert "bundle.json" in names
        assert "repo.json" in names
        assert (tmp_path / "blobs" / "audit-bundles" / "p1" / f"{run_id}.zip").read_bytes() == output.read_bytes()

    def test_export_unknown_run(self, monkeypatch, capsys, config_path):
        _main(monkeypatch, config_path, "init-db")
        with pytest.raises(SystemExit) as exc:
            _main(monkeypatch, config_path, "export", "missing")
        assert exc.value.code == 1
        assert "Error [not_found]: Run not found." in capsys.readouterr().err

    def test_no_command(self, monkeypatch, config_path):
        with pytest.raises(SystemExit) as exc:
            _main(monkeypatch, config_path)
        assert exc.value.code == 1


# ── Tests: wiring ────────────────────────────────────────────────────────────


class TestBlobStoreSelection:
    def test_local(self, tmp_path):
        config = SortieConfig()
        config.blob.root = str(tmp_path)
        assert isinstance(build_blob_store(config), LocalBlobStore)

    def test_http(self, monkeypatch):
        monkeypatch.setenv("BLOB_READ_WRITE_TOKEN", "t")
        config = SortieConfig()
        config.blob.kind = "http"
        config.blob.base_url = "https://blob.test"
        assert isinstance(build_blob_store(config), HttpBlobStore)

    def test_http_requires_base_url(self):
        config = SortieConfig()
        config.blob.kind = "http"
        with pytest.raises(AppError) as exc:
            build_blob_store(config)
        assert exc.value.code == ErrorCode.ENV_INVALID

    def test_unknown_kind(self):
        config = SortieConfig()
        config.blob.kind = "s3"
        with pytest.raises(AppError):
            build_blob_store(config)
