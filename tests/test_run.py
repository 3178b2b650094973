"""Tests for the run.py entrypoint helpers."""

from __future__ import annotations

import json
from types import SimpleNamespace

import pytest
from typer.testing import CliRunner

import run


@pytest.fixture()
def cli_config(temp_config, monkeypatch):
    monkeypatch.setattr(run, "initialize_app", lambda: temp_config)
    monkeypatch.setattr(run, "_prepare_logging", lambda storage_root: None)
    return temp_config


def test_serve_builds_app_and_runs_server(monkeypatch, tmp_path):
    captured = {}
    config = SimpleNamespace(storage_root=tmp_path)

    monkeypatch.setattr(run, "initialize_app", lambda: config)
    monkeypatch.setattr(run, "_prepare_logging", lambda storage_root: None)

    dummy_app = SimpleNamespace(state=SimpleNamespace())

    def fake_create_app(app_config, root_path):
        captured["create_app"] = (app_config, root_path)
        return dummy_app

    monkeypatch.setattr(run, "create_app", fake_create_app)

    class DummyConfig:
        def __init__(self, app, **kwargs):
            captured["app"] = app
            captured["config_kwargs"] = kwargs

    class DummyServer:
        def __init__(self, config):
            captured["server_instance"] = self

        def run(self):
            captured["server_run"] = True

    monkeypatch.setattr(run.uvicorn, "Config", DummyConfig)
    monkeypatch.setattr(run.uvicorn, "Server", DummyServer)

    run.serve(host="0.0.0.0", port=9000, root_path="gallery/")

    assert captured["create_app"] == (config, "/gallery")
    assert captured["config_kwargs"]["root_path"] == "/gallery"
    assert captured["config_kwargs"]["port"] == 9000
    assert captured["server_run"] is True
    assert dummy_app.state.server is captured["server_instance"]


def test_ingest_and_manipulate_commands(cli_config, tmp_path, image_bytes):
    source = tmp_path / "sunset.jpg"
    source.write_bytes(image_bytes("JPEG", (320, 240)))
    runner = CliRunner()

    result = runner.invoke(run.cli, ["ingest", str(source), "--folder", "cli"])
    assert result.exit_code == 0, result.output
    payload = json.loads(result.output.split("Ingestion completed.", 1)[1])
    assert payload["mime_type"] == "image/jpeg"
    filename = payload["filename"]

    result = runner.invoke(
        run.cli,
        ["manipulate", filename, "resize", "--folder", "cli", "-p", "width=160", "-p", "height=160"],
    )
    assert result.exit_code == 0, result.output
    assert "160x120" in result.output

    result = runner.invoke(run.cli, ["revert", filename, "--folder", "cli"])
    assert result.exit_code == 0, result.output

    result = runner.invoke(run.cli, ["delete", filename, "--folder", "cli"])
    assert result.exit_code == 0, result.output
    assert not (cli_config.upload_root / "cli" / "original" / filename).exists()


def test_ingest_reports_validation_errors(cli_config, tmp_path):
    source = tmp_path / "notes.txt"
    source.write_text("%PDF-1.4 plain document", encoding="utf-8")

    result = CliRunner().invoke(run.cli, ["ingest", str(source)])

    assert result.exit_code == 1
    assert "Only images and videos are allowed" in result.output


def test_manipulate_rejects_malformed_params(cli_config):
    result = CliRunner().invoke(run.cli, ["manipulate", "a.png", "resize", "-p", "width"])

    assert result.exit_code == 2


def test_manipulate_missing_asset_fails(cli_config):
    result = CliRunner().invoke(run.cli, ["manipulate", "ghost.png", "grayscale"])

    assert result.exit_code == 1
    assert "not found" in result.output
