from __future__ import annotations

import pytest

pytest.importorskip("fastapi")
pytest.importorskip("httpx")

from fastapi.testclient import TestClient

from gallery.config import AppConfig
from gallery.services.ingestion import InvalidPathError, UploadIngestor
from gallery.web import create_app
from gallery.web.server import AssetLocks


@pytest.fixture()
def client(temp_config: AppConfig, video_extractor) -> TestClient:
    app = create_app(
        temp_config,
        ingestor=UploadIngestor(temp_config, extractor=video_extractor),
        extractor=video_extractor,
    )
    return TestClient(app)


def _upload(client: TestClient, data: bytes, name: str = "photo.png", mime: str = "image/png", folder: str = "web"):
    return client.post("/api/assets", data={"folder": folder}, files={"file": (name, data, mime)})


def test_health_reports_operations(client: TestClient) -> None:
    response = client.get("/api/health")

    assert response.status_code == 200
    body = response.json()
    assert body["video_toolkit"] is True
    assert "sepia" in body["operations"]
    assert response.headers["x-request-id"]


def test_upload_manipulate_revert_delete_flow(client: TestClient, temp_config: AppConfig, image_bytes) -> None:
    response = _upload(client, image_bytes("PNG", (300, 200)))
    assert response.status_code == 201
    asset = response.json()["asset"]
    assert (asset["width"], asset["height"]) == (300, 200)
    filename = asset["filename"]

    response = client.post(
        "/api/assets/manipulate",
        json={"folder": "web", "filename": filename, "operation": "crop", "params": {"width": 50, "height": 40}},
    )
    assert response.status_code == 200
    assert (response.json()["width"], response.json()["height"]) == (50, 40)

    response = client.post("/api/assets/revert", json={"folder": "web", "filename": filename})
    assert response.status_code == 200
    assert response.json()["success"] is True

    response = client.delete("/api/assets", params={"folder": "web", "filename": filename})
    assert response.status_code == 200
    assert not (temp_config.upload_root / "web" / "original" / filename).exists()


def test_validation_errors_use_errors_list(client: TestClient) -> None:
    response = _upload(client, b"%PDF-1.4 not an image", name="doc.pdf", mime="application/pdf")

    assert response.status_code == 400
    assert response.json()["errors"] == ["Unsupported file type. Only images and videos are allowed."]


def test_unknown_operation_is_bad_request(client: TestClient, image_bytes) -> None:
    filename = _upload(client, image_bytes("JPEG"), name="a.jpg", mime="image/jpeg").json()["asset"]["filename"]

    response = client.post(
        "/api/assets/manipulate",
        json={"folder": "web", "filename": filename, "operation": "melt"},
    )

    assert response.status_code == 400
    assert "Unknown operation" in response.json()["errors"][0]


def test_missing_asset_is_not_found(client: TestClient) -> None:
    response = client.post(
        "/api/assets/manipulate",
        json={"folder": "web", "filename": "nothing.png", "operation": "grayscale"},
    )

    assert response.status_code == 404


def test_thumbnail_failure_is_server_error(client: TestClient) -> None:
    response = _upload(client, b"plain text pretending", name="fake.jpg", mime="image/jpeg")

    assert response.status_code == 500
    assert response.json()["errors"][0].startswith("Failed to create thumbnail")


def test_video_probe_endpoint(client: TestClient, mp4_bytes: bytes) -> None:
    filename = _upload(client, mp4_bytes, name="clip.mp4", mime="video/mp4").json()["asset"]["filename"]

    response = client.get("/api/videos/probe", params={"folder": "web", "filename": filename})

    assert response.status_code == 200
    assert response.json()["duration_seconds"] == pytest.approx(10.0)
    assert response.json()["width"] == 1920


def test_asset_locks_key_on_resolved_path(temp_config: AppConfig) -> None:
    locks = AssetLocks(temp_config)

    assert locks.key_for("a//b", "x.png") == locks.key_for("/a/b/", "x.png")
    assert locks.key_for("a/b", "x.png") != locks.key_for("a/b", "y.png")
    with pytest.raises(InvalidPathError):
        locks.key_for("../escape", "x.png")


def test_asset_locks_are_released_after_use(temp_config: AppConfig) -> None:
    locks = AssetLocks(temp_config)

    with locks.hold("a", "x.png"):
        with locks.hold("a", "y.png"):
            assert len(locks) == 2
    for index in range(1000):
        with locks.hold("f", f"missing_{index}.png"):
            pass

    assert len(locks) == 0


def test_unknown_assets_do_not_leave_locks(client: TestClient) -> None:
    for index in range(5):
        client.delete("/api/assets", params={"folder": "web", "filename": f"ghost_{index}.png"})
        client.post(
            "/api/assets/manipulate",
            json={"folder": "web", "filename": f"ghost_{index}.png", "operation": "grayscale"},
        )

    assert len(client.app.state.asset_locks) == 0
