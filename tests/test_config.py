import json
from pathlib import Path

import gallery.config as config_module
from gallery.config import AppConfig, MediaSettings, load_config


def test_upload_root_falls_back_when_preferred_is_unusable(tmp_path: Path) -> None:
    storage = tmp_path / "storage"
    storage.mkdir()

    preferred_uploads = tmp_path / "uploads"
    preferred_uploads.write_text("not a directory", encoding="utf-8")

    config = AppConfig.from_mapping(
        {"storage_root": "storage", "upload_root": "uploads"},
        base_path=tmp_path,
    )

    expected_fallback = (storage / "uploads").resolve()
    assert config.upload_root == expected_fallback
    assert expected_fallback.is_dir()


def test_storage_root_falls_back_when_preferred_is_unusable(
    tmp_path: Path, monkeypatch
) -> None:
    home_dir = tmp_path / "home"
    monkeypatch.setattr(config_module.Path, "home", lambda: home_dir)

    preferred_storage = tmp_path / "storage"
    preferred_storage.write_text("not a directory", encoding="utf-8")

    config = AppConfig.from_mapping({"storage_root": "storage"}, base_path=tmp_path)

    expected_storage = (home_dir / ".gallery" / "storage").resolve()
    assert config.storage_root == expected_storage
    assert expected_storage.exists()


def test_media_settings_defaults_and_overrides(tmp_path: Path) -> None:
    config = AppConfig.from_mapping(
        {
            "storage_root": "storage",
            "image": {
                "allowed_types": ["JPG", ".png"],
                "thumb_width": 120,
                "default_quality": 150,
            },
        },
        base_path=tmp_path,
    )

    assert config.image.allowed_extensions == ("jpg", "png")
    assert config.image.thumbnail_width == 120
    assert config.image.thumbnail_height == 200
    assert config.image.default_quality == 100
    assert config.image.max_file_size == 5 * 1024 * 1024
    assert config.video.enabled is False
    assert config.original_dir == "original"
    assert config.pristine_dir == "pristine"


def test_empty_media_mapping_keeps_defaults() -> None:
    defaults = MediaSettings(allowed_mimes=("image/png",), max_file_size=10)
    assert MediaSettings.from_mapping({}, defaults=defaults) is defaults


def test_load_config_reads_json_file(tmp_path: Path) -> None:
    config_file = tmp_path / "custom.json"
    config_file.write_text(
        json.dumps(
            {
                "storage_root": str(tmp_path / "data"),
                "upload_root": str(tmp_path / "data" / "media"),
                "video": {"enabled": True, "thumbnail_timestamp": 3},
            }
        ),
        encoding="utf-8",
    )

    config = load_config(config_file)

    assert config.storage_root == (tmp_path / "data").resolve()
    assert config.upload_root == (tmp_path / "data" / "media").resolve()
    assert config.video.enabled is True
    assert config.video.thumbnail_timestamp == 3.0
