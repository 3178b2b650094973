from pathlib import Path

import pytest

import gallery.config as config_module
from gallery.bootstrap import BootstrapError, Bootstrapper
from gallery.config import AppConfig


def test_bootstrapper_creates_storage_and_upload_roots(tmp_path: Path) -> None:
    config = AppConfig(storage_root=tmp_path / "storage", upload_root=tmp_path / "storage" / "uploads")

    Bootstrapper(config).initialize()

    assert config.storage_root.is_dir()
    assert config.upload_root.is_dir()


def test_bootstrapper_raises_when_upload_directory_unwritable(
    tmp_path: Path, monkeypatch
) -> None:
    storage_root = tmp_path / "storage"
    upload_root = tmp_path / "uploads"
    config = AppConfig(storage_root=storage_root, upload_root=upload_root)

    original_ensure = config_module._ensure_writable_directory

    def fake_ensure(path: Path) -> bool:
        if path.resolve() == upload_root.resolve():
            return False
        return original_ensure(path)

    monkeypatch.setattr(config_module, "_ensure_writable_directory", fake_ensure)

    with pytest.raises(BootstrapError) as excinfo:
        Bootstrapper(config).initialize()

    assert "upload" in str(excinfo.value).lower()
    assert "not writable" in str(excinfo.value).lower()
