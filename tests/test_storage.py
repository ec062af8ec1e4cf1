import pytest

from conftest import install_model
from whisprlocal.storage import InstalledModel


def test_scan_empty_when_directory_missing(storage):
    assert storage.scan() == set()


def test_scan_pairs_primary_with_sidecar(storage):
    install_model(storage, "ggml-base.en.bin")
    install_model(storage, "ggml-tiny.bin")
    bundle = storage.models_dir / "ggml-base.en-encoder.mlmodelc"
    bundle.mkdir()

    installed = {m.filename: m for m in storage.scan()}

    assert set(installed) == {"ggml-base.en.bin", "ggml-tiny.bin"}
    assert installed["ggml-base.en.bin"].sidecar_path == bundle
    assert installed["ggml-tiny.bin"].sidecar_path is None


def test_scan_ignores_staging_and_other_files(storage):
    install_model(storage, "ggml-tiny.bin")
    (storage.staging_dir / "tmp123.part").write_bytes(b"partial")
    (storage.models_dir / "notes.txt").write_text("x")

    assert [m.filename for m in storage.scan()] == ["ggml-tiny.bin"]


@pytest.mark.parametrize("filename", ["", "../state.yml", "sub/ggml-tiny.bin", "ggml-missing.bin"])
def test_find_rejects_missing_or_outside_paths(storage, filename):
    install_model(storage, "ggml-tiny.bin")
    assert storage.find(filename) is None


def test_install_file_moves_staged_file(storage):
    staged = storage.new_staging_file()
    staged.write_bytes(b"weights")

    path = storage.install_file(staged, "ggml-tiny.bin")

    assert path.read_bytes() == b"weights"
    assert not staged.exists()


def test_install_dir_replaces_existing_bundle(storage):
    storage.ensure_dirs()
    old = storage.models_dir / "ggml-tiny-encoder.mlmodelc"
    old.mkdir()
    (old / "stale").write_text("old")

    staged = storage.new_staging_dir()
    (staged / "model.mil").write_text("new")

    path = storage.install_dir(staged, "ggml-tiny-encoder.mlmodelc")

    assert path == old
    assert (path / "model.mil").read_text() == "new"
    assert not (path / "stale").exists()
    assert list(storage.staging_dir.iterdir()) == []


def test_purge_staging_removes_leftovers(storage):
    storage.new_staging_file().write_bytes(b"x")
    (storage.new_staging_dir() / "inner").write_text("y")

    storage.purge_staging()

    assert storage.staging_dir.is_dir()
    assert list(storage.staging_dir.iterdir()) == []


def test_remove_deletes_primary_and_sidecar(storage):
    install_model(storage, "ggml-tiny.bin")
    (storage.models_dir / "ggml-tiny-encoder.mlmodelc").mkdir()
    model = storage.find("ggml-tiny.bin")

    storage.remove(model)

    assert storage.scan() == set()
    assert not (storage.models_dir / "ggml-tiny-encoder.mlmodelc").exists()


def test_pointer_round_trip(storage):
    assert storage.read_pointer() is None

    storage.write_pointer("ggml-base.bin")
    assert storage.read_pointer() == "ggml-base.bin"

    storage.write_pointer(None)
    assert storage.read_pointer() is None


def test_unreadable_pointer_is_ignored(storage):
    storage.state_file.parent.mkdir(parents=True)
    storage.state_file.write_text("last_activated: [unclosed")

    assert storage.read_pointer() is None


def test_installed_model_to_dict(tmp_path):
    model = InstalledModel(tmp_path / "ggml-tiny.bin")

    assert model.to_dict() == {
        "filename": "ggml-tiny.bin",
        "path": str(tmp_path / "ggml-tiny.bin"),
        "sidecar": None,
    }
    assert model.model_class.size_class.value == "tiny"
