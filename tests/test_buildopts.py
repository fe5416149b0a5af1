import io

import pytest

from buildxkit.buildopts import (
    Attest,
    CacheOptionsEntry,
    ExportEntry,
    ExportError,
    create_attestations,
    create_caches,
    create_exports,
)


class _FakeStdout(io.StringIO):
    def __init__(self, tty):
        super().__init__()
        self._tty = tty
        self.buffer = io.BytesIO()

    def isatty(self):
        return self._tty


def test_attestations_first_wins_and_disabled_is_none():
    result = create_attestations(
        [
            Attest("sbom", attrs="generator=a"),
            Attest("sbom", attrs="generator=b"),
            Attest("provenance", disabled=True, attrs="mode=max"),
        ]
    )
    assert result == {"sbom": "generator=a", "provenance": None}


def test_attestations_empty():
    assert create_attestations([]) == {}


def test_caches_are_copied():
    src = CacheOptionsEntry("registry", {"ref": "user/app:cache"})
    caches = create_caches([src])
    assert caches == [CacheOptionsEntry("registry", {"ref": "user/app:cache"})]
    src.attrs["ref"] = "changed"
    assert caches[0].attrs["ref"] == "user/app:cache"


def test_caches_empty():
    assert create_caches([]) == []


def test_exports_empty():
    assert create_exports([]) == []


def test_export_requires_type():
    with pytest.raises(ExportError, match="type is required"):
        create_exports([ExportEntry("")])


def test_local_requires_destination():
    with pytest.raises(ExportError, match="dest is required for local exporter"):
        create_exports([ExportEntry("local")])


def test_local_rejects_stdout():
    with pytest.raises(ExportError, match="dest cannot be stdout"):
        create_exports([ExportEntry("local", destination="-")])


def test_local_rejects_file(tmp_path):
    target = tmp_path / "file"
    target.write_bytes(b"x")
    with pytest.raises(ExportError, match="is a file"):
        create_exports([ExportEntry("local", destination=str(target))])


def test_local_sets_output_dir(tmp_path):
    (exporter,) = create_exports([ExportEntry("local", destination=str(tmp_path))])
    assert exporter.type == "local"
    assert exporter.output_dir == str(tmp_path)
    assert exporter.output is None


def test_tar_to_file(tmp_path):
    target = tmp_path / "out.tar"
    (exporter,) = create_exports([ExportEntry("tar", destination=str(target))])
    assert target.exists()
    handle = exporter.output({})
    handle.write(b"data")
    handle.close()
    assert target.read_bytes() == b"data"
    assert exporter.output_dir == ""


def test_tar_rejects_directory(tmp_path):
    with pytest.raises(ExportError, match="is a directory"):
        create_exports([ExportEntry("tar", destination=str(tmp_path))])


def test_registry_becomes_image():
    (exporter,) = create_exports([ExportEntry("registry", {"name": "app"})])
    assert exporter.type == "image"
    assert exporter.attrs == {"name": "app"}
    assert exporter.output is None


def test_oci_without_tar_uses_directory(tmp_path):
    (exporter,) = create_exports(
        [ExportEntry("oci", {"tar": "false"}, destination=str(tmp_path))]
    )
    assert exporter.output_dir == str(tmp_path)
    assert exporter.output is None


def test_oci_default_writes_file(tmp_path):
    target = tmp_path / "image.tar"
    (exporter,) = create_exports([ExportEntry("oci", destination=str(target))])
    assert exporter.output_dir == ""
    exporter.output({}).close()
    assert target.exists()


def test_docker_without_destination_has_no_output():
    (exporter,) = create_exports([ExportEntry("docker")])
    assert exporter.output is None
    assert exporter.output_dir == ""


def test_tar_to_stdout_when_not_console(monkeypatch):
    fake = _FakeStdout(tty=False)
    monkeypatch.setattr("sys.stdout", fake)
    (exporter,) = create_exports([ExportEntry("tar")])
    assert exporter.output({}) is fake.buffer


def test_tar_refuses_console(monkeypatch):
    monkeypatch.setattr("sys.stdout", _FakeStdout(tty=True))
    with pytest.raises(ExportError, match="refusing to write to console"):
        create_exports([ExportEntry("tar", destination="-")])


def test_input_entry_not_modified(monkeypatch):
    monkeypatch.setattr("sys.stdout", _FakeStdout(tty=False))
    entry = ExportEntry("tar", {"k": "v"})
    (exporter,) = create_exports([entry])
    exporter.attrs["k"] = "other"
    assert entry.attrs == {"k": "v"}
    assert entry.destination == ""