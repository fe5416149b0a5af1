"""Conversion of build options into attestation, cache and exporter settings."""

from __future__ import annotations

import os
import stat
import sys
from dataclasses import dataclass, field
from typing import IO, Any, Callable, Iterable, Optional

EXPORTER_IMAGE = "image"
EXPORTER_LOCAL = "local"
EXPORTER_TAR = "tar"
EXPORTER_OCI = "oci"
EXPORTER_DOCKER = "docker"

_REGISTRY = "registry"
_STDOUT = "-"
_TRUE = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE = frozenset({"0", "f", "F", "FALSE", "false", "False"})


class ExportError(ValueError):
    """An exporter entry cannot be used."""


@dataclass
class Attest:
    """An attestation request: its type, whether it is disabled, and its attributes."""

    type: str
    disabled: bool = False
    attrs: str = ""


@dataclass
class CacheOptionsEntry:
    """A cache import or export entry."""

    type: str
    attrs: dict[str, str] = field(default_factory=dict)


@dataclass
class ExportEntry:
    """An output requested by the user."""

    type: str
    attrs: dict[str, str] = field(default_factory=dict)
    destination: str = ""


@dataclass
class Exporter:
    """An exporter ready for the solver: a directory or a writer factory."""

    type: str
    attrs: dict[str, str] = field(default_factory=dict)
    output_dir: str = ""
    output: Optional[Callable[[dict[str, str]], IO[Any]]] = None


def create_attestations(attests: Iterable[Attest]) -> dict[str, str | None]:
    """Map attestation types to attributes; None marks a disabled type.

    The first entry of each type wins.
    """
    result: dict[str, str | None] = {}
    for attest in attests:
        if attest.type in result:
            continue
        result[attest.type] = None if attest.disabled else attest.attrs
    return result


def create_caches(entries: Iterable[CacheOptionsEntry]) -> list[CacheOptionsEntry]:
    """Return independent copies of the cache entries."""
    return [CacheOptionsEntry(entry.type, dict(entry.attrs)) for entry in entries]


def _parse_bool(value: str | None) -> bool | None:
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    return None


def _stat(path: str, kind: str) -> os.stat_result | None:
    try:
        return os.stat(path)
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise ExportError(f"invalid destination {kind}: {path}: {exc}") from exc


def _is_console(stream: Any) -> bool:
    isatty = getattr(stream, "isatty", None)
    try:
        return bool(isatty()) if callable(isatty) else False
    except (OSError, ValueError):
        return False


def _writer(stream: IO[Any]) -> Callable[[dict[str, str]], IO[Any]]:
    """Return a factory handing out the stream while it is still open."""

    def output(_attrs: dict[str, str]) -> IO[Any]:
        if getattr(stream, "closed", False):
            raise ExportError("output stream is already closed")
        return stream

    return output


def _file_modes(exporter_type: str, attrs: dict[str, str]) -> tuple[bool, bool]:
    """Return whether the exporter writes to a file and to a directory."""
    if exporter_type == EXPORTER_LOCAL:
        return False, True
    if exporter_type == EXPORTER_TAR:
        return True, False
    if exporter_type in (EXPORTER_OCI, EXPORTER_DOCKER):
        tar = _parse_bool(attrs.get("tar"))
        if tar is None:
            tar = True
        return tar, not tar
    return False, False


def create_exports(entries: Iterable[ExportEntry]) -> list[Exporter]:
    """Turn output entries into exporters, opening destination files as needed."""
    exporters: list[Exporter] = []
    for entry in entries:
        if not entry.type:
            raise ExportError("type is required for output")

        exporter = Exporter(type=entry.type, attrs=dict(entry.attrs))
        support_file, support_dir = _file_modes(exporter.type, exporter.attrs)
        if exporter.type == _REGISTRY:
            exporter.type = EXPORTER_IMAGE

        destination = entry.destination
        if support_dir:
            if not destination:
                raise ExportError(f"dest is required for {exporter.type} exporter")
            if destination == _STDOUT:
                raise ExportError(
                    f"dest cannot be stdout for {exporter.type} exporter"
                )
            info = _stat(destination, "directory")
            if info is not None and not stat.S_ISDIR(info.st_mode):
                raise ExportError(f"destination directory {destination} is a file")
            exporter.output_dir = destination

        if support_file:
            if not destination and exporter.type != EXPORTER_DOCKER:
                destination = _STDOUT
            if destination == _STDOUT:
                if _is_console(sys.stdout):
                    raise ExportError(
                        f"dest file is required for {exporter.type} exporter. "
                        "refusing to write to console"
                    )
                exporter.output = _writer(getattr(sys.stdout, "buffer", sys.stdout))
            elif destination:
                info = _stat(destination, "file")
                if info is not None and stat.S_ISDIR(info.st_mode):
                    raise ExportError(
                        f"destination file {destination} is a directory"
                    )
                try:
                    handle = open(destination, "wb")
                except OSError as exc:
                    raise ExportError(f"failed to open {exc}") from exc
                exporter.output = _writer(handle)

        exporters.append(exporter)
    return exporters