"""Driver that runs buildkit in a container managed by the Docker daemon.

The Docker API object in the init config provides
``container_inspect(name)``, returning a dict with ``State`` and ``Mounts``
and raising LookupError when the container does not exist;
``image_create(image, auth)``; ``image_inspect(image)``; ``info()``,
returning a dict; ``container_create(name, config, host_config)``;
``copy_to_container(name, path, archive)``; ``container_start(name)``;
``container_stop(name)``; ``container_remove(name, remove_volumes, force)``;
``volume_remove(name, force)``; ``container_logs(name)``, returning a
multiplexed stream; ``exec_create(name, cmd)``, returning an exec id;
``exec_attach(exec_id)``, returning a readable and writable connection that
carries a multiplexed stream; and ``exec_inspect(exec_id)``, returning a dict
with ``ExitCode``.
"""

from __future__ import annotations

import io
import os
import posixpath
import shutil
import struct
import sys
import tarfile
import tempfile
import time
from dataclasses import replace
from typing import Any, BinaryIO, Callable, Iterator

from buildxkit.driver import DEFAULT_IMAGE, Driver, Feature, Info, Status
from buildxkit.manager import Factory, InitConfig, register

DRIVER_NAME = "docker-container"
BUILDKIT_STATE_DIR = "/var/lib/buildkit"
BUILDKIT_CONFIG_DIR = "/etc/buildkit"
VOLUME_STATE_SUFFIX = "_state"

_PRIORITY_SUPPORTED = 30
_PRIORITY_UNSUPPORTED = 70
_WAIT_RETRIES = 15
_DEFAULT_CGROUP_PARENT = "/docker/buildx"
_HOST_NETWORK_FLAG = "--allow-insecure-entitlement=network.host"

_HEADER = struct.Struct(">BxxxL")
_STDIN, _STDOUT, _STDERR, _SYSTEMERR = 0, 1, 2, 3


def _log(logger: Callable[..., Any] | None, message: str) -> None:
    if logger is not None:
        logger(message)


def _read_exact(source: Any, size: int) -> bytes:
    chunks = []
    remaining = size
    while remaining:
        chunk = source.read(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def _frames(source: Any) -> Iterator[tuple[int, bytes]]:
    """Yield (stream, payload) pairs from a multiplexed Docker stream."""
    while True:
        header = _read_exact(source, _HEADER.size)
        if not header:
            return
        if len(header) < _HEADER.size:
            raise EOFError("unexpected EOF in stream header")
        stream, size = _HEADER.unpack(header)
        payload = _read_exact(source, size)
        if len(payload) < size:
            raise EOFError("unexpected EOF in stream payload")
        yield stream, payload


def _std_copy(source: Any, stdout: Any, stderr: Any) -> None:
    for stream, payload in _frames(source):
        if stream in (_STDIN, _STDOUT):
            stdout.write(payload)
        elif stream == _STDERR:
            stderr.write(payload)
        elif stream == _SYSTEMERR:
            raise RuntimeError(
                "error from daemon in stream: " + payload.decode("utf-8", "replace")
            )
        else:
            raise ValueError(f"Unrecognized input header: {stream}")


class _DemuxConn:
    """Connection that yields only the stdout part of a multiplexed stream."""

    def __init__(self, conn: Any, stderr: BinaryIO | None = None) -> None:
        self._conn = conn
        self._frames = _frames(conn)
        self._buffer = b""
        self._stderr = stderr

    def _write_stderr(self, data: bytes) -> None:
        target = self._stderr or getattr(sys.stderr, "buffer", None)
        if target is not None:
            target.write(data)

    def read(self, size: int = -1) -> bytes:
        while not self._buffer:
            try:
                stream, payload = next(self._frames)
            except (StopIteration, EOFError):
                return b""
            if stream in (_STDIN, _STDOUT):
                self._buffer = payload
            elif stream == _STDERR:
                self._write_stderr(payload)
            else:
                return b""
        if size < 0:
            size = len(self._buffer)
        data, self._buffer = self._buffer[:size], self._buffer[size:]
        return data

    def write(self, data: bytes) -> int:
        return self._conn.write(data)

    def close(self) -> None:
        self._conn.close()


class _LogWriter:
    def __init__(self, logger: Callable[..., Any]) -> None:
        self._logger = logger

    def write(self, data: bytes) -> int:
        self._logger(data.decode("utf-8", "replace"))
        return len(data)


def _decode_security_options(options: list[str]) -> list[str]:
    """Return the names of the daemon's security options."""
    names = []
    for option in options:
        if "=" not in option:
            names.append(option)
            continue
        name = ""
        for part in option.split(","):
            key, sep, value = part.partition("=")
            if not sep:
                raise ValueError(f'invalid security option "{part}"')
            if not key or not value:
                raise ValueError("invalid empty security option")
            if key == "name":
                name = value
        names.append(name)
    return names


def _root_owned(info: tarfile.TarInfo) -> tarfile.TarInfo:
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    return info


def _tar_directory(path: str) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        for root, dirs, names in os.walk(path):
            dirs.sort()
            for entry in dirs + sorted(names):
                full = os.path.join(root, entry)
                arcname = os.path.relpath(full, path).replace(os.sep, "/")
                tar.add(full, arcname=arcname, recursive=False, filter=_root_owned)
    return buffer.getvalue()


def write_config_files(files: dict[str, bytes]) -> str:
    """Write config files under a temporary root; return that root directory."""
    tmp_dir = tempfile.mkdtemp(prefix="buildkitd-config")
    try:
        for name, data in files.items():
            rel = posixpath.normpath(BUILDKIT_CONFIG_DIR + "/" + name).lstrip("/")
            target = os.path.join(tmp_dir, *rel.split("/"))
            os.makedirs(os.path.dirname(target), mode=0o700, exist_ok=True)
            with open(target, "wb") as handle:
                handle.write(data)
            os.chmod(target, 0o600)
    except BaseException:
        shutil.rmtree(tmp_dir, ignore_errors=True)
        raise
    return tmp_dir


def parse_buildkitd_version(output: str) -> str:
    """Extract the version from the output of ``buildkitd --version``."""
    fields = output.split()
    if len(fields) != 4:
        raise ValueError(f"unexpected version format: {output}")
    return fields[2]


class DockerContainerDriver(Driver):
    """Buildkit running in a privileged container of the Docker daemon."""

    def __init__(
        self,
        factory: Factory,
        cfg: InitConfig,
        net_mode: str = "",
        image: str = "",
        cgroup_parent: str = "",
        env: list[str] | None = None,
    ) -> None:
        self._factory = factory
        self._config = cfg
        self.net_mode = net_mode
        self.image = image
        self.cgroup_parent = cgroup_parent
        self.env = list(env or [])

    @property
    def _api(self) -> Any:
        return self._config.docker_api

    @property
    def _name(self) -> str:
        return self._config.name

    def image_name(self) -> str:
        """Return the buildkit image the container runs."""
        return self.image or DEFAULT_IMAGE

    def factory(self) -> Factory:
        return self._factory

    def config(self) -> InitConfig:
        return self._config

    def is_moby_driver(self) -> bool:
        return False

    def features(self) -> dict[Feature, bool]:
        return {
            Feature.OCI_EXPORTER: True,
            Feature.DOCKER_EXPORTER: True,
            Feature.CACHE_EXPORT: True,
            Feature.MULTI_PLATFORM: True,
        }

    def bootstrap(self, logger: Callable[..., Any] | None = None) -> None:
        _log(logger, "[internal] booting buildkit")
        try:
            self._api.container_inspect(self._name)
        except LookupError:
            self._create(logger)
            return
        _log(logger, f"starting container {self._name}")
        self._api.container_start(self._name)
        self._wait(logger)

    def _pull(self, image: str, logger: Callable[..., Any] | None) -> None:
        _log(logger, f"pulling image {image}")
        try:
            self._api.image_create(image, self._config.auth)
        except Exception as pull_error:
            try:
                self._api.image_inspect(image)
            except Exception:
                raise pull_error
            _log(logger, f"pulling failed, using local image {image}")

    def _host_config(self) -> dict[str, Any]:
        host_config: dict[str, Any] = {
            "Privileged": True,
            "Mounts": [
                {
                    "Type": "volume",
                    "Source": self._name + VOLUME_STATE_SUFFIX,
                    "Target": BUILDKIT_STATE_DIR,
                }
            ],
            "Init": True,
        }
        if self.net_mode:
            host_config["NetworkMode"] = self.net_mode
        try:
            info = self._api.info()
        except Exception:
            return host_config
        if info.get("CgroupDriver") == "cgroupfs":
            host_config["CgroupParent"] = self.cgroup_parent or _DEFAULT_CGROUP_PARENT
        if "userns" in _decode_security_options(info.get("SecurityOptions") or []):
            host_config["UsernsMode"] = "host"
        return host_config

    def _create(self, logger: Callable[..., Any] | None) -> None:
        image = self.image_name()
        self._pull(image, logger)
        container_config: dict[str, Any] = {"Image": image, "Env": list(self.env)}
        if self._config.buildkit_flags is not None:
            container_config["Cmd"] = list(self._config.buildkit_flags)
        _log(logger, f"creating container {self._name}")
        self._api.container_create(self._name, container_config, self._host_config())
        self._copy_to_container(self._config.files)
        self._api.container_start(self._name)
        self._wait(logger)

    def _copy_to_container(self, files: dict[str, bytes]) -> None:
        src = write_config_files(files)
        try:
            archive = _tar_directory(src)
        finally:
            shutil.rmtree(src, ignore_errors=True)
        self._api.copy_to_container(self._name, "/", archive)

    def _copy_logs(self, logger: Callable[..., Any]) -> None:
        stream = self._api.container_logs(self._name)
        writer = _LogWriter(logger)
        _std_copy(stream, writer, writer)
        close = getattr(stream, "close", None)
        if callable(close):
            close()

    def _wait(self, logger: Callable[..., Any] | None) -> None:
        attempt = 1
        while True:
            stdout, stderr = io.BytesIO(), io.BytesIO()
            try:
                self._run(["buildctl", "debug", "workers"], stdout, stderr)
            except Exception:
                if attempt > _WAIT_RETRIES:
                    if logger is not None:
                        try:
                            self._copy_logs(logger)
                        except Exception:
                            pass
                        for data in (stdout.getvalue(), stderr.getvalue()):
                            if data:
                                logger(data.decode("utf-8", "replace"))
                    raise
                time.sleep(attempt * 0.12)
                attempt += 1
                continue
            return

    def _exec(self, cmd: list[str]) -> tuple[str, Any]:
        exec_id = self._api.exec_create(self._name, cmd)
        if not exec_id:
            raise RuntimeError("exec ID empty")
        return exec_id, self._api.exec_attach(exec_id)

    def _run(self, cmd: list[str], stdout: Any, stderr: Any) -> None:
        exec_id, conn = self._exec(cmd)
        try:
            _std_copy(conn, stdout, stderr)
        finally:
            conn.close()
        exit_code = self._api.exec_inspect(exec_id).get("ExitCode", 0)
        if exit_code != 0:
            raise RuntimeError(f"exit code {exit_code}")

    def info(self) -> Info:
        try:
            container = self._api.container_inspect(self._name)
        except LookupError:
            return Info(Status.INACTIVE)
        if (container.get("State") or {}).get("Running"):
            return Info(Status.RUNNING)
        return Info(Status.STOPPED)

    def version(self) -> str:
        stdout, stderr = io.BytesIO(), io.BytesIO()
        try:
            self._run(["buildkitd", "--version"], stdout, stderr)
        except Exception as exc:
            if stderr.getvalue():
                message = stderr.getvalue().decode("utf-8", "replace")
                raise RuntimeError(f"{message}: {exc}") from exc
            raise
        return parse_buildkitd_version(stdout.getvalue().decode("utf-8", "replace"))

    def stop(self, force: bool) -> None:
        if self.info().status == Status.RUNNING:
            self._api.container_stop(self._name)

    def rm(self, force: bool, rm_volume: bool, rm_daemon: bool) -> None:
        if self.info().status == Status.INACTIVE:
            return
        container = self._api.container_inspect(self._name)
        if not rm_daemon:
            return
        self._api.container_remove(self._name, remove_volumes=True, force=force)
        volume = self._name + VOLUME_STATE_SUFFIX
        for mount in container.get("Mounts") or []:
            if mount.get("Name") != volume:
                continue
            if rm_volume:
                self._api.volume_remove(volume, force=False)
                return

    def client(self) -> Any:
        _, conn = self._exec(["buildctl", "dial-stdio"])
        return _DemuxConn(conn)


class DockerContainerFactory(Factory):
    """Creates docker-container drivers."""

    def name(self) -> str:
        return DRIVER_NAME

    def usage(self) -> str:
        return DRIVER_NAME

    def priority(self, endpoint: str, api: Any) -> int:
        return _PRIORITY_UNSUPPORTED if api is None else _PRIORITY_SUPPORTED

    def allows_instances(self) -> bool:
        return True

    def new(self, cfg: InitConfig) -> DockerContainerDriver:
        if cfg.docker_api is None:
            raise ValueError(f"{self.name()} driver requires docker API access")
        flags = list(cfg.buildkit_flags) if cfg.buildkit_flags is not None else None
        net_mode = image = cgroup_parent = ""
        env: list[str] = []
        for key, value in cfg.driver_opts.items():
            if key == "network":
                net_mode = value
                if value == "host":
                    flags = (flags or []) + [_HOST_NETWORK_FLAG]
            elif key == "image":
                image = value
            elif key == "cgroup-parent":
                cgroup_parent = value
            elif key.startswith("env."):
                env_name = key[len("env."):]
                if not env_name:
                    raise ValueError(
                        f'invalid env option "{key}", expecting env.FOO=bar'
                    )
                env.append(f"{env_name}={value}")
            else:
                raise ValueError(
                    f"invalid driver option {key} for docker-container driver"
                )
        return DockerContainerDriver(
            self,
            replace(cfg, buildkit_flags=flags),
            net_mode=net_mode,
            image=image,
            cgroup_parent=cgroup_parent,
            env=env,
        )


register(DockerContainerFactory())