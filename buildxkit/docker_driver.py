"""Driver that builds through the buildkit embedded in the Docker daemon.

The Docker API object provides ``server_version()``, returning a dict with
``Version``, and ``dial_hijack(path, proto, meta)``, returning a connection.
A connection that has ``list_workers()`` reports the daemon's workers as
dicts with ``labels``.
"""

from __future__ import annotations

from typing import Any, Callable

from buildxkit.driver import Driver, DriverNotConnecting, Feature, Info, Status
from buildxkit.manager import Factory, InitConfig, register

DRIVER_NAME = "docker"
SNAPSHOTTER_LABEL = "org.mobyproject.buildkit.worker.snapshotter"
_PRIORITY_SUPPORTED = 10
_PRIORITY_UNSUPPORTED = 99


def _close(conn: Any) -> None:
    close = getattr(conn, "close", None)
    if callable(close):
        close()


class DockerDriver(Driver):
    """Buildkit inside the Docker daemon itself."""

    def __init__(self, factory: Factory, cfg: InitConfig) -> None:
        self._factory = factory
        self._config = cfg

    @property
    def _api(self) -> Any:
        return self._config.docker_api

    def factory(self) -> Factory:
        return self._factory

    def config(self) -> InitConfig:
        return self._config

    def is_moby_driver(self) -> bool:
        return True

    def bootstrap(self, logger: Callable[..., Any] | None = None) -> None:
        return None

    def _server_version(self) -> dict[str, Any]:
        try:
            return self._api.server_version()
        except Exception as exc:
            raise DriverNotConnecting(f"{exc}: driver not connecting") from exc

    def info(self) -> Info:
        self._server_version()
        return Info(Status.RUNNING)

    def version(self) -> str:
        return self._server_version().get("Version", "")

    def stop(self, force: bool) -> None:
        return None

    def rm(self, force: bool, rm_volume: bool, rm_daemon: bool) -> None:
        return None

    def client(self) -> Any:
        return self._api.dial_hijack("/grpc", "h2c", None)

    def dial_session(self, proto: str, meta: dict[str, list[str]] | None) -> Any:
        """Open a session connection to the daemon."""
        return self._api.dial_hijack("/session", proto, meta)

    def features(self) -> dict[Feature, bool]:
        snapshotter = False
        try:
            conn = self.client()
        except Exception:
            conn = None
        if conn is not None:
            try:
                list_workers = getattr(conn, "list_workers", None)
                workers = list_workers() if callable(list_workers) else []
            except Exception:
                workers = []
            finally:
                _close(conn)
            snapshotter = any(
                SNAPSHOTTER_LABEL in (worker.get("labels") or {}) for worker in workers
            )
        return {feature: snapshotter for feature in Feature}


class DockerFactory(Factory):
    """Creates docker drivers."""

    def name(self) -> str:
        return DRIVER_NAME

    def usage(self) -> str:
        return DRIVER_NAME

    def priority(self, endpoint: str, api: Any) -> int:
        if api is None:
            return _PRIORITY_UNSUPPORTED
        try:
            conn = api.dial_hijack("/grpc", "h2c", None)
        except Exception:
            return _PRIORITY_UNSUPPORTED
        _close(conn)
        return _PRIORITY_SUPPORTED

    def allows_instances(self) -> bool:
        return False

    def new(self, cfg: InitConfig) -> DockerDriver:
        if cfg.docker_api is None:
            raise ValueError("docker driver requires docker API access")
        if cfg.files:
            raise ValueError(
                "setting config file is not supported for docker driver, "
                "use dockerd configuration file"
            )
        return DockerDriver(self, cfg)


register(DockerFactory())