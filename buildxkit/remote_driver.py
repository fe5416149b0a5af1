"""Driver that connects to an already running buildkit daemon.

A connector ``connect(address, tls_options)`` opens the client; the default
one opens a plain or TLS stream to ``tcp://`` and ``unix://`` addresses. A
client that has ``list_workers()`` is probed with it to check the daemon.
"""

from __future__ import annotations

import os
import socket
import ssl
import time
from dataclasses import dataclass
from typing import Any, Callable
from urllib.parse import urlsplit

from buildxkit.driver import Driver, Feature, Info, Status
from buildxkit.endpoint import is_valid_endpoint
from buildxkit.manager import Factory, InitConfig, register

DRIVER_NAME = "remote"
_PRIORITY_SUPPORTED = 20
_PRIORITY_UNSUPPORTED = 90
_MAX_BACKOFF = 10
_DIAL_TIMEOUT = 5.0


@dataclass
class TLSOptions:
    """TLS material for the connection to the daemon."""

    server_name: str = ""
    ca_cert: str = ""
    cert: str = ""
    key: str = ""


def _dial(address: str, tls: TLSOptions | None) -> socket.socket:
    parts = urlsplit(address)
    if parts.scheme == "tcp":
        if parts.hostname is None or parts.port is None:
            raise ValueError(f"invalid tcp address {address}")
        sock = socket.create_connection((parts.hostname, parts.port), _DIAL_TIMEOUT)
    elif parts.scheme == "unix":
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(_DIAL_TIMEOUT)
        try:
            sock.connect(parts.path or parts.netloc)
        except BaseException:
            sock.close()
            raise
    else:
        raise ValueError(f"unsupported endpoint scheme {parts.scheme}")
    if tls is None:
        return sock
    try:
        context = ssl.create_default_context(cafile=tls.ca_cert or None)
        if tls.cert:
            context.load_cert_chain(tls.cert, tls.key or None)
        return context.wrap_socket(sock, server_hostname=tls.server_name or None)
    except BaseException:
        sock.close()
        raise


def _hostname(address: str) -> str:
    host = urlsplit(address).netloc.rpartition("@")[2]
    if host.startswith("["):
        end = host.find("]")
        return host[1:end] if end != -1 else host[1:]
    return host.partition(":")[0]


class RemoteDriver(Driver):
    """Buildkit daemon reached at a user-given address."""

    def __init__(
        self,
        factory: Factory,
        cfg: InitConfig,
        tls_options: TLSOptions | None = None,
        connect: Callable[[str, TLSOptions | None], Any] | None = None,
    ) -> None:
        self._factory = factory
        self._config = cfg
        self.tls_options = tls_options
        self._connect = connect or _dial

    def factory(self) -> Factory:
        return self._factory

    def config(self) -> InitConfig:
        return self._config

    def is_moby_driver(self) -> bool:
        return False

    def features(self) -> dict[Feature, bool]:
        return {
            Feature.OCI_EXPORTER: True,
            Feature.DOCKER_EXPORTER: False,
            Feature.CACHE_EXPORT: True,
            Feature.MULTI_PLATFORM: True,
        }

    def bootstrap(self, logger: Callable[..., Any] | None = None) -> None:
        attempt = 0
        while self.info().status == Status.INACTIVE:
            time.sleep(min(attempt, _MAX_BACKOFF))
            attempt += 1

    def info(self) -> Info:
        try:
            client = self.client()
        except Exception:
            return Info(Status.INACTIVE)
        try:
            list_workers = getattr(client, "list_workers", None)
            if callable(list_workers):
                list_workers()
        except Exception:
            return Info(Status.INACTIVE)
        finally:
            close = getattr(client, "close", None)
            if callable(close):
                close()
        return Info(Status.RUNNING)

    def version(self) -> str:
        return ""

    def stop(self, force: bool) -> None:
        return None

    def rm(self, force: bool, rm_volume: bool, rm_daemon: bool) -> None:
        return None

    def client(self) -> Any:
        return self._connect(self._config.endpoint_addr, self.tls_options)


class RemoteFactory(Factory):
    """Creates remote drivers."""

    def __init__(
        self, connect: Callable[[str, TLSOptions | None], Any] | None = None
    ) -> None:
        self._connect = connect

    def name(self) -> str:
        return DRIVER_NAME

    def usage(self) -> str:
        return DRIVER_NAME

    def priority(self, endpoint: str, api: Any) -> int:
        return _PRIORITY_SUPPORTED if is_valid_endpoint(endpoint) else _PRIORITY_UNSUPPORTED

    def allows_instances(self) -> bool:
        return True

    def new(self, cfg: InitConfig) -> RemoteDriver:
        if cfg.files:
            raise ValueError("setting config file is not supported for remote driver")
        if cfg.buildkit_flags:
            raise ValueError(
                "setting buildkit flags is not supported for remote driver"
            )
        tls = TLSOptions()
        tls_enabled = False
        for key, value in cfg.driver_opts.items():
            if key == "servername":
                tls.server_name = value
            elif key in ("cacert", "cert", "key"):
                if not os.path.isabs(value):
                    raise ValueError(
                        f"non-absolute path '{value}' provided for {key}"
                    )
                if key == "cacert":
                    tls.ca_cert = value
                elif key == "cert":
                    tls.cert = value
                else:
                    tls.key = value
            else:
                raise ValueError(f"invalid driver option {key} for remote driver")
            tls_enabled = True

        tls_options = None
        if tls_enabled:
            if not tls.server_name:
                tls.server_name = _hostname(cfg.endpoint_addr)
            missing = []
            if not tls.ca_cert:
                missing.append("cacert")
            if tls.cert and not tls.key:
                missing.append("key")
            if tls.key and not tls.cert:
                missing.append("cert")
            if missing:
                raise ValueError(
                    "tls enabled, but missing keys " + ", ".join(missing)
                )
            tls_options = tls
        return RemoteDriver(self, cfg, tls_options, self._connect)


register(RemoteFactory())