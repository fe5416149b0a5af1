"""Driver factory registry and driver construction."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable

from buildxkit.driver import Driver, Feature, Info


class Factory(ABC):
    """Creates drivers of one kind."""

    @abstractmethod
    def name(self) -> str:
        """Return the driver name."""

    @abstractmethod
    def usage(self) -> str:
        """Return the usage text for the driver."""

    @abstractmethod
    def priority(self, endpoint: str, api: Any) -> int:
        """Return the preference for this driver; lower is preferred."""

    @abstractmethod
    def new(self, cfg: InitConfig) -> Driver:
        """Create a driver from the configuration."""

    @abstractmethod
    def allows_instances(self) -> bool:
        """Tell whether more than one instance of this driver may be created."""


@dataclass
class InitConfig:
    """Configuration handed to a factory to create a driver."""

    name: str = ""
    endpoint_addr: str = ""
    docker_api: Any = None
    kube_client_config: Any = None
    buildkit_flags: list[str] | None = None
    files: dict[str, bytes] = field(default_factory=dict)
    driver_opts: dict[str, str] = field(default_factory=dict)
    auth: Any = None
    platforms: list[Any] = field(default_factory=list)
    context_path_hash: str = ""


class CachedDriver(Driver):
    """Wraps a driver so that its client is created at most once."""

    def __init__(self, driver: Driver) -> None:
        self.driver = driver
        self._lock = threading.Lock()
        self._done = False
        self._client: Any = None
        self._error: BaseException | None = None

    def client(self) -> Any:
        with self._lock:
            if not self._done:
                try:
                    self._client = self.driver.client()
                except Exception as exc:
                    self._error = exc
                self._done = True
        if self._error is not None:
            raise self._error
        return self._client

    def factory(self) -> Factory:
        return self.driver.factory()

    def bootstrap(self, logger: Callable[..., Any] | None) -> None:
        self.driver.bootstrap(logger)

    def info(self) -> Info:
        return self.driver.info()

    def version(self) -> str:
        return self.driver.version()

    def stop(self, force: bool) -> None:
        self.driver.stop(force)

    def rm(self, force: bool, rm_volume: bool, rm_daemon: bool) -> None:
        self.driver.rm(force, rm_volume, rm_daemon)

    def features(self) -> dict[Feature, bool]:
        return self.driver.features()

    def is_moby_driver(self) -> bool:
        return self.driver.is_moby_driver()

    def config(self) -> InitConfig:
        return self.driver.config()


class Registry:
    """Holds the known driver factories by name."""

    def __init__(self) -> None:
        self._factories: dict[str, Factory] = {}

    def register(self, factory: Factory) -> None:
        self._factories[factory.name()] = factory

    def get_default_factory(
        self, endpoint: str, api: Any, instance_required: bool
    ) -> Factory:
        if not self._factories:
            raise LookupError("no drivers available")
        candidates = [
            (f.priority(endpoint, api), f)
            for f in self._factories.values()
            if not instance_required or f.allows_instances()
        ]
        if not candidates:
            raise LookupError("no drivers available")
        return min(candidates, key=lambda pair: pair[0])[1]

    def get_factory(self, name: str, instance_required: bool) -> Factory:
        for f in self._factories.values():
            if f.name() == name:
                if instance_required and not f.allows_instances():
                    raise ValueError(
                        f'additional instances of driver "{name}" cannot be created'
                    )
                return f
        raise LookupError(f'failed to find driver "{name}"')

    def get_factories(self, instance_required: bool) -> list[Factory]:
        return sorted(
            (
                f
                for f in self._factories.values()
                if not instance_required or f.allows_instances()
            ),
            key=lambda f: f.name(),
        )

    def get_driver(
        self,
        name: str,
        factory: Factory | None,
        endpoint_addr: str,
        api: Any,
        auth: Any,
        kube_config: Any,
        flags: list[str] | None,
        files: dict[str, bytes] | None,
        driver_opts: dict[str, str] | None,
        platforms: list[Any] | None,
        context_path_hash: str,
    ) -> Driver:
        cfg = InitConfig(
            name=name,
            endpoint_addr=endpoint_addr,
            docker_api=api,
            kube_client_config=kube_config,
            buildkit_flags=flags,
            files=dict(files or {}),
            driver_opts=dict(driver_opts or {}),
            auth=auth,
            platforms=list(platforms or []),
            context_path_hash=context_path_hash,
        )
        if factory is None:
            factory = self.get_default_factory(endpoint_addr, api, False)
        return CachedDriver(factory.new(cfg))


_default_registry = Registry()


def register(factory: Factory) -> None:
    """Register a factory with the default registry."""
    _default_registry.register(factory)


def get_default_factory(endpoint: str, api: Any, instance_required: bool) -> Factory:
    """Return the preferred factory from the default registry."""
    return _default_registry.get_default_factory(endpoint, api, instance_required)


def get_factory(name: str, instance_required: bool) -> Factory:
    """Look up a factory by name in the default registry."""
    return _default_registry.get_factory(name, instance_required)


def get_factories(instance_required: bool) -> list[Factory]:
    """Return the default registry's factories sorted by name."""
    return _default_registry.get_factories(instance_required)


def get_driver(
    name: str,
    factory: Factory | None,
    endpoint_addr: str,
    api: Any,
    auth: Any,
    kube_config: Any,
    flags: list[str] | None,
    files: dict[str, bytes] | None,
    driver_opts: dict[str, str] | None,
    platforms: list[Any] | None,
    context_path_hash: str,
) -> Driver:
    """Create a driver through the default registry."""
    return _default_registry.get_driver(
        name,
        factory,
        endpoint_addr,
        api,
        auth,
        kube_config,
        flags,
        files,
        driver_opts,
        platforms,
        context_path_hash,
    )