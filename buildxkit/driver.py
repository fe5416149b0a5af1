"""Driver status, features and the bootstrap loop shared by all drivers."""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

if TYPE_CHECKING:
    from buildxkit.manager import Factory, InitConfig

DEFAULT_IMAGE = "moby/buildkit:buildx-stable-1"
QEMU_IMAGE = "tonistiigi/binfmt:latest"
DEFAULT_ROOTLESS_IMAGE = DEFAULT_IMAGE + "-rootless"

_BOOT_ATTEMPTS = 2


class DriverNotRunning(RuntimeError):
    """The driver's daemon is not running."""

    def __init__(self, message: str = "driver not running") -> None:
        super().__init__(message)


class DriverNotConnecting(RuntimeError):
    """The driver's endpoint cannot be reached."""

    def __init__(self, message: str = "driver not connecting") -> None:
        super().__init__(message)


class Status(enum.IntEnum):
    """Lifecycle state of a driver instance."""

    INACTIVE = 0
    STARTING = 1
    RUNNING = 2
    STOPPING = 3
    STOPPED = 4

    def __str__(self) -> str:
        return self.name.lower()


class Feature(str, enum.Enum):
    """Capabilities a driver may support."""

    OCI_EXPORTER = "OCI exporter"
    DOCKER_EXPORTER = "Docker exporter"
    CACHE_EXPORT = "cache export"
    MULTI_PLATFORM = "multiple platforms"

    def __str__(self) -> str:
        return self.value


@dataclass
class Info:
    """Status of a driver; dynamic_nodes stays empty when nodes are listed statically."""

    status: Status
    dynamic_nodes: list[Any] = field(default_factory=list)


class Driver(ABC):
    """Interface every build driver implements."""

    @abstractmethod
    def factory(self) -> Factory:
        """Return the factory that created this driver."""

    @abstractmethod
    def bootstrap(self, logger: Callable[..., Any] | None) -> None:
        """Bring the driver's daemon up."""

    @abstractmethod
    def info(self) -> Info:
        """Return the driver's current status."""

    @abstractmethod
    def version(self) -> str:
        """Return the version of the driver's daemon."""

    @abstractmethod
    def stop(self, force: bool) -> None:
        """Stop the driver's daemon."""

    @abstractmethod
    def rm(self, force: bool, rm_volume: bool, rm_daemon: bool) -> None:
        """Remove the driver's daemon and, optionally, its state."""

    @abstractmethod
    def client(self) -> Any:
        """Return a client connected to the driver's daemon."""

    @abstractmethod
    def features(self) -> dict[Feature, bool]:
        """Return the features this driver supports."""

    @abstractmethod
    def is_moby_driver(self) -> bool:
        """Tell whether the driver builds through the Docker daemon itself."""

    @abstractmethod
    def config(self) -> InitConfig:
        """Return the configuration the driver was created with."""


def _caused_by_not_running(exc: BaseException) -> bool:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        if isinstance(current, DriverNotRunning):
            return True
        seen.add(id(current))
        current = current.__cause__
    return False


def boot(driver: Driver, logger: Callable[..., Any] | None = None) -> Any:
    """Bootstrap the driver if needed and return its client."""
    attempt = 0
    while True:
        info = driver.info()
        attempt += 1
        if info.status != Status.RUNNING:
            if attempt > _BOOT_ATTEMPTS:
                raise RuntimeError(
                    f"failed to bootstrap {type(driver).__name__} driver in attempts"
                )
            driver.bootstrap(logger)
        try:
            return driver.client()
        except Exception as exc:
            if _caused_by_not_running(exc) and attempt <= _BOOT_ATTEMPTS:
                continue
            raise