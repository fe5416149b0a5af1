"""Driver that runs buildkit as a Kubernetes deployment.

The kube client configuration given to the factory provides ``namespace()``,
returning ``(namespace, explicit)``, and ``clientset()``. The clientset offers
``deployments(ns)``, ``pods(ns)``, ``config_maps(ns)`` and
``exec_conn(namespace, pod, container, command)``. Object clients raise
LookupError for missing objects and FileExistsError for existing ones.
"""

from __future__ import annotations

import enum
import re
import time
from typing import Any, Callable

from buildxkit.driver import (
    DEFAULT_IMAGE,
    DEFAULT_ROOTLESS_IMAGE,
    QEMU_IMAGE,
    Driver,
    Feature,
    Info,
    Status,
)
from buildxkit.manager import Factory, InitConfig, register
from buildxkit.manifest import (
    ANNOTATION_PLATFORM,
    DeploymentOpt,
    QemuOpt,
    Toleration,
    new_deployment,
)
from buildxkit.podchooser import RandomPodChooser, StickyPodChooser, list_running_pods

DRIVER_NAME = "kubernetes"
_NAME_PREFIX = "buildx_buildkit_"
_PRIORITY_SUPPORTED = 40
_PRIORITY_UNSUPPORTED = 80
_WAIT_ATTEMPTS = 100

_INT_RE = re.compile(r"[+-]?\d+", re.ASCII)
_TRUE = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE = frozenset({"0", "f", "F", "FALSE", "false", "False"})


class Loadbalance(str, enum.Enum):
    """How a client picks a buildkit pod."""

    RANDOM = "random"
    STICKY = "sticky"

    def __str__(self) -> str:
        return self.value


def _atoi(value: str) -> int:
    if not _INT_RE.fullmatch(value):
        raise ValueError(f'invalid integer "{value}"')
    return int(value)


def _parse_bool(value: str) -> bool:
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f'invalid boolean "{value}"')


def _parse_tolerations(value: str) -> list[Toleration]:
    tolerations = []
    for spec in value.split(";"):
        toleration = Toleration()
        for pair in spec.split(","):
            parts = pair.split("=")
            if len(parts) != 2:
                continue
            key, val = parts
            if key == "key":
                toleration.key = val
            elif key == "operator":
                toleration.operator = val
            elif key == "value":
                toleration.value = val
            elif key == "effect":
                toleration.effect = val
            elif key == "tolerationSeconds":
                toleration.toleration_seconds = _atoi(val)
            else:
                raise ValueError(f'invalid tolaration "{value}"')
        tolerations.append(toleration)
    return tolerations


def _parse_node_selector(value: str) -> dict[str, str]:
    selector = {}
    for pair in value.strip('"').split(","):
        parts = pair.split("=")
        if len(parts) == 2:
            selector[parts[0]] = parts[1]
    return selector


def _ready_replicas(deployment: dict[str, Any]) -> int:
    return (deployment.get("status") or {}).get("readyReplicas") or 0


def _log(logger: Callable[..., Any] | None, message: str) -> None:
    if logger is not None:
        logger(message)


class KubernetesDriver(Driver):
    """Buildkit running as pods of a Kubernetes deployment."""

    def __init__(self, factory: Factory, cfg: InitConfig, clientset: Any) -> None:
        self._factory = factory
        self._config = cfg
        self.clientset = clientset
        self.min_replicas = 1
        self.deployment: dict[str, Any] = {}
        self.config_maps: list[dict[str, Any]] = []
        self.deployment_client: Any = None
        self.pod_client: Any = None
        self.config_map_client: Any = None
        self.pod_chooser: Any = None

    @property
    def _deployment_name(self) -> str:
        return self.deployment["metadata"]["name"]

    def factory(self) -> Factory:
        return self._factory

    def config(self) -> InitConfig:
        return self._config

    def is_moby_driver(self) -> bool:
        return False

    def bootstrap(self, logger: Callable[..., Any] | None = None) -> None:
        _log(logger, "[internal] booting buildkit")
        name = self._deployment_name
        try:
            self.deployment_client.get(name)
        except LookupError:
            self._create_objects()
        except Exception as exc:
            raise RuntimeError(f'error for bootstrap "{name}"') from exc
        _log(logger, f"waiting for {self.min_replicas} pods to be ready")
        self._wait()

    def _create_objects(self) -> None:
        for config_map in self.config_maps:
            cm_name = config_map["metadata"]["name"]
            try:
                self.config_map_client.create(config_map)
            except FileExistsError:
                try:
                    self.config_map_client.update(config_map)
                except Exception as exc:
                    raise RuntimeError(
                        f'error while calling configMapClient.Update for "{cm_name}"'
                    ) from exc
            except Exception as exc:
                raise RuntimeError(
                    f'error while calling configMapClient.Create for "{cm_name}"'
                ) from exc
        try:
            self.deployment_client.create(self.deployment)
        except Exception as exc:
            raise RuntimeError(
                "error while calling deploymentClient.Create for "
                f'"{self._deployment_name}"'
            ) from exc

    def _wait(self) -> None:
        error: BaseException | None = None
        for attempt in range(_WAIT_ATTEMPTS):
            try:
                deployment = self.deployment_client.get(self._deployment_name)
            except Exception as exc:
                error = exc
            else:
                ready = _ready_replicas(deployment)
                if ready >= self.min_replicas:
                    return
                error = RuntimeError(
                    f"expected {self.min_replicas} replicas to be ready, got {ready}"
                )
            time.sleep((100 + attempt * 20) / 1000)
        assert error is not None
        raise error

    def info(self) -> Info:
        try:
            deployment = self.deployment_client.get(self._deployment_name)
        except Exception:
            return Info(Status.INACTIVE)
        if _ready_replicas(deployment) <= 0:
            return Info(Status.STOPPED)
        nodes = []
        for pod in list_running_pods(self.pod_client, deployment):
            node: dict[str, Any] = {"name": pod.name}
            platforms = (pod.annotations or {}).get(ANNOTATION_PLATFORM)
            if platforms:
                node["platforms"] = [p for p in platforms.split(",") if p]
            nodes.append(node)
        return Info(Status.RUNNING, nodes)

    def version(self) -> str:
        return ""

    def stop(self, force: bool) -> None:
        return None

    def rm(self, force: bool, rm_volume: bool, rm_daemon: bool) -> None:
        if not rm_daemon:
            return
        try:
            self.deployment_client.delete(self._deployment_name)
        except LookupError:
            pass
        except Exception as exc:
            raise RuntimeError(
                "error while calling deploymentClient.Delete for "
                f'"{self._deployment_name}"'
            ) from exc
        for config_map in self.config_maps:
            cm_name = config_map["metadata"]["name"]
            try:
                self.config_map_client.delete(cm_name)
            except LookupError:
                pass
            except Exception as exc:
                raise RuntimeError(
                    f'error while calling configMapClient.Delete for "{cm_name}"'
                ) from exc

    def client(self) -> Any:
        pod = self.pod_chooser.choose_pod()
        if not pod.containers:
            raise RuntimeError(f"pod {pod.name} does not have any container")
        return self.clientset.exec_conn(
            pod.namespace, pod.name, pod.containers[0], ["buildctl", "dial-stdio"]
        )

    def features(self) -> dict[Feature, bool]:
        return {
            Feature.OCI_EXPORTER: True,
            Feature.DOCKER_EXPORTER: self._config.docker_api is not None,
            Feature.CACHE_EXPORT: True,
            Feature.MULTI_PLATFORM: True,
        }


class KubernetesFactory(Factory):
    """Creates Kubernetes drivers."""

    def name(self) -> str:
        return DRIVER_NAME

    def usage(self) -> str:
        return DRIVER_NAME

    def priority(self, endpoint: str, api: Any) -> int:
        return _PRIORITY_UNSUPPORTED if api is None else _PRIORITY_SUPPORTED

    def allows_instances(self) -> bool:
        return True

    def process_driver_opts(
        self, deployment_name: str, namespace: str, cfg: InitConfig
    ) -> tuple[DeploymentOpt, Loadbalance, str]:
        """Turn driver options into deployment options, balancing and namespace."""
        opt = DeploymentOpt(
            name=deployment_name,
            image=DEFAULT_IMAGE,
            replicas=1,
            buildkit_flags=cfg.buildkit_flags,
            rootless=False,
            platforms=list(cfg.platforms),
            config_files=dict(cfg.files),
            qemu=QemuOpt(image=QEMU_IMAGE),
        )
        loadbalance = Loadbalance.STICKY
        for key, value in cfg.driver_opts.items():
            if key == "image":
                if value:
                    opt.image = value
            elif key == "namespace":
                namespace = value
            elif key == "replicas":
                opt.replicas = _atoi(value)
            elif key == "requests.cpu":
                opt.requests_cpu = value
            elif key == "requests.memory":
                opt.requests_memory = value
            elif key == "limits.cpu":
                opt.limits_cpu = value
            elif key == "limits.memory":
                opt.limits_memory = value
            elif key == "rootless":
                opt.rootless = _parse_bool(value)
                if "image" not in cfg.driver_opts:
                    opt.image = DEFAULT_ROOTLESS_IMAGE
            elif key == "nodeselector":
                opt.node_selector = _parse_node_selector(value)
            elif key == "tolerations":
                opt.tolerations = _parse_tolerations(value)
            elif key == "loadbalance":
                try:
                    loadbalance = Loadbalance(value)
                except ValueError:
                    raise ValueError(f'invalid loadbalance "{value}"') from None
            elif key == "qemu.install":
                opt.qemu.install = _parse_bool(value)
            elif key == "qemu.image":
                if value:
                    opt.qemu.image = value
            else:
                raise ValueError(
                    f"invalid driver option {key} for driver {DRIVER_NAME}"
                )
        return opt, loadbalance, namespace

    def new(self, cfg: InitConfig) -> KubernetesDriver:
        kube_config = cfg.kube_client_config
        if kube_config is None:
            raise ValueError(f"{DRIVER_NAME} driver requires kubernetes API access")
        deployment_name = buildx_name_to_deployment_name(cfg.name)
        try:
            namespace, _ = kube_config.namespace()
        except Exception as exc:
            raise RuntimeError(
                "cannot determine Kubernetes namespace, specify manually"
            ) from exc
        clientset = kube_config.clientset()
        driver = KubernetesDriver(self, cfg, clientset)

        opt, loadbalance, namespace = self.process_driver_opts(
            deployment_name, namespace, cfg
        )
        driver.deployment, driver.config_maps = new_deployment(opt)
        driver.min_replicas = opt.replicas
        driver.deployment_client = clientset.deployments(namespace)
        driver.pod_client = clientset.pods(namespace)
        driver.config_map_client = clientset.config_maps(namespace)

        if loadbalance is Loadbalance.STICKY:
            driver.pod_chooser = StickyPodChooser(
                key=cfg.context_path_hash,
                pod_client=driver.pod_client,
                deployment=driver.deployment,
            )
        else:
            driver.pod_chooser = RandomPodChooser(
                pod_client=driver.pod_client, deployment=driver.deployment
            )
        return driver


def buildx_name_to_deployment_name(name: str) -> str:
    """Turn a builder node name into a Kubernetes deployment name."""
    if not name.startswith(_NAME_PREFIX):
        raise ValueError(f'expected a string with "{_NAME_PREFIX}", got "{name}"')
    return name[len(_NAME_PREFIX) :].replace("_", "-")


register(KubernetesFactory())