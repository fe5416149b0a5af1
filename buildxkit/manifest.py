"""Kubernetes manifests for a buildkit deployment."""

from __future__ import annotations

import posixpath
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from buildxkit.driver import DEFAULT_IMAGE, QEMU_IMAGE

CONTAINER_NAME = "buildkitd"
ANNOTATION_PLATFORM = "buildx.docker.com/platform"

_ROOTLESS_VOLUME = "buildkitd"
_ROOTLESS_STATE_DIR = "/home/user/.local/share/buildkit"
_CONFIG_ROOT = "/etc/buildkit"

_QUANTITY_RE = re.compile(r"([+-]?)(\d+(?:\.\d*)?|\.\d+)(.*)", re.ASCII)
_EXPONENT_RE = re.compile(r"[eE]([+-]?\d+)", re.ASCII)
_BINARY_SUFFIXES = {
    "Ki": Decimal(2) ** 10,
    "Mi": Decimal(2) ** 20,
    "Gi": Decimal(2) ** 30,
    "Ti": Decimal(2) ** 40,
    "Pi": Decimal(2) ** 50,
    "Ei": Decimal(2) ** 60,
}
_DECIMAL_SUFFIXES = {
    "n": Decimal("1e-9"),
    "u": Decimal("1e-6"),
    "m": Decimal("1e-3"),
    "": Decimal(1),
    "k": Decimal("1e3"),
    "M": Decimal("1e6"),
    "G": Decimal("1e9"),
    "T": Decimal("1e12"),
    "P": Decimal("1e15"),
    "E": Decimal("1e18"),
}


@dataclass
class Toleration:
    """A pod toleration of a node taint."""

    key: str = ""
    operator: str = ""
    value: str = ""
    effect: str = ""
    toleration_seconds: int | None = None


@dataclass
class QemuOpt:
    """Whether to install binfmt emulators, and from which image."""

    install: bool = False
    image: str = QEMU_IMAGE


@dataclass
class DeploymentOpt:
    """Everything needed to describe a buildkit deployment."""

    name: str = ""
    namespace: str = ""
    image: str = DEFAULT_IMAGE
    replicas: int = 1
    qemu: QemuOpt = field(default_factory=QemuOpt)
    buildkit_flags: list[str] | None = None
    config_files: dict[str, bytes] = field(default_factory=dict)
    rootless: bool = False
    node_selector: dict[str, str] = field(default_factory=dict)
    tolerations: list[Toleration] = field(default_factory=list)
    requests_cpu: str = ""
    requests_memory: str = ""
    limits_cpu: str = ""
    limits_memory: str = ""
    platforms: list[Any] = field(default_factory=list)


@dataclass
class ConfigSplit:
    """Configuration files that share one directory and one config map."""

    name: str
    path: str
    files: dict[str, str] = field(default_factory=dict)


def split_config_files(files: dict[str, bytes]) -> list[ConfigSplit]:
    """Group configuration files by directory, one group per config map."""
    groups: dict[str, ConfigSplit] = {}
    for file_path, data in files.items():
        directory = posixpath.normpath(posixpath.dirname(file_path) or ".")
        group = groups.get(directory)
        if group is None:
            name = "config"
            if directory != ".":
                name = f"config-{sum(1 for d in groups if d != '.') + 1}"
            group = groups[directory] = ConfigSplit(name=name, path=directory)
        group.files[posixpath.basename(file_path)] = data.decode("utf-8", "replace")
    return list(groups.values())


def parse_quantity(value: str) -> Decimal:
    """Parse a Kubernetes resource quantity such as 100m or 32Mi."""
    match = _QUANTITY_RE.fullmatch(value)
    if not value or match is None:
        raise ValueError(f"quantities must match the regular expression: {value!r}")
    sign, number, suffix = match.groups()
    if suffix in _BINARY_SUFFIXES:
        multiplier = _BINARY_SUFFIXES[suffix]
    elif suffix in _DECIMAL_SUFFIXES:
        multiplier = _DECIMAL_SUFFIXES[suffix]
    else:
        exponent = _EXPONENT_RE.fullmatch(suffix)
        if exponent is None:
            raise ValueError(f"unable to parse quantity's suffix: {value!r}")
        multiplier = Decimal(10) ** int(exponent.group(1))
    amount = Decimal(number) * multiplier
    return -amount if sign == "-" else amount


def _toleration_manifest(toleration: Toleration) -> dict[str, Any]:
    manifest: dict[str, Any] = {}
    for key, value in (
        ("key", toleration.key),
        ("operator", toleration.operator),
        ("value", toleration.value),
        ("effect", toleration.effect),
    ):
        if value:
            manifest[key] = value
    if toleration.toleration_seconds is not None:
        manifest["tolerationSeconds"] = toleration.toleration_seconds
    return manifest


def _apply_rootless(container: dict[str, Any], template: dict[str, Any]) -> None:
    container.setdefault("args", []).append("--oci-worker-no-process-sandbox")
    container["securityContext"] = {"seccompProfile": {"type": "Unconfined"}}
    annotations = template["metadata"]["annotations"]
    annotations[
        "container.apparmor.security.beta.kubernetes.io/" + CONTAINER_NAME
    ] = "unconfined"
    container.setdefault("volumeMounts", []).append(
        {"name": _ROOTLESS_VOLUME, "mountPath": _ROOTLESS_STATE_DIR}
    )
    template["spec"].setdefault("volumes", []).append(
        {"name": _ROOTLESS_VOLUME, "emptyDir": {}}
    )


def new_deployment(
    opt: DeploymentOpt,
) -> tuple[dict[str, Any], list[dict[str, Any]]]:
    """Build the deployment manifest and its config maps."""
    labels = {"app": opt.name}
    annotations: dict[str, str] = {}
    if opt.platforms:
        annotations[ANNOTATION_PLATFORM] = ",".join(str(p) for p in opt.platforms)

    container: dict[str, Any] = {
        "name": CONTAINER_NAME,
        "image": opt.image,
        "securityContext": {"privileged": True},
        "readinessProbe": {"exec": {"command": ["buildctl", "debug", "workers"]}},
        "resources": {"requests": {}, "limits": {}},
    }
    if opt.buildkit_flags is not None:
        container["args"] = list(opt.buildkit_flags)

    template: dict[str, Any] = {
        "metadata": {"labels": labels, "annotations": annotations},
        "spec": {"containers": [container]},
    }
    deployment: dict[str, Any] = {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {
            "namespace": opt.namespace,
            "name": opt.name,
            "labels": labels,
            "annotations": annotations,
        },
        "spec": {
            "replicas": opt.replicas,
            "selector": {"matchLabels": labels},
            "template": template,
        },
    }

    config_maps: list[dict[str, Any]] = []
    for split in split_config_files(opt.config_files):
        config_map = {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {
                "namespace": opt.namespace,
                "name": f"{opt.name}-{split.name}",
                "annotations": annotations,
            },
            "data": split.files,
        }
        container["volumeMounts"] = [
            {
                "name": split.name,
                "mountPath": posixpath.normpath(
                    posixpath.join(_CONFIG_ROOT, split.path)
                ),
            }
        ]
        template["spec"]["volumes"] = [
            {"name": "config", "configMap": {"name": config_map["metadata"]["name"]}}
        ]
        config_maps.append(config_map)

    if opt.qemu.install:
        template["spec"]["initContainers"] = [
            {
                "name": "qemu",
                "image": opt.qemu.image,
                "args": ["--install", "all"],
                "securityContext": {"privileged": True},
            }
        ]

    if opt.rootless:
        _apply_rootless(container, template)

    if opt.node_selector:
        template["spec"]["nodeSelector"] = dict(opt.node_selector)

    if opt.tolerations:
        template["spec"]["tolerations"] = [
            _toleration_manifest(t) for t in opt.tolerations
        ]

    resources = container["resources"]
    for section, resource, value in (
        ("requests", "cpu", opt.requests_cpu),
        ("requests", "memory", opt.requests_memory),
        ("limits", "cpu", opt.limits_cpu),
        ("limits", "memory", opt.limits_memory),
    ):
        if value:
            parse_quantity(value)
            resources[section][resource] = value

    return deployment, config_maps