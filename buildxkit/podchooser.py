"""Selection of the buildkit pod a client connects to."""

from __future__ import annotations

import bisect
import hashlib
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Iterable

_log = logging.getLogger(__name__)

POD_RUNNING = "Running"
_POINTS_PER_NODE = 40


@dataclass
class Pod:
    """The parts of a pod that driver code needs."""

    name: str
    namespace: str = ""
    phase: str = ""
    annotations: dict[str, str] = field(default_factory=dict)
    containers: list[str] = field(default_factory=list)


def _digest(key: str) -> bytes:
    return hashlib.md5(key.encode("utf-8"), usedforsecurity=False).digest()


class HashRing:
    """Consistent hash ring mapping keys to node names."""

    def __init__(self, nodes: Iterable[str]) -> None:
        self._ring: dict[int, str] = {}
        points: list[int] = []
        for node in nodes:
            for replica in range(_POINTS_PER_NODE):
                digest = _digest(f"{node}-{replica}")
                for part in range(3):
                    point = int.from_bytes(digest[part * 4 : part * 4 + 4], "little")
                    self._ring[point] = node
                    points.append(point)
        self._points = sorted(points)

    def get_node(self, key: str) -> str | None:
        """Return the node responsible for the key, or None for an empty ring."""
        if not self._ring:
            return None
        point = int.from_bytes(_digest(key)[:4], "little")
        pos = bisect.bisect_right(self._points, point)
        if pos == len(self._points):
            pos = 0
        return self._ring[self._points[pos]]


def _label_selector(deployment: dict[str, Any]) -> str:
    selector = (deployment.get("spec") or {}).get("selector") or {}
    labels = selector.get("matchLabels") or {}
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


def list_running_pods(client: Any, deployment: dict[str, Any]) -> list[Pod]:
    """Return the deployment's running pods sorted by name."""
    running = []
    for pod in client.list(_label_selector(deployment)):
        if pod.phase == POD_RUNNING:
            _log.debug('pod running: "%s"', pod.name)
            running.append(pod)
    running.sort(key=lambda p: p.name)
    return running


@dataclass
class RandomPodChooser:
    """Picks any running pod at random."""

    pod_client: Any
    deployment: dict[str, Any]
    rand_source: random.Random | None = None

    def choose_pod(self) -> Pod:
        pods = list_running_pods(self.pod_client, self.deployment)
        if not pods:
            raise LookupError("no running buildkit pods found")
        rnd = self.rand_source or random.Random(int(time.time()))
        n = rnd.randrange(len(pods))
        _log.debug("RandomPodChooser.choose_pod(): len(pods)=%d, n=%d", len(pods), n)
        return pods[n]


@dataclass
class StickyPodChooser:
    """Picks the same pod for the same key while the pod set is stable."""

    key: str
    pod_client: Any
    deployment: dict[str, Any]

    def choose_pod(self) -> Pod:
        pods = list_running_pods(self.pod_client, self.deployment)
        by_name = {pod.name: pod for pod in pods}
        chosen = HashRing(pod.name for pod in pods).get_node(self.key)
        if chosen is None:
            _log.error('no pod found for key "%s"', self.key)
            return RandomPodChooser(self.pod_client, self.deployment).choose_pod()
        return by_name[chosen]