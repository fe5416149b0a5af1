"""Builder drivers, Kubernetes manifests and build option helpers for BuildKit."""

__version__ = "0.1.0"

__all__ = [
    "buildopts",
    "docker_container",
    "docker_driver",
    "driver",
    "endpoint",
    "kubernetes",
    "manager",
    "manifest",
    "podchooser",
    "remote_driver",
]