"""Validation of remote buildkit endpoint addresses."""

from __future__ import annotations

from urllib.parse import urlsplit

_SCHEMES = frozenset({"tcp", "unix", "ssh", "docker-container", "kube-pod"})


class InvalidEndpointError(ValueError):
    """The endpoint cannot be used by the remote driver."""


def validate_endpoint(endpoint: str) -> None:
    """Raise InvalidEndpointError unless the endpoint has a supported scheme."""
    if any(ord(ch) < 0x20 or ord(ch) == 0x7F for ch in endpoint):
        raise InvalidEndpointError(
            f"failed to parse endpoint {endpoint}: invalid control character in URL"
        )
    try:
        parts = urlsplit(endpoint)
    except ValueError as exc:
        raise InvalidEndpointError(
            f"failed to parse endpoint {endpoint}: {exc}"
        ) from exc
    if parts.scheme not in _SCHEMES:
        raise InvalidEndpointError(f"unrecognized url scheme {parts.scheme}")


def is_valid_endpoint(endpoint: str) -> bool:
    """Tell whether the endpoint has a supported scheme."""
    try:
        validate_endpoint(endpoint)
    except InvalidEndpointError:
        return False
    return True