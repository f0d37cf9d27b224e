"""Destination specifiers: where a flake gets deployed.

A destination is either a bare SSH hostname (deployed as NixOS, with the
system configuration named after the host), or a URL of the form::

    <flavor>://[user@]host[:port][/config-name]
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from urllib.parse import urlsplit

from .errors import DestinationError


class Flavor(str, Enum):
    """Operating system flavors that deploy-flake knows how to drive."""

    NIXOS = "nixos"


@dataclass(frozen=True)
class Destination:
    """A host to deploy to, and how to treat it."""

    os_flavor: Flavor
    hostname: str
    config_name: str | None = None
    port: int | None = None

    def __str__(self) -> str:
        authority = self.url_authority
        return authority if self.port is None else f"{authority}:{self.port}"

    @property
    def url_authority(self) -> str:
        """Return ``[user@]host`` with IPv6 literals bracketed, as URLs need."""
        user, at, host = self.hostname.rpartition("@")
        if ":" in host:
            host = f"[{host}]"
        return f"{user}{at}{host}"


def parse_destination(spec: str) -> Destination:
    """Parse *spec* into a :class:`Destination` or raise :class:`DestinationError`."""
    text = spec.strip()
    if not text:
        raise DestinationError("Destination must not be empty.")

    if "://" not in text:
        if ":" in text or "/" in text:
            raise DestinationError(
                f"Invalid destination {spec!r}: expected a hostname or <flavor>://host[/config]."
            )
        return Destination(os_flavor=Flavor.NIXOS, hostname=text)

    try:
        parts = urlsplit(text)
    except ValueError as exc:
        raise DestinationError(f"Invalid destination {spec!r}: {exc}") from exc
    try:
        flavor = Flavor(parts.scheme.lower())
    except ValueError:
        supported = ", ".join(flavor.value for flavor in Flavor)
        raise DestinationError(
            f"Unsupported OS flavor {parts.scheme!r} in {spec!r}. Supported: {supported}."
        ) from None

    if parts.query or parts.fragment:
        raise DestinationError(f"Destination {spec!r} must not carry a query or fragment.")

    user, _, hostport = parts.netloc.rpartition("@")
    if not hostport:
        raise DestinationError(f"Destination {spec!r} does not name a host.")
    if "@" in parts.netloc and not user:
        raise DestinationError(f"Destination {spec!r} has an empty user name.")

    host = hostport
    port: int | None = None
    try:
        port = parts.port
    except ValueError as exc:
        raise DestinationError(f"Invalid port in destination {spec!r}: {exc}") from exc
    if port is not None or hostport.endswith(":"):
        host = hostport.rsplit(":", 1)[0]
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
        if ":" not in host:
            raise DestinationError(f"Destination {spec!r} brackets a host that is not IPv6.")
    elif ":" in host:
        raise DestinationError(f"Destination {spec!r} must bracket IPv6 addresses.")
    if "[" in host or "]" in host:
        raise DestinationError(f"Destination {spec!r} has unbalanced brackets.")
    if not host:
        raise DestinationError(f"Destination {spec!r} does not name a host.")

    hostname = f"{user}@{host}" if user else host
    return Destination(
        os_flavor=flavor,
        hostname=hostname,
        config_name=_config_name(parts.path, spec),
        port=port,
    )


def _config_name(path: str, spec: str) -> str | None:
    if not path:
        return None
    name = path[1:]
    if not name or "/" in name:
        raise DestinationError(
            f"Invalid configuration name {name!r} in destination {spec!r}."
        )
    return name


__all__ = ["Destination", "Flavor", "parse_destination"]
