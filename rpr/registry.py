"""Image metadata lookup against a Docker Registry HTTP API v2.

Two sequential requests per image: the manifest (by tag) for the config blob
digest, then the config blob itself for labels and exposed ports.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

import httpx

from .settings import settings

logger = logging.getLogger(__name__)

MANIFEST_V2 = "application/vnd.docker.distribution.manifest.v2+json"


class RegistryError(Exception):
    pass


class RegistryUnavailable(RegistryError):
    """Manifest or blob endpoint unreachable, timed out, or answered with a non-success status."""


class MalformedManifest(RegistryError):
    """The registry answered, but without the fields a workload is derived from."""


@dataclass(frozen=True)
class ExposedPort:
    port: int
    protocol: str


@dataclass(frozen=True)
class ImageConfig:
    labels: Mapping[str, str] = field(default_factory=dict)
    exposed_ports: tuple[ExposedPort, ...] = ()


def parse_exposed_port(key: str) -> ExposedPort:
    """Parse an ExposedPorts key such as "8080/tcp"."""
    port, sep, protocol = key.partition("/")
    if not sep or not protocol or not (port.isascii() and port.isdigit()):
        raise MalformedManifest(f"Malformed exposed port {key!r}; expected '<port>/<protocol>'.")
    return ExposedPort(port=int(port, 10), protocol=protocol)


class RegistryClient:
    """Resolves (repository, tag) to the image's embedded config."""

    def __init__(self, base_url: str, client: httpx.Client, retries: int = 0):
        self.base_url = base_url.rstrip("/")
        self.retries = max(0, int(retries))
        self._client = client

    @classmethod
    def from_settings(cls) -> "RegistryClient":
        # Blob downloads are commonly redirected to the storage backend.
        client = httpx.Client(timeout=settings.http_timeout_s, follow_redirects=True)
        return cls(settings.registry_url, client, retries=settings.registry_retries)

    def close(self) -> None:
        self._client.close()

    def resolve(self, repository: str, tag: str) -> ImageConfig:
        manifest = self._get_json(f"/v2/{repository}/manifests/{tag}", headers={"Accept": MANIFEST_V2})
        manifest_config = manifest.get("config") if isinstance(manifest, dict) else None
        digest = manifest_config.get("digest") if isinstance(manifest_config, dict) else None
        if not isinstance(digest, str) or not digest:
            raise MalformedManifest(f"Manifest for {repository}:{tag} has no config.digest.")

        blob = self._get_json(f"/v2/{repository}/blobs/{digest}")
        config = blob.get("config") if isinstance(blob, dict) else None
        if not isinstance(config, dict):
            raise MalformedManifest(f"Config blob {digest} for {repository}:{tag} has no config object.")
        for key in ("Labels", "ExposedPorts"):
            if key not in config:
                raise MalformedManifest(f"Config blob {digest} for {repository}:{tag} has no config.{key}.")

        # Docker writes null for an empty set of labels.
        labels = config["Labels"] or {}
        exposed = config["ExposedPorts"] or {}
        if not isinstance(labels, dict) or not isinstance(exposed, dict):
            raise MalformedManifest(f"Config blob {digest} for {repository}:{tag} has non-object Labels/ExposedPorts.")

        return ImageConfig(
            labels={str(k): str(v) for k, v in labels.items()},
            exposed_ports=tuple(parse_exposed_port(k) for k in exposed),
        )

    def _get_json(self, path: str, headers: dict[str, str] | None = None) -> Any:
        url = f"{self.base_url}{path}"
        attempt = 0
        while True:
            try:
                resp = self._client.get(url, headers=headers)
                break
            except httpx.TransportError as e:
                if attempt >= self.retries:
                    raise RegistryUnavailable(f"GET {url} failed: {type(e).__name__}: {e}") from e
                attempt += 1
                logger.warning("GET %s failed (%s), retry %d/%d", url, type(e).__name__, attempt, self.retries)

        if not resp.is_success:
            raise RegistryUnavailable(f"GET {url} returned HTTP {resp.status_code}")
        try:
            return resp.json()
        except ValueError as e:
            raise MalformedManifest(f"GET {url} did not return JSON") from e
