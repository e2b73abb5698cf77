from __future__ import annotations

import os
from dataclasses import dataclass


# Fixed by the cluster setup; not configurable.
NAMESPACE = "default"
IMAGE_PULL_SECRET = "local-registry-hosting"


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Registry
    registry_url: str = os.getenv("REGISTRY_URL", "http://localhost:5000").rstrip("/")
    # Image prefix as the cluster nodes pull it; independent of where this service reaches the registry.
    image_registry_host: str = os.getenv("RPR_IMAGE_REGISTRY_HOST", "localhost:5000")
    http_timeout_s: int = _env_int("RPR_HTTP_TIMEOUT_S", 10)
    registry_retries: int = _env_int("RPR_REGISTRY_RETRIES", 2)

    # Cluster
    kubeconfig: str | None = os.getenv("RPR_KUBECONFIG")
    cluster_timeout_s: int = _env_int("RPR_CLUSTER_TIMEOUT_S", 30)
    list_retries: int = _env_int("RPR_LIST_RETRIES", 2)
    patch_retries: int = _env_int("RPR_PATCH_RETRIES", 1)

    # Event log
    db_path: str = os.getenv("RPR_DB_PATH", "rpr.db")

    # Hold a per-workload lock across the deployment + service upserts.
    # Turning it off lets concurrent pushes to one tag interleave their patches.
    serialize_per_workload: bool = _env_bool("RPR_SERIALIZE_PER_WORKLOAD", True)


settings = Settings()
