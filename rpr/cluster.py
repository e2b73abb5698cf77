"""Thin adapter over the Kubernetes Apps/Core APIs, scoped to one namespace.

All list/create/patch failures surface as ClusterUnavailable so the reconciler
only deals with one error type from this side.
"""
from __future__ import annotations

import logging
from typing import Any, Callable

import urllib3
from kubernetes import client, config
from kubernetes.client import ApiException
from kubernetes.config import ConfigException

from .settings import NAMESPACE, settings

logger = logging.getLogger(__name__)

JsonPatch = list[dict[str, Any]]


class ClusterUnavailable(Exception):
    """A list/create/patch call against the cluster failed."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


def replace_op(path: str, value: Any) -> dict[str, Any]:
    return {"op": "replace", "path": path, "value": value}


class ClusterClient:
    def __init__(
        self,
        apps_api: client.AppsV1Api,
        core_api: client.CoreV1Api,
        namespace: str = NAMESPACE,
        timeout_s: int | None = None,
        list_retries: int = 0,
        api_client: client.ApiClient | None = None,
    ):
        self.apps_api = apps_api
        self.core_api = core_api
        self.namespace = namespace
        self.timeout_s = timeout_s
        self.list_retries = max(0, int(list_retries))
        self.api_client = api_client

    @classmethod
    def from_settings(cls) -> "ClusterClient":
        """In-cluster service account first, then the kubeconfig file."""
        try:
            config.load_incluster_config()
        except ConfigException:
            config.load_kube_config(config_file=settings.kubeconfig)
        api_client = client.ApiClient()
        return cls(
            client.AppsV1Api(api_client),
            client.CoreV1Api(api_client),
            timeout_s=settings.cluster_timeout_s,
            list_retries=settings.list_retries,
            api_client=api_client,
        )

    def close(self) -> None:
        if self.api_client is not None:
            self.api_client.close()

    # Deployments

    def find_deployment(self, name: str) -> client.V1Deployment | None:
        items = self._list("deployments", self.apps_api.list_namespaced_deployment)
        return _by_name(items, name)

    def create_deployment(self, body: client.V1Deployment) -> None:
        self._call("create deployment", self.apps_api.create_namespaced_deployment, self.namespace, body)

    def patch_deployment(self, name: str, patch: JsonPatch) -> None:
        self._call(f"patch deployment {name}", self.apps_api.patch_namespaced_deployment, name, self.namespace, patch)

    # Services

    def find_service(self, name: str) -> client.V1Service | None:
        items = self._list("services", self.core_api.list_namespaced_service)
        return _by_name(items, name)

    def create_service(self, body: client.V1Service) -> None:
        self._call("create service", self.core_api.create_namespaced_service, self.namespace, body)

    def patch_service(self, name: str, patch: JsonPatch) -> None:
        self._call(f"patch service {name}", self.core_api.patch_namespaced_service, name, self.namespace, patch)

    def _list(self, what: str, fn: Callable[..., Any]) -> list[Any]:
        attempt = 0
        while True:
            try:
                resp = self._call(f"list {what}", fn, self.namespace)
                return list(resp.items or [])
            except ClusterUnavailable as e:
                # 4xx (RBAC, bad namespace) will not fix itself.
                retryable = e.status is None or e.status >= 500
                if not retryable or attempt >= self.list_retries:
                    raise
                attempt += 1
                logger.warning("list %s failed (%s), retry %d/%d", what, e, attempt, self.list_retries)

    def _call(self, what: str, fn: Callable[..., Any], *args: Any) -> Any:
        kwargs: dict[str, Any] = {}
        if self.timeout_s:
            kwargs["_request_timeout"] = self.timeout_s
        try:
            return fn(*args, **kwargs)
        except ApiException as e:
            raise ClusterUnavailable(f"{what} in {self.namespace} failed: HTTP {e.status} {e.reason}", status=e.status) from e
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise ClusterUnavailable(f"{what} in {self.namespace} failed: {type(e).__name__}: {e}") from e


def _by_name(items: list[Any], name: str) -> Any | None:
    for item in items:
        if item.metadata is not None and item.metadata.name == name:
            return item
    return None
