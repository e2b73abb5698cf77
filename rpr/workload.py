from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from kubernetes import client

from .registry import ImageConfig

logger = logging.getLogger(__name__)

PORT_LABEL = "PORT"


@dataclass(frozen=True)
class WorkloadDescriptor:
    """Desired running unit for one (repository, tag)."""

    name: str
    repository: str
    tag: str
    image: str
    container_port: int | None = None
    replicas: int = 1


def workload_name(repository: str, tag: str) -> str:
    return f"{repository}-{tag}"


def _port_from_labels(labels: Any) -> int | None:
    raw = (labels or {}).get(PORT_LABEL)
    if not raw:
        return None
    value = str(raw).strip()
    # Plain decimal digits only: no sign, no "_" separators.
    if not (value.isascii() and value.isdigit()):
        logger.warning("Ignoring non-integer %s label %r", PORT_LABEL, raw)
        return None
    return int(value, 10)


def build(repository: str, tag: str, config: ImageConfig, registry_host: str) -> WorkloadDescriptor:
    return WorkloadDescriptor(
        name=workload_name(repository, tag),
        repository=repository,
        tag=tag,
        image=f"{registry_host}/{repository}:{tag}",
        container_port=_port_from_labels(config.labels),
    )


def container_ports(desc: WorkloadDescriptor) -> list[dict[str, int]]:
    if desc.container_port is None:
        return []
    return [{"containerPort": desc.container_port}]


def service_ports(desc: WorkloadDescriptor) -> list[dict[str, Any]]:
    if desc.container_port is None:
        return []
    return [{"protocol": "TCP", "port": desc.container_port, "targetPort": desc.container_port}]


def deployment_body(desc: WorkloadDescriptor, pull_secret: str) -> client.V1Deployment:
    labels = {"app": desc.name}
    ports = [client.V1ContainerPort(container_port=desc.container_port)] if desc.container_port is not None else []
    return client.V1Deployment(
        api_version="apps/v1",
        kind="Deployment",
        metadata=client.V1ObjectMeta(name=desc.name),
        spec=client.V1DeploymentSpec(
            replicas=desc.replicas,
            selector=client.V1LabelSelector(match_labels=labels),
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels=labels),
                spec=client.V1PodSpec(
                    containers=[
                        client.V1Container(
                            name=desc.repository,
                            image=desc.image,
                            image_pull_policy="Always",
                            ports=ports,
                        )
                    ],
                    image_pull_secrets=[client.V1LocalObjectReference(name=pull_secret)],
                ),
            ),
        ),
    )


def service_body(desc: WorkloadDescriptor) -> client.V1Service:
    ports = []
    if desc.container_port is not None:
        ports = [client.V1ServicePort(protocol="TCP", port=desc.container_port, target_port=desc.container_port)]
    return client.V1Service(
        api_version="v1",
        kind="Service",
        metadata=client.V1ObjectMeta(name=desc.name),
        spec=client.V1ServiceSpec(
            selector={"app": desc.name},
            ports=ports,
            type="ClusterIP",
        ),
    )
