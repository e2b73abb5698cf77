from __future__ import annotations

import logging
from contextlib import nullcontext
from dataclasses import asdict, dataclass
from typing import Any, Callable, ContextManager, Iterable

from . import db
from .api_models import PushEvent, RegistryEvent
from .cluster import ClusterClient, ClusterUnavailable, replace_op
from .registry import RegistryClient
from .runtime import RuntimeState, WorkloadStatus
from .settings import IMAGE_PULL_SECRET, settings
from .workload import WorkloadDescriptor, build, container_ports, deployment_body, service_body, service_ports

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RestartStep:
    name: str
    path: str
    value: Callable[[WorkloadDescriptor], Any]


# Order matters: restarted pods must come up with the new ports.
DEPLOYMENT_UPDATE_STEPS: tuple[RestartStep, ...] = (
    RestartStep("patch-ports", "/spec/template/spec/containers/0/ports", container_ports),
    RestartStep("scale-down", "/spec/replicas", lambda d: 0),
    RestartStep("scale-up", "/spec/replicas", lambda d: d.replicas),
)


class RestartStepFailed(ClusterUnavailable):
    def __init__(self, step: str, workload: str, cause: ClusterUnavailable):
        super().__init__(f"step '{step}' on deployment {workload} failed: {cause}", status=cause.status)
        self.step = step
        self.workload = workload


@dataclass
class ReconcileResult:
    event_id: str
    action: str
    repository: str
    tag: str
    workload: str | None = None
    deployment: str | None = None  # created|updated
    service: str | None = None  # created|updated
    ok: bool = True
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def _retryable(e: ClusterUnavailable) -> bool:
    return e.status is None or e.status >= 500


class Reconciler:
    """Applies pushed images to the cluster as a Deployment + Service pair."""

    def __init__(
        self,
        registry: RegistryClient,
        cluster: ClusterClient,
        runtime: RuntimeState | None = None,
        registry_host: str | None = None,
        pull_secret: str = IMAGE_PULL_SECRET,
        patch_retries: int | None = None,
        serialize: bool | None = None,
    ):
        self.registry = registry
        self.cluster = cluster
        self.runtime = runtime or RuntimeState()
        self.registry_host = registry_host or settings.image_registry_host
        self.pull_secret = pull_secret
        self.patch_retries = max(0, int(settings.patch_retries if patch_retries is None else patch_retries))
        self.serialize = settings.serialize_per_workload if serialize is None else serialize

    def handle_all(self, events: Iterable[RegistryEvent]) -> list[ReconcileResult]:
        """Reconcile events one by one, in order; a failed event does not stop the rest."""
        return [self.handle(event) for event in events]

    def handle(self, event: RegistryEvent) -> ReconcileResult:
        result = ReconcileResult(
            event_id=event.id,
            action=event.action,
            repository=event.target.repository,
            tag=event.target.tag,
        )
        if not isinstance(event, PushEvent):
            return result

        try:
            self._reconcile(event, result)
        except Exception as e:
            result.ok = False
            result.error = f"{type(e).__name__}: {e}"
            try:
                db.log_event(
                    "ERROR",
                    f"Reconciling {result.repository}:{result.tag} failed: {result.error}",
                    workload=result.workload,
                    event_id=event.id,
                )
            except Exception:
                logger.exception("Could not log failure of event %s (%s)", event.id, result.error)
            if result.workload:
                self.runtime.set_status(
                    WorkloadStatus(
                        name=result.workload,
                        repository=result.repository,
                        tag=result.tag,
                        state="failed",
                        message=result.error,
                        failed_step=getattr(e, "step", None),
                    )
                )

        # A broken event log must not stop the rest of the batch.
        try:
            db.record_result(result)
        except Exception:
            logger.exception("Could not record result of event %s", event.id)
        return result

    def _reconcile(self, event: PushEvent, result: ReconcileResult) -> None:
        repository, tag = event.target.repository, event.target.tag
        db.log_event("INFO", f"Pushed to {repository}:{tag}", event_id=event.id)

        config = self.registry.resolve(repository, tag)
        desc = build(repository, tag, config, self.registry_host)
        result.workload = desc.name

        with self._workload_lock(desc.name):
            result.deployment = self.upsert_deployment(desc)
            result.service = self.upsert_service(desc)

        self.runtime.set_status(
            WorkloadStatus(
                name=desc.name,
                repository=repository,
                tag=tag,
                state=result.deployment,
                message=f"deployment {result.deployment}, service {result.service}, image {desc.image}",
            )
        )

    def _workload_lock(self, name: str) -> ContextManager[Any]:
        if not self.serialize:
            return nullcontext()
        return self.runtime.workload_locks.hold(name)

    def upsert_deployment(self, desc: WorkloadDescriptor) -> str:
        if self.cluster.find_deployment(desc.name) is None:
            self.cluster.create_deployment(deployment_body(desc, self.pull_secret))
            db.log_event("INFO", f"Created deployment with image {desc.image} (port {desc.container_port})", workload=desc.name)
            return "created"

        # The image string is unchanged for a re-pushed tag, so restart every time
        # to make the pods pull the new digest.
        for step in DEPLOYMENT_UPDATE_STEPS:
            self._run_step(desc, step)
        db.log_event("INFO", f"Updated deployment ports (port {desc.container_port}) and restarted", workload=desc.name)
        return "updated"

    def _run_step(self, desc: WorkloadDescriptor, step: RestartStep) -> None:
        patch = [replace_op(step.path, step.value(desc))]
        attempt = 0
        while True:
            try:
                self.cluster.patch_deployment(desc.name, patch)
                logger.debug("%s: %s applied", desc.name, step.name)
                return
            except ClusterUnavailable as e:
                if not _retryable(e) or attempt >= self.patch_retries:
                    raise RestartStepFailed(step.name, desc.name, e) from e
                attempt += 1
                logger.warning("%s: %s failed (%s), retry %d/%d", desc.name, step.name, e, attempt, self.patch_retries)

    def upsert_service(self, desc: WorkloadDescriptor) -> str:
        if self.cluster.find_service(desc.name) is None:
            self.cluster.create_service(service_body(desc))
            db.log_event("INFO", f"Created ClusterIP service (port {desc.container_port})", workload=desc.name)
            return "created"

        self.cluster.patch_service(desc.name, [replace_op("/spec/ports", service_ports(desc))])
        db.log_event("INFO", f"Updated service ports (port {desc.container_port})", workload=desc.name)
        return "updated"
