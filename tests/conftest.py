from dataclasses import replace
from types import SimpleNamespace

import httpx
import pytest
from kubernetes import client

from rpr import db
from rpr.registry import MANIFEST_V2, RegistryClient
from rpr.runtime import RuntimeState
from rpr.reconciler import Reconciler

REGISTRY_URL = "http://registry.test"


def _named(name):
    """Stand-in for a listed cluster object; lookups only read metadata.name."""
    return SimpleNamespace(metadata=client.V1ObjectMeta(name=name))


@pytest.fixture(autouse=True)
def event_log(tmp_path, monkeypatch):
    """Point the SQLite event log at an isolated file for every test."""
    monkeypatch.setattr(db, "settings", replace(db.settings, db_path=str(tmp_path / "rpr.db")))
    db.init_db()
    return db


class FakeCluster:
    """Records every call in order; objects are kept by name."""

    def __init__(self):
        self.deployments = {}
        self.services = {}
        self.calls = []
        self.failures = {}  # method name -> per-call outcomes in order; None lets that call succeed

    def existing(self, deployment=None, service=None):
        if deployment:
            self.deployments[deployment] = _named(deployment)
        if service:
            self.services[service] = _named(service)
        return self

    def fail(self, method, *errors):
        self.failures.setdefault(method, []).extend(errors)
        return self

    def _record(self, method, *args):
        self.calls.append((method, *args))
        pending = self.failures.get(method)
        if pending:
            err = pending.pop(0)
            if err is not None:
                raise err

    def find_deployment(self, name):
        self._record("find_deployment", name)
        return self.deployments.get(name)

    def create_deployment(self, body):
        self._record("create_deployment", body)
        self.deployments[body.metadata.name] = body

    def patch_deployment(self, name, patch):
        self._record("patch_deployment", name, patch)

    def find_service(self, name):
        self._record("find_service", name)
        return self.services.get(name)

    def create_service(self, body):
        self._record("create_service", body)
        self.services[body.metadata.name] = body

    def patch_service(self, name, patch):
        self._record("patch_service", name, patch)

    def methods(self):
        return [c[0] for c in self.calls]

    def patches(self, method="patch_deployment"):
        return [c[2] for c in self.calls if c[0] == method]


@pytest.fixture
def cluster():
    return FakeCluster()


def image_blob(labels=None, exposed=None):
    return {"config": {"Labels": labels, "ExposedPorts": exposed}}


@pytest.fixture
def make_blob():
    return image_blob


class FakeRegistry:
    """Serves /v2 manifest and blob endpoints from in-memory images."""

    def __init__(self):
        self.images = {}  # (repository, tag) -> blob json
        self.requests = []
        self.overrides = {}  # path -> httpx.Response or exception

    def add(self, repository, tag, blob):
        self.images[(repository, tag)] = blob
        return self

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        override = self.overrides.get(path)
        if isinstance(override, Exception):
            raise override
        if override is not None:
            return override

        for (repo, tag), blob in self.images.items():
            digest = f"sha256:{repo.replace('/', '_')}-{tag}"
            if path == f"/v2/{repo}/manifests/{tag}":
                if request.headers.get("accept") != MANIFEST_V2:
                    return httpx.Response(404, json={"errors": [{"code": "MANIFEST_UNKNOWN"}]})
                return httpx.Response(200, json={"schemaVersion": 2, "config": {"digest": digest}})
            if path == f"/v2/{repo}/blobs/{digest}":
                return httpx.Response(200, json=blob)
        return httpx.Response(404, json={"errors": [{"code": "NAME_UNKNOWN"}]})

    def client(self, retries=0):
        http = httpx.Client(transport=httpx.MockTransport(self.handler))
        return RegistryClient(REGISTRY_URL, http, retries=retries)


@pytest.fixture
def registry():
    return FakeRegistry()


@pytest.fixture
def reconciler(registry, cluster):
    return Reconciler(
        registry.client(),
        cluster,
        runtime=RuntimeState(),
        registry_host="localhost:5000",
        patch_retries=1,
        serialize=True,
    )
