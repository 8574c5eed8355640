"""Shared fixtures: Kubernetes object factories and an in-memory cluster."""

import copy
from typing import Dict, List, Optional

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException

NAMESPACE = "fencing-system"
NOW = 1_700_000_000


def make_node(name: str = "worker-1", annotations: Optional[Dict[str, str]] = None,
              ready_status: Optional[str] = "Unknown",
              reason: str = "NodeStatusUnknown") -> client.V1Node:
    conditions = [
        client.V1NodeCondition(type="MemoryPressure", status="Unknown", reason=reason),
    ]
    if ready_status is not None:
        conditions.append(client.V1NodeCondition(type="Ready", status=ready_status, reason=reason))
    return client.V1Node(
        api_version="v1",
        kind="Node",
        metadata=client.V1ObjectMeta(name=name, uid=f"uid-{name}", annotations=annotations),
        status=client.V1NodeStatus(conditions=conditions),
    )


def make_template(name: str = "fencing", annotations: Optional[Dict[str, str]] = None,
                  pod_name: Optional[str] = None,
                  pod_annotations: Optional[Dict[str, str]] = None) -> client.V1PodTemplate:
    return client.V1PodTemplate(
        metadata=client.V1ObjectMeta(name=name, namespace=NAMESPACE, annotations=annotations),
        template=client.V1PodTemplateSpec(
            metadata=client.V1ObjectMeta(name=pod_name, annotations=pod_annotations),
            spec=client.V1PodSpec(
                restart_policy="OnFailure",
                containers=[
                    client.V1Container(
                        name="fence",
                        image="alpine:3.11",
                        command=["echo", "kill node $(FENCING_NODE) via $(FENCING_ID)"],
                    )
                ],
            ),
        ),
    )


def finish_job(job: client.V1Job, condition_type: str = "Complete") -> client.V1Job:
    job.status = client.V1JobStatus(
        conditions=[client.V1JobCondition(type=condition_type, status="True")]
    )
    return job


def api_error(status: int) -> ApiException:
    return ApiException(status=status, reason="error")


class FakeCluster:
    """In-memory stand-in for ClusterClient that records every write"""

    def __init__(self):
        self.nodes: Dict[str, client.V1Node] = {}
        self.templates: Dict[tuple, client.V1PodTemplate] = {}
        self.jobs: Dict[tuple, client.V1Job] = {}
        self.calls: List[tuple] = []
        self.errors: Dict[str, Exception] = {}

    def add_node(self, node: client.V1Node) -> client.V1Node:
        self.nodes[node.metadata.name] = node
        return node

    def add_template(self, template: client.V1PodTemplate) -> client.V1PodTemplate:
        self.templates[(template.metadata.name, template.metadata.namespace)] = template
        return template

    def annotations(self, name: str) -> Dict[str, str]:
        return dict(self.nodes[name].metadata.annotations or {})

    def writes(self) -> List[tuple]:
        return [c for c in self.calls if c[0] in ("patch", "create", "delete")]

    def _maybe_fail(self, op: str):
        if op in self.errors:
            raise self.errors[op]

    def get_node(self, name):
        self._maybe_fail("get_node")
        node = self.nodes.get(name)
        return copy.deepcopy(node) if node else None

    def patch_node_annotations(self, name, changes):
        self.calls.append(("patch", name, dict(changes)))
        self._maybe_fail("patch")
        metadata = self.nodes[name].metadata
        annotations = dict(metadata.annotations or {})
        for key, value in changes.items():
            if value is None:
                annotations.pop(key, None)
            else:
                annotations[key] = value
        metadata.annotations = annotations

    def get_pod_template(self, name, namespace):
        self._maybe_fail("get_pod_template")
        return self.templates.get((name, namespace))

    def get_job(self, name, namespace):
        self._maybe_fail("get_job")
        return self.jobs.get((name, namespace))

    def create_job(self, job):
        self.calls.append(("create", job.metadata.name))
        self._maybe_fail("create")
        key = (job.metadata.name, job.metadata.namespace)
        if key in self.jobs:
            raise api_error(409)
        self.jobs[key] = job
        return job

    def delete_job(self, name, namespace):
        self.calls.append(("delete", name))
        self._maybe_fail("delete")
        return self.jobs.pop((name, namespace), None) is not None


class FakeTimer:
    """threading.Timer replacement that only fires when told to"""

    created: List["FakeTimer"] = []

    def __init__(self, interval, function, args=None, kwargs=None):
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.kwargs = kwargs or {}
        self.daemon = False
        self.started = False
        self.cancelled = False
        FakeTimer.created.append(self)

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if not self.cancelled:
            self.function(*self.args, **self.kwargs)


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def fake_timers():
    FakeTimer.created = []
    yield FakeTimer.created
    FakeTimer.created = []


@pytest.fixture
def clock():
    """Mutable clock: clock[0] is the current Unix time"""
    return [NOW]
