"""
Node fencing reconciler.

Decides, for one node at a time, whether to arm the fencing grace period,
start or restart the fencing job, or clean up after a node came back.
All state is read from and written to annotations on the Node, so a pass
can be repeated at any time with the same outcome.

The caller must never reconcile the same node from two threads at once.
"""

import functools
import logging
import time
from enum import Enum
from typing import Callable, Dict, Optional

from kubernetes import client

import state
from conditions import (
    JOB_COMPLETE,
    JOB_FAILED,
    NODE_READY,
    NODE_STATUS_UNKNOWN,
    get_job_condition,
    get_node_condition,
)
from k8s_client import ClusterClient
from remediators import DEFAULT_TEMPLATE, TEMPLATE_ANNOTATION, TIMEOUT_ANNOTATION, build_remediation_job
from scheduler import RecheckScheduler
from state import FencingRecord, FencingState

ENABLED_ANNOTATION = "fencing/enabled"

logger = logging.getLogger(__name__)


class ErrorPolicy(Enum):
    """What a failed cluster call does to the current pass"""
    RETRY = "retry"
    BEST_EFFORT = "best-effort"


class NodeReconciler:
    """Drives the fencing state machine of a single node per call"""

    def __init__(self, cluster: ClusterClient, namespace: str,
                 scheduler: Optional[RecheckScheduler] = None,
                 now_fn: Callable[[], float] = time.time):
        self.cluster = cluster
        self.namespace = namespace
        self.scheduler = scheduler or RecheckScheduler()
        self.now_fn = now_fn

    def _now(self) -> int:
        return int(self.now_fn())

    def _call(self, policy: ErrorPolicy, action: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except Exception as e:
            logger.error(f"Failed to {action}: {e}")
            if policy is ErrorPolicy.RETRY:
                raise
            return None

    def _patch(self, policy: ErrorPolicy, node_name: str, annotations: Dict[str, str],
               record: FencingRecord) -> Dict[str, str]:
        """Write record onto the node, returning the annotations as they should now be"""
        changes = state.diff(annotations, record)
        if not changes:
            return annotations
        self._call(policy, f"patch node {node_name}",
                   self.cluster.patch_node_annotations, node_name, changes)
        return state.apply(annotations, changes)

    def reconcile(self, node_name: str):
        """Run one pass for the named node.

        Returns nothing; an exception means the pass should be retried.
        """
        node = self.cluster.get_node(node_name)
        if node is None:
            logger.debug(f"Node {node_name} not found, ignoring")
            return

        _, ready = get_node_condition(node.status, NODE_READY)
        if ready is None:
            return

        annotations = dict(node.metadata.annotations or {})
        record = state.decode(annotations)
        fencing_state = record.state

        if ready.status == "True" and fencing_state in (FencingState.PENDING, FencingState.FENCED):
            logger.info(f"Node {node_name} recovered")
            self.scheduler.cancel(node_name)
            annotations = self._patch(ErrorPolicy.BEST_EFFORT, node_name, annotations, FencingRecord())
            fencing_state = FencingState.RECOVERED

        if fencing_state is FencingState.FENCED:
            return

        # Only nodes the cluster cannot reach are candidates
        if fencing_state is not FencingState.RECOVERED and ready.reason != NODE_STATUS_UNKNOWN:
            return

        template_name = annotations.get(TEMPLATE_ANNOTATION, DEFAULT_TEMPLATE)
        if fencing_state is FencingState.RECOVERED:
            pod_template = self._recovery_template(template_name)
        else:
            pod_template = self._call(ErrorPolicy.RETRY, f"get podTemplate {template_name}",
                                      self.cluster.get_pod_template, template_name, self.namespace)
        if pod_template is None:
            logger.error(f"Failed to find podTemplate {template_name} in {self.namespace} for node {node_name}")
            return

        job = build_remediation_job(node, pod_template, self.namespace)

        if fencing_state is FencingState.RECOVERED:
            self._remove_job(ErrorPolicy.BEST_EFFORT, job)
            return

        if annotations.get(ENABLED_ANNOTATION) != "true":
            return

        if fencing_state is not FencingState.STARTED:
            self._arm(node_name, annotations, record, pod_template)
            return

        self._execute(node_name, job)

    def _recovery_template(self, template_name: str) -> Optional[client.V1PodTemplate]:
        """Template used to name the job to clean up.

        The annotations are already cleared at this point, so a retry would
        never get back here. A failed lookup falls back to an empty template,
        which still yields the default job name.
        """
        try:
            return self.cluster.get_pod_template(template_name, self.namespace)
        except Exception as e:
            logger.error(f"Failed to get podTemplate {template_name}, cleaning up the default job: {e}")
            return client.V1PodTemplate()

    def _arm(self, node_name: str, annotations: Dict[str, str], record: FencingRecord,
             pod_template: client.V1PodTemplate):
        """Grace period handling for a node that is not being fenced yet"""
        timeout_str = annotations.get(TIMEOUT_ANNOTATION)
        if timeout_str is None:
            template_annotations = pod_template.metadata.annotations if pod_template.metadata else None
            timeout_str = (template_annotations or {}).get(TIMEOUT_ANNOTATION, "0")
        timeout = state.parse_int(timeout_str)
        if timeout is None:
            logger.error(f"Failed to parse timeout string {timeout_str!r} for node {node_name}")
            return

        if timeout > 0:
            timestamp = record.timestamp or 0
            if record.state is FencingState.NONE and timestamp == 0:
                timestamp = self._now()
                annotations = self._patch(ErrorPolicy.RETRY, node_name, annotations,
                                          FencingRecord(FencingState.PENDING, timestamp))

            remaining = timeout - (self._now() - timestamp)
            if remaining > 0:
                self.scheduler.schedule(
                    node_name, timestamp, remaining,
                    functools.partial(self.expire_grace_period, node_name, timestamp),
                )
                return

        logger.info(f"Fencing of node {node_name} started")
        self._patch(ErrorPolicy.RETRY, node_name, annotations, FencingRecord(FencingState.STARTED))

    def expire_grace_period(self, node_name: str, timestamp: int):
        """Drop the grace period timestamp armed at timestamp, if it is still the current one.

        The resulting node update brings the node back through reconcile,
        which then sees the grace period as elapsed.
        """
        node = self._call(ErrorPolicy.BEST_EFFORT, f"get node {node_name}", self.cluster.get_node, node_name)
        if node is None:
            return
        annotations = node.metadata.annotations or {}
        if state.decode_timestamp(annotations.get(state.TIMESTAMP_ANNOTATION)) != timestamp:
            return
        self._call(ErrorPolicy.BEST_EFFORT, f"patch node {node_name}",
                   self.cluster.patch_node_annotations, node_name, {state.TIMESTAMP_ANNOTATION: None})

    def _execute(self, node_name: str, job: client.V1Job):
        """Keep exactly one fencing job running for a started node"""
        job_name = job.metadata.name
        found = self._call(ErrorPolicy.RETRY, f"get job {job_name}",
                           self.cluster.get_job, job_name, job.metadata.namespace)

        if found is None:
            logger.info(f"Starting fencing {node_name}")
        else:
            logger.info(f"Continue fencing {node_name}")
            _, complete = get_job_condition(found.status, JOB_COMPLETE)
            _, failed = get_job_condition(found.status, JOB_FAILED)
            if complete is None and failed is None:
                logger.info(f"Job {job_name} is still running")
                return

            logger.info(f"Deleting previous job {job_name}")
            self._remove_job(ErrorPolicy.RETRY, job)

        logger.info(f"Creating a new job {job_name}")
        self._call(ErrorPolicy.RETRY, f"create new job {job_name}", self.cluster.create_job, job)

    def _remove_job(self, policy: ErrorPolicy, job: client.V1Job):
        job_name = job.metadata.name
        deleted = self._call(policy, f"delete job {job_name}",
                             self.cluster.delete_job, job_name, job.metadata.namespace)
        if deleted:
            logger.info(f"Deleted job {job_name}")
