from typing import Dict, Iterator, Optional

from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException


def load_config():
    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config()


def _is_not_found(e: ApiException) -> bool:
    return e.status == 404


class ClusterClient:
    """Cluster operations used by the fencing controller.

    Lookups return None when the object does not exist; any other API error
    is raised as ApiException.
    """

    def __init__(self, core_v1: Optional[client.CoreV1Api] = None,
                 batch_v1: Optional[client.BatchV1Api] = None):
        if core_v1 is None or batch_v1 is None:
            load_config()
        self.core_v1 = core_v1 or client.CoreV1Api()
        self.batch_v1 = batch_v1 or client.BatchV1Api()

    def get_node(self, name: str) -> Optional[client.V1Node]:
        try:
            return self.core_v1.read_node(name)
        except ApiException as e:
            if _is_not_found(e):
                return None
            raise

    def list_nodes(self) -> client.V1NodeList:
        return self.core_v1.list_node()

    def watch_nodes(self, resource_version: Optional[str] = None,
                    timeout_seconds: Optional[int] = None) -> Iterator[dict]:
        watcher = watch.Watch()
        try:
            yield from watcher.stream(
                self.core_v1.list_node,
                resource_version=resource_version,
                timeout_seconds=timeout_seconds,
            )
        finally:
            watcher.stop()

    def patch_node_annotations(self, name: str, changes: Dict[str, Optional[str]]):
        """Merge-patch node annotations; a None value removes the key"""
        body = {"metadata": {"annotations": changes}}
        self.core_v1.patch_node(name, body)

    def get_pod_template(self, name: str, namespace: str) -> Optional[client.V1PodTemplate]:
        try:
            return self.core_v1.read_namespaced_pod_template(name, namespace)
        except ApiException as e:
            if _is_not_found(e):
                return None
            raise

    def get_job(self, name: str, namespace: str) -> Optional[client.V1Job]:
        try:
            return self.batch_v1.read_namespaced_job(name, namespace)
        except ApiException as e:
            if _is_not_found(e):
                return None
            raise

    def create_job(self, job: client.V1Job) -> client.V1Job:
        return self.batch_v1.create_namespaced_job(job.metadata.namespace, job)

    def delete_job(self, name: str, namespace: str) -> bool:
        """Delete a job and its pods. Returns False if it was already gone."""
        try:
            self.batch_v1.delete_namespaced_job(name, namespace, propagation_policy="Background")
        except ApiException as e:
            if _is_not_found(e):
                return False
            raise
        return True
