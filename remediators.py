import copy
from typing import Dict, List, Mapping, Optional

from kubernetes import client

MODE_ANNOTATION = "fencing/mode"
TEMPLATE_ANNOTATION = "fencing/template"
TIMEOUT_ANNOTATION = "fencing/timeout"
ID_ANNOTATION = "fencing/id"
NODE_ANNOTATION = "fencing/node"
AFTER_HOOK_ANNOTATION = "fencing/after-hook"

DEFAULT_TEMPLATE = "fencing"
DEFAULT_JOB_PREFIX = "fence"

# Keys resolved through template and node overrides
DEFAULT_ANNOTATIONS = {
    MODE_ANNOTATION: "flush",
    TEMPLATE_ANNOTATION: DEFAULT_TEMPLATE,
    TIMEOUT_ANNOTATION: "0",
}


def _annotations(obj) -> Dict[str, str]:
    metadata = getattr(obj, "metadata", None)
    if metadata is None or not metadata.annotations:
        return {}
    return metadata.annotations


def _first_present(key: str, sources: List[Mapping[str, str]], default: str) -> str:
    for source in sources:
        if key in source:
            return source[key]
    return default


def resolve_annotations(node_annotations: Mapping[str, str],
                        template_annotations: Mapping[str, str],
                        pod_annotations: Mapping[str, str],
                        node_name: str) -> Dict[str, str]:
    """Merge the annotations handed to a fencing job.

    Fixed keys start from DEFAULT_ANNOTATIONS and are overridden by the
    template, then by the node. Every annotation on the template's pod spec
    is applied after that. fencing/node and fencing/id are always set last.
    fencing/after-hook is taken from the node unless the template defines it.
    """
    annotations = dict(DEFAULT_ANNOTATIONS)
    for source in (template_annotations, node_annotations):
        for key in DEFAULT_ANNOTATIONS:
            if key in source:
                annotations[key] = source[key]

    annotations.update(pod_annotations)

    annotations[NODE_ANNOTATION] = node_name
    annotations[ID_ANNOTATION] = _first_present(
        ID_ANNOTATION, [node_annotations, template_annotations], node_name
    )
    for source in (node_annotations, template_annotations):
        if AFTER_HOOK_ANNOTATION in source:
            annotations[AFTER_HOOK_ANNOTATION] = source[AFTER_HOOK_ANNOTATION]
    return annotations


def job_name_for_node(node_name: str, pod_name: Optional[str] = None) -> str:
    return f"{pod_name or DEFAULT_JOB_PREFIX}-{node_name}"


def build_remediation_job(node: client.V1Node, pod_template: client.V1PodTemplate,
                          namespace: str) -> client.V1Job:
    """Return the fencing Job for a node built from a PodTemplate.

    The result depends only on its arguments, so the same node and template
    always produce the same job name and spec.
    """
    node_name = node.metadata.name

    pod = copy.deepcopy(pod_template.template) if pod_template.template else client.V1PodTemplateSpec()
    if pod.metadata is None:
        pod.metadata = client.V1ObjectMeta()

    annotations = resolve_annotations(
        _annotations(node), _annotations(pod_template), pod.metadata.annotations or {}, node_name
    )
    pod.metadata.annotations = annotations

    return client.V1Job(
        api_version="batch/v1",
        kind="Job",
        metadata=client.V1ObjectMeta(
            name=job_name_for_node(node_name, pod.metadata.name),
            namespace=namespace,
            labels={
                "node": node_name,
                "fencing": "fence",
            },
            annotations=dict(annotations),
            owner_references=[
                client.V1OwnerReference(
                    api_version=node.api_version or "v1",
                    kind=node.kind or "Node",
                    name=node_name,
                    uid=node.metadata.uid,
                )
            ],
        ),
        spec=client.V1JobSpec(template=pod),
    )
