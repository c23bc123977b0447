import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import pydantic

from models import Metadata, Pod, PodSpec, Workload

LOG = logging.getLogger(__name__)


class WorkloadKind(StrEnum):
    POD = "Pod"
    DEPLOYMENT = "Deployment"
    DAEMONSET = "DaemonSet"
    STATEFULSET = "StatefulSet"
    REPLICASET = "ReplicaSet"

    @property
    def patch_root(self) -> str:
        return "/" if self is WorkloadKind.POD else "/spec/template"


@dataclass(frozen=True)
class WorkloadView:
    """The parts of an admitted object the webhook works with.

    pod_meta and pod_spec belong to the pod itself for a bare Pod and to the
    pod template for everything else. owner_meta is the wrapper's own
    metadata, and is None for a bare Pod.
    """

    kind: WorkloadKind
    pod_meta: Metadata
    pod_spec: PodSpec
    owner_meta: Metadata | None = None

    @property
    def patch_root(self) -> str:
        return self.kind.patch_root

    def annotation(self, key: str) -> str:
        return (self.pod_meta.annotations or {}).get(key, "")


def decode(kind: WorkloadKind, obj: dict[str, Any]) -> WorkloadView:
    match kind:
        case WorkloadKind.POD:
            pod = Pod.model_validate(obj)
            return WorkloadView(kind, pod.metadata, pod.spec)
        case (
            WorkloadKind.DEPLOYMENT
            | WorkloadKind.DAEMONSET
            | WorkloadKind.STATEFULSET
            | WorkloadKind.REPLICASET
        ):
            workload = Workload.model_validate(obj)
            template = workload.spec.template
            return WorkloadView(kind, template.metadata, template.spec, workload.metadata)


def post_process(view: WorkloadView) -> WorkloadView | None:
    pod_meta = view.pod_meta.model_copy(
        update={"labels": dict(view.pod_meta.labels or {})}
    )

    if view.owner_meta is not None:
        # Annotations shouldn't be applied a second time.
        if pod_meta.annotations is not None:
            LOG.error(
                "malformed specification: annotations can't be provided in "
                "several places"
            )
            return None
        pod_meta = pod_meta.model_copy(
            update={"annotations": view.owner_meta.annotations}
        )

    if view.kind is WorkloadKind.REPLICASET:
        for owner in view.owner_meta.ownerReferences:
            if owner.kind == WorkloadKind.DEPLOYMENT:
                LOG.info(
                    "skipping replicaset owned by deployment %s", owner.name
                )
                return None

    return WorkloadView(view.kind, pod_meta, view.pod_spec, view.owner_meta)


def unmarshal(kind: str, obj: dict[str, Any] | None) -> WorkloadView | None:
    """Decode an admitted object into a WorkloadView.

    Returns None when the kind is not handled, the object cannot be decoded,
    or the object must not be injected on its own.
    """

    try:
        workload_kind = WorkloadKind(kind)
    except ValueError:
        LOG.info("unsupported kind %s", kind)
        return None

    if obj is None:
        LOG.warning("request for %s carries no object", kind)
        return None

    try:
        view = decode(workload_kind, obj)
    except pydantic.ValidationError as err:
        LOG.error("failed to decode %s: %s", kind, err)
        return None

    return post_process(view)
