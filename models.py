import base64
from typing import Any, Literal
from pydantic import (
    BaseModel,
    Field,
    RootModel,
    model_validator,
    field_validator,
)
from enum import StrEnum


class ApiVersion(StrEnum):
    V1 = "admission.k8s.io/v1"


class Operation(StrEnum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    CONNECT = "CONNECT"


class PatchType(StrEnum):
    JSONPatch = "JSONPatch"


class PatchOp(StrEnum):
    REPLACE = "replace"
    ADD = "add"
    REMOVE = "remove"


class PatchAction(BaseModel):
    op: PatchOp
    path: str
    value: Any


# https://jsonpatch.com/
Patch = RootModel[list[PatchAction]]


# https://kubernetes.io/docs/reference/generated/kubernetes-api/v1.30/#status-v1-meta
class AdmissionReviewStatus(BaseModel):
    message: str


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionResponse
class AdmissionResponse(BaseModel):
    allowed: bool
    status: AdmissionReviewStatus | None = None
    uid: str
    patchType: PatchType | None = None
    patch: str | None = None

    @field_validator("patch", mode="before")
    @classmethod
    def validate_patch(cls, val):
        if isinstance(val, Patch):
            val = base64.b64encode(val.model_dump_json().encode())
        elif isinstance(val, (str, bytes)):
            # Make sure the base64 string contains valid data.
            Patch.model_validate_json(base64.b64decode(val))
        return val

    @model_validator(mode="after")
    def validate_model(self):
        if self.patch and not self.patchType:
            raise ValueError("missing patchType field")
        if self.patchType and not self.patch:
            raise ValueError(f"patchType is {self.patchType} but there is no patch")

        return self


# https://kubernetes.io/docs/reference/generated/kubernetes-api/v1.30/#groupversionkind-v1-meta
class GroupVersionKind(BaseModel):
    group: str = ""
    version: str = ""
    kind: str


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionRequest
class AdmissionRequest(BaseModel):
    uid: str
    kind: GroupVersionKind
    namespace: str | None = None
    name: str | None = None
    operation: Operation = Operation.CREATE
    object: dict[str, Any] | None = None


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionReview
class AdmissionReview(BaseModel):
    apiVersion: Literal[ApiVersion.V1] = ApiVersion.V1
    kind: Literal["AdmissionReview"] = "AdmissionReview"
    request: AdmissionRequest | None = None
    response: AdmissionResponse | None = None

    @model_validator(mode="after")
    def validate_model(self):
        if not (self.request or self.response):
            raise ValueError("must contain a request or a response")

        return self


# Workload objects. Only the fields the webhook reads are modelled; anything
# else in the submitted object is ignored.


class OwnerReference(BaseModel):
    apiVersion: str | None = None
    kind: str
    name: str | None = None


class Metadata(BaseModel):
    name: str | None = None
    generateName: str | None = None
    namespace: str | None = None
    labels: dict[str, str] | None = None
    annotations: dict[str, str] | None = None
    ownerReferences: list[OwnerReference] = []


class PodSpec(BaseModel):
    # Existing entries are passed back untouched in the patch, so they are
    # kept as plain JSON objects.
    containers: list[dict[str, Any]] = []
    initContainers: list[dict[str, Any]] = []
    volumes: list[dict[str, Any]] = []


class PodTemplateSpec(BaseModel):
    metadata: Metadata = Field(default_factory=Metadata)
    spec: PodSpec = Field(default_factory=PodSpec)


class Pod(BaseModel):
    metadata: Metadata = Field(default_factory=Metadata)
    spec: PodSpec = Field(default_factory=PodSpec)


class WorkloadSpec(BaseModel):
    template: PodTemplateSpec = Field(default_factory=PodTemplateSpec)


class Workload(BaseModel):
    """Deployment, DaemonSet, StatefulSet and ReplicaSet all carry their pod
    under spec.template."""

    metadata: Metadata = Field(default_factory=Metadata)
    spec: WorkloadSpec = Field(default_factory=WorkloadSpec)


class Namespace(BaseModel):
    metadata: Metadata = Field(default_factory=Metadata)


# Objects injected into the pod spec.


class FieldRef(BaseModel):
    fieldPath: str


class EnvVarSource(BaseModel):
    fieldRef: FieldRef


class EnvVar(BaseModel):
    name: str
    value: str | None = None
    valueFrom: EnvVarSource | None = None


class VolumeMount(BaseModel):
    name: str
    mountPath: str
    readOnly: bool = False


class ResourceRequirements(BaseModel):
    limits: dict[str, str] | None = None
    requests: dict[str, str] | None = None


class Capabilities(BaseModel):
    drop: list[str] = []


class SecurityContext(BaseModel):
    capabilities: Capabilities | None = None
    allowPrivilegeEscalation: bool | None = None


class Container(BaseModel):
    name: str
    image: str
    imagePullPolicy: str = "IfNotPresent"
    env: list[EnvVar] = []
    volumeMounts: list[VolumeMount] = []
    resources: ResourceRequirements | None = None
    securityContext: SecurityContext | None = None


class CSIVolumeSource(BaseModel):
    driver: str
    readOnly: bool | None = None


class HostPathVolumeSource(BaseModel):
    path: str
    type: str | None = None


class Volume(BaseModel):
    name: str
    csi: CSIVolumeSource | None = None
    hostPath: HostPathVolumeSource | None = None


# https://kubernetes.io/docs/concepts/security/pod-security-admission/#pod-security-levels
class SecurityLevel(StrEnum):
    PRIVILEGED = "privileged"
    BASELINE = "baseline"
    RESTRICTED = "restricted"
