import logging
import posixpath
import re
import uuid
from collections import Counter
from urllib.parse import parse_qs, urlsplit

from models import (
    Capabilities,
    Container,
    CSIVolumeSource,
    EnvVar,
    HostPathVolumeSource,
    Metadata,
    Patch,
    PatchAction,
    PatchOp,
    PodSpec,
    ResourceRequirements,
    SecurityContext,
    SecurityLevel,
    Volume,
    VolumeMount,
)

LOG = logging.getLogger(__name__)

SPIRE_SOCKET_VOLUME = "spire-agent-socket"
SPIRE_SOCKET_DIR = "/run/spire/sockets"
SPIRE_CSI_DRIVER = "csi.spiffe.io"
NSM_SOCKET_VOLUME = "nsm-socket"
NSM_SOCKET_DIR = "/var/lib/networkservicemesh"
NSM_CSI_DRIVER = "csi.networkservicemesh.io"

SRIOV_TOKEN = "sriovToken"


def patch_path(root: str, *parts: str) -> str:
    return posixpath.join(root, *parts)


def name_of(image: str) -> str:
    """Container name for an image: registry.io/org/nsc:1.0 gives nsc."""
    return posixpath.basename(image).split(":")[0]


BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")


def labels_of(token: str) -> dict[str, str]:
    if any(ord(c) < 0x20 or ord(c) == 0x7F for c in token):
        raise ValueError(f"control character in {token!r}")
    if BAD_ESCAPE.search(token):
        raise ValueError(f"invalid escape in {token!r}")
    parts = urlsplit(token)
    if not parts.scheme and ":" in parts.path.split("/", 1)[0]:
        raise ValueError(f"missing scheme in {token!r}")
    parts.port  # raises ValueError for an invalid port
    return {key: values[0] for key, values in parse_qs(parts.query).items()}


def parse_resources(annotation: str) -> dict[str, int] | None:
    """Count how many of the requested network services ask for each SR-IOV
    token, e.g. "kernel://ns-1/nsm-1?sriovToken=intel/10G" counts one
    intel/10G. If any URL is malformed, nothing is counted."""

    labels = []
    for token in annotation.split(","):
        try:
            labels.append(labels_of(token))
        except ValueError:
            LOG.error("malformed NS annotation: %r", token)
            return None

    return dict(
        Counter(
            item[SRIOV_TOKEN].split(",")[0] for item in labels if SRIOV_TOKEN in item
        )
    )


def client_identity_env(pod_meta: Metadata) -> EnvVar:
    # Pods stamped out by a controller already get a random name suffix.
    if pod_meta.generateName:
        return EnvVar(name="NSM_NAME", value="$(POD_NAME)")
    return EnvVar(name="NSM_NAME", value=f"$(POD_NAME)-{uuid.uuid4()}")


def request_env(config, annotation: str, pod_meta: Metadata) -> list[EnvVar]:
    return [
        *config.get_or_resolve_envs(),
        EnvVar(name=config.nsurl_env_name, value=annotation),
        client_identity_env(pod_meta),
    ]


def volume_mounts() -> list[VolumeMount]:
    return [
        VolumeMount(name=SPIRE_SOCKET_VOLUME, mountPath=SPIRE_SOCKET_DIR, readOnly=True),
        VolumeMount(name=NSM_SOCKET_VOLUME, mountPath=NSM_SOCKET_DIR, readOnly=True),
    ]


def security_context(level: SecurityLevel) -> SecurityContext | None:
    # Required by the restricted pod security standard.
    if level is not SecurityLevel.RESTRICTED:
        return None
    return SecurityContext(
        capabilities=Capabilities(drop=["ALL"]),
        allowPrivilegeEscalation=False,
    )


def sidecar_resources(config, extra_limits: dict[str, int] | None = None):
    limits = {
        "cpu": config.sidecar_limits_cpu,
        "memory": config.sidecar_limits_memory,
    }
    for name, count in (extra_limits or {}).items():
        limits[name] = str(count)

    return ResourceRequirements(
        limits=limits,
        requests={
            "cpu": config.sidecar_requests_cpu,
            "memory": config.sidecar_requests_memory,
        },
    )


def sidecar(image, env, level, resources) -> dict:
    return Container(
        name=name_of(image),
        image=image,
        env=env,
        volumeMounts=volume_mounts(),
        resources=resources,
        securityContext=security_context(level),
    ).model_dump(exclude_none=True)


def init_containers_patch(
    root: str,
    spec: PodSpec,
    annotation: str,
    level: SecurityLevel,
    env: list[EnvVar],
    config,
) -> PatchAction:
    resources = sidecar_resources(config, parse_resources(annotation))
    return PatchAction(
        op=PatchOp.ADD,
        path=patch_path(root, "spec", "initContainers"),
        value=[
            *spec.initContainers,
            *(
                sidecar(image, env, level, resources)
                for image in config.init_container_images
            ),
        ],
    )


def containers_patch(
    root: str, spec: PodSpec, level: SecurityLevel, env: list[EnvVar], config
) -> PatchAction:
    resources = sidecar_resources(config)
    return PatchAction(
        op=PatchOp.ADD,
        path=patch_path(root, "spec", "containers"),
        value=[
            *spec.containers,
            *(sidecar(image, env, level, resources) for image in config.container_images),
        ],
    )


def volumes_patch(root: str, spec: PodSpec, level: SecurityLevel) -> PatchAction:
    if level is not SecurityLevel.PRIVILEGED:
        # CSI drivers avoid hostPath, which baseline and restricted forbid.
        volumes = [
            Volume(
                name=SPIRE_SOCKET_VOLUME,
                csi=CSIVolumeSource(driver=SPIRE_CSI_DRIVER, readOnly=True),
            ),
            Volume(
                name=NSM_SOCKET_VOLUME,
                csi=CSIVolumeSource(driver=NSM_CSI_DRIVER, readOnly=True),
            ),
        ]
    else:
        volumes = [
            Volume(
                name=SPIRE_SOCKET_VOLUME,
                hostPath=HostPathVolumeSource(path=SPIRE_SOCKET_DIR, type="Directory"),
            ),
            Volume(
                name=NSM_SOCKET_VOLUME,
                hostPath=HostPathVolumeSource(path=NSM_SOCKET_DIR, type="Directory"),
            ),
        ]

    return PatchAction(
        op=PatchOp.ADD,
        path=patch_path(root, "spec", "volumes"),
        value=[
            *spec.volumes,
            *(volume.model_dump(exclude_none=True) for volume in volumes),
        ],
    )


def labels_patch(root: str, pod_meta: Metadata, labels: dict[str, str]) -> PatchAction:
    return PatchAction(
        op=PatchOp.ADD,
        path=patch_path(root, "metadata", "labels"),
        value={**(pod_meta.labels or {}), **labels},
    )


def build_patch(view, annotation: str, level: SecurityLevel, config) -> Patch:
    env = request_env(config, annotation, view.pod_meta)
    return Patch(
        [
            init_containers_patch(
                view.patch_root, view.pod_spec, annotation, level, env, config
            ),
            containers_patch(view.patch_root, view.pod_spec, level, env, config),
            volumes_patch(view.patch_root, view.pod_spec, level),
            labels_patch(view.patch_root, view.pod_meta, config.labels),
        ]
    )
