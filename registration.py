import base64
import logging

from config import WebhookConfig
from workloads import WorkloadKind

LOG = logging.getLogger(__name__)

MUTATE_PATH = "/mutate"


def rule(api_group: str, kinds: list[WorkloadKind]) -> dict:
    return {
        "operations": ["CREATE"],
        "apiGroups": [api_group],
        "apiVersions": ["v1"],
        "resources": [f"{kind.lower()}s" for kind in kinds],
    }


def webhook_configuration(config: WebhookConfig, ca_bundle: bytes) -> dict:
    """MutatingWebhookConfiguration that routes workload creation to this
    instance's service."""

    return {
        "apiVersion": "admissionregistration.k8s.io/v1",
        "kind": "MutatingWebhookConfiguration",
        "metadata": {"name": config.name},
        "webhooks": [
            {
                "name": f"{config.name}.networkservicemesh.io",
                "clientConfig": {
                    "service": {
                        "name": config.service_name,
                        "namespace": config.namespace,
                        "path": MUTATE_PATH,
                    },
                    "caBundle": base64.b64encode(ca_bundle).decode(),
                },
                "rules": [
                    rule("", [WorkloadKind.POD]),
                    rule(
                        "apps",
                        [
                            WorkloadKind.DEPLOYMENT,
                            WorkloadKind.DAEMONSET,
                            WorkloadKind.STATEFULSET,
                            WorkloadKind.REPLICASET,
                        ],
                    ),
                ],
                # The webhook never denies, so an outage should not block
                # workload creation either.
                "failurePolicy": "Ignore",
                "sideEffects": "None",
                "admissionReviewVersions": ["v1"],
            }
        ],
    }


def register(provider, config: WebhookConfig):
    body = webhook_configuration(config, config.get_or_resolve_ca_bundle())
    provider.apply_webhook_configuration(body)
    LOG.info("registered webhook configuration %s", config.name)


def unregister(provider, config: WebhookConfig):
    try:
        provider.delete_webhook_configuration(config.name)
    except Exception as err:
        LOG.error("failed to unregister webhook configuration %s: %s", config.name, err)
        return
    LOG.info("unregistered webhook configuration %s", config.name)
