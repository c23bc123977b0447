import logging

from kubernetes import config, client
from openshift.dynamic import DynamicClient
from openshift.dynamic.exceptions import NotFoundError
from typing import Any
from typing_extensions import Protocol

from exc import ProviderError

LOG = logging.getLogger(__name__)


class Provider(Protocol):
    def namespace(self, name: str, timeout: float) -> dict[str, Any] | None: ...

    def apply_webhook_configuration(self, body: dict[str, Any]) -> None: ...

    def delete_webhook_configuration(self, name: str) -> None: ...


class KubernetesProvider(Provider):
    def __init__(self):
        """Allocate a Kubernetes dynamic client and the API resources the
        webhook talks to"""

        super().__init__()

        try:
            config.load_config()
        except config.ConfigException as err:
            LOG.warning("unable to configure Kubernetes client: %s", err)
            raise ProviderError("unable to configure Kubernetes client")

        k8s_client = client.ApiClient()
        dyn_client = DynamicClient(k8s_client)

        self._client = dyn_client
        self._namespace_resource = dyn_client.resources.get(
            api_version="v1", kind="Namespace"
        )
        self._webhook_resource = dyn_client.resources.get(
            api_version="admissionregistration.k8s.io/v1",
            kind="MutatingWebhookConfiguration",
        )

    def namespace(self, name, timeout):
        ns_obj = self._namespace_resource.get(name=name, _request_timeout=timeout)
        return ns_obj.to_dict()

    def apply_webhook_configuration(self, body):
        name = body["metadata"]["name"]
        try:
            self._webhook_resource.delete(name=name)
            LOG.info("replacing existing webhook configuration %s", name)
        except NotFoundError:
            LOG.debug("no existing webhook configuration %s", name)
        self._webhook_resource.create(body=body)

    def delete_webhook_configuration(self, name):
        self._webhook_resource.delete(name=name)
