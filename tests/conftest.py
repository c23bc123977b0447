import pytest

import mutate
from config import WebhookConfig


NAMESPACES = {
    "default": {"metadata": {"name": "default"}},
    "annotated": {
        "metadata": {
            "name": "annotated",
            "annotations": {"networkservicemesh.io": "kernel://ns-from-namespace/nsm-1"},
        }
    },
    "restricted": {
        "metadata": {
            "name": "restricted",
            "labels": {"pod-security.kubernetes.io/enforce": "restricted"},
        }
    },
    "baseline": {
        "metadata": {
            "name": "baseline",
            "labels": {"pod-security.kubernetes.io/enforce": "baseline"},
        }
    },
    "bogus-level": {
        "metadata": {
            "name": "bogus-level",
            "labels": {"pod-security.kubernetes.io/enforce": "Restricted!"},
        }
    },
}

SETTINGS = {
    "INIT_CONTAINER_IMAGES": "ghcr.io/networkservicemesh/cmd-nsc-init:v1.13.0",
    "CONTAINER_IMAGES": "ghcr.io/networkservicemesh/cmd-nsc:v1.13.0",
    "ENVS": "NSM_LOG_LEVEL=TRACE,NSM_LIVENESSCHECKENABLED=false",
    "LABELS": "spiffe.io/spiffe-id:true",
}


class FakeProvider:
    def __init__(self):
        self.lookups = []
        self.webhooks = {}

    def namespace(self, name, timeout):
        self.lookups.append(name)
        return NAMESPACES.get(name)

    def apply_webhook_configuration(self, body):
        self.webhooks[body["metadata"]["name"]] = body

    def delete_webhook_configuration(self, name):
        del self.webhooks[name]


@pytest.fixture()
def fake_provider():
    return FakeProvider()


@pytest.fixture()
def webhook_config():
    return WebhookConfig.from_mapping(SETTINGS)


@pytest.fixture()
def app():
    app = mutate.create_app(
        PROVIDER=FakeProvider,
        TESTING=True,
        **SETTINGS,
    )
    yield app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def settings():
    return dict(SETTINGS)


@pytest.fixture()
def provider_class():
    return FakeProvider
