import threading
from unittest import mock

import pytest

import certs
from config import WebhookConfig, WebhookMode
from exc import CertificateError, ConfigurationError


def test_defaults():
    config = WebhookConfig.from_mapping({})
    assert config.name == "admission-webhook-k8s"
    assert config.annotation == "networkservicemesh.io"
    assert config.nsurl_env_name == "NSM_NETWORK_SERVICES"
    assert config.webhook_mode is WebhookMode.SPIRE
    assert config.init_container_images == []
    assert config.labels == {}
    assert config.sidecar_limits_cpu == "200m"
    assert config.kubelet_qps == 50
    assert not config.uses_existing_certificates


def test_lists_and_labels():
    config = WebhookConfig.from_mapping(
        {
            "INIT_CONTAINER_IMAGES": "a/init:1,b/init:2",
            "CONTAINER_IMAGES": ["c/nsc:1"],
            "LABELS": "k1:v1,k2:v2",
            "ENVS": "A=1,B=x=y",
        }
    )
    assert config.init_container_images == ["a/init:1", "b/init:2"]
    assert config.container_images == ["c/nsc:1"]
    assert config.labels == {"k1": "v1", "k2": "v2"}
    assert config.envs == ["A=1", "B=x=y"]


def test_labels_as_json():
    # Flask's from_prefixed_env already decodes JSON values.
    assert WebhookConfig.from_mapping({"LABELS": {"k": "v"}}).labels == {"k": "v"}
    assert WebhookConfig.from_mapping({"LABELS": '{"k": "v"}'}).labels == {"k": "v"}


def test_json_decoded_scalars_are_text():
    # NSM_NAME=123 and NSM_ANNOTATION=true come out of from_prefixed_env as
    # an int and a bool.
    config = WebhookConfig.from_mapping({"NAME": 123, "ANNOTATION": True, "PORT": 8443})
    assert config.name == "123"
    assert config.annotation == "true"
    assert config.port == 8443


@pytest.mark.parametrize("mode", ["selfregister", "SelfRegister", "SELFREGISTER"])
def test_webhook_mode_is_case_insensitive(mode):
    config = WebhookConfig.from_mapping({"WEBHOOK_MODE": mode})
    assert config.webhook_mode is WebhookMode.SELFREGISTER


@pytest.mark.parametrize(
    "mapping",
    [
        {"WEBHOOK_MODE": "manual"},
        {"ENVS": "NO_VALUE"},
        {"LABELS": "no-value"},
        {"SIDECAR_LIMITS_CPU": "lots"},
        {"SIDECAR_REQUESTS_MEMORY": "40MB"},
    ],
)
def test_invalid_settings(mapping):
    with pytest.raises(ConfigurationError):
        WebhookConfig.from_mapping(mapping)


def test_resolved_envs():
    config = WebhookConfig.from_mapping({"ENVS": "A=1,B=x=y"})
    envs = [env.model_dump(exclude_none=True) for env in config.get_or_resolve_envs()]
    assert envs == [
        {"name": "A", "value": "1"},
        {"name": "B", "value": "x=y"},
        {"name": "SPIFFE_ENDPOINT_SOCKET", "value": "unix:///run/spire/sockets/agent.sock"},
        {"name": "POD_NAME", "valueFrom": {"fieldRef": {"fieldPath": "metadata.name"}}},
    ]


def test_resolved_envs_are_copies():
    config = WebhookConfig.from_mapping({})
    config.get_or_resolve_envs().clear()
    assert len(config.get_or_resolve_envs()) == 2


def test_spire_mode_has_no_local_certificate():
    config = WebhookConfig.from_mapping({})
    assert config.get_or_resolve_certificate() is None
    assert config.get_or_resolve_ca_bundle() == b""


def test_selfregister_mode_generates_certificate():
    config = WebhookConfig.from_mapping(
        {"WEBHOOK_MODE": "selfregister", "SERVICE_NAME": "nsm-admission-webhook-svc"}
    )
    cert = config.get_or_resolve_certificate()
    assert cert is not None
    assert config.get_or_resolve_ca_bundle() == cert.cert_pem


def test_existing_certificates(tmp_path):
    generated = certs.Certificate.self_signed("svc", "ns")
    (tmp_path / "tls.crt").write_bytes(generated.cert_pem)
    (tmp_path / "tls.key").write_bytes(generated.key_pem)
    (tmp_path / "ca.crt").write_bytes(b"bundle")

    config = WebhookConfig.from_mapping(
        {
            "WEBHOOK_MODE": "selfregister",
            "CERT_FILE_PATH": str(tmp_path / "tls.crt"),
            "KEY_FILE_PATH": str(tmp_path / "tls.key"),
            "CA_BUNDLE_FILE_PATH": str(tmp_path / "ca.crt"),
        }
    )
    assert config.uses_existing_certificates
    assert config.get_or_resolve_certificate() == generated
    assert config.get_or_resolve_ca_bundle() == b"bundle"


def test_missing_certificate_is_fatal(tmp_path):
    config = WebhookConfig.from_mapping(
        {
            "CERT_FILE_PATH": str(tmp_path / "tls.crt"),
            "KEY_FILE_PATH": str(tmp_path / "tls.key"),
        }
    )
    with pytest.raises(CertificateError):
        config.get_or_resolve_certificate()
    # The failure is remembered rather than retried.
    with pytest.raises(CertificateError):
        config.get_or_resolve_envs()


def test_missing_ca_bundle_is_fatal(tmp_path):
    generated = certs.Certificate.self_signed("svc", "ns")
    (tmp_path / "tls.crt").write_bytes(generated.cert_pem)
    (tmp_path / "tls.key").write_bytes(generated.key_pem)

    config = WebhookConfig.from_mapping(
        {
            "WEBHOOK_MODE": "selfregister",
            "CERT_FILE_PATH": str(tmp_path / "tls.crt"),
            "KEY_FILE_PATH": str(tmp_path / "tls.key"),
            "CA_BUNDLE_FILE_PATH": str(tmp_path / "missing.crt"),
        }
    )
    with pytest.raises(CertificateError):
        config.get_or_resolve_ca_bundle()


def test_concurrent_first_use_initializes_once():
    config = WebhookConfig.from_mapping({"WEBHOOK_MODE": "selfregister"})
    barrier = threading.Barrier(8)
    results = []

    def worker(accessor):
        barrier.wait()
        results.append(accessor())

    accessors = [
        config.get_or_resolve_envs,
        config.get_or_resolve_certificate,
        config.get_or_resolve_ca_bundle,
    ]
    with mock.patch.object(
        certs.Certificate, "self_signed", wraps=certs.Certificate.self_signed
    ) as self_signed:
        threads = [
            threading.Thread(target=worker, args=(accessors[i % 3],)) for i in range(8)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

    assert self_signed.call_count == 1
    assert len(results) == 8
    assert len(config.get_or_resolve_envs()) == 2
    cert = config.get_or_resolve_certificate()
    assert all(r is cert for r in results if isinstance(r, certs.Certificate))
    assert all(r == cert.cert_pem for r in results if isinstance(r, bytes))
