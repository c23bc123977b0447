import json
import logging
import re
import threading
from enum import StrEnum
from typing import Any

import pydantic
from pydantic import BaseModel, PrivateAttr, field_validator

from certs import Certificate
from exc import CertificateError, ConfigurationError
from models import EnvVar, EnvVarSource, FieldRef

LOG = logging.getLogger(__name__)

# https://kubernetes.io/docs/reference/kubernetes-api/common-definitions/quantity/
QUANTITY = re.compile(
    r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+|Ki|Mi|Gi|Ti|Pi|Ei|n|u|m|k|M|G|T|P|E)?$"
)


class WebhookMode(StrEnum):
    # Certificates come from SPIRE and the webhook configuration is applied
    # by someone else.
    SPIRE = "spire"
    # The webhook generates its own certificate and registers itself.
    SELFREGISTER = "selfregister"


def split_list(val):
    if isinstance(val, str):
        return [item for item in val.split(",") if item]
    return val


class WebhookConfig(BaseModel):
    """Settings of one webhook instance.

    The values are read only. The env vars, certificate and CA bundle derived
    from them are computed exactly once, on first use, by whichever thread
    asks first; everyone else waits for that result.
    """

    name: str = "admission-webhook-k8s"
    service_name: str = "default"
    namespace: str = "default"
    annotation: str = "networkservicemesh.io"
    labels: dict[str, str] = {}
    nsurl_env_name: str = "NSM_NETWORK_SERVICES"
    init_container_images: list[str] = []
    container_images: list[str] = []
    envs: list[str] = []
    webhook_mode: WebhookMode = WebhookMode.SPIRE
    cert_file_path: str = ""
    key_file_path: str = ""
    ca_bundle_file_path: str = ""
    sidecar_limits_memory: str = "80Mi"
    sidecar_limits_cpu: str = "200m"
    sidecar_requests_memory: str = "40Mi"
    sidecar_requests_cpu: str = "100m"
    kubelet_qps: int = 50
    port: int = 443

    _lock: threading.Lock = PrivateAttr(default_factory=threading.Lock)
    _initialized: bool = PrivateAttr(default=False)
    _error: Exception | None = PrivateAttr(default=None)
    _envs: list[EnvVar] = PrivateAttr(default_factory=list)
    _cert: Certificate | None = PrivateAttr(default=None)
    _ca_bundle: bytes = PrivateAttr(default=b"")

    @classmethod
    def from_mapping(cls, mapping) -> "WebhookConfig":
        """Build a config from upper case keys, as found in a Flask config."""

        values = {
            field: mapping[field.upper()]
            for field in cls.model_fields
            if mapping.get(field.upper()) is not None
        }
        try:
            return cls(**values)
        except pydantic.ValidationError as err:
            raise ConfigurationError(f"invalid configuration: {err}")

    @field_validator(
        "name",
        "service_name",
        "namespace",
        "annotation",
        "nsurl_env_name",
        "cert_file_path",
        "key_file_path",
        "ca_bundle_file_path",
        mode="before",
    )
    @classmethod
    def validate_text(cls, val):
        # from_prefixed_env decodes NSM_NAME=123 into an int.
        if isinstance(val, (bool, int, float)):
            return json.dumps(val)
        return val

    @field_validator("webhook_mode", mode="before")
    @classmethod
    def validate_webhook_mode(cls, val):
        if isinstance(val, str):
            val = val.lower()
            if val not in list(WebhookMode):
                raise ValueError(f"not a valid webhook mode: {val}")
        return val

    @field_validator(
        "init_container_images", "container_images", "envs", mode="before"
    )
    @classmethod
    def validate_list(cls, val):
        return split_list(val)

    @field_validator("envs")
    @classmethod
    def validate_envs(cls, val):
        for env in val:
            if "=" not in env:
                raise ValueError(f"env {env!r} is not in KEY=VALUE form")
        return val

    @field_validator("labels", mode="before")
    @classmethod
    def validate_labels(cls, val):
        # Accept a JSON object as well as envconfig style "k1:v1,k2:v2".
        if isinstance(val, str):
            if val.startswith("{"):
                return json.loads(val)
            labels = {}
            for item in split_list(val):
                key, sep, value = item.partition(":")
                if not sep:
                    raise ValueError(f"label {item!r} is not in key:value form")
                labels[key] = value
            return labels
        return val

    @field_validator(
        "sidecar_limits_memory",
        "sidecar_limits_cpu",
        "sidecar_requests_memory",
        "sidecar_requests_cpu",
        mode="before",
    )
    @classmethod
    def validate_quantity(cls, val):
        val = str(val)
        if not QUANTITY.match(val):
            raise ValueError(f"{val!r} is not a valid resource quantity")
        return val

    @property
    def uses_existing_certificates(self) -> bool:
        return bool(self.cert_file_path and self.key_file_path)

    def get_or_resolve_envs(self) -> list[EnvVar]:
        self._initialize_once()
        return list(self._envs)

    def get_or_resolve_certificate(self) -> Certificate | None:
        self._initialize_once()
        return self._cert

    def get_or_resolve_ca_bundle(self) -> bytes:
        self._initialize_once()
        return self._ca_bundle

    def _initialize_once(self):
        with self._lock:
            if not self._initialized:
                self._initialized = True
                try:
                    self._initialize()
                except Exception as err:
                    self._error = err

        if self._error is not None:
            raise self._error

    def _initialize(self):
        self._initialize_envs()
        self._initialize_cert()
        self._initialize_ca_bundle()

    def _initialize_envs(self):
        for env in self.envs:
            name, _, value = env.partition("=")
            self._envs.append(EnvVar(name=name, value=value))

        self._envs.extend(
            [
                EnvVar(
                    name="SPIFFE_ENDPOINT_SOCKET",
                    value="unix:///run/spire/sockets/agent.sock",
                ),
                EnvVar(
                    name="POD_NAME",
                    valueFrom=EnvVarSource(fieldRef=FieldRef(fieldPath="metadata.name")),
                ),
            ]
        )

    def _initialize_cert(self):
        if self.uses_existing_certificates:
            self._cert = Certificate.load(self.cert_file_path, self.key_file_path)
            return

        if self.webhook_mode is WebhookMode.SELFREGISTER:
            self._cert = Certificate.self_signed(self.service_name, self.namespace)
            self._ca_bundle = self._cert.cert_pem

    def _initialize_ca_bundle(self):
        if self.webhook_mode is not WebhookMode.SELFREGISTER:
            return

        if self._ca_bundle:
            return

        try:
            with open(self.ca_bundle_file_path, "rb") as fd:
                self._ca_bundle = fd.read()
        except OSError as err:
            raise CertificateError(f"unable to read ca bundle: {err}")

    def summary(self) -> dict[str, Any]:
        return self.model_dump(mode="json")
