import logging

import pydantic

from models import Namespace, SecurityLevel
from workloads import WorkloadKind

LOG = logging.getLogger(__name__)

ENFORCE_LEVEL_LABEL = "pod-security.kubernetes.io/enforce"
LOOKUP_TIMEOUT = 1


class NamespaceLookup:
    """Fetches the request's namespace at most once, and only on demand.

    Failures are logged and reported as an unknown (None) namespace.
    """

    def __init__(self, provider, name: str | None, timeout: float = LOOKUP_TIMEOUT):
        self._provider = provider
        self._name = name
        self._timeout = timeout
        self._fetched = False
        self._namespace = None

    def get(self) -> Namespace | None:
        if not self._fetched:
            self._fetched = True
            self._namespace = self._fetch()
        return self._namespace

    def _fetch(self) -> Namespace | None:
        if not self._name:
            return None

        try:
            obj = self._provider.namespace(self._name, timeout=self._timeout)
        except Exception as err:
            LOG.error("failed to get namespace by name %s: %s", self._name, err)
            return None

        if obj is None:
            return None

        try:
            return Namespace.model_validate(obj)
        except pydantic.ValidationError as err:
            LOG.error("failed to decode namespace %s: %s", self._name, err)
            return None


def resolve_annotation(
    own_value: str | None, kind: WorkloadKind, lookup: NamespaceLookup, key: str
) -> str | None:
    if own_value:
        return own_value

    # Only bare pods inherit the namespace annotation.
    if kind is not WorkloadKind.POD:
        return None

    namespace = lookup.get()
    if namespace is None:
        return None

    return (namespace.metadata.annotations or {}).get(key) or None


def security_level(namespace: Namespace | None) -> SecurityLevel:
    if namespace is None:
        return SecurityLevel.PRIVILEGED

    value = (namespace.metadata.labels or {}).get(ENFORCE_LEVEL_LABEL)
    try:
        return SecurityLevel(value)
    except ValueError:
        return SecurityLevel.PRIVILEGED
