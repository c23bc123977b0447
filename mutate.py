import base64
import logging
import signal
import sys

import pydantic
from pydantic_core import PydanticSerializationError

from flask import Flask, request, jsonify, current_app

from models import (
    BaseModel,
    AdmissionRequest,
    AdmissionReview,
    AdmissionResponse,
    AdmissionReviewStatus,
    Operation,
    PatchType,
)

import certs
import registration
from config import WebhookConfig, WebhookMode
from exc import ApplicationError
from namespaces import NamespaceLookup, resolve_annotation, security_level
from patches import build_patch
from providers import KubernetesProvider
from workloads import unmarshal

LOG = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)


class DEFAULTS:
    PROVIDER = KubernetesProvider


def jsonresponse():
    """Transforms the response from a view function into a JSON object."""

    def _outer(func):
        def _inner(*args, **kwargs):
            res = func(*args, **kwargs)
            if isinstance(res, BaseModel):
                return jsonify(res.model_dump(mode="json", exclude_none=True))
            else:
                return jsonify(res)

        return _inner

    return _outer


def log_request(req: AdmissionRequest):
    # Strip line breaks so a crafted object cannot forge log lines (CWE-117).
    escaped = req.model_dump_json().replace("\n", "").replace("\r", "")
    LOG.info("incoming request: %s", escaped)


def log_response(resp: AdmissionResponse):
    # Show the patch as JSON instead of as base64.
    patch = resp.patch
    if patch is not None:
        patch = base64.b64decode(patch).decode()
    LOG.info(
        "outgoing response: %s patch: %s",
        resp.model_dump_json(exclude={"patch"}, exclude_none=True),
        patch,
    )


def review(req: AdmissionRequest, config: WebhookConfig, provider) -> AdmissionResponse:
    """Decide whether to inject the mesh sidecars into the object in req.

    The webhook never denies a request: it either allows it unmodified or
    allows it with a JSON patch.
    """

    log_request(req)
    resp = decide(req, config, provider)
    log_response(resp)
    return resp


def decide(req: AdmissionRequest, config: WebhookConfig, provider) -> AdmissionResponse:
    if req.operation != Operation.CREATE:
        return AdmissionResponse(uid=req.uid, allowed=True)

    view = unmarshal(req.kind.kind, req.object)
    if view is None:
        return AdmissionResponse(uid=req.uid, allowed=True)

    lookup = NamespaceLookup(provider, req.namespace)
    annotation = resolve_annotation(
        view.annotation(config.annotation), view.kind, lookup, config.annotation
    )
    if not annotation:
        return AdmissionResponse(uid=req.uid, allowed=True)

    level = security_level(lookup.get())
    try:
        patch = build_patch(view, annotation, level, config)
        return AdmissionResponse(
            uid=req.uid,
            allowed=True,
            patchType=PatchType.JSONPatch,
            patch=patch,
        )
    except (PydanticSerializationError, pydantic.ValidationError) as err:
        LOG.error("failed to serialize patch: %s", err)
        return AdmissionResponse(
            uid=req.uid,
            allowed=True,
            status=AdmissionReviewStatus(message=str(err)),
        )


@jsonresponse()
def mutate():
    body = AdmissionReview(**request.get_json())
    if body.request is None:
        raise ApplicationError("admission review carries no request")

    body.response = review(
        body.request, current_app.webhook_config, current_app.provider
    )
    return body


def handle_validationerror(err):
    return str(err), 400, {"content-type": "text/plain"}


def handle_applicationerror(err):
    return str(err), 500, {"content-type": "text/plain"}


def health():
    return "", 200


def create_app(**config) -> Flask:
    """Use an application factory [1] to create the Flask app.

    Settings come from NSM_* environment variables, with keyword arguments
    taking precedence. Invalid settings raise ConfigurationError; unusable
    certificate material raises CertificateError.

    [1]: https://flask.palletsprojects.com/en/3.0.x/patterns/appfactories/
    """

    app = Flask(__name__)
    app.config.from_object(DEFAULTS)
    app.config.from_prefixed_env("NSM")
    if config:
        app.config.update(config)

    app.webhook_config = WebhookConfig.from_mapping(app.config)
    LOG.info("config: %s", app.webhook_config.summary())

    # Resolve envs and certificates before any request comes in.
    app.webhook_config.get_or_resolve_envs()
    app.provider = app.config["PROVIDER"]()

    app.errorhandler(pydantic.ValidationError)(handle_validationerror)
    app.errorhandler(ApplicationError)(handle_applicationerror)
    app.add_url_rule("/ready", view_func=health)
    app.add_url_rule("/healthz", view_func=health)
    app.add_url_rule(
        registration.MUTATE_PATH, view_func=mutate, methods=["POST"]
    )

    return app


SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGHUP, signal.SIGQUIT)


def exit_on_signal(signum, frame):
    LOG.info("received %s, shutting down", signal.Signals(signum).name)
    sys.exit(0)


def main():
    try:
        app = create_app()
        ssl_context, identity_source = certs.server_ssl_context(app.webhook_config)
    except ApplicationError as err:
        LOG.error("%s", err)
        sys.exit(1)

    webhook_config = app.webhook_config
    selfregister = webhook_config.webhook_mode is WebhookMode.SELFREGISTER
    registered = False
    previous = {sig: signal.signal(sig, exit_on_signal) for sig in SHUTDOWN_SIGNALS}
    try:
        if selfregister:
            try:
                registration.register(app.provider, webhook_config)
            except Exception as err:
                LOG.error("failed to register webhook configuration: %s", err)
                sys.exit(1)
            registered = True
        app.run(
            host="0.0.0.0",
            port=webhook_config.port,
            ssl_context=ssl_context,
            threaded=True,
        )
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
        if registered:
            registration.unregister(app.provider, webhook_config)
        if identity_source is not None:
            identity_source.close()
