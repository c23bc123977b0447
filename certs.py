"""TLS serving material for the webhook.

The certificate is either loaded from operator supplied files, generated in
memory as a self signed CA, or fetched per handshake from a SPIFFE workload
API through SpiffeIdentitySource.
"""

import datetime
import logging
import os
import ssl
import tempfile
from dataclasses import dataclass

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID
from spiffe import X509Source

from exc import CertificateError

LOG = logging.getLogger(__name__)

RSA_KEY_SIZE = 2048
VALIDITY = datetime.timedelta(days=365)


@dataclass(frozen=True)
class Certificate:
    cert_pem: bytes
    key_pem: bytes

    @classmethod
    def load(cls, cert_path: str, key_path: str) -> "Certificate":
        try:
            with open(cert_path, "rb") as fd:
                cert_pem = fd.read()
            with open(key_path, "rb") as fd:
                key_pem = fd.read()
        except OSError as err:
            raise CertificateError(f"unable to read key pair: {err}")

        cert = cls(cert_pem, key_pem)
        # Fail now rather than on the first handshake.
        cert.ssl_context()
        LOG.info("loaded certificate from %s", cert_path)
        return cert

    @classmethod
    def self_signed(cls, service_name: str, namespace: str) -> "Certificate":
        now = datetime.datetime.now(datetime.timezone.utc)
        key = rsa.generate_private_key(public_exponent=65537, key_size=RSA_KEY_SIZE)
        subject = x509.Name(
            [
                x509.NameAttribute(
                    NameOID.COMMON_NAME, f"networkservicemesh.{service_name}-ca"
                )
            ]
        )

        cert = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(subject)
            .public_key(key.public_key())
            .serial_number(int(now.timestamp()))
            .not_valid_before(now)
            .not_valid_after(now + VALIDITY)
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=True,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=True,
                    crl_sign=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(
                x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]),
                critical=False,
            )
            .add_extension(
                x509.SubjectAlternativeName(
                    [
                        x509.DNSName(f"{service_name}.{namespace}"),
                        x509.DNSName(f"{service_name}.{namespace}.svc"),
                    ]
                ),
                critical=False,
            )
            .sign(key, hashes.SHA256())
        )

        LOG.info(
            "generated self signed certificate for %s.%s", service_name, namespace
        )
        return cls(
            cert_pem=cert.public_bytes(serialization.Encoding.PEM),
            key_pem=key.private_bytes(
                serialization.Encoding.PEM,
                serialization.PrivateFormat.TraditionalOpenSSL,
                serialization.NoEncryption(),
            ),
        )

    def ssl_context(self) -> ssl.SSLContext:
        return server_context(self.cert_pem, self.key_pem)


def server_context(cert_pem: bytes, key_pem: bytes) -> ssl.SSLContext:
    """Build a server SSLContext from in-memory PEM data.

    The ssl module only loads key pairs from files, so the material is written
    to a private temporary directory that is removed once loaded.
    """

    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.minimum_version = ssl.TLSVersion.TLSv1_2

    with tempfile.TemporaryDirectory() as tmpdir:
        cert_path = os.path.join(tmpdir, "tls.crt")
        key_path = os.path.join(tmpdir, "tls.key")
        with open(cert_path, "wb") as fd:
            fd.write(cert_pem)
        with open(os.open(key_path, os.O_CREAT | os.O_WRONLY, 0o600), "wb") as fd:
            fd.write(key_pem)

        try:
            ctx.load_cert_chain(cert_path, key_path)
        except ssl.SSLError as err:
            raise CertificateError(f"invalid key pair: {err}")

    return ctx


class SpiffeIdentitySource:
    """Serve whatever X.509 SVID the SPIFFE workload API currently holds."""

    def __init__(self, source=None):
        if source is None:
            try:
                source = X509Source()
            except Exception as err:
                raise CertificateError(f"error getting x509 source: {err}")

        self._source = source

    def certificate(self) -> Certificate:
        svid = self._source.svid
        return Certificate(
            cert_pem=b"".join(
                cert.public_bytes(serialization.Encoding.PEM)
                for cert in svid.cert_chain
            ),
            key_pem=svid.private_key.private_bytes(
                serialization.Encoding.PEM,
                serialization.PrivateFormat.PKCS8,
                serialization.NoEncryption(),
            ),
        )

    def ssl_context(self) -> ssl.SSLContext:
        ctx = self.certificate().ssl_context()

        def select_certificate(sock, server_name, _ctx):
            # Runs on every handshake, so rotated SVIDs are picked up.
            try:
                sock.context = self.certificate().ssl_context()
            except CertificateError as err:
                LOG.error("unable to load current svid: %s", err)
                return ssl.ALERT_DESCRIPTION_INTERNAL_ERROR

        ctx.sni_callback = select_certificate
        return ctx

    def close(self):
        self._source.close()


def server_ssl_context(config, identity_source=SpiffeIdentitySource):
    """Return the SSLContext the webhook serves with, and the identity source
    backing it (None when the certificate is held locally)."""

    cert = config.get_or_resolve_certificate()
    if cert is not None:
        return cert.ssl_context(), None

    source = identity_source()
    return source.ssl_context(), source
