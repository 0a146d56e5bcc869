"""TLS material provisioning: load existing files or generate a self-signed pair.

The pair is generated with the ``cryptography`` package. Both files are
written to temporary siblings first and then moved into place, so a failure
never leaves one fresh file next to one stale file.
"""

import ipaddress
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from httpd.domain.correlation_id import ComponentLoggerAdapter
from httpd.domain.errors import CertificateProvisioningError
from httpd.domain.parameters import ParamStore, int_parameter, string_parameter

TLS_LOGGER = ComponentLoggerAdapter(logging.getLogger("http_server.tls"), {})

DEFAULT_KEY_SIZE = 4096
DEFAULT_CERT_DAYS = 365
MIN_KEY_SIZE = 1024


@dataclass(frozen=True)
class CertificateProfile:
    """Subject and validity of a generated certificate."""

    bits: int = DEFAULT_KEY_SIZE
    common_name: str = "localhost"
    country: str = "US"
    locality: str = ""
    organization: str = "http-server devteam"
    organizational_unit: str = ""
    days: int = DEFAULT_CERT_DAYS

    def subject(self) -> x509.Name:
        attributes = [
            (NameOID.COUNTRY_NAME, self.country),
            (NameOID.LOCALITY_NAME, self.locality),
            (NameOID.ORGANIZATION_NAME, self.organization),
            (NameOID.ORGANIZATIONAL_UNIT_NAME, self.organizational_unit),
            (NameOID.COMMON_NAME, self.common_name),
        ]
        return x509.Name(
            [x509.NameAttribute(oid, value) for oid, value in attributes if value]
        )


DEFAULT_PROFILE = CertificateProfile()


def register_profile_parameters(
    store: ParamStore, prefix: str, defaults: CertificateProfile = DEFAULT_PROFILE
) -> None:
    """Declare the ``<prefix>.certificate.*`` profile parameters on a store."""
    base = f"{prefix}.certificate"
    store.add(int_parameter(f"{base}.bits", defaults.bits,
                            "Number of bits of the RSA private key of the generated certificate.",
                            minimum=MIN_KEY_SIZE))
    store.add(string_parameter(f"{base}.commonname", defaults.common_name,
                               "Common Name field of the generated certificate."))
    store.add(string_parameter(f"{base}.country", defaults.country,
                               "Country field of the generated certificate."))
    store.add(string_parameter(f"{base}.locality", defaults.locality,
                               "Locality field of the generated certificate."))
    store.add(string_parameter(f"{base}.organization", defaults.organization,
                               "Organization field of the generated certificate."))
    store.add(string_parameter(f"{base}.organizationalunit", defaults.organizational_unit,
                               "Organizational Unit field of the generated certificate."))
    store.add(int_parameter(f"{base}.days", defaults.days,
                            "Validity in days of the generated certificate.", minimum=1))


def profile_from_store(store: ParamStore, prefix: str) -> CertificateProfile:
    """Read a certificate profile back from the store."""
    base = f"{prefix}.certificate"
    return CertificateProfile(
        bits=store.get_int(f"{base}.bits"),
        common_name=store.get_string(f"{base}.commonname"),
        country=store.get_string(f"{base}.country"),
        locality=store.get_string(f"{base}.locality"),
        organization=store.get_string(f"{base}.organization"),
        organizational_unit=store.get_string(f"{base}.organizationalunit"),
        days=store.get_int(f"{base}.days"),
    )


def _subject_alt_name(common_name: str) -> x509.SubjectAlternativeName:
    try:
        entry: x509.GeneralName = x509.IPAddress(ipaddress.ip_address(common_name))
    except ValueError:
        entry = x509.DNSName(common_name)
    return x509.SubjectAlternativeName([entry])


def _build_pair(profile: CertificateProfile) -> tuple[bytes, bytes]:
    key = rsa.generate_private_key(public_exponent=65537, key_size=profile.bits)
    subject = issuer = profile.subject()
    not_before = datetime.now(timezone.utc) - timedelta(minutes=5)
    not_after = not_before + timedelta(days=profile.days)

    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False
        )
    )
    if profile.common_name:
        builder = builder.add_extension(
            _subject_alt_name(profile.common_name), critical=False
        )
    certificate = builder.sign(key, hashes.SHA256())

    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return certificate.public_bytes(serialization.Encoding.PEM), key_pem


def _stage(target: Path, data: bytes, mode: int) -> Path:
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, staged = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        os.chmod(staged, mode)
    except BaseException:
        Path(staged).unlink(missing_ok=True)
        raise
    return Path(staged)


def generate_self_signed(
    profile: CertificateProfile, cert_path: str, key_path: str
) -> None:
    """Write a new private key and matching self-signed certificate.

    Raises:
        CertificateProvisioningError: If the pair cannot be generated or written.
    """
    staged: list[Path] = []
    key_installed = False
    try:
        cert_pem, key_pem = _build_pair(profile)
        staged.append(_stage(Path(key_path), key_pem, 0o600))
        staged.append(_stage(Path(cert_path), cert_pem, 0o644))
        os.replace(staged[0], key_path)
        key_installed = True
        os.replace(staged[1], cert_path)
    except (OSError, ValueError) as error:
        for path in staged:
            path.unlink(missing_ok=True)
        if key_installed:
            # a new key must not sit next to the old certificate
            Path(key_path).unlink(missing_ok=True)
        raise CertificateProvisioningError(
            f"cannot generate TLS pair {cert_path} / {key_path}: {error}"
        ) from error


def certificate_fingerprint(cert_path: str) -> str:
    """SHA256 fingerprint as colon separated upper-case hex (``AB:CD:...``)."""
    certificate = x509.load_pem_x509_certificate(Path(cert_path).read_bytes())
    return certificate.fingerprint(hashes.SHA256()).hex(":").upper()


def ensure_certificate(
    cert_path: str,
    key_path: str,
    load_profile: Callable[[], CertificateProfile],
) -> Optional[str]:
    """Make sure a usable key/certificate pair exists at the given paths.

    Returns ``"generated"`` or ``"loaded"`` for TLS configurations and
    ``None`` when TLS is not configured. The profile is only read when a new
    pair has to be generated.
    """
    if not cert_path or not key_path:
        if cert_path or key_path:
            TLS_LOGGER.warning(
                "Both a certificate and a key are required for HTTPS, serving plain HTTP",
                extra={"event": "tls_incomplete", "certificate": cert_path, "key": key_path},
            )
        return None

    if os.path.exists(cert_path) and os.path.exists(key_path):
        TLS_LOGGER.info("Loading server TLS key from %s", key_path)
        TLS_LOGGER.info("Loading server TLS certificate from %s", cert_path)
        return "loaded"

    profile = load_profile()
    TLS_LOGGER.debug("Certificate profile %s", profile)
    TLS_LOGGER.info("Generating server TLS key to %s", key_path)
    TLS_LOGGER.info("Generating server TLS certificate to %s", cert_path)
    generate_self_signed(profile, cert_path, key_path)
    fingerprint = certificate_fingerprint(cert_path)
    TLS_LOGGER.info(
        "Certificate fingerprint (SHA256): %s",
        fingerprint,
        extra={
            "event": "certificate_generated",
            "certificate": cert_path,
            "fingerprint": fingerprint,
        },
    )
    return "generated"
