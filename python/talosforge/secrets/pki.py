"""
talosforge/secrets/pki.py

Certificate authority and leaf certificate helpers built on `cryptography`.

The node OS CA uses Ed25519 (as the node OS itself does); Kubernetes, etcd and
the aggregator CA use ECDSA P-256.
"""

from __future__ import annotations

import datetime
from typing import List, Literal, Optional, Tuple, Union

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from talosforge.models.secrets import CertificateAndKey

KeyAlgorithm = Literal["ed25519", "ecdsa"]
PrivateKey = Union[ed25519.Ed25519PrivateKey, ec.EllipticCurvePrivateKey]

CA_VALIDITY = datetime.timedelta(days=3650)
CLIENT_VALIDITY = datetime.timedelta(days=365)


def generate_private_key(algorithm: KeyAlgorithm) -> PrivateKey:
    if algorithm == "ed25519":
        return ed25519.Ed25519PrivateKey.generate()
    return ec.generate_private_key(ec.SECP256R1())


def private_key_pem(key: PrivateKey) -> str:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


def _signing_hash(key: PrivateKey) -> Optional[hashes.HashAlgorithm]:
    # Ed25519 signs without a separate digest.
    return None if isinstance(key, ed25519.Ed25519PrivateKey) else hashes.SHA256()


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def generate_ca(
    common_name: str, algorithm: KeyAlgorithm, organization: Optional[str] = None
) -> CertificateAndKey:
    """
    Create a self-signed CA certificate and key.
    """
    key = generate_private_key(algorithm)
    attributes = [x509.NameAttribute(NameOID.COMMON_NAME, common_name)]
    if organization:
        attributes.append(x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization))
    name = x509.Name(attributes)
    now = _now()
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=5))
        .not_valid_after(now + CA_VALIDITY)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .sign(key, _signing_hash(key))
    )
    return CertificateAndKey(
        crt=cert.public_bytes(serialization.Encoding.PEM).decode(),
        key=private_key_pem(key),
    )


def load_ca(ca: CertificateAndKey) -> Tuple[x509.Certificate, PrivateKey]:
    """
    Parse a CA pair.

    Raises:
        ValueError: If either half does not parse or the key type is unsupported.
    """
    cert = x509.load_pem_x509_certificate(ca.crt.encode())
    key = serialization.load_pem_private_key(ca.key.encode(), password=None)
    if not isinstance(key, (ed25519.Ed25519PrivateKey, ec.EllipticCurvePrivateKey)):
        raise ValueError(f"unsupported CA key type {type(key).__name__}")
    return cert, key


def issue_client_certificate(
    ca: CertificateAndKey,
    common_name: str,
    organizations: List[str],
    algorithm: KeyAlgorithm,
    validity: datetime.timedelta = CLIENT_VALIDITY,
) -> CertificateAndKey:
    """
    Issue a client-auth leaf certificate signed by `ca`.

    Args:
        ca: Signing CA.
        common_name: Subject CN (the user name for Kubernetes).
        organizations: Subject O entries (groups for Kubernetes, roles for the node OS).
        algorithm: Key algorithm of the new leaf key.
        validity: Lifetime of the certificate.
    """
    ca_cert, ca_key = load_ca(ca)
    key = generate_private_key(algorithm)
    subject = x509.Name(
        [x509.NameAttribute(NameOID.ORGANIZATION_NAME, org) for org in organizations]
        + [x509.NameAttribute(NameOID.COMMON_NAME, common_name)]
    )
    now = _now()
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(ca_cert.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=5))
        .not_valid_after(now + validity)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.CLIENT_AUTH]), critical=False
        )
        .sign(ca_key, _signing_hash(ca_key))
    )
    return CertificateAndKey(
        crt=cert.public_bytes(serialization.Encoding.PEM).decode(),
        key=private_key_pem(key),
    )


def is_signed_by(cert_pem: str, ca: CertificateAndKey) -> bool:
    """
    True if the certificate's issuer is the CA subject and the CA public key
    verifies its signature.
    """
    cert = x509.load_pem_x509_certificate(cert_pem.encode())
    ca_cert = x509.load_pem_x509_certificate(ca.crt.encode())
    if cert.issuer != ca_cert.subject:
        return False
    try:
        cert.verify_directly_issued_by(ca_cert)
    except (InvalidSignature, ValueError, TypeError):
        return False
    return True
