from typing import List

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID


class CsrRequest:
    """Asks for the key pair of an enrollment to be generated locally.

    :param san: host name the certificate is issued for, `localhost` is always added
    """

    def __init__(self, san: str, enrollment_id: str = None):
        self.san = san
        self.enrollment_id = enrollment_id


class CertificateRequest:
    """A PEM encoded CSR together with the PEM encoded private key that signed it"""

    def __init__(self, csr: str, key: bytes):
        self.csr = csr
        self.key = key


def generate_key() -> ec.EllipticCurvePrivateKey:
    """Generate a P-256 private key, the curve used by the Fabric BCCSP"""
    return ec.generate_private_key(ec.SECP256R1())


def serialize_key(key: ec.EllipticCurvePrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def generate_csr(enrollment_id: str, hosts: List[str] = None) -> CertificateRequest:
    """Create a key pair and a CSR whose subject is the enrollment id.
    `hosts` become DNS subject alternative names."""
    key = generate_key()
    builder = x509.CertificateSigningRequestBuilder().subject_name(
        x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, enrollment_id)])
    )
    if hosts:
        # Keep the order and drop duplicates
        names = list(dict.fromkeys(hosts))
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(h) for h in names]),
            critical=False,
        )
    csr = builder.sign(key, hashes.SHA256())
    return CertificateRequest(
        csr=csr.public_bytes(serialization.Encoding.PEM).decode(),
        key=serialize_key(key),
    )


def generate_csr_for_host(enrollment_id: str, csr_request: CsrRequest) -> CertificateRequest:
    """CSR for a node: SAN holds the requested host and localhost"""
    return generate_csr(enrollment_id, [csr_request.san, "localhost"])
