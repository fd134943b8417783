import base64
import json
from typing import Dict, List, Optional

import httpx
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature, encode_dss_signature)

from bnc.config import log
from bnc.fabric.csr import generate_csr
from bnc.fabric.wallet import Identity

# Orders of the curves accepted by the Fabric BCCSP, needed to emit low-S signatures
_CURVE_ORDERS = {
    "secp256r1": 0xFFFFFFFF00000000FFFFFFFFFFFFFFFFBCE6FAADA7179E84F3B9CAC2FC632551,
    "secp384r1": 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFC7634D81F4372DDF581A0DB248B0A77AECEC196ACCC52973,
}


class CaRequestError(Exception):
    """The certificate authority answered with an error or could not be reached"""


class EnrollmentRequest:
    def __init__(self, enrollment_id: str, enrollment_secret: str, profile: str = None,
                 csr: str = None, hosts: List[str] = None):
        self.enrollment_id = enrollment_id
        self.enrollment_secret = enrollment_secret
        self.profile = profile
        self.csr = csr
        self.hosts = hosts


class RegisterRequest:
    def __init__(self, enrollment_id: str, role: str = "client", affiliation: str = "",
                 max_enrollments: int = -1, enrollment_secret: str = None, attrs: List[Dict] = None):
        self.enrollment_id = enrollment_id
        self.role = role
        self.affiliation = affiliation
        self.max_enrollments = max_enrollments
        self.enrollment_secret = enrollment_secret
        self.attrs = attrs or []


class Enrollment:
    """Material returned by an enrollment: the signed certificate, its private key
    and the root certificate of the issuing CA (all PEM)"""

    def __init__(self, certificate: str, key: Optional[bytes], root_certificate: str = None):
        self.certificate = certificate
        self.key = key
        self.root_certificate = root_certificate


class EnrollSecretResponse:
    """Enrollment of a freshly registered identity with its one-time secret"""

    def __init__(self, enrollment: Enrollment, secret: str = None):
        self.enrollment = enrollment
        self.secret = secret


class CaClient:
    """Certificate authority capability used by the identity pipeline"""

    async def register(self, request: RegisterRequest, registrar: Identity) -> str:
        raise NotImplementedError

    async def enroll(self, request: EnrollmentRequest) -> Enrollment:
        raise NotImplementedError


class FabricCaClient(CaClient):
    """CA client speaking the fabric-ca-server REST API (v1)"""

    def __init__(self, url: str, ca_name: str = None, tls_cert_path: str = None, timeout: float = 30.0,
                 transport: httpx.AsyncBaseTransport = None):
        self.url = url.rstrip("/")
        self.transport = transport
        self.ca_name = ca_name
        # Certificates of the CA are self-signed, skip verification when no root is given
        self.verify = tls_cert_path if tls_cert_path else False
        self.timeout = timeout

    async def _post(self, endpoint: str, body: Dict, auth=None, headers: Dict = None) -> Dict:
        uri = f"/api/v1/{endpoint}"
        payload = json.dumps(body).encode()
        req_headers = {"Content-Type": "application/json"}
        if headers:
            req_headers.update(headers)
        try:
            async with httpx.AsyncClient(verify=self.verify, timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.url + uri, content=payload, auth=auth, headers=req_headers)
        except httpx.HTTPError as e:
            raise CaRequestError(f"Request to {self.url}{uri} failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            raise CaRequestError(f"{self.url}{uri} answered {response.status_code}: {response.text}")
        if response.status_code >= 400 or not data.get("success", False):
            errors = "; ".join(f"[{e.get('code')}] {e.get('message')}" for e in data.get("errors", []))
            raise CaRequestError(f"{self.url}{uri} answered {response.status_code}: {errors or response.text}")
        return data["result"]

    async def enroll(self, request: EnrollmentRequest) -> Enrollment:
        """Enroll an identity. The key pair is generated here unless the request carries a CSR."""
        key = None
        csr = request.csr
        if csr is None:
            generated = generate_csr(request.enrollment_id, request.hosts)
            csr, key = generated.csr, generated.key

        body = {"certificate_request": csr}
        if self.ca_name:
            body["caname"] = self.ca_name
        if request.profile:
            body["profile"] = request.profile
        if request.hosts:
            body["hosts"] = request.hosts

        log.debug(f"FabricCaClient: enrolling {request.enrollment_id} against {self.url} (profile {request.profile})")
        result = await self._post("enroll", body, auth=(request.enrollment_id, request.enrollment_secret))

        return Enrollment(
            certificate=base64.b64decode(result["Cert"]).decode(),
            key=key,
            root_certificate=base64.b64decode(result["ServerInfo"]["CAChain"]).decode(),
        )

    async def register(self, request: RegisterRequest, registrar: Identity) -> str:
        """Register an identity on behalf of `registrar` and return its enrollment secret"""
        body = {
            "id": request.enrollment_id,
            "type": request.role,
            "affiliation": request.affiliation,
            "max_enrollments": request.max_enrollments,
            "attrs": request.attrs,
        }
        if request.enrollment_secret:
            body["secret"] = request.enrollment_secret
        if self.ca_name:
            body["caname"] = self.ca_name

        token = auth_token(registrar, "POST", "/api/v1/register", json.dumps(body).encode())
        log.debug(f"FabricCaClient: {registrar.enrollment_id} registers {request.enrollment_id} as {request.role}")
        result = await self._post("register", body, headers={"Authorization": token})
        return result["secret"]


def auth_token(identity: Identity, method: str, uri: str, body: bytes) -> str:
    """Token authenticating a request with the identity's certificate and key:
    b64(cert) "." b64(signature of method.b64(uri).b64(body).b64(cert))"""
    b64cert = base64.b64encode(identity.certificate.encode()).decode()
    b64body = base64.b64encode(body).decode()
    b64uri = base64.b64encode(uri.encode()).decode()
    payload = f"{method}.{b64uri}.{b64body}.{b64cert}".encode()

    key = serialization.load_pem_private_key(identity.private_key, password=None)
    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise CaRequestError(f"Identity {identity.enrollment_id} does not hold an ECDSA key")
    r, s = decode_dss_signature(key.sign(payload, ec.ECDSA(hashes.SHA256())))
    # The CA rejects signatures whose S is in the upper half of the curve order
    order = _CURVE_ORDERS.get(key.curve.name)
    if order is not None and s > order // 2:
        s = order - s
    signature = encode_dss_signature(r, s)
    return f"{b64cert}.{base64.b64encode(signature).decode()}"
