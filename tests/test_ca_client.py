import base64
import json

import httpx
import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature
from cryptography.hazmat.primitives.serialization import load_pem_private_key

from bnc.fabric.ca_client import (CaRequestError, EnrollmentRequest, FabricCaClient,
                                  RegisterRequest, auth_token)
from bnc.fabric.csr import generate_key, serialize_key
from bnc.fabric.wallet import Identity

P256_ORDER = 0xFFFFFFFF00000000FFFFFFFFFFFFFFFFBCE6FAADA7179E84F3B9CAC2FC632551


def _registrar():
    return Identity("admin", "Org1MSP", "-----BEGIN CERTIFICATE-----\nADMIN\n", serialize_key(generate_key()))


def _b64(value: str) -> str:
    return base64.b64encode(value.encode()).decode()


def _client(handler, **kwargs):
    return FabricCaClient("http://localhost:7054/", ca_name="ca.org1.example.com",
                          transport=httpx.MockTransport(handler), **kwargs)


def test_auth_token_is_verifiable_and_low_s():
    registrar = _registrar()
    body = b'{"id": "user1"}'
    public_key = load_pem_private_key(registrar.private_key, password=None).public_key()

    for _ in range(20):
        token = auth_token(registrar, "POST", "/api/v1/register", body)
        b64cert, b64sig = token.split(".")
        assert base64.b64decode(b64cert).decode() == registrar.certificate

        signature = base64.b64decode(b64sig)
        payload = ".".join([
            "POST", _b64("/api/v1/register"), base64.b64encode(body).decode(), b64cert]).encode()
        public_key.verify(signature, payload, ec.ECDSA(hashes.SHA256()))
        _, s = decode_dss_signature(signature)
        assert s <= P256_ORDER // 2


def test_auth_token_rejects_non_ec_keys():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    identity = Identity("admin", "Org1MSP", "CERT", serialize_key(key))
    with pytest.raises(CaRequestError):
        auth_token(identity, "POST", "/api/v1/register", b"{}")


@pytest.mark.asyncio
async def test_enroll_generates_key_and_decodes_material():
    seen = {}

    def handler(request: httpx.Request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "success": True,
            "result": {"Cert": _b64("SIGNED CERT"), "ServerInfo": {"CAChain": _b64("ROOT")}},
            "errors": [],
        })

    enrollment = await _client(handler).enroll(EnrollmentRequest("user1", "user1pw", profile="tls"))

    assert seen["url"] == "http://localhost:7054/api/v1/enroll"
    assert seen["auth"] == "Basic " + _b64("user1:user1pw")
    assert seen["body"]["caname"] == "ca.org1.example.com"
    assert seen["body"]["profile"] == "tls"
    assert "BEGIN CERTIFICATE REQUEST" in seen["body"]["certificate_request"]
    assert enrollment.certificate == "SIGNED CERT"
    assert enrollment.root_certificate == "ROOT"
    assert b"PRIVATE KEY" in enrollment.key


@pytest.mark.asyncio
async def test_enroll_with_csr_returns_no_key():
    def handler(request):
        assert json.loads(request.content)["certificate_request"] == "MY CSR"
        return httpx.Response(200, json={
            "success": True,
            "result": {"Cert": _b64("C"), "ServerInfo": {"CAChain": _b64("R")}},
        })

    enrollment = await _client(handler).enroll(EnrollmentRequest("user1", "pw", csr="MY CSR"))
    assert enrollment.key is None


@pytest.mark.asyncio
async def test_register_signs_the_request():
    registrar = _registrar()
    seen = {}

    def handler(request):
        seen["token"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"success": True, "result": {"secret": "s3cret"}})

    secret = await _client(handler).register(
        RegisterRequest("peer0.org1.example.com", role="peer", enrollment_secret="peer0pw"), registrar)

    assert secret == "s3cret"
    assert seen["token"].split(".")[0] == _b64(registrar.certificate)
    assert seen["body"]["id"] == "peer0.org1.example.com"
    assert seen["body"]["type"] == "peer"
    assert seen["body"]["secret"] == "peer0pw"
    assert seen["body"]["max_enrollments"] == -1


@pytest.mark.asyncio
async def test_ca_errors_are_raised():
    def handler(request):
        return httpx.Response(401, json={
            "success": False, "result": None,
            "errors": [{"code": 20, "message": "Authentication failure"}],
        })

    with pytest.raises(CaRequestError, match="Authentication failure"):
        await _client(handler).enroll(EnrollmentRequest("user1", "wrong"))


@pytest.mark.asyncio
async def test_non_json_answer_is_an_error():
    with pytest.raises(CaRequestError, match="502"):
        await _client(lambda request: httpx.Response(502, text="Bad gateway")).enroll(
            EnrollmentRequest("user1", "pw"))


@pytest.mark.asyncio
async def test_unreachable_ca_is_an_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(CaRequestError, match="connection refused"):
        await _client(handler).enroll(EnrollmentRequest("user1", "pw"))
