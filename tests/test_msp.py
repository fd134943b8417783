import os

import yaml

from bnc.fabric import msp


def test_layout(network, org, tmp_path):
    root = str(tmp_path)
    base = os.path.join(root, "organizations", "peerOrganizations", "org1.example.com")
    assert msp.admin_msp_path(root, org) == os.path.join(base, "users", "Admin@org1.example.com", "msp")
    assert msp.peer_tls_path(root, org, org.peers[0]) == os.path.join(base, "peers", "peer0.org1.example.com", "tls")
    assert msp.orderer_msp_path(root, org, org.orderers[0]) == os.path.join(
        root, "organizations", "ordererOrganizations", "org1.example.com",
        "orderers", "orderer0.org1.example.com", "msp")
    assert msp.ca_tls_cert_path(root, org) == os.path.join(
        root, "organizations", "fabric-ca", "org1.example.com", "crypto", "ca-cert.pem")


def test_node_ou_config(org):
    config = yaml.safe_load(msp.node_ou_config(org))["NodeOUs"]
    assert config["Enable"] is True
    for role in ["Client", "Peer", "Admin", "Orderer"]:
        identifier = config[f"{role}OUIdentifier"]
        assert identifier["Certificate"] == "cacerts/ca.org1.example.com-cert.pem"
        assert identifier["OrganizationalUnitIdentifier"] == role.lower()


def test_write_msp(org, tmp_path):
    tls_ca = tmp_path / "tls-ca.pem"
    tls_ca.write_text("TLS ROOT")
    path = str(tmp_path / "msp")

    msp.write_msp(path, org, "peer0.org1.example.com", "CERT", b"KEY", "ROOT",
                  admin_certificate="ADMIN", tls_ca_cert=str(tls_ca))

    assert sorted(os.listdir(path)) == sorted(msp.MSP_FOLDERS + [msp.NODE_OU_FILE_NAME])
    with open(os.path.join(path, "keystore", "priv_sk"), "rb") as f:
        assert f.read() == b"KEY"
    with open(os.path.join(path, "signcerts", "peer0.org1.example.com-cert.pem")) as f:
        assert f.read() == "CERT"
    with open(os.path.join(path, "cacerts", "ca.org1.example.com-cert.pem")) as f:
        assert f.read() == "ROOT"
    with open(os.path.join(path, "admincerts", "Admin@org1.example.com-cert.pem")) as f:
        assert f.read() == "ADMIN"
    with open(os.path.join(path, "tlscacerts", "tlsca.org1.example.com-cert.pem")) as f:
        assert f.read() == "TLS ROOT"


def test_write_msp_creates_folders_before_files(org, tmp_path, monkeypatch):
    path = str(tmp_path / "msp")
    written = []
    original = msp.write_file

    def spy(file_path, content):
        # every fixed subfolder must already be there
        assert all(os.path.isdir(os.path.join(path, f)) for f in msp.MSP_FOLDERS)
        written.append(file_path)
        original(file_path, content)

    monkeypatch.setattr(msp, "write_file", spy)
    msp.write_msp(path, org, "user1", "CERT", b"KEY", "ROOT")
    assert written


def test_write_org_msp_has_no_private_key(org, tmp_path):
    root = str(tmp_path)
    msp.write_org_msp(root, org, "ROOT", "ADMIN")
    org_msp = msp.org_msp_path(root, org)
    assert os.listdir(os.path.join(org_msp, "keystore")) == []
    assert os.path.exists(os.path.join(org_msp, "cacerts", "ca.org1.example.com-cert.pem"))
    assert os.path.exists(os.path.join(org_msp, msp.NODE_OU_FILE_NAME))


def test_write_tls(tmp_path):
    path = str(tmp_path / "tls")
    msp.write_tls(path, "ROOT", "CERT", b"KEY")
    assert sorted(os.listdir(path)) == ["ca.crt", "server.crt", "server.key"]
