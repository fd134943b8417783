import os
import shutil
from typing import Union

import yaml

from bnc.config import log
from bnc.fabric.topology import Orderer, Organization, Peer

# Convention used for storing the msp folders and crypto material:
# - All the material is stored under the network config path
# - organizations/peerOrganizations/<org full name> holds the organization msp, tlsca,
#   users/Admin@<org full name>/msp and peers/<peer full name>/{msp,tls}
# - organizations/ordererOrganizations/<org full name>/orderers/<orderer full name> mirrors the peers
# - organizations/fabric-ca/<org full name> is the home of the CA container
MSP_FOLDERS = [
    "admincerts",
    "cacerts",
    "intermediatecerts",
    "crls",
    "keystore",
    "signcerts",
    "tlscacerts",
    "tlsintermediatecerts",
]

KEY_FILE_NAME = "priv_sk"
NODE_OU_FILE_NAME = "config.yaml"


def peer_org_path(root: str, org: Organization) -> str:
    return os.path.join(root, "organizations", "peerOrganizations", org.full_name)


def orderer_org_path(root: str, org: Organization) -> str:
    return os.path.join(root, "organizations", "ordererOrganizations", org.full_name)


def org_msp_path(root: str, org: Organization) -> str:
    return os.path.join(peer_org_path(root, org), "msp")


def tlsca_path(root: str, org: Organization) -> str:
    return os.path.join(peer_org_path(root, org), "tlsca")


def admin_msp_path(root: str, org: Organization) -> str:
    return os.path.join(peer_org_path(root, org), "users", org.admin_user_full, "msp")


def peer_path(root: str, org: Organization, peer: Peer) -> str:
    return os.path.join(peer_org_path(root, org), "peers", org.peer_full_name(peer))


def peer_msp_path(root: str, org: Organization, peer: Peer) -> str:
    return os.path.join(peer_path(root, org, peer), "msp")


def peer_tls_path(root: str, org: Organization, peer: Peer) -> str:
    return os.path.join(peer_path(root, org, peer), "tls")


def orderer_path(root: str, org: Organization, orderer: Orderer) -> str:
    return os.path.join(orderer_org_path(root, org), "orderers", org.orderer_service_name(orderer))


def orderer_msp_path(root: str, org: Organization, orderer: Orderer) -> str:
    return os.path.join(orderer_path(root, org, orderer), "msp")


def orderer_tls_path(root: str, org: Organization, orderer: Orderer) -> str:
    return os.path.join(orderer_path(root, org, orderer), "tls")


def ca_home_path(root: str, org: Organization) -> str:
    return os.path.join(root, "organizations", "fabric-ca", org.full_name)


def ca_tls_cert_path(root: str, org: Organization) -> str:
    """Certificate produced by the CA container at its first start"""
    return os.path.join(ca_home_path(root, org), "crypto", "ca-cert.pem")


def docker_compose_path(root: str) -> str:
    return os.path.join(root, "docker-compose")


def settings_path(root: str) -> str:
    return os.path.join(root, "settings")


def wallet_path(root: str, org: Organization) -> str:
    return os.path.join(root, "wallets", "organizations", org.full_name)


def artifacts_path(root: str) -> str:
    return os.path.join(root, "artifacts")


# File names of the material shared by every MSP of an organization
def ca_cert_file_name(org: Organization) -> str:
    return f"ca.{org.full_name}-cert.pem"


def tlsca_cert_file_name(org: Organization) -> str:
    return f"tlsca.{org.full_name}-cert.pem"


def admin_cert_file_name(org: Organization) -> str:
    return f"{org.admin_user_full}-cert.pem"


def create_msp_folders(msp_path: str):
    """Create the msp folder and its fixed set of subfolders"""
    for folder in MSP_FOLDERS:
        os.makedirs(os.path.join(msp_path, folder), exist_ok=True)


def node_ou_config(org: Organization) -> str:
    """NodeOU descriptor pointing the four roles at the organization root certificate"""
    cert = f"cacerts/{ca_cert_file_name(org)}"
    identifiers = {"Enable": True}
    for role in ["client", "peer", "admin", "orderer"]:
        identifiers[f"{role.title()}OUIdentifier"] = {
            "Certificate": cert,
            "OrganizationalUnitIdentifier": role,
        }
    return yaml.safe_dump({"NodeOUs": identifiers}, sort_keys=False)


def write_file(path: str, content: Union[str, bytes]):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    mode = "wb" if isinstance(content, bytes) else "w"
    with open(path, mode) as f:
        f.write(content)


def copy_file(src: str, dst: str):
    os.makedirs(os.path.dirname(dst), exist_ok=True)
    shutil.copy2(src, dst)


def write_node_ou_config(msp_path: str, org: Organization):
    write_file(os.path.join(msp_path, NODE_OU_FILE_NAME), node_ou_config(org))


def write_msp(msp_path: str, org: Organization, sign_cert_name: str, certificate: str, key: bytes,
              root_certificate: str, admin_certificate: str = None, tls_ca_cert: str = None):
    """Materialize an identity into an msp folder.

    :param sign_cert_name: common name of the identity, names the file in signcerts
    :param admin_certificate: organization admin certificate copied into admincerts
    :param tls_ca_cert: path of the TLS root certificate, copied into tlscacerts when TLS is enabled
    """
    create_msp_folders(msp_path)
    write_file(os.path.join(msp_path, "cacerts", ca_cert_file_name(org)), root_certificate)
    write_file(os.path.join(msp_path, "keystore", KEY_FILE_NAME), key)
    write_file(os.path.join(msp_path, "signcerts", f"{sign_cert_name}-cert.pem"), certificate)
    if admin_certificate is not None:
        write_file(os.path.join(msp_path, "admincerts", admin_cert_file_name(org)), admin_certificate)
    if tls_ca_cert is not None:
        copy_file(tls_ca_cert, os.path.join(msp_path, "tlscacerts", tlsca_cert_file_name(org)))
    write_node_ou_config(msp_path, org)
    log.debug(f"MSP: materialized {sign_cert_name} into {msp_path}")


def write_org_msp(root: str, org: Organization, root_certificate: str, admin_certificate: str,
                  tls_ca_cert: str = None):
    """The organization MSP holds only public material: root, admin and TLS root certificates"""
    msp_path = org_msp_path(root, org)
    create_msp_folders(msp_path)
    write_file(os.path.join(msp_path, "cacerts", ca_cert_file_name(org)), root_certificate)
    write_file(os.path.join(msp_path, "admincerts", admin_cert_file_name(org)), admin_certificate)
    if tls_ca_cert is not None:
        copy_file(tls_ca_cert, os.path.join(msp_path, "tlscacerts", tlsca_cert_file_name(org)))
    write_node_ou_config(msp_path, org)


def write_tls(tls_path: str, root_certificate: str, certificate: str, key: bytes):
    os.makedirs(tls_path, exist_ok=True)
    write_file(os.path.join(tls_path, "ca.crt"), root_certificate)
    write_file(os.path.join(tls_path, "server.crt"), certificate)
    write_file(os.path.join(tls_path, "server.key"), key)
