import os
from typing import Dict, List, Optional, Tuple

import yaml

from bnc.config import (BASE_DIR, DEFAULT_CA_REGISTRAR, DEFAULT_CA_REGISTRAR_PW,
                        DEFAULT_COMPOSE_NETWORK, DEFAULT_FABRIC_CA_VERSION,
                        DEFAULT_FABRIC_VERSION, log)
from bnc.fabric.exceptions import InvalidTopologyError

LOCAL_HOST = "127.0.0.1"


class Engine:
    """A container engine (docker daemon) able to host some of the nodes"""

    def __init__(self, name: str, host: str = LOCAL_HOST, port: int = None):
        self.name = name
        self.host = host
        self.port = port

    @property
    def url(self):
        """Docker daemon URL, None for the local daemon reached through its default socket"""
        if self.port is None:
            return None
        return f"tcp://{self.host}:{self.port}"

    def __repr__(self):
        return f"Engine({self.name!r}, host={self.host!r}, port={self.port!r})"


class NodeOptions:
    def __init__(self, ports: List[int] = None, engine_name: str = None):
        self.ports = list(ports) if ports else []
        self.engine_name = engine_name


class Peer:
    """Represents a peer node of an organization"""

    def __init__(self, name: str, options: NodeOptions = None):
        self.name = name
        self.options = options or NodeOptions()

    def __repr__(self):
        return f"Peer({self.name!r}, ports={self.options.ports})"


class Orderer:
    """Represents an orderer node of an organization"""

    def __init__(self, name: str, options: NodeOptions = None):
        self.name = name
        self.options = options or NodeOptions()

    def __repr__(self):
        return f"Orderer({self.name!r}, ports={self.options.ports})"


class CaOptions:
    def __init__(self, port: int = 7054, user: str = DEFAULT_CA_REGISTRAR,
                 password: str = DEFAULT_CA_REGISTRAR_PW, engine_name: str = None):
        self.port = port
        self.user = user
        self.password = password
        self.engine_name = engine_name


class CertificateAuthority:
    def __init__(self, name: str = None, options: CaOptions = None):
        # The name defaults to ca.<organization full name> once attached to an organization
        self.name = name
        self.options = options or CaOptions()
        # Path of the CA TLS root certificate, known once the CA container produced it
        self.tls_root_cert: Optional[str] = None


class Organization:
    def __init__(
        self,
            name: str,
            domain: str,
            ca: CertificateAuthority,
            peers: List[Peer] = None,
            orderers: List[Orderer] = None,
            msp_id: str = None,
            is_secure: bool = False,
            admin_user: str = "orgadmin",
            admin_password: str = "orgadminpw",
            engines: List[Engine] = None,
    ):
        if not name or not domain:
            raise InvalidTopologyError("An organization needs both a name and a domain")
        if ca is None:
            raise InvalidTopologyError(f"Organization {name} has no certificate authority")
        self.name = name
        self.domain = domain
        self.ca = ca
        self.peers = list(peers) if peers else []
        self.orderers = list(orderers) if orderers else []
        self.is_secure = is_secure
        self.admin_user = admin_user
        self.admin_password = admin_password
        self.engines = list(engines) if engines else []
        # Build MSP name from org name removing the dots, making it CamelCase and adding "MSP" at the end
        self.msp_id = msp_id or name.title().replace(".", "") + "MSP"
        if self.ca.name is None:
            self.ca.name = self.ca_name

        self._check_unique([p.name for p in self.peers], "peer")
        self._check_unique([o.name for o in self.orderers], "orderer")
        self._check_unique([e.name for e in self.engines], "engine")
        for node, engine_name in self._engine_refs():
            if engine_name is not None and self.get_engine(engine_name) is None:
                raise InvalidTopologyError(
                    f"{node} of organization {self.full_name} references engine "
                    f"{engine_name} which is not defined")

    def _check_unique(self, names, kind):
        seen = set()
        for n in names:
            if n in seen:
                raise InvalidTopologyError(f"Duplicate {kind} name {n} in organization {self.full_name}")
            seen.add(n)

    def _engine_refs(self):
        yield f"CA {self.ca.name}", self.ca.options.engine_name
        for p in self.peers:
            yield f"Peer {p.name}", p.options.engine_name
        for o in self.orderers:
            yield f"Orderer {o.name}", o.options.engine_name

    @property
    def full_name(self) -> str:
        return f"{self.name}.{self.domain}"

    @property
    def ca_name(self) -> str:
        return f"ca.{self.full_name}"

    @property
    def ca_cn(self) -> str:
        return self.ca_name

    @property
    def admin_user_full(self) -> str:
        return f"Admin@{self.full_name}"

    def peer_full_name(self, peer: Peer) -> str:
        return f"{peer.name}.{self.full_name}"

    def orderer_service_name(self, orderer: Orderer) -> str:
        return f"{orderer.name}.{self.full_name}"

    def get_engine(self, engine_name: str) -> Optional[Engine]:
        for e in self.engines:
            if e.name == engine_name:
                return e
        return None

    def engine_host(self, engine_name: str = None) -> str:
        """Returns the host of the engine running a node, the local host when unbound"""
        if engine_name is None:
            return LOCAL_HOST
        engine = self.get_engine(engine_name)
        if engine is None:
            raise InvalidTopologyError(f"Engine {engine_name} is not defined in {self.full_name}")
        return engine.host

    def get_peer_extra_hosts(self) -> List[Tuple[str, str]]:
        """(service name, host) of every peer of the organization"""
        return [(self.peer_full_name(p), self.engine_host(p.options.engine_name)) for p in self.peers]

    def get_orderer_extra_hosts(self) -> List[Tuple[str, str]]:
        """(service name, host) of every orderer of the organization"""
        return [(self.orderer_service_name(o), self.engine_host(o.options.engine_name)) for o in self.orderers]

    def __repr__(self):
        return f"Organization({self.full_name!r}, peers={len(self.peers)}, orderers={len(self.orderers)})"


class NetworkOptions:
    def __init__(
        self,
            network_config_path: str = BASE_DIR,
            compose_network: str = DEFAULT_COMPOSE_NETWORK,
            hyperledger_version: str = DEFAULT_FABRIC_VERSION,
            hyperledger_ca_version: str = DEFAULT_FABRIC_CA_VERSION,
    ):
        self.network_config_path = network_config_path
        self.compose_network = compose_network
        self.hyperledger_version = hyperledger_version
        self.hyperledger_ca_version = hyperledger_ca_version


class Network:
    """Root of the topology: global options and the ordered organizations"""

    def __init__(self, organizations: List[Organization], options: NetworkOptions = None, name: str = "bnc"):
        self.name = name
        self.options = options or NetworkOptions()
        self.organizations = list(organizations)
        if not self.organizations:
            raise InvalidTopologyError("A network needs at least one organization")

        # The full name keys every path and service of an organization
        full_names = [o.full_name for o in self.organizations]
        duplicates = sorted({n for n in full_names if full_names.count(n) > 1})
        if duplicates:
            raise InvalidTopologyError(f"Duplicate organizations: {', '.join(duplicates)}")

    def get_organization(self, name: str) -> Organization:
        """Looks an organization up by name or full name"""
        for org in self.organizations:
            if name in (org.name, org.full_name):
                return org
        raise InvalidTopologyError(f"Organization {name} is not part of the network")

    def extra_hosts(self, exclude: str = None) -> List[Tuple[str, str]]:
        """Every peer and orderer of the network as (service name, host), minus `exclude`.
        Containers get these as extra_hosts to resolve their siblings without DNS."""
        hosts = []
        for org in self.organizations:
            hosts += org.get_peer_extra_hosts()
        for org in self.organizations:
            hosts += org.get_orderer_extra_hosts()
        return [(name, host) for name, host in hosts if name != exclude]

    def __repr__(self):
        return f"Network({self.name!r}, organizations={self.organizations})"


def _node_options(cfg: Dict) -> NodeOptions:
    ports = cfg.get("ports", [])
    if not isinstance(ports, list) or not all(isinstance(p, int) for p in ports):
        raise InvalidTopologyError(f"Invalid port list {ports!r}")
    return NodeOptions(ports=ports, engine_name=cfg.get("engine"))


def _parse_organization(cfg: Dict) -> Organization:
    ca_cfg = cfg.get("ca", {}) or {}
    ca = CertificateAuthority(
        name=ca_cfg.get("name"),
        options=CaOptions(
            port=ca_cfg.get("port", 7054),
            user=ca_cfg.get("user", DEFAULT_CA_REGISTRAR),
            password=ca_cfg.get("password", DEFAULT_CA_REGISTRAR_PW),
            engine_name=ca_cfg.get("engine"),
        ),
    )
    admin = cfg.get("admin", {}) or {}
    return Organization(
        name=cfg["name"],
        domain=cfg["domain"],
        ca=ca,
        peers=[Peer(p["name"], _node_options(p)) for p in cfg.get("peers", []) or []],
        orderers=[Orderer(o["name"], _node_options(o)) for o in cfg.get("orderers", []) or []],
        msp_id=cfg.get("mspId"),
        is_secure=bool(cfg.get("tls", False)),
        admin_user=admin.get("name", "orgadmin"),
        admin_password=admin.get("password", "orgadminpw"),
        engines=[Engine(e["name"], e.get("host", LOCAL_HOST), e.get("port")) for e in cfg.get("engines", []) or []],
    )


def parse_network(cfg: Dict) -> Network:
    """ Build a Network from the dictionary form of a topology file. """
    try:
        net_cfg = cfg["network"]
        opts = net_cfg.get("options", {}) or {}
        options = NetworkOptions(
            network_config_path=os.path.expanduser(opts.get("networkConfigPath", BASE_DIR)),
            compose_network=opts.get("composeNetwork", DEFAULT_COMPOSE_NETWORK),
            hyperledger_version=str(opts.get("hyperledgerVersion", DEFAULT_FABRIC_VERSION)),
            hyperledger_ca_version=str(opts.get("hyperledgerCaVersion", DEFAULT_FABRIC_CA_VERSION)),
        )
        organizations = [_parse_organization(o) for o in net_cfg["organizations"]]
    except (KeyError, TypeError, AttributeError) as e:
        raise InvalidTopologyError(f"Malformed network definition: {e!r}") from e
    return Network(organizations, options, name=net_cfg.get("name", "bnc"))


def load_network(path: str) -> Network:
    """ Parse a topology YAML file into a Network. """
    with open(path, "r") as f:
        try:
            cfg = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise InvalidTopologyError(f"{path} is not valid YAML: {e}") from e
    if not isinstance(cfg, dict):
        raise InvalidTopologyError(f"{path} does not hold a network definition")
    network = parse_network(cfg)
    log.info("Loaded network %s with organizations %s", network.name,
             [o.full_name for o in network.organizations])
    return network


class PortGenerator:
    def __init__(self, start_port):
        self.start_port = start_port
        self.current_port = start_port

    def get_port(self):
        self.current_port += 1
        return self.current_port


def generate_topology(starting_port=7160, n_orgs=1, n_peer_per_org=2, n_orderers=1,
                      domain="example.com", is_secure=True, options: NetworkOptions = None) -> Network:
    """ Generate a topology with `n_orgs` organizations of `n_peer_per_org` peers each.
    The orderers belong to the first organization. """
    pg = PortGenerator(starting_port)
    organizations = []
    for i in range(1, n_orgs + 1):
        peers = [Peer(f"peer{j}", NodeOptions(ports=[pg.get_port()])) for j in range(n_peer_per_org)]
        orderers = []
        if i == 1:
            orderers = [Orderer(f"orderer{j}", NodeOptions(ports=[pg.get_port()])) for j in range(n_orderers)]
        organizations.append(
            Organization(
                name=f"org{i}",
                domain=domain,
                ca=CertificateAuthority(options=CaOptions(port=pg.get_port())),
                peers=peers,
                orderers=orderers,
                is_secure=is_secure,
            )
        )
    return Network(organizations, options)


def hosts_line(network: Network) -> str:
    """ The /etc/hosts line resolving every service of the network to the local host. """
    cn_list = []
    for org in network.organizations:
        cn_list.append(org.ca_name)
        cn_list += [org.peer_full_name(p) for p in org.peers]
        cn_list += [org.orderer_service_name(o) for o in org.orderers]
    return f"{LOCAL_HOST} " + " ".join(cn_list)
