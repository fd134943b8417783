import os
import shutil
import logging


CURR_DIR = os.path.dirname(os.path.abspath(__file__))
BASE_DIR = os.environ.get(
    "BNC_BASE_DIR", os.path.join(os.path.expanduser("~"), "hyperledger-fabric-network"))

# Please use versions of the binaries that match the Fabric containers
FABRIC_BIN_DIR = os.environ.get("BNC_FABRIC_BIN_DIR", os.path.join(CURR_DIR, "../fabric/bin"))
FABRIC_TOOLS_PEER = os.path.join(FABRIC_BIN_DIR, "peer")
FABRIC_TOOLS_CONFIGTXGEN = os.path.join(FABRIC_BIN_DIR, "configtxgen")
# The peer CLI needs a core.yaml, the folder holding it is exported as FABRIC_CFG_PATH
FABRIC_CFG_PATH = os.environ.get("BNC_FABRIC_CFG_PATH", os.path.join(CURR_DIR, "../fabric/config"))

FABRIC_CA_IMAGE = os.environ.get("BNC_FABRIC_CA_IMAGE", "hyperledger/fabric-ca")
FABRIC_PEER_IMAGE = os.environ.get("BNC_FABRIC_PEER_IMAGE", "hyperledger/fabric-peer")
FABRIC_ORDERER_IMAGE = os.environ.get("BNC_FABRIC_ORDERER_IMAGE", "hyperledger/fabric-orderer")
DEFAULT_FABRIC_VERSION = os.environ.get("BNC_FABRIC_VERSION", "2.2")
DEFAULT_FABRIC_CA_VERSION = os.environ.get("BNC_FABRIC_CA_VERSION", "1.4")

DEFAULT_COMPOSE_NETWORK = "bnc_network"

# Bootstrap identity of every organization CA
DEFAULT_CA_REGISTRAR = "admin"
DEFAULT_CA_REGISTRAR_PW = "adminpw"
MAX_ENROLLMENT_COUNT = -1

# Delays, in seconds
DOCKER_CA_DELAY = float(os.environ.get("BNC_DOCKER_CA_DELAY", "3"))
CHANNEL_JOIN_DELAY = float(os.environ.get("BNC_CHANNEL_JOIN_DELAY", "10"))

GENESIS_FILE_NAME = "genesis.block"
SYSTEM_CHANNEL_NAME = "system-channel"

# Setup logging
logging.basicConfig(level=os.environ.get("BNC_LOG_LEVEL", "INFO").upper())
log = logging.getLogger(__name__)


def export_env(key, value):
    """ Export environment variables. """
    os.environ[key] = value


def set_verbose(verbose: bool = True):
    """ Switch the package logger to DEBUG. """
    log.setLevel(logging.DEBUG if verbose else logging.INFO)


def cleanup(base_dir=BASE_DIR):
    """ Remove the generated network directory. """
    if os.path.exists(base_dir):
        shutil.rmtree(base_dir)
        log.info("Removed directory: {}".format(base_dir))
    else:
        log.debug("Directory does not exist: {}".format(base_dir))
