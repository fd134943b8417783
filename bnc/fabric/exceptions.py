from typing import Dict


class ProvisioningError(Exception):
    """Base class of every failure raised while provisioning a network"""


class InvalidTopologyError(ProvisioningError):
    """The network definition is malformed"""


class IdentityNotFound(ProvisioningError):
    """An identity required by the operation is not in the wallet"""


class AdminRequired(ProvisioningError):
    """The CA registrar has not been enrolled into the wallet yet"""


class AlreadyExists(ProvisioningError):
    """The identity is already stored in the wallet"""


class AlreadyEnrolledException(ProvisioningError):
    """The identity was enrolled by a previous run, its one-time secret is gone.
    Callers reuse the existing material instead of issuing it again."""


class EnrollmentFailed(ProvisioningError):
    """The certificate authority refused or failed a register/enroll call"""


class ContainerRuntimeError(ProvisioningError):
    """The container engine failed to create, start or stop a container"""


class ContainerNotReady(ContainerRuntimeError):
    """The container did not show up before the readiness poll gave up"""


class OwnershipError(ProvisioningError):
    """The generated crypto tree could not be handed back to the current user"""


class LedgerError(ProvisioningError):
    """A ledger tool (peer, configtxgen) exited with an error"""


class ChannelNotDefined(ProvisioningError):
    """The channel is not declared in the organization's connection profile"""


class ChannelCreationFailed(ProvisioningError):
    """The orderer did not accept the channel creation transaction"""


class ChannelJoinFailed(ProvisioningError):
    """One or more peers failed to join the channel"""

    def __init__(self, message: str, failures: Dict[str, str] = None):
        super().__init__(message)
        # peer name -> reason
        self.failures = failures or {}
