import json
import os
from enum import Enum, auto
from typing import Dict, List, Optional

from bnc.config import log


class IdentityState(Enum):
    """Progress of an identity through the provisioning pipeline"""
    UNREGISTERED = auto()
    REGISTERED = auto()
    ENROLLED = auto()
    MATERIALIZED = auto()


class Identity:
    """An X.509 identity as stored in a wallet"""

    def __init__(self, enrollment_id: str, msp_id: str, certificate: str, private_key: bytes):
        self.enrollment_id = enrollment_id
        self.msp_id = msp_id
        self.certificate = certificate
        self.private_key = private_key

    def to_dict(self) -> Dict:
        # Same layout as the wallet files of the fabric-network SDKs
        return {
            "credentials": {
                "certificate": self.certificate,
                "privateKey": self.private_key.decode() if isinstance(self.private_key, bytes) else self.private_key,
            },
            "mspId": self.msp_id,
            "type": "X.509",
            "version": 1,
        }

    @classmethod
    def from_dict(cls, enrollment_id: str, data: Dict) -> "Identity":
        return cls(
            enrollment_id=enrollment_id,
            msp_id=data["mspId"],
            certificate=data["credentials"]["certificate"],
            private_key=data["credentials"]["privateKey"].encode(),
        )

    def __repr__(self):
        return f"Identity({self.enrollment_id!r}, msp_id={self.msp_id!r})"


class Wallet:
    """Identity store. Subclasses decide where the identities live."""

    def get(self, enrollment_id: str) -> Optional[Identity]:
        raise NotImplementedError

    def put(self, identity: Identity):
        raise NotImplementedError

    def remove(self, enrollment_id: str):
        raise NotImplementedError

    def list(self) -> List[str]:
        raise NotImplementedError

    def exists(self, enrollment_id: str) -> bool:
        return self.get(enrollment_id) is not None


class InMemoryWallet(Wallet):
    def __init__(self, identities: List[Identity] = None):
        self._identities: Dict[str, Identity] = {}
        for i in identities or []:
            self.put(i)

    def get(self, enrollment_id):
        return self._identities.get(enrollment_id)

    def put(self, identity):
        self._identities[identity.enrollment_id] = identity

    def remove(self, enrollment_id):
        self._identities.pop(enrollment_id, None)

    def list(self):
        return sorted(self._identities)


class FileSystemWallet(Wallet):
    """Wallet storing one `<enrollment id>.id` JSON file per identity"""

    SUFFIX = ".id"

    def __init__(self, path: str):
        self.path = path
        os.makedirs(self.path, exist_ok=True)

    def _file(self, enrollment_id):
        return os.path.join(self.path, enrollment_id + self.SUFFIX)

    def get(self, enrollment_id):
        path = self._file(enrollment_id)
        if not os.path.exists(path):
            return None
        with open(path, "r") as f:
            return Identity.from_dict(enrollment_id, json.load(f))

    def put(self, identity):
        with open(self._file(identity.enrollment_id), "w") as f:
            json.dump(identity.to_dict(), f, indent=4)
        log.debug(f"Wallet: stored identity {identity.enrollment_id} into {self.path}")

    def remove(self, enrollment_id):
        path = self._file(enrollment_id)
        if os.path.exists(path):
            os.remove(path)

    def list(self):
        return sorted(f[:-len(self.SUFFIX)] for f in os.listdir(self.path) if f.endswith(self.SUFFIX))
