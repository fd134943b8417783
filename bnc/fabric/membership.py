from typing import Dict, Optional

from bnc.config import DEFAULT_CA_REGISTRAR, DEFAULT_CA_REGISTRAR_PW, log
from bnc.fabric.ca_client import (CaClient, Enrollment, EnrollmentRequest,
                                  EnrollSecretResponse, RegisterRequest)
from bnc.fabric.csr import CsrRequest, generate_csr_for_host
from bnc.fabric.exceptions import (AdminRequired, AlreadyExists,
                                   EnrollmentFailed, IdentityNotFound)
from bnc.fabric.wallet import Identity, IdentityState, Wallet


class Membership:
    """Registers and enrolls the identities of one organization against its CA.

    The registrar is the bootstrap account of the CA: it is enrolled first and
    authenticates every later registration. The wallet holding the identities
    is given to each call.
    """

    def __init__(self, ca_client: CaClient, registrar_name: str = DEFAULT_CA_REGISTRAR,
                 registrar_secret: str = DEFAULT_CA_REGISTRAR_PW):
        self.ca_client = ca_client
        self.registrar_name = registrar_name
        self.registrar_secret = registrar_secret

    async def _enroll(self, request: EnrollmentRequest) -> Enrollment:
        try:
            return await self.ca_client.enroll(request)
        except Exception as e:
            raise EnrollmentFailed(f"Enrollment of {request.enrollment_id} failed: {e}") from e

    async def enroll_admin(self, wallet: Wallet, msp_id: str) -> Optional[Enrollment]:
        """Enroll the CA registrar. Returns None, without contacting the CA,
        when the registrar is already in the wallet."""
        if wallet.exists(self.registrar_name):
            log.debug(f"Membership: an identity for the registrar {self.registrar_name} already exists in the wallet")
            return None

        enrollment = await self._enroll(EnrollmentRequest(self.registrar_name, self.registrar_secret))
        wallet.put(Identity(self.registrar_name, msp_id, enrollment.certificate, enrollment.key))
        log.info(f"Membership: enrolled registrar {self.registrar_name} and imported it into the wallet")
        return enrollment

    async def enroll_tls(self, wallet: Wallet, request: EnrollmentRequest, csr: CsrRequest = None) -> Enrollment:
        """Enroll an existing identity again, typically with the `tls` profile.
        With a CsrRequest the key pair is generated here and never leaves the process."""
        if not wallet.exists(request.enrollment_id):
            raise IdentityNotFound(f"{request.enrollment_id} is not enrolled into the wallet")
        if not wallet.exists(self.registrar_name):
            raise IdentityNotFound(f"The registrar {self.registrar_name} is not enrolled into the wallet")

        generated = None
        if csr is not None:
            generated = generate_csr_for_host(request.enrollment_id, csr)
            request = EnrollmentRequest(
                enrollment_id=request.enrollment_id,
                enrollment_secret=request.enrollment_secret,
                profile=request.profile,
                csr=generated.csr,
            )

        enrollment = await self._enroll(request)
        if generated is not None:
            enrollment.key = generated.key
        log.debug(f"Membership: {request.profile or 'default'} profile enrolled for {request.enrollment_id}")
        return enrollment

    async def add_user(self, wallet: Wallet, params: RegisterRequest, msp_id: str,
                       csr: CsrRequest = None, states: Dict[str, IdentityState] = None) -> EnrollSecretResponse:
        """Register then enroll a new identity and store it into the wallet.
        The one-time secret is returned along with the enrollment, it is needed
        for the TLS enrollment of the same identity.

        When given, `states` records how far the identity got: REGISTERED once
        the CA accepted it, ENROLLED once it is in the wallet."""
        if states is None:
            states = {}
        if wallet.exists(params.enrollment_id):
            raise AlreadyExists(f"An identity for {params.enrollment_id} already exists in the wallet")
        registrar = wallet.get(self.registrar_name)
        if registrar is None:
            raise AdminRequired(f"The registrar {self.registrar_name} must be enrolled before adding {params.enrollment_id}")

        try:
            secret = await self.ca_client.register(params, registrar)
        except Exception as e:
            raise EnrollmentFailed(f"Registration of {params.enrollment_id} failed: {e}") from e
        states[params.enrollment_id] = IdentityState.REGISTERED

        generated = generate_csr_for_host(params.enrollment_id, csr) if csr is not None else None
        enrollment = await self._enroll(EnrollmentRequest(
            enrollment_id=params.enrollment_id,
            enrollment_secret=secret,
            csr=generated.csr if generated else None,
        ))
        if generated is not None:
            enrollment.key = generated.key

        wallet.put(Identity(params.enrollment_id, msp_id, enrollment.certificate, enrollment.key))
        states[params.enrollment_id] = IdentityState.ENROLLED
        log.info(f"Membership: added {params.role} {params.enrollment_id} and imported it into the wallet")
        return EnrollSecretResponse(enrollment, secret)
