"""Shared fixtures for VC portal tests."""

import datetime
import json
import uuid
from urllib.parse import urlencode

import pytest

from jwt_vc import setup as setup_jwt_vc
from vc_portal.cache import ExpireAfterWriteRegistry
from vc_portal.config import Config, IssuerConfiguration, WalletConfiguration
from vc_portal.context import KeyStore, UserContextLoader, UserInfo
from vc_portal.cred_processor import CredProcessors
from vc_portal.did_utils import DIDResolver
from vc_portal.errors import AuthorizationRejected, CredentialRejected, VcPortalError
from vc_portal.issuer import IssuerManager, OAuthError
from vc_portal.jwt import JwtService
from vc_portal.models.issuance import (
    AUTHORIZATION_CODE_GRANT_TYPE,
    PRE_AUTHORIZED_CODE_GRANT_TYPE,
    TokenResponse,
)
from vc_portal.policies import PolicyRegistry


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    yield FakeClock()


@pytest.fixture
def config():
    yield Config(
        verifier_api_url="http://verifier.test/verifier-api",
        verifier_ui_url="http://verifier-ui.test",
        wallet_api_url="http://wallet.test/api/wallet",
        wallet_ui_url="http://wallet-ui.test",
        issuer_api_url="http://issuer.test/issuer-api",
        issuer_ui_url="http://issuer-ui.test",
        jwt_secret="test-secret-0123456789abcdef0123456789",
        users={"alice": "secret"},
        wallets={"walt.id": WalletConfiguration("walt.id", "http://wallet-ui.test")},
        issuers={
            "walt.id": IssuerConfiguration(
                "walt.id", "http://issuer.test/issuer-api/oidc"
            )
        },
    )


@pytest.fixture
def resolver():
    yield DIDResolver()


@pytest.fixture
def processors(resolver):
    processors = CredProcessors()
    setup_jwt_vc(processors, resolver)
    yield processors


@pytest.fixture
def jwt_service(resolver, config):
    yield JwtService(resolver, config.jwt_secret)


@pytest.fixture
def policy_registry(processors):
    yield PolicyRegistry(processors)


@pytest.fixture
def contexts():
    yield UserContextLoader()


@pytest.fixture
def user():
    yield UserInfo("alice")


@pytest.fixture
def holder_context(contexts, user):
    yield contexts.load(user)


@pytest.fixture
def holder_did(holder_context):
    yield holder_context.keys.create_did()


@pytest.fixture
def issuer_keys():
    keys = KeyStore()
    keys.create_did()
    yield keys


@pytest.fixture
def issuer_did(issuer_keys):
    yield issuer_keys.list_dids()[0]


@pytest.fixture
def issue_credential(processors, issuer_keys, issuer_did):
    """Return a coroutine function signing a credential for a holder."""

    async def _issue(credential_type: str, holder: str, **claims):
        document = {
            "@context": ["https://www.w3.org/2018/credentials/v1"],
            "id": f"urn:uuid:{uuid.uuid4()}",
            "type": ["VerifiableCredential", credential_type],
            "issuer": issuer_did,
            "issuanceDate": "2024-01-01T00:00:00Z",
            "credentialSubject": {"id": holder, **claims},
        }
        return await processors.issuer_for_format("jwt_vc").issue(
            document,
            issuer_keys.signing_key(issuer_did),
            issuer_keys.kid(issuer_did),
        )

    yield _issue


@pytest.fixture
def present(processors, holder_context, holder_did):
    """Return a coroutine function wrapping credentials into a signed VP."""

    async def _present(credentials, nonce: str, audience=None):
        return await processors.holder_for_format("jwt_vc").create_presentation(
            credentials,
            holder_did,
            holder_context.keys.signing_key(holder_did),
            holder_context.keys.kid(holder_did),
            nonce,
            audience,
        )

    yield _present


@pytest.fixture
def now():
    yield datetime.datetime(2025, 6, 1, tzinfo=datetime.timezone.utc)


class InProcessIssuer:
    """IssuerMetadataProvider answering from an IssuerManager without HTTP."""

    def __init__(self, issuer: IssuerManager):
        self.issuer = issuer

    async def get_supported_credentials(self, issuer_config):
        return self.issuer.credentials_supported()

    async def execute_pushed_authorization_request(
        self,
        issuer_config,
        credential_formats,
        redirect_uri,
        nonce,
        state,
        wallet_issuer=None,
        user_hint=None,
        op_state=None,
    ):
        form = {
            "response_type": "code",
            "client_id": redirect_uri,
            "redirect_uri": redirect_uri,
            "state": state,
            "nonce": nonce,
            "authorization_details": json.dumps(
                [
                    {"type": "openid_credential", "credential_type": t, "format": f}
                    for t, f in credential_formats.items()
                ]
            ),
        }
        if op_state:
            form["op_state"] = op_state
        try:
            request_uri, _ = self.issuer.par(form)
        except (ValueError, VcPortalError) as err:
            raise AuthorizationRejected(str(err)) from err
        query = urlencode({"request_uri": request_uri})
        return f"{issuer_config.url}/fulfillPAR?{query}"

    async def get_access_token(
        self, issuer_config, code, redirect_uri, pre_authorized, user_pin=None
    ):
        grant_type = (
            PRE_AUTHORIZED_CODE_GRANT_TYPE
            if pre_authorized
            else AUTHORIZATION_CODE_GRANT_TYPE
        )
        try:
            return TokenResponse(**self.issuer.token(grant_type, code, user_pin))
        except OAuthError as err:
            return TokenResponse(error=err.error, error_description=err.description)

    async def get_credential(
        self, issuer_config, access_token, credential_type, proof, format
    ):
        try:
            _, credential = await self.issuer.fulfill_credential(
                access_token,
                {
                    "type": credential_type,
                    "format": format,
                    "proof": {"proof_type": "jwt", "jwt": proof},
                },
            )
        except OAuthError as err:
            raise CredentialRejected(err.description) from err
        return credential


@pytest.fixture
def issuer_manager(config, processors, resolver, issuer_keys, clock):
    yield IssuerManager(
        config,
        processors,
        resolver,
        keys=issuer_keys,
        session_cache=ExpireAfterWriteRegistry(config.expiration, clock=clock),
        code_cache=ExpireAfterWriteRegistry(config.expiration, clock=clock),
    )


@pytest.fixture
def in_process_issuer(issuer_manager):
    yield InProcessIssuer(issuer_manager)
