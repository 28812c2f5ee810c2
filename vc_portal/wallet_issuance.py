"""Wallet side of OIDC4VCI credential issuance."""

import logging
import time
import uuid
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .cache import ExpireAfterAccessRegistry
from .config import Config, IssuerConfiguration
from .context import UserContext, UserContextLoader, UserInfo
from .cred_processor import CredProcessorError, CredProcessors
from .errors import (
    AuthorizationRejected,
    CredentialRejected,
    IssuerUnreachable,
    NoSubjectBound,
    SessionNotFound,
    SubjectAlreadyBound,
    UserNotConfirmed,
    WrongFlow,
)
from .formats import negotiate_format
from .jwt import jwt_sign
from .models.issuance import (
    PROOF_TYP,
    CredentialIssuanceSession,
    IssuanceInitiationRequest,
)
from .oidc4vci_client import IssuerMetadataProvider
from .pex import requested_types
from .utils import new_nonce

LOGGER = logging.getLogger(__name__)

FINALIZE_PATH = "/siop/finalizeIssuance"


class CredentialIssuanceManager:
    """Drive OIDC4VCI flows on behalf of wallet users.

    Sessions expire a fixed time after they were last touched, so a flow
    stays resumable while the user is moving through redirects.
    """

    def __init__(
        self,
        config: Config,
        metadata_provider: IssuerMetadataProvider,
        processors: CredProcessors,
        contexts: UserContextLoader,
        session_cache: Optional[
            ExpireAfterAccessRegistry[CredentialIssuanceSession]
        ] = None,
    ):
        """Initialize the manager."""
        self.config = config
        self.metadata_provider = metadata_provider
        self.processors = processors
        self.contexts = contexts
        self.sessions = session_cache or ExpireAfterAccessRegistry(config.expiration)

    @property
    def redirect_uri(self) -> str:
        """Return the wallet endpoint issuers redirect back to."""
        return f"{self.config.wallet_api_url}{FINALIZE_PATH}"

    def get_session(self, session_id: str) -> Optional[CredentialIssuanceSession]:
        """Return a session, or None if absent or expired."""
        return self.sessions.get(session_id)

    def put_session(self, session: CredentialIssuanceSession):
        """Store a session under its id."""
        self.sessions.put(session.id, session)

    def _require_session(self, session_id: str) -> CredentialIssuanceSession:
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFound(f"No issuance session {session_id}")
        return session

    def _issuer(self, issuer_id: str) -> IssuerConfiguration:
        """Look up an issuer by configured id or, for offers, by URL."""
        issuer = self.config.issuers.get(issuer_id)
        if issuer:
            return issuer
        for candidate in self.config.issuers.values():
            if candidate.url == issuer_id.rstrip("/"):
                return candidate
        if issuer_id.startswith(("http://", "https://")):
            return IssuerConfiguration(id=issuer_id, url=issuer_id.rstrip("/"))
        raise IssuerUnreachable(f"Unknown issuer {issuer_id}")

    def _bind_subject(
        self, session: CredentialIssuanceSession, did: str, user: UserInfo
    ):
        """Bind did and user to session; rebinding to another subject fails."""
        if session.did and session.did != did:
            raise SubjectAlreadyBound(f"Session {session.id} is bound to another DID")
        if session.user and session.user != user.id:
            raise SubjectAlreadyBound(f"Session {session.id} is bound to another user")
        if not self.contexts.load(user).keys.has_did(did):
            raise NoSubjectBound(f"User {user.id} does not control {did}")
        session.did = did
        session.user = user.id

    async def _negotiate_formats(
        self,
        issuer: IssuerConfiguration,
        credential_types: Sequence[str],
        did: str,
    ) -> Dict[str, str]:
        supported = await self.metadata_provider.get_supported_credentials(issuer)
        formats = {}
        for credential_type in credential_types:
            fmt = negotiate_format(credential_type, did, supported)
            if fmt is None:
                raise AuthorizationRejected(
                    f"Issuer {issuer.id} offers {credential_type} in no usable format"
                )
            formats[credential_type] = fmt
        return formats

    async def start_issuance(
        self,
        issuer_id: str,
        credential_types: Sequence[str],
        did: str,
        user: UserInfo,
        wallet_redirect_uri: Optional[str] = None,
    ) -> str:
        """Start a wallet-initiated flow; return the authorization URL."""
        if not credential_types:
            raise WrongFlow("No credential types requested")
        session = CredentialIssuanceSession(
            id=str(uuid.uuid4()),
            issuer_id=issuer_id,
            credential_types=list(credential_types),
            nonce=new_nonce(),
            wallet_redirect_uri=wallet_redirect_uri,
        )
        self._bind_subject(session, did, user)
        return await self.execute_authorization_step(session)

    async def start_issuance_for_presentation(
        self,
        presentation_definition: Mapping[str, Any],
        issuer_id: str,
        did: str,
        user: UserInfo,
        wallet_redirect_uri: Optional[str] = None,
    ) -> str:
        """Obtain the credentials a verifier asked for, then resume presenting."""
        credential_types = requested_types(presentation_definition)
        if not credential_types:
            raise WrongFlow("Presentation definition names no credential types")
        return await self.start_issuance(
            issuer_id, credential_types, did, user, wallet_redirect_uri
        )

    async def find_issuers_for(
        self, presentation_definition: Mapping[str, Any]
    ) -> List[IssuerConfiguration]:
        """Return the configured issuers offering every requested credential type.

        Issuers whose metadata cannot be fetched are left out.
        """
        credential_types = requested_types(presentation_definition)
        if not credential_types:
            return []
        issuers = []
        for issuer in self.config.issuers.values():
            try:
                supported = await self.metadata_provider.get_supported_credentials(
                    issuer
                )
            except IssuerUnreachable as err:
                LOGGER.warning("Skipping issuer %s: %s", issuer.id, err)
                continue
            if all(t in supported for t in credential_types):
                issuers.append(issuer)
        return issuers

    def start_issuer_initiated_issuance(
        self, request: IssuanceInitiationRequest
    ) -> str:
        """Create a session from an issuer's offer; return its id."""
        session = CredentialIssuanceSession(
            id=str(uuid.uuid4()),
            issuer_id=request.issuer_url,
            credential_types=list(request.credential_types),
            nonce=new_nonce(),
            is_pre_authorized=request.is_pre_authorized,
            is_issuer_initiated=True,
            user_pin_required=request.user_pin_required,
            pre_authz_code=request.pre_authorized_code,
            op_state=request.op_state,
        )
        self.put_session(session)
        LOGGER.info("Started issuer initiated session %s", session.id)
        return session.id

    async def continue_issuer_initiated_issuance(
        self,
        session_id: str,
        did: str,
        user: UserInfo,
        user_pin: Optional[str] = None,
    ) -> CredentialIssuanceSession:
        """Bind the holder to an offer session and finalize it if pre-authorized."""
        session = self._require_session(session_id)
        if not session.is_issuer_initiated:
            raise WrongFlow(f"Session {session_id} was not issuer initiated")
        self._bind_subject(session, did, user)
        self.put_session(session)

        if session.is_pre_authorized:
            return await self.finalize_issuance(
                session.id, session.pre_authz_code, user_pin
            )
        return session

    async def execute_authorization_step(
        self, session: CredentialIssuanceSession
    ) -> str:
        """Push the authorization request for session; return the redirect URL."""
        if not session.did:
            raise NoSubjectBound(f"No DID bound to session {session.id}")
        issuer = self._issuer(session.issuer_id)
        session.formats = await self._negotiate_formats(
            issuer, session.credential_types, session.did
        )
        url = await self.metadata_provider.execute_pushed_authorization_request(
            issuer,
            session.formats,
            self.redirect_uri,
            nonce=session.nonce,
            state=session.id,
            wallet_issuer=self.config.wallet_api_url,
            user_hint=session.user,
            op_state=session.op_state,
        )
        session.advance(CredentialIssuanceSession.STATE_AUTHORIZATION_REQUESTED)
        self.put_session(session)
        LOGGER.info("Authorization requested for session %s", session.id)
        return url

    def generate_did_proof(
        self, issuer: IssuerConfiguration, did: str, nonce: str, context: UserContext
    ) -> str:
        """Create a proof of possession of did's key bound to nonce."""
        try:
            key = context.keys.signing_key(did)
        except KeyError as err:
            raise NoSubjectBound(
                f"User {context.user.id} does not control {did}"
            ) from err
        payload = {
            "iss": did,
            "aud": issuer.url,
            "iat": int(time.time()),
            "nonce": nonce,
        }
        return jwt_sign({"typ": PROOF_TYP}, payload, key, context.keys.kid(did))

    def _credential_id(self, credential: Any, fmt: str) -> str:
        """Return the credential's id, assigning one if it has none."""
        credential_id = None
        if isinstance(credential, dict):
            credential_id = credential.get("id")
            if not credential_id:
                credential_id = f"urn:uuid:{uuid.uuid4()}"
                credential["id"] = credential_id
            return credential_id
        try:
            parsed = self.processors.cred_verifier_for_format(fmt).parse_credential(
                credential
            )
            credential_id = parsed.id
        except (CredProcessorError, ValueError) as err:
            LOGGER.debug("Could not parse %s credential: %s", fmt, err)
        return credential_id or f"urn:uuid:{uuid.uuid4()}"

    async def finalize_issuance(
        self, session_id: str, code: str, user_pin: Optional[str] = None
    ) -> CredentialIssuanceSession:
        """Redeem code for a token and fetch every requested credential.

        A declined token exchange returns the session unchanged.
        """
        session = self._require_session(session_id)
        if not session.user:
            raise UserNotConfirmed(f"No user bound to session {session_id}")
        if not session.did:
            raise NoSubjectBound(f"No DID bound to session {session_id}")
        issuer = self._issuer(session.issuer_id)

        tokens = await self.metadata_provider.get_access_token(
            issuer, code, self.redirect_uri, session.is_pre_authorized, user_pin
        )
        if not tokens.success:
            LOGGER.warning(
                "Token exchange for session %s declined: %s", session_id, tokens.error
            )
            return session

        session.tokens = tokens
        session.last_token_update = time.time()
        if tokens.c_nonce:
            session.token_nonce = tokens.c_nonce
        if not session.is_pre_authorized:
            session.advance(CredentialIssuanceSession.STATE_AUTHORIZED)
        session.advance(CredentialIssuanceSession.STATE_TOKEN_ISSUED)
        self.put_session(session)

        if not session.formats:
            session.formats = await self._negotiate_formats(
                issuer, session.credential_types, session.did
            )

        context = self.contexts.load(UserInfo(session.user))
        credentials: List[Any] = []
        for credential_type in session.credential_types:
            fmt = session.formats.get(credential_type)
            if fmt is None:
                raise CredentialRejected(f"No format negotiated for {credential_type}")
            proof = self.generate_did_proof(
                issuer, session.did, session.token_nonce or session.nonce, context
            )
            credential = await self.metadata_provider.get_credential(
                issuer, tokens.access_token, credential_type, proof, fmt
            )
            context.credentials.store(self._credential_id(credential, fmt), credential)
            credentials.append(credential)

        session.credentials = credentials
        session.advance(CredentialIssuanceSession.STATE_CREDENTIAL_ISSUED)
        self.put_session(session)
        LOGGER.info(
            "Session %s received %d credential(s)", session_id, len(credentials)
        )
        return session
