"""Issuer side of OIDC4VCI credential issuance."""

import datetime
import json
import logging
import time
import uuid
from secrets import token_urlsafe
from typing import Any, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import urlencode

from jwt.exceptions import PyJWTError

from .cache import ExpireAfterWriteRegistry
from .config import Config
from .context import KeyStore
from .cred_processor import CredProcessorError, CredProcessors
from .did_utils import DIDResolver, ResolverError
from .errors import SessionNotFound, SubjectAlreadyBound, VcPortalError, WrongFlow
from .jwt import jwt_sign, jwt_verify
from .models.issuance import (
    AUTHORIZATION_CODE_GRANT_TYPE,
    PAR_REQUEST_URI_PREFIX,
    PRE_AUTHORIZED_CODE_GRANT_TYPE,
    PROOF_TYP,
    IssuanceInitiationRequest,
    Issuables,
    IssuerSession,
)
from .utils import new_nonce

LOGGER = logging.getLogger(__name__)

CODE_BYTES = 16
VC_CONTEXT = "https://www.w3.org/2018/credentials/v1"
JWT_SUITES = ["ES256", "EdDSA"]


class OAuthError(VcPortalError):
    """OAuth error answered to the wallet as ``{error, error_description}``."""

    def __init__(self, error: str, description: str, status: int = 400):
        """Initialize the error."""
        super().__init__(description)
        self.error = error
        self.description = description
        self.status = status

    def serialize(self) -> dict:
        """Return the OAuth error response body."""
        return {"error": self.error, "error_description": self.description}


def _audience_includes(audience: Any, url: str) -> bool:
    """Check a JWT aud claim, a string or a list of strings, names url."""
    if isinstance(audience, str):
        audience = [audience]
    if not isinstance(audience, list):
        return False
    return any(isinstance(aud, str) and aud.rstrip("/") == url for aud in audience)


class IssuerManager:
    """Serve OIDC4VCI authorization, token and credential requests."""

    def __init__(
        self,
        config: Config,
        processors: CredProcessors,
        resolver: DIDResolver,
        keys: Optional[KeyStore] = None,
        session_cache: Optional[ExpireAfterWriteRegistry[IssuerSession]] = None,
        code_cache: Optional[ExpireAfterWriteRegistry[str]] = None,
    ):
        """Initialize the manager and its signing DID."""
        self.config = config
        self.processors = processors
        self.resolver = resolver
        self.keys = keys or KeyStore()
        self.did = next(iter(self.keys.list_dids()), None) or self.keys.create_did()
        self.sessions = session_cache or ExpireAfterWriteRegistry(config.expiration)
        self.codes = code_cache or ExpireAfterWriteRegistry(config.expiration)

    @property
    def issuer_url(self) -> str:
        """Return the URL wallets resolve provider metadata under."""
        return f"{self.config.issuer_api_url}/oidc"

    def initialize_session(
        self,
        credential_types: Sequence[str],
        pre_authorized: bool,
        user_pin: Optional[str] = None,
        auth_request: Optional[Mapping[str, Any]] = None,
        issuables: Optional[Issuables] = None,
        user_id: Optional[str] = None,
    ) -> IssuerSession:
        """Create and cache a session."""
        session = IssuerSession(
            id=str(uuid.uuid4()),
            credential_types=list(credential_types),
            nonce=new_nonce(),
            pre_authorized=pre_authorized,
            user_pin=user_pin,
            auth_request=auth_request,
            issuables=issuables,
            user_id=user_id,
        )
        self.sessions.put(session.id, session)
        return session

    def get_session(self, session_id: str) -> Optional[IssuerSession]:
        """Return a session, or None if absent or expired."""
        return self.sessions.get(session_id)

    def update_session(self, session: IssuerSession, issuables: Optional[Issuables]):
        """Replace the issuables of a session and re-cache it."""
        session.issuables = issuables
        if issuables is not None:
            session.credential_types = issuables.types
        self.sessions.put(session.id, session)

    def generate_authorization_code(self, session: IssuerSession) -> str:
        """Mint a single-use code redeemable for session."""
        code = token_urlsafe(CODE_BYTES)
        self.codes.put(code, session.id)
        return code

    def new_issuance_initiation_request(
        self,
        issuables: Issuables,
        pre_authorized: bool,
        user_pin: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> IssuanceInitiationRequest:
        """Build an issuer-initiated offer for issuables."""
        if not issuables.credentials:
            raise ValueError("No issuable credential selected")
        session = self.initialize_session(
            issuables.types,
            pre_authorized,
            user_pin=user_pin if pre_authorized else None,
            issuables=issuables,
            user_id=user_id,
        )
        LOGGER.info(
            "Created offer session %s (pre-authorized=%s)", session.id, pre_authorized
        )
        return IssuanceInitiationRequest(
            issuer_url=self.issuer_url,
            credential_types=issuables.types,
            pre_authorized_code=(
                self.generate_authorization_code(session) if pre_authorized else None
            ),
            user_pin_required=pre_authorized and user_pin is not None,
            op_state=None if pre_authorized else session.id,
        )

    def par(self, params: Mapping[str, str]) -> Tuple[str, int]:
        """Accept a pushed authorization request; return request_uri and lifetime."""
        auth_request = {
            key: params.get(key)
            for key in (
                "response_type",
                "client_id",
                "redirect_uri",
                "scope",
                "state",
                "nonce",
            )
        }
        if not auth_request["redirect_uri"]:
            raise ValueError("redirect_uri is required")

        op_state = params.get("op_state")
        if op_state:
            session = self.get_session(op_state)
            if session is None:
                raise SessionNotFound("Session given by op_state not found")
            session.auth_request = auth_request
            self.update_session(session, session.issuables)
        else:
            try:
                details = json.loads(params.get("authorization_details") or "[]")
            except json.JSONDecodeError as err:
                raise ValueError("authorization_details is not valid JSON") from err
            if not isinstance(details, list):
                details = []
            types = [
                detail["credential_type"]
                for detail in details
                if isinstance(detail, dict)
                and detail.get("type") == "openid_credential"
                and detail.get("credential_type")
            ]
            if not types:
                raise ValueError("No credential authorization details given")
            session = self.initialize_session(
                types,
                pre_authorized=False,
                auth_request=auth_request,
                issuables=Issuables.from_types(types),
            )

        LOGGER.info("Accepted pushed authorization request for %s", session.id)
        return f"{PAR_REQUEST_URI_PREFIX}{session.id}", self.config.expiration

    def fulfill_par(self, request_uri: str) -> str:
        """Return where to send the user to complete a pushed request."""
        session_id = request_uri.rsplit(PAR_REQUEST_URI_PREFIX, 1)[-1]
        if self.get_session(session_id):
            query = urlencode({"sessionId": session_id})
            return f"{self.config.issuer_ui_url}/?{query}"
        query = urlencode({"message": "Invalid issuance session"})
        return f"{self.config.issuer_ui_url}/IssuanceError?{query}"

    def authorize(
        self, session_id: str, issuables: Issuables, user_id: Optional[str] = None
    ) -> str:
        """Record the user's selection and redirect back to the wallet with a code.

        The session is bound to ``user_id``; a session already bound to another
        user cannot be taken over.
        """
        session = self.get_session(session_id)
        if session is None:
            raise SessionNotFound(f"No issuance session {session_id}")
        if not session.auth_request:
            raise WrongFlow("No authorization request found for this session")
        if not issuables.credentials:
            raise ValueError("No issuable credential selected")
        if user_id is not None:
            if session.user_id not in (None, user_id):
                raise SubjectAlreadyBound("Session belongs to another user")
            session.user_id = user_id
        self.update_session(session, issuables)
        query = {"code": self.generate_authorization_code(session)}
        if session.auth_request.get("state"):
            query["state"] = session.auth_request["state"]
        return f"{session.auth_request['redirect_uri']}?{urlencode(query)}"

    def _id_token(self, session: IssuerSession) -> str:
        """Sign an id_token asserting the session to the wallet."""
        now = int(time.time())
        auth_request = session.auth_request or {}
        payload = {
            "iss": self.issuer_url,
            "sub": session.user_id or session.id,
            "aud": auth_request.get("client_id") or self.issuer_url,
            "iat": now,
            "exp": now + self.config.expiration,
        }
        if auth_request.get("nonce"):
            payload["nonce"] = auth_request["nonce"]
        return jwt_sign(
            {}, payload, self.keys.signing_key(self.did), self.keys.kid(self.did)
        )

    def token(
        self,
        grant_type: str,
        code: Optional[str],
        user_pin: Optional[str] = None,
    ) -> dict:
        """Redeem an authorization or pre-authorized code for an access token."""
        if grant_type not in (
            AUTHORIZATION_CODE_GRANT_TYPE,
            PRE_AUTHORIZED_CODE_GRANT_TYPE,
        ):
            raise OAuthError("unsupported_grant_type", "grant_type not supported")
        if not code:
            raise OAuthError("invalid_request", "code is missing")

        session_id = self.codes.get(code)
        session = self.get_session(session_id) if session_id else None
        if session is None:
            raise OAuthError("invalid_grant", "code is invalid, expired or used")

        pre_authorized = grant_type == PRE_AUTHORIZED_CODE_GRANT_TYPE
        if pre_authorized != session.pre_authorized:
            raise OAuthError("invalid_grant", "grant_type does not match the offer")
        if pre_authorized and session.user_pin is not None:
            if user_pin is None:
                raise OAuthError("invalid_request", "user_pin is required")
            if user_pin != session.user_pin:
                raise OAuthError("invalid_grant", "pin is invalid")

        if self.codes.pop(code) != session.id:
            raise OAuthError("invalid_grant", "code is invalid, expired or used")

        session.nonce = new_nonce()
        session.token_issued = True
        self.sessions.put(session.id, session)
        LOGGER.info("Issued access token for session %s", session.id)
        return {
            "access_token": session.id,
            "token_type": "Bearer",
            "expires_in": self.config.expiration,
            "c_nonce": session.nonce,
            "c_nonce_expires_in": self.config.expiration,
            "id_token": self._id_token(session),
        }

    def verify_proof(self, proof: Mapping[str, Any], nonce: str) -> str:
        """Check a holder proof of possession; return the holder DID."""
        if not proof or proof.get("proof_type") != "jwt" or not proof.get("jwt"):
            raise OAuthError("invalid_or_missing_proof", "A jwt proof is required")
        try:
            result = jwt_verify(self.resolver, proof["jwt"])
        except (ValueError, ResolverError, PyJWTError) as err:
            raise OAuthError("invalid_or_missing_proof", str(err)) from err

        if result.headers.get("typ") != PROOF_TYP:
            raise OAuthError("invalid_or_missing_proof", f"typ must be {PROOF_TYP}")
        if not result.verified:
            raise OAuthError("invalid_or_missing_proof", "Proof signature is invalid")
        if result.payload.get("nonce") != nonce:
            raise OAuthError("invalid_or_missing_proof", "Proof nonce does not match")
        audience = result.payload.get("aud")
        if audience and not _audience_includes(audience, self.issuer_url):
            raise OAuthError("invalid_or_missing_proof", "Proof audience mismatch")

        kid = result.headers.get("kid")
        holder = kid.split("#", 1)[0] if kid else result.payload.get("iss")
        if not holder or not holder.startswith("did:"):
            raise OAuthError("invalid_or_missing_proof", "Proof holder is not a DID")
        return holder

    def build_credential(
        self, credential_type: str, holder: str, data: Mapping[str, Any]
    ) -> dict:
        """Return the unsigned credential document for holder."""
        now = datetime.datetime.now(datetime.timezone.utc)
        return {
            "@context": [VC_CONTEXT],
            "id": f"urn:uuid:{uuid.uuid4()}",
            "type": ["VerifiableCredential", credential_type],
            "issuer": self.did,
            "issuanceDate": now.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "credentialSubject": {**data, "id": holder},
        }

    async def fulfill_credential(
        self, access_token: Optional[str], request: Mapping[str, Any]
    ) -> Tuple[str, Any]:
        """Issue one credential for a credential endpoint request."""
        session = self.get_session(access_token) if access_token else None
        if session is None or not session.token_issued:
            raise OAuthError("invalid_token", "Invalid or unknown access token", 401)

        credential_type = request.get("type")
        if credential_type not in session.credential_types:
            raise OAuthError(
                "unsupported_credential_type",
                f"No issuable credential of type {credential_type}",
                404,
            )
        fmt = request.get("format") or "jwt_vc"
        try:
            processor = self.processors.issuer_for_format(fmt)
        except CredProcessorError as err:
            raise OAuthError("unsupported_credential_format", str(err)) from err

        holder = self.verify_proof(request.get("proof") or {}, session.nonce)
        if session.did and session.did != holder:
            raise OAuthError("invalid_or_missing_proof", "Proof holder changed")
        session.did = holder
        self.sessions.put(session.id, session)

        issuable = None
        if session.issuables:
            issuable = session.issuables.credentials.get(credential_type)
        document = self.build_credential(
            credential_type, holder, issuable.credential_data if issuable else {}
        )
        credential = await processor.issue(
            document, self.keys.signing_key(self.did), self.keys.kid(self.did)
        )
        LOGGER.info("Issued %s to %s", credential_type, holder)
        return fmt, credential

    def credentials_supported(self) -> dict:
        """Return ``credentials_supported`` for the configured types."""
        formats = self.processors.issuing_formats()
        return {
            credential_type: {
                "formats": {
                    fmt: {
                        "types": ["VerifiableCredential", credential_type],
                        "cryptographic_binding_methods_supported": ["did"],
                        "cryptographic_suites_supported": JWT_SUITES,
                    }
                    for fmt in formats
                },
                "display": [{"name": credential_type}],
            }
            for credential_type in self.config.credential_types
        }

    def provider_metadata(self) -> dict:
        """Return the OpenID provider metadata document."""
        return {
            "issuer": self.issuer_url,
            "subject_types_supported": ["public"],
            "authorization_endpoint": f"{self.issuer_url}/fulfillPAR",
            "pushed_authorization_request_endpoint": f"{self.issuer_url}/par",
            "token_endpoint": f"{self.issuer_url}/token",
            "credential_endpoint": f"{self.issuer_url}/credential",
            "grant_types_supported": [
                AUTHORIZATION_CODE_GRANT_TYPE,
                PRE_AUTHORIZED_CODE_GRANT_TYPE,
            ],
            "credential_issuer": {"display": [{"name": self.issuer_url}]},
            "credentials_supported": self.credentials_supported(),
        }

    def list_credential_types(self) -> List[str]:
        """Return the credential types this issuer offers."""
        return list(self.config.credential_types)
