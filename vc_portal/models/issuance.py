"""Issuance sessions, offers and OAuth message models."""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import parse_qs, urlencode

from marshmallow import EXCLUDE, Schema, fields, post_load

PRE_AUTHORIZED_CODE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:pre-authorized_code"
AUTHORIZATION_CODE_GRANT_TYPE = "authorization_code"
PAR_REQUEST_URI_PREFIX = "urn:ietf:params:oauth:request_uri:"
PROOF_TYP = "openid4vci-proof+jwt"


@dataclass
class IssuableCredential:
    """A credential type the issuer offers, with the claims to put in it."""

    type: str
    credential_data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Issuables:
    """Credentials selected for issuance, keyed by type."""

    credentials: Dict[str, IssuableCredential] = field(default_factory=dict)

    @classmethod
    def from_types(cls, types: List[str]) -> "Issuables":
        """Build issuables for types without credential data."""
        return cls({t: IssuableCredential(t) for t in types})

    @property
    def types(self) -> List[str]:
        """Return the credential types."""
        return list(self.credentials)

    def serialize(self) -> dict:
        """Return the JSON shape."""
        return IssuablesSchema().dump(self)


class IssuableCredentialSchema(Schema):
    """Schema for an issuable credential."""

    class Meta:
        """IssuableCredentialSchema metadata."""

        unknown = EXCLUDE

    type = fields.Str(required=True)
    credential_data = fields.Dict(
        data_key="credentialData", load_default=dict, dump_default=dict
    )

    @post_load
    def make(self, data, **kwargs):
        """Build the model."""
        return IssuableCredential(**data)


class IssuablesSchema(Schema):
    """Schema for a set of issuable credentials."""

    class Meta:
        """IssuablesSchema metadata."""

        unknown = EXCLUDE

    credentials = fields.Dict(
        keys=fields.Str(),
        values=fields.Nested(IssuableCredentialSchema),
        required=True,
    )

    @post_load
    def make(self, data, **kwargs):
        """Build the model."""
        return Issuables(**data)


@dataclass
class IssuanceInitiationRequest:
    """Issuer-initiated credential offer, passed to the wallet as a query."""

    issuer_url: str
    credential_types: List[str]
    pre_authorized_code: Optional[str] = None
    user_pin_required: bool = False
    op_state: Optional[str] = None

    @property
    def is_pre_authorized(self) -> bool:
        """Check whether the offer carries a pre-authorized code."""
        return self.pre_authorized_code is not None

    def to_query_params(self) -> List[tuple]:
        """Return the offer as query parameters; credential_type may repeat."""
        params = [("issuer", self.issuer_url)]
        params.extend(("credential_type", t) for t in self.credential_types)
        if self.pre_authorized_code:
            params.append(("pre-authorized_code", self.pre_authorized_code))
            params.append(("user_pin_required", str(self.user_pin_required).lower()))
        if self.op_state:
            params.append(("op_state", self.op_state))
        return params

    def to_query_string(self) -> str:
        """Return the offer as a URL query string."""
        return urlencode(self.to_query_params())

    @classmethod
    def from_query_string(cls, query: str) -> "IssuanceInitiationRequest":
        """Parse an offer query string."""
        params = parse_qs(query)
        issuer = params.get("issuer")
        types = params.get("credential_type")
        if not issuer or not types:
            raise ValueError("Offer requires issuer and credential_type")
        code = params.get("pre-authorized_code", [None])[0]
        return cls(
            issuer_url=issuer[0],
            credential_types=types,
            pre_authorized_code=code,
            user_pin_required=params.get("user_pin_required", ["false"])[0].lower()
            == "true",
            op_state=params.get("op_state", [None])[0],
        )


@dataclass
class TokenResponse:
    """OAuth token response augmented with c_nonce."""

    access_token: Optional[str] = None
    token_type: Optional[str] = None
    expires_in: Optional[int] = None
    c_nonce: Optional[str] = None
    c_nonce_expires_in: Optional[int] = None
    id_token: Optional[str] = None
    error: Optional[str] = None
    error_description: Optional[str] = None

    @property
    def success(self) -> bool:
        """Check whether the token request was granted."""
        return bool(self.access_token) and not self.error


class TokenResponseSchema(Schema):
    """Schema for token responses."""

    class Meta:
        """TokenResponseSchema metadata."""

        unknown = EXCLUDE

    access_token = fields.Str(load_default=None)
    token_type = fields.Str(load_default=None)
    expires_in = fields.Int(load_default=None)
    c_nonce = fields.Str(load_default=None)
    c_nonce_expires_in = fields.Int(load_default=None)
    id_token = fields.Str(load_default=None)
    error = fields.Str(load_default=None)
    error_description = fields.Str(load_default=None)

    @post_load
    def make(self, data, **kwargs):
        """Build the model."""
        return TokenResponse(**data)


@dataclass
class ProviderMetadata:
    """OpenID provider metadata published by an OIDC4VCI issuer."""

    issuer: str
    authorization_endpoint: Optional[str] = None
    pushed_authorization_request_endpoint: Optional[str] = None
    token_endpoint: Optional[str] = None
    credential_endpoint: Optional[str] = None
    credentials_supported: Dict[str, Any] = field(default_factory=dict)


class ProviderMetadataSchema(Schema):
    """Schema for provider metadata."""

    class Meta:
        """ProviderMetadataSchema metadata."""

        unknown = EXCLUDE

    issuer = fields.Str(required=True)
    authorization_endpoint = fields.Str(load_default=None)
    pushed_authorization_request_endpoint = fields.Str(load_default=None)
    token_endpoint = fields.Str(required=True)
    credential_endpoint = fields.Str(required=True)
    credentials_supported = fields.Dict(load_default=dict)

    @post_load
    def make(self, data, **kwargs):
        """Build the model."""
        return ProviderMetadata(**data)


@dataclass
class CredentialIssuanceSession:
    """Wallet-side issuance session.

    ``state`` only moves forward through ``STATES``; ``advance`` ignores a
    target that is not ahead of the current state.
    """

    STATE_INITIATED = "initiated"
    STATE_AUTHORIZATION_REQUESTED = "authorization-requested"
    STATE_AUTHORIZED = "authorized"
    STATE_TOKEN_ISSUED = "token-issued"
    STATE_CREDENTIAL_ISSUED = "credential-issued"
    STATES = (
        STATE_INITIATED,
        STATE_AUTHORIZATION_REQUESTED,
        STATE_AUTHORIZED,
        STATE_TOKEN_ISSUED,
        STATE_CREDENTIAL_ISSUED,
    )

    id: str
    issuer_id: str
    credential_types: List[str]
    nonce: str
    is_pre_authorized: bool = False
    is_issuer_initiated: bool = False
    user_pin_required: bool = False
    pre_authz_code: Optional[str] = None
    op_state: Optional[str] = None
    did: Optional[str] = None
    user: Optional[str] = None
    wallet_redirect_uri: Optional[str] = None
    formats: Dict[str, str] = field(default_factory=dict)
    tokens: Optional[TokenResponse] = None
    last_token_update: Optional[float] = None
    token_nonce: Optional[str] = None
    credentials: Optional[List[Any]] = None
    state: str = STATE_INITIATED
    created_at: float = field(default_factory=time.time)

    def advance(self, state: str):
        """Move to state if it is ahead of the current one."""
        if self.STATES.index(state) > self.STATES.index(self.state):
            self.state = state

    def serialize(self) -> dict:
        """Return the JSON shape exposed to the wallet UI."""
        return {
            "id": self.id,
            "issuerId": self.issuer_id,
            "credentialTypes": self.credential_types,
            "isPreAuthorized": self.is_pre_authorized,
            "isIssuerInitiated": self.is_issuer_initiated,
            "userPinRequired": self.user_pin_required,
            "did": self.did,
            "state": self.state,
            "walletRedirectUri": self.wallet_redirect_uri,
            "credentials": self.credentials,
        }


@dataclass
class IssuerSession:
    """Issuer-side session tracking one authorization and its credentials."""

    id: str
    credential_types: List[str]
    nonce: str
    pre_authorized: bool = False
    user_pin: Optional[str] = None
    issuables: Optional[Issuables] = None
    auth_request: Optional[Mapping[str, Any]] = None
    user_id: Optional[str] = None
    did: Optional[str] = None
    token_issued: bool = False
    created_at: float = field(default_factory=time.time)
