"""Presentation request and verification result models."""

import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlencode

RESPONSE_MODE_FORM_POST = "form_post"
RESPONSE_MODE_POST = "post"
RESPONSE_TYPE = "vp_token id_token"


@dataclass
class PresentationRequest:
    """SIOPv2/OIDC4VP authorization request issued by the verifier.

    ``id`` doubles as the protocol ``state``.
    """

    id: str
    nonce: str
    presentation_definition: Mapping[str, Any]
    redirect_uri: str
    response_mode: str = RESPONSE_MODE_FORM_POST
    callback_url: Optional[str] = None
    created_at: float = field(default_factory=time.time)

    @property
    def state(self) -> str:
        """Return the state value echoed back by the wallet."""
        return self.id

    def to_query_params(self) -> Dict[str, str]:
        """Return the request as URL query parameters."""
        return {
            "response_type": RESPONSE_TYPE,
            "client_id": self.redirect_uri,
            "redirect_uri": self.redirect_uri,
            "response_mode": self.response_mode,
            "scope": "openid",
            "nonce": self.nonce,
            "state": self.id,
            "claims": json.dumps(
                {"vp_token": {"presentation_definition": self.presentation_definition}}
            ),
        }

    def to_query_string(self) -> str:
        """Return the request as a URL query string."""
        return urlencode(self.to_query_params())

    def to_url(self, base: str = "openid://") -> str:
        """Return the request as a wallet URL."""
        return f"{base}?{self.to_query_string()}"

    @classmethod
    def from_query_params(cls, params: Mapping[str, str]) -> "PresentationRequest":
        """Parse a request received by a wallet."""
        try:
            claims = json.loads(params["claims"])
            definition = claims["vp_token"]["presentation_definition"]
            return cls(
                id=params["state"],
                nonce=params["nonce"],
                presentation_definition=definition,
                redirect_uri=params["redirect_uri"],
                response_mode=params.get("response_mode", RESPONSE_MODE_FORM_POST),
            )
        except (KeyError, TypeError, json.JSONDecodeError) as err:
            raise ValueError(f"Malformed presentation request: {err}") from err


@dataclass
class VerificationResult:
    """Outcome of verifying a wallet's response.

    ``id`` equals the state of the originating request. ``auth_token`` is only
    set for valid results.
    """

    id: str
    subject: Optional[str]
    valid: bool
    vp_token: Optional[str]
    auth_token: Optional[str] = None
    policy_results: List[Dict[str, Any]] = field(default_factory=list)
    credentials: List[Mapping[str, Any]] = field(default_factory=list)

    @property
    def state(self) -> str:
        """Return the state of the originating request."""
        return self.id

    def serialize(self) -> dict:
        """Return the JSON shape of this result."""
        return {
            "state": self.id,
            "subject": self.subject,
            "isValid": self.valid,
            "vp_token": self.vp_token,
            "auth_token": self.auth_token,
            "policyResults": self.policy_results,
            "verifiableCredentials": self.credentials,
        }
