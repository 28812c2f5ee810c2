"""JWT utilities."""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import jwt as pyjwt
from jwt.exceptions import InvalidSignatureError, PyJWTError

from .did_utils import (
    DIDResolver,
    PrivateKey,
    ResolverError,
    key_from_jwk,
    key_type_of,
)
from .utils import b64_to_dict

LOGGER = logging.getLogger(__name__)

USER_TOKEN_ALG = "HS256"
USER_TOKEN_EXPIRES_IN = 3600


class BadJWSHeaderError(ValueError):
    """Raised when a JWS header does not match its key."""


@dataclass
class JWTVerifyResult:
    """JWT Verification Result."""

    headers: Mapping[str, Any]
    payload: Mapping[str, Any]
    verified: bool


def decode_unverified(token: str) -> JWTVerifyResult:
    """Split a compact JWS into headers and payload without checking it."""
    try:
        encoded_headers, encoded_payload, _ = token.split(".", 2)
    except (AttributeError, ValueError) as err:
        raise ValueError("Not a compact JWS") from err
    return JWTVerifyResult(
        b64_to_dict(encoded_headers), b64_to_dict(encoded_payload), False
    )


def signer_did(headers: Mapping[str, Any]) -> Optional[str]:
    """Return the DID whose key signed a JWS, taken from its kid header."""
    kid = headers.get("kid")
    if not isinstance(kid, str) or not kid.startswith("did:"):
        return None
    return kid.split("#", 1)[0]


def jwt_sign(
    headers: Dict[str, Any],
    payload: Mapping[str, Any],
    key: PrivateKey,
    kid: str,
) -> str:
    """Create a signed JWT given headers, payload, signing key and its kid."""
    alg = key_type_of(key).jws_alg
    headers = {"typ": "JWT", **headers, "kid": kid, "alg": alg}
    return pyjwt.encode(dict(payload), key, algorithm=alg, headers=headers)


def jwt_verify(
    resolver: DIDResolver, token: str, *, cnf: Optional[dict] = None
) -> JWTVerifyResult:
    """Verify a JWT and return the headers and payload.

    The key is taken from ``cnf["jwk"]`` when given, otherwise resolved from
    the ``kid`` header, which must be a DID URL.
    """
    unverified = decode_unverified(token)
    headers = unverified.headers
    if cnf and "jwk" in cnf:
        key = key_from_jwk(cnf["jwk"])
    elif "kid" in headers:
        key = resolver.resolve_key(headers["kid"])
    elif "jwk" in headers:
        key = key_from_jwk(headers["jwk"])
    else:
        raise BadJWSHeaderError("No kid or jwk in JWS header")

    alg = headers.get("alg")
    expected = key_type_of(key).jws_alg
    if alg != expected:
        raise BadJWSHeaderError(f"Expected {expected} for key, got {alg}")

    try:
        pyjwt.PyJWS().decode_complete(token, key=key, algorithms=[alg])
        verified = True
    except InvalidSignatureError:
        verified = False

    return JWTVerifyResult(headers, unverified.payload, verified)


class JwtService:
    """Signing and verification service used by the protocol engine."""

    def __init__(self, resolver: DIDResolver, secret: str):
        """Initialize the service."""
        self.resolver = resolver
        self._secret = secret

    def parse_claims(self, token: str) -> Mapping[str, Any]:
        """Return the payload of a JWT without verifying it."""
        return decode_unverified(token).payload

    def verify(self, token: str, subject: Optional[str] = None) -> bool:
        """Check a JWT signature against its DID-resolved key.

        With ``subject``, the signing key must also belong to that DID.
        """
        try:
            result = jwt_verify(self.resolver, token)
        except (ValueError, ResolverError, PyJWTError) as err:
            LOGGER.warning("JWT verification failed: %s", err)
            return False
        if subject is not None and signer_did(result.headers) != subject:
            LOGGER.warning("JWT is not signed by %s", subject)
            return False
        return result.verified

    def sign(
        self,
        key: PrivateKey,
        kid: str,
        payload: Mapping[str, Any],
        headers: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Sign a payload with a DID key."""
        return jwt_sign(headers or {}, payload, key, kid)

    def issue_user_token(self, user_id: str) -> str:
        """Issue a bearer token identifying a portal user."""
        now = int(time.time())
        return pyjwt.encode(
            {"sub": user_id, "iat": now, "exp": now + USER_TOKEN_EXPIRES_IN},
            self._secret,
            algorithm=USER_TOKEN_ALG,
        )

    def user_id_from_token(self, token: str) -> Optional[str]:
        """Return the user a bearer token was issued to, or None if invalid."""
        try:
            claims = pyjwt.decode(token, self._secret, algorithms=[USER_TOKEN_ALG])
        except PyJWTError as err:
            LOGGER.debug("Rejected user token: %s", err)
            return None
        return claims.get("sub")
