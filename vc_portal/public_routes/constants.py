"""Constants and application keys shared by the public routes."""

import logging

from aiohttp import web

from ..cache import ExpireAfterWriteRegistry
from ..config import Config
from ..context import UserContextLoader, UserInfo
from ..errors import (
    InvalidState,
    NotFoundOrExpired,
    SubjectAlreadyBound,
    UpstreamRejected,
    VcPortalError,
)
from ..issuer import IssuerManager
from ..jwt import JwtService
from ..verifier import VerifierManager
from ..wallet_issuance import CredentialIssuanceManager

LOGGER = logging.getLogger(__name__)

VERIFIER_API_PREFIX = "/verifier-api"
ISSUER_API_PREFIX = "/issuer-api"
WALLET_API_PREFIX = "/api/wallet"
AUTH_API_PREFIX = "/api/auth"

CONFIG_KEY = web.AppKey("vc_portal.config", Config)
JWT_SERVICE_KEY = web.AppKey("vc_portal.jwt_service", JwtService)
CONTEXTS_KEY = web.AppKey("vc_portal.contexts", UserContextLoader)
VERIFIER_KEY = web.AppKey("vc_portal.verifier", VerifierManager)
ISSUER_KEY = web.AppKey("vc_portal.issuer", IssuerManager)
WALLET_ISSUANCE_KEY = web.AppKey(
    "vc_portal.wallet_issuance", CredentialIssuanceManager
)
VERIFIED_REDIRECTS_KEY = web.AppKey(
    "vc_portal.verified_redirects", ExpireAfterWriteRegistry
)


def http_error(err: VcPortalError) -> web.HTTPException:
    """Map a protocol error onto the HTTP error answered for it."""
    if isinstance(err, SubjectAlreadyBound):
        return web.HTTPConflict(reason=str(err))
    if isinstance(err, NotFoundOrExpired):
        return web.HTTPNotFound(reason=str(err))
    if isinstance(err, InvalidState):
        return web.HTTPBadRequest(reason=str(err))
    if isinstance(err, UpstreamRejected):
        return web.HTTPBadGateway(reason=str(err))
    return web.HTTPBadRequest(reason=str(err))


def authenticated_user(request: web.Request) -> UserInfo:
    """Return the user named by the request's bearer token."""
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise web.HTTPUnauthorized(reason="Bearer user token required")
    user_id = request.app[JWT_SERVICE_KEY].user_id_from_token(token)
    if not user_id:
        raise web.HTTPUnauthorized(reason="Invalid or expired user token")
    return UserInfo(user_id)
