"""Issuer endpoints for OIDC4VCI."""

import json

from aiohttp import web
from marshmallow import EXCLUDE, Schema, ValidationError, fields

from ..errors import VcPortalError
from ..issuer import OAuthError
from ..models.issuance import PRE_AUTHORIZED_CODE_GRANT_TYPE, Issuables, IssuablesSchema
from .constants import (
    CONFIG_KEY,
    ISSUER_KEY,
    LOGGER,
    authenticated_user,
    http_error,
)


class IssuanceRequestQuerySchema(Schema):
    """Query parameters of the issuance request endpoint."""

    class Meta:
        """IssuanceRequestQuerySchema metadata."""

        unknown = EXCLUDE

    wallet_id = fields.Str(data_key="walletId", load_default=None)
    session_id = fields.Str(data_key="sessionId", load_default=None)
    pre_authorized = fields.Bool(data_key="isPreAuthorized", load_default=False)
    user_pin = fields.Str(data_key="userPin", load_default=None)


class CredentialRequestSchema(Schema):
    """Body of a credential endpoint request."""

    class Meta:
        """CredentialRequestSchema metadata."""

        unknown = EXCLUDE

    type = fields.Str(required=True)
    format = fields.Str(load_default=None)
    proof = fields.Dict(load_default=None)


def _oauth_error_response(err: OAuthError) -> web.Response:
    LOGGER.warning("OAuth request refused: %s %s", err.error, err.description)
    return web.json_response(err.serialize(), status=err.status)


async def list_wallets(request: web.Request):
    """List the wallets credentials can be offered to."""
    config = request.app[CONFIG_KEY]
    return web.json_response([w.serialize() for w in config.wallets.values()])


async def list_issuables(request: web.Request):
    """List what the user can have issued, for a session or in general."""
    user = authenticated_user(request)
    manager = request.app[ISSUER_KEY]
    session_id = request.query.get("sessionId")
    if session_id:
        session = manager.get_session(session_id)
        if session and session.user_id not in (None, user.id):
            raise web.HTTPForbidden(reason="Issuance session belongs to another user")
        issuables = session.issuables if session else None
        return web.json_response((issuables or Issuables()).serialize())
    return web.json_response(
        Issuables.from_types(manager.list_credential_types()).serialize()
    )


async def issuance_request(request: web.Request):
    """Complete an authorization or create an offer for the selected issuables.

    Returns the URL the issuer UI sends the user to.
    """
    user = authenticated_user(request)
    config = request.app[CONFIG_KEY]
    manager = request.app[ISSUER_KEY]
    try:
        params = IssuanceRequestQuerySchema().load(dict(request.query))
        issuables = IssuablesSchema().load(await request.json())
    except ValidationError as err:
        raise web.HTTPBadRequest(reason=json.dumps(err.messages)) from err
    except json.JSONDecodeError as err:
        raise web.HTTPBadRequest(reason="Request body is not valid JSON") from err

    try:
        if params["session_id"]:
            return web.Response(
                text=manager.authorize(params["session_id"], issuables, user.id)
            )

        if params["wallet_id"]:
            wallet = config.wallets.get(params["wallet_id"])
            if wallet is None:
                raise web.HTTPBadRequest(reason=f"Unknown wallet {params['wallet_id']}")
        else:
            wallet = config.default_wallet()
        offer = manager.new_issuance_initiation_request(
            issuables,
            params["pre_authorized"],
            user_pin=params["user_pin"],
            user_id=user.id,
        )
    except VcPortalError as err:
        raise http_error(err) from err
    except ValueError as err:
        raise web.HTTPBadRequest(reason=str(err)) from err
    return web.Response(text=wallet.receive_url(offer.to_query_string()))


async def openid_configuration(request: web.Request):
    """Provider metadata."""
    return web.json_response(request.app[ISSUER_KEY].provider_metadata())


async def par(request: web.Request):
    """Pushed authorization request endpoint."""
    form = await request.post()
    try:
        request_uri, expires_in = request.app[ISSUER_KEY].par(
            {k: v for k, v in form.items() if isinstance(v, str)}
        )
    except (ValueError, VcPortalError) as err:
        return _oauth_error_response(OAuthError("invalid_request", str(err)))
    return web.json_response(
        {"request_uri": request_uri, "expires_in": expires_in}, status=201
    )


async def fulfill_par(request: web.Request):
    """Send the user to the issuer UI for a pushed request."""
    request_uri = request.query.get("request_uri")
    if not request_uri:
        raise web.HTTPBadRequest(reason="request_uri is required")
    raise web.HTTPFound(location=request.app[ISSUER_KEY].fulfill_par(request_uri))


async def token(request: web.Request):
    """Token endpoint."""
    form = await request.post()
    grant_type = form.get("grant_type")
    if grant_type == PRE_AUTHORIZED_CODE_GRANT_TYPE:
        code = form.get("pre-authorized_code") or form.get("pre_authorized_code")
    else:
        code = form.get("code")
    try:
        response = request.app[ISSUER_KEY].token(grant_type, code, form.get("user_pin"))
    except OAuthError as err:
        return _oauth_error_response(err)
    return web.json_response(response, headers={"Cache-Control": "no-store"})


async def credential(request: web.Request):
    """Credential endpoint."""
    auth_header = request.headers.get("Authorization", "")
    scheme, _, access_token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not access_token:
        return _oauth_error_response(
            OAuthError("invalid_token", "Bearer access token required", 401)
        )
    try:
        body = CredentialRequestSchema().load(await request.json())
    except ValidationError as err:
        return _oauth_error_response(
            OAuthError("invalid_request", json.dumps(err.messages))
        )
    except json.JSONDecodeError:
        return _oauth_error_response(
            OAuthError("invalid_request", "Request body is not valid JSON")
        )

    try:
        fmt, issued = await request.app[ISSUER_KEY].fulfill_credential(
            access_token, body
        )
    except OAuthError as err:
        return _oauth_error_response(err)
    return web.json_response({"format": fmt, "credential": issued})
