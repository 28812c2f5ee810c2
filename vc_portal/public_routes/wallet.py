"""Wallet endpoints: user login, DIDs, stored credentials and OIDC4VCI issuance."""

import hmac
import json
from urllib.parse import urlencode

from aiohttp import web
from jsonschema.exceptions import SchemaError
from marshmallow import EXCLUDE, Schema, ValidationError, fields, validate

from ..did_utils import KEY_TYPES, ResolverError
from ..errors import VcPortalError
from ..models.issuance import CredentialIssuanceSession, IssuanceInitiationRequest
from ..pex import PresentationExchangeEvaluator
from .constants import (
    CONFIG_KEY,
    CONTEXTS_KEY,
    JWT_SERVICE_KEY,
    LOGGER,
    WALLET_ISSUANCE_KEY,
    authenticated_user,
    http_error,
)


class LoginSchema(Schema):
    """Credentials posted to the login endpoint."""

    class Meta:
        """LoginSchema metadata."""

        unknown = EXCLUDE

    id = fields.Str(required=True)
    password = fields.Str(required=True)


class CreateDidSchema(Schema):
    """Body of the DID creation endpoint."""

    class Meta:
        """CreateDidSchema metadata."""

        unknown = EXCLUDE

    method = fields.Str(load_default="key", validate=validate.OneOf(["key", "jwk"]))
    key_type = fields.Str(
        data_key="keyType",
        load_default="ed25519",
        validate=validate.OneOf(list(KEY_TYPES)),
    )


class StartIssuanceQuerySchema(Schema):
    """Query parameters of the wallet-initiated issuance endpoint."""

    class Meta:
        """StartIssuanceQuerySchema metadata."""

        unknown = EXCLUDE

    issuer_id = fields.Str(data_key="issuerId", required=True)
    credential_types = fields.List(
        fields.Str(), data_key="credentialType", required=True
    )
    did = fields.Str(required=True)
    wallet_redirect_uri = fields.Str(data_key="walletRedirectUri", load_default=None)


class ContinueIssuanceQuerySchema(Schema):
    """Query parameters of the continue issuer-initiated issuance endpoint."""

    class Meta:
        """ContinueIssuanceQuerySchema metadata."""

        unknown = EXCLUDE

    session_id = fields.Str(data_key="sessionId", required=True)
    did = fields.Str(required=True)
    user_pin = fields.Str(data_key="userPin", load_default=None)


def _receive_url(request: web.Request, session_id: str) -> str:
    config = request.app[CONFIG_KEY]
    query = urlencode({"sessionId": session_id})
    return f"{config.wallet_ui_url}/ReceiveCredential/?{query}"


def _error_url(request: web.Request, message: str) -> str:
    config = request.app[CONFIG_KEY]
    return f"{config.wallet_ui_url}/IssuanceError/?{urlencode({'message': message})}"


async def start_issuance(request: web.Request):
    """Start wallet-initiated issuance; return the authorization URL."""
    user = authenticated_user(request)
    query = request.query
    try:
        params = StartIssuanceQuerySchema().load(
            {
                **{k: v for k, v in query.items() if k != "credentialType"},
                "credentialType": query.getall("credentialType", []),
            }
        )
    except ValidationError as err:
        raise web.HTTPBadRequest(reason=json.dumps(err.messages)) from err

    try:
        url = await request.app[WALLET_ISSUANCE_KEY].start_issuance(
            params["issuer_id"],
            params["credential_types"],
            params["did"],
            user,
            params["wallet_redirect_uri"],
        )
    except VcPortalError as err:
        raise http_error(err) from err
    return web.Response(text=url)


async def start_issuer_initiated_issuance(request: web.Request):
    """Accept an issuer's offer and hand it to the wallet UI."""
    try:
        offer = IssuanceInitiationRequest.from_query_string(request.query_string)
    except ValueError as err:
        raise web.HTTPBadRequest(reason=str(err)) from err
    session_id = request.app[WALLET_ISSUANCE_KEY].start_issuer_initiated_issuance(
        offer
    )
    config = request.app[CONFIG_KEY]
    raise web.HTTPFound(
        location=f"{config.wallet_ui_url}/InitiateIssuance/?"
        f"{urlencode({'sessionId': session_id})}"
    )


async def continue_issuer_initiated_issuance(request: web.Request):
    """Bind the user to an offer and either finish it or send them to authorize."""
    user = authenticated_user(request)
    try:
        params = ContinueIssuanceQuerySchema().load(dict(request.query))
    except ValidationError as err:
        raise web.HTTPBadRequest(reason=json.dumps(err.messages)) from err

    manager = request.app[WALLET_ISSUANCE_KEY]
    try:
        session = await manager.continue_issuer_initiated_issuance(
            params["session_id"], params["did"], user, params["user_pin"]
        )
        if not session.is_pre_authorized:
            url = await manager.execute_authorization_step(session)
        elif session.state == CredentialIssuanceSession.STATE_CREDENTIAL_ISSUED:
            url = _receive_url(request, session.id)
        else:
            url = _error_url(request, "Issuer declined the pre-authorized code")
    except VcPortalError as err:
        raise http_error(err) from err
    return web.json_response(
        {"sessionId": session.id, "state": session.state, "url": url}
    )


async def issuance_info(request: web.Request):
    """Return an issuance session owned by the user."""
    user = authenticated_user(request)
    session_id = request.query.get("sessionId")
    session = (
        request.app[WALLET_ISSUANCE_KEY].get_session(session_id) if session_id else None
    )
    if session is None:
        raise web.HTTPNotFound(reason="Issuance session not found or expired")
    if session.user and session.user != user.id:
        raise web.HTTPForbidden(reason="Issuance session belongs to another user")
    return web.json_response(session.serialize())


async def finalize_issuance(request: web.Request):
    """Receive the issuer's authorization response and fetch the credentials."""
    code = request.query.get("code")
    state = request.query.get("state")
    if not code or not state:
        message = request.query.get("error_description") or "Authorization failed"
        raise web.HTTPFound(location=_error_url(request, message))

    try:
        session = await request.app[WALLET_ISSUANCE_KEY].finalize_issuance(state, code)
    except VcPortalError as err:
        LOGGER.warning("Finalizing issuance session %s failed: %s", state, err)
        raise web.HTTPFound(location=_error_url(request, str(err))) from err

    if session.state != CredentialIssuanceSession.STATE_CREDENTIAL_ISSUED:
        raise web.HTTPFound(location=_error_url(request, "Token request declined"))
    raise web.HTTPFound(location=_receive_url(request, session.id))


async def _json_body(request: web.Request, schema: Schema) -> dict:
    try:
        return schema.load(await request.json() if request.can_read_body else {})
    except ValidationError as err:
        raise web.HTTPBadRequest(reason=json.dumps(err.messages)) from err
    except json.JSONDecodeError as err:
        raise web.HTTPBadRequest(reason="Request body is not valid JSON") from err


async def login(request: web.Request):
    """Exchange a configured user's password for a bearer user token."""
    body = await _json_body(request, LoginSchema())
    password = request.app[CONFIG_KEY].users.get(body["id"])
    if password is None or not hmac.compare_digest(
        password.encode(), body["password"].encode()
    ):
        LOGGER.warning("Failed login for %s", body["id"])
        raise web.HTTPUnauthorized(reason="Unknown user or wrong password")
    token = request.app[JWT_SERVICE_KEY].issue_user_token(body["id"])
    return web.json_response({"id": body["id"], "token": token})


async def list_dids(request: web.Request):
    """List the DIDs the user controls."""
    user = authenticated_user(request)
    return web.json_response(request.app[CONTEXTS_KEY].load(user).keys.list_dids())


async def create_did(request: web.Request):
    """Create a DID for the user and return it."""
    user = authenticated_user(request)
    body = await _json_body(request, CreateDidSchema())
    keys = request.app[CONTEXTS_KEY].load(user).keys
    did = keys.create_did(body["method"], KEY_TYPES[body["key_type"]])
    return web.Response(text=did)


async def resolve_did(request: web.Request):
    """Return the DID document of a did:key or did:jwk."""
    authenticated_user(request)
    did = request.match_info["did"]
    resolver = request.app[JWT_SERVICE_KEY].resolver
    if not resolver.supports(did):
        raise web.HTTPNotFound(reason=f"Cannot resolve {did}")
    try:
        document = resolver.resolve(did)
    except ResolverError as err:
        raise web.HTTPBadRequest(reason=str(err)) from err
    return web.json_response(document)


async def list_credentials(request: web.Request):
    """List the credentials stored for the user."""
    user = authenticated_user(request)
    entries = request.app[CONTEXTS_KEY].load(user).credentials.entries()
    return web.json_response(
        [{"id": id, "credential": credential} for id, credential in entries.items()]
    )


async def delete_credential(request: web.Request):
    """Delete one of the user's stored credentials."""
    user = authenticated_user(request)
    credential_id = request.match_info["id"]
    if not request.app[CONTEXTS_KEY].load(user).credentials.delete(credential_id):
        raise web.HTTPNotFound(reason=f"No credential {credential_id}")
    return web.Response(status=204)


async def find_issuers(request: web.Request):
    """List the configured issuers able to satisfy a presentation definition."""
    authenticated_user(request)
    try:
        definition = await request.json()
    except json.JSONDecodeError as err:
        raise web.HTTPBadRequest(reason="Request body is not valid JSON") from err
    try:
        PresentationExchangeEvaluator.compile(definition)
    except (TypeError, ValueError, SchemaError) as err:
        LOGGER.debug("Rejected presentation definition: %s", err)
        raise web.HTTPBadRequest(reason="Invalid presentation definition") from err
    issuers = await request.app[WALLET_ISSUANCE_KEY].find_issuers_for(definition)
    return web.json_response([issuer.serialize() for issuer in issuers])
