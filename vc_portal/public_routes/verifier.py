"""Verifier endpoints for SIOPv2/OIDC4VP presentation exchange."""

import json
from typing import Tuple

from aiohttp import web
from marshmallow import EXCLUDE, Schema, ValidationError, fields

from ..config import WalletConfiguration
from ..errors import RequestNotFound
from ..models.presentation import (
    RESPONSE_MODE_FORM_POST,
    RESPONSE_MODE_POST,
    PresentationRequest,
)
from ..pex import definition_for_schemas, definition_for_types
from .constants import (
    CONFIG_KEY,
    LOGGER,
    VERIFIED_REDIRECTS_KEY,
    VERIFIER_KEY,
    http_error,
)

PRESENT_PARAMS = {"walletId", "schemaUri", "vcType", "verificationCallbackUrl"}


class PresentQuerySchema(Schema):
    """Query parameters of the present endpoints."""

    class Meta:
        """PresentQuerySchema metadata."""

        unknown = EXCLUDE

    wallet_id = fields.Str(data_key="walletId", load_default=None)
    schema_uris = fields.List(fields.Str(), data_key="schemaUri", load_default=list)
    vc_types = fields.List(fields.Str(), data_key="vcType", load_default=list)
    callback_url = fields.Url(
        data_key="verificationCallbackUrl", load_default=None, require_tld=False
    )


class VerifyFormSchema(Schema):
    """Form posted by the wallet to the verify endpoint."""

    class Meta:
        """VerifyFormSchema metadata."""

        unknown = EXCLUDE

    state = fields.Str(required=True)
    id_token = fields.Str(load_default=None)
    vp_token = fields.Str(load_default=None)
    presentation_submission = fields.Str(load_default=None)


def _new_presentation_request(
    request: web.Request, response_mode: str = RESPONSE_MODE_FORM_POST
) -> Tuple[PresentationRequest, WalletConfiguration]:
    """Build a presentation request from the present query."""
    config = request.app[CONFIG_KEY]
    query = request.query
    try:
        params = PresentQuerySchema().load(
            {
                "walletId": query.get("walletId"),
                "schemaUri": query.getall("schemaUri", []),
                "vcType": query.getall("vcType", []),
                "verificationCallbackUrl": query.get("verificationCallbackUrl"),
            }
        )
    except ValidationError as err:
        raise web.HTTPBadRequest(reason=json.dumps(err.messages)) from err

    if not params["schema_uris"] and not params["vc_types"]:
        raise web.HTTPBadRequest(reason="schemaUri or vcType is required")
    if params["wallet_id"]:
        wallet = config.wallets.get(params["wallet_id"])
        if wallet is None:
            raise web.HTTPBadRequest(reason=f"Unknown wallet {params['wallet_id']}")
    else:
        wallet = config.default_wallet()

    definition = definition_for_schemas(params["schema_uris"])
    definition["input_descriptors"].extend(
        definition_for_types(params["vc_types"])["input_descriptors"]
    )
    custom_query = {k: v for k, v in query.items() if k not in PRESENT_PARAMS}
    presentation_request = request.app[VERIFIER_KEY].new_request(
        definition,
        custom_query=custom_query or None,
        callback_url=params["callback_url"],
        response_mode=response_mode,
    )
    return presentation_request, wallet


async def list_wallets(request: web.Request):
    """List the wallets a presentation can be requested from."""
    config = request.app[CONFIG_KEY]
    return web.json_response([w.serialize() for w in config.wallets.values()])


async def present(request: web.Request):
    """Redirect the user to their wallet with a presentation request."""
    presentation_request, wallet = _new_presentation_request(request)
    raise web.HTTPFound(
        location=wallet.present_url(presentation_request.to_query_string())
    )


async def present_cross_device(request: web.Request):
    """Return a presentation request URL for a wallet on another device."""
    presentation_request, _ = _new_presentation_request(request, RESPONSE_MODE_POST)
    return web.json_response(
        {"requestId": presentation_request.id, "url": presentation_request.to_url()}
    )


def _callback_redirect(callback_url: str, state: str) -> str:
    separator = "&" if "?" in callback_url else "?"
    return f"{callback_url}{separator}access_token={state}"


async def verify(request: web.Request):
    """Verify a wallet's response and send the user on."""
    try:
        form = VerifyFormSchema().load(dict(await request.post()))
    except ValidationError as err:
        raise web.HTTPBadRequest(reason=json.dumps(err.messages)) from err

    submission = None
    if form["presentation_submission"]:
        try:
            submission = json.loads(form["presentation_submission"])
        except json.JSONDecodeError as err:
            raise web.HTTPBadRequest(
                reason="presentation_submission is not valid JSON"
            ) from err

    manager = request.app[VERIFIER_KEY]
    pending = manager.get_request(form["state"])
    try:
        result = await manager.verify_response(
            form["state"], form["id_token"], form["vp_token"], submission
        )
    except RequestNotFound as err:
        raise http_error(err) from err

    if pending and pending.callback_url:
        location = _callback_redirect(pending.callback_url, result.id)
    else:
        location = manager.get_verification_redirection_uri(
            result, request.query.get("verifierUiUrl")
        )
    request.app[VERIFIED_REDIRECTS_KEY].put(result.id, location)
    LOGGER.debug("Redirecting verified state %s to %s", result.id, location)
    raise web.HTTPFound(location=location)


async def is_verified(request: web.Request):
    """Return the redirect recorded for a verified state."""
    state = request.query.get("state")
    location = request.app[VERIFIED_REDIRECTS_KEY].get(state) if state else None
    if location is None:
        raise web.HTTPNotFound(reason="State not verified")
    return web.Response(text=location)


async def auth(request: web.Request):
    """Hand out a verification result once."""
    access_token = request.query.get("access_token")
    result = (
        request.app[VERIFIER_KEY].get_verification_result(access_token)
        if access_token
        else None
    )
    if result is None:
        raise web.HTTPForbidden(reason="Invalid or expired access token")
    return web.json_response(result.serialize())


async def list_policies(request: web.Request):
    """List the verification policies that can be configured."""
    return web.json_response(request.app[VERIFIER_KEY].policy_registry.list_policies())
