"""HTTP client for OIDC4VCI issuers."""

import json
import logging
from typing import Any, Callable, Dict, List, Optional, Protocol
from urllib.parse import urlencode

import aiohttp
from marshmallow import ValidationError

from .app_resources import AppResources
from .cache import ExpireAfterWriteRegistry
from .config import IssuerConfiguration
from .errors import AuthorizationRejected, CredentialRejected, IssuerUnreachable
from .models.issuance import (
    AUTHORIZATION_CODE_GRANT_TYPE,
    PRE_AUTHORIZED_CODE_GRANT_TYPE,
    ProviderMetadata,
    ProviderMetadataSchema,
    TokenResponse,
    TokenResponseSchema,
)

LOGGER = logging.getLogger(__name__)

METADATA_PATH = "/.well-known/openid-configuration"
METADATA_EXPIRY = 3600
METADATA_CACHE_SIZE = 256


class IssuerMetadataProvider(Protocol):
    """Operations the wallet needs from an issuer."""

    async def get_supported_credentials(
        self, issuer: IssuerConfiguration
    ) -> Dict[str, Any]:
        """Return ``credentials_supported`` keyed by credential type."""
        ...

    async def execute_pushed_authorization_request(
        self,
        issuer: IssuerConfiguration,
        credential_formats: Dict[str, str],
        redirect_uri: str,
        nonce: str,
        state: str,
        wallet_issuer: Optional[str] = None,
        user_hint: Optional[str] = None,
        op_state: Optional[str] = None,
    ) -> str:
        """Push an authorization request, returning the URL to send the user to."""
        ...

    async def get_access_token(
        self,
        issuer: IssuerConfiguration,
        code: str,
        redirect_uri: str,
        pre_authorized: bool,
        user_pin: Optional[str] = None,
    ) -> TokenResponse:
        """Exchange a code for an access token."""
        ...

    async def get_credential(
        self,
        issuer: IssuerConfiguration,
        access_token: str,
        credential_type: str,
        proof: str,
        format: str,
    ) -> Any:
        """Fetch one credential from the credential endpoint."""
        ...


class OIDC4VCIClient:
    """IssuerMetadataProvider speaking OIDC4VCI over HTTP."""

    def __init__(
        self,
        http_client: Callable[[], aiohttp.ClientSession] = AppResources.get_http_client,
    ):
        """Initialize the client."""
        self._http_client = http_client
        self._metadata: ExpireAfterWriteRegistry[ProviderMetadata] = (
            ExpireAfterWriteRegistry(METADATA_EXPIRY, max_size=METADATA_CACHE_SIZE)
        )

    def _auth(self, issuer: IssuerConfiguration) -> Optional[aiohttp.BasicAuth]:
        if issuer.client_id and issuer.client_secret:
            return aiohttp.BasicAuth(issuer.client_id, issuer.client_secret)
        return None

    async def get_provider_metadata(
        self, issuer: IssuerConfiguration
    ) -> ProviderMetadata:
        """Fetch and cache the issuer's provider metadata."""
        cached = self._metadata.get(issuer.id)
        if cached:
            return cached

        url = f"{issuer.url}{METADATA_PATH}"
        LOGGER.debug("Fetching provider metadata from %s", url)
        try:
            async with self._http_client().get(url) as resp:
                if resp.status != 200:
                    raise IssuerUnreachable(
                        f"Issuer {issuer.id} metadata request failed: {resp.status}"
                    )
                body = await resp.json(content_type=None)
        except (aiohttp.ClientError, json.JSONDecodeError) as err:
            raise IssuerUnreachable(f"Issuer {issuer.id} unreachable: {err}") from err

        try:
            metadata = ProviderMetadataSchema().load(body)
        except ValidationError as err:
            raise IssuerUnreachable(
                f"Issuer {issuer.id} published invalid metadata: {err.messages}"
            ) from err
        self._metadata.put(issuer.id, metadata)
        return metadata

    async def get_supported_credentials(
        self, issuer: IssuerConfiguration
    ) -> Dict[str, Any]:
        """Return ``credentials_supported`` keyed by credential type."""
        return (await self.get_provider_metadata(issuer)).credentials_supported

    async def execute_pushed_authorization_request(
        self,
        issuer: IssuerConfiguration,
        credential_formats: Dict[str, str],
        redirect_uri: str,
        nonce: str,
        state: str,
        wallet_issuer: Optional[str] = None,
        user_hint: Optional[str] = None,
        op_state: Optional[str] = None,
    ) -> str:
        """Push an authorization request, returning the URL to send the user to."""
        metadata = await self.get_provider_metadata(issuer)
        if not metadata.pushed_authorization_request_endpoint:
            raise AuthorizationRejected(f"Issuer {issuer.id} does not support PAR")

        authorization_details: List[dict] = [
            {"type": "openid_credential", "credential_type": t, "format": f}
            for t, f in credential_formats.items()
        ]
        client_id = issuer.client_id or redirect_uri
        form = {
            "response_type": "code",
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "scope": "openid",
            "state": state,
            "nonce": nonce,
            "authorization_details": json.dumps(authorization_details),
        }
        if wallet_issuer:
            form["wallet_issuer"] = wallet_issuer
        if user_hint:
            form["user_hint"] = user_hint
        if op_state:
            form["op_state"] = op_state

        try:
            async with self._http_client().post(
                metadata.pushed_authorization_request_endpoint,
                data=form,
                auth=self._auth(issuer),
            ) as resp:
                body = await resp.json(content_type=None)
                status = resp.status
        except (aiohttp.ClientError, json.JSONDecodeError) as err:
            raise IssuerUnreachable(f"Issuer {issuer.id} unreachable: {err}") from err

        if not isinstance(body, dict):
            body = {}
        if status not in (200, 201) or not body.get("request_uri"):
            LOGGER.warning("PAR rejected by %s: %s %s", issuer.id, status, body)
            raise AuthorizationRejected(
                body.get("error_description")
                or body.get("error")
                or f"Pushed authorization request failed: {status}"
            )

        query = urlencode({"client_id": client_id, "request_uri": body["request_uri"]})
        return f"{metadata.authorization_endpoint}?{query}"

    async def get_access_token(
        self,
        issuer: IssuerConfiguration,
        code: str,
        redirect_uri: str,
        pre_authorized: bool,
        user_pin: Optional[str] = None,
    ) -> TokenResponse:
        """Exchange a code for an access token.

        A refused or failed exchange is returned as an unsuccessful
        TokenResponse rather than raised.
        """
        metadata = await self.get_provider_metadata(issuer)
        if pre_authorized:
            form = {
                "grant_type": PRE_AUTHORIZED_CODE_GRANT_TYPE,
                "pre-authorized_code": code,
            }
            if user_pin:
                form["user_pin"] = user_pin
        else:
            form = {"grant_type": AUTHORIZATION_CODE_GRANT_TYPE, "code": code}
        form["redirect_uri"] = redirect_uri

        try:
            async with self._http_client().post(
                metadata.token_endpoint, data=form, auth=self._auth(issuer)
            ) as resp:
                body = await resp.json(content_type=None)
                status = resp.status
        except (aiohttp.ClientError, json.JSONDecodeError) as err:
            LOGGER.warning("Token request to %s failed: %s", issuer.id, err)
            return TokenResponse(
                error="temporarily_unavailable", error_description=str(err)
            )

        try:
            tokens = TokenResponseSchema().load(body if isinstance(body, dict) else {})
        except ValidationError as err:
            LOGGER.warning("Unparseable token response from %s", issuer.id)
            return TokenResponse(error="invalid_response", error_description=str(err))

        if status != 200 and not tokens.error:
            tokens.error = f"http_{status}"
        if not tokens.success:
            LOGGER.warning("Token request declined by %s: %s", issuer.id, tokens.error)
        return tokens

    async def get_credential(
        self,
        issuer: IssuerConfiguration,
        access_token: str,
        credential_type: str,
        proof: str,
        format: str,
    ) -> Any:
        """Fetch one credential from the credential endpoint."""
        metadata = await self.get_provider_metadata(issuer)
        request = {
            "type": credential_type,
            "format": format,
            "proof": {"proof_type": "jwt", "jwt": proof},
        }
        try:
            async with self._http_client().post(
                metadata.credential_endpoint,
                json=request,
                headers={"Authorization": f"Bearer {access_token}"},
            ) as resp:
                status = resp.status
                body = await resp.json(content_type=None) if status == 200 else None
                reason = resp.reason
        except (aiohttp.ClientError, json.JSONDecodeError) as err:
            raise IssuerUnreachable(f"Issuer {issuer.id} unreachable: {err}") from err

        if status != 200 or not isinstance(body, dict) or "credential" not in body:
            raise CredentialRejected(
                f"Issuer {issuer.id} declined {credential_type}: {status} {reason}"
            )
        return body["credential"]
