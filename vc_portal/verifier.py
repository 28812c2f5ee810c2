"""Verifier side of SIOPv2/OIDC4VP presentation exchange."""

import logging
from typing import Any, List, Mapping, Optional, Sequence
from urllib.parse import urlencode

from .cache import ExpireAfterWriteRegistry
from .config import Config
from .cred_processor import CredProcessorError, CredProcessors
from .errors import RequestNotFound
from .jwt import JwtService
from .models.credential import ParsedPresentation
from .models.presentation import (
    RESPONSE_MODE_FORM_POST,
    PresentationRequest,
    VerificationResult,
)
from .pex import definition_for_schemas, definition_for_types
from .policies import (
    ChallengePolicy,
    HolderBindingPolicy,
    PolicyRegistry,
    PolicyResult,
    SignaturePolicy,
    VerificationPolicy,
    VpTokenClaimPolicy,
    verify_presentation,
)
from .utils import new_nonce

LOGGER = logging.getLogger(__name__)

ID_TOKEN_POLICY = "IdTokenSignaturePolicy"


class VerifierManager:
    """Create presentation requests and verify wallet responses.

    Requests and results live in write-expiring registries; both are consumed
    on first read.
    """

    def __init__(
        self,
        config: Config,
        processors: CredProcessors,
        jwt_service: JwtService,
        policy_registry: PolicyRegistry,
        request_cache: Optional[ExpireAfterWriteRegistry[PresentationRequest]] = None,
        result_cache: Optional[ExpireAfterWriteRegistry[VerificationResult]] = None,
    ):
        """Initialize the manager."""
        self.config = config
        self.processors = processors
        self.jwt_service = jwt_service
        self.policy_registry = policy_registry
        self.requests = request_cache or ExpireAfterWriteRegistry(config.expiration)
        self.results = result_cache or ExpireAfterWriteRegistry(config.expiration)

    def new_request(
        self,
        presentation_definition: Mapping[str, Any],
        state: Optional[str] = None,
        custom_query: Optional[Mapping[str, str]] = None,
        callback_url: Optional[str] = None,
        response_mode: str = RESPONSE_MODE_FORM_POST,
    ) -> PresentationRequest:
        """Create and cache a presentation request.

        A caller-supplied ``state`` replaces any unconsumed request with the
        same id.
        """
        nonce = new_nonce()
        request_id = state or nonce
        redirect_uri = f"{self.config.verifier_api_url}/verify"
        if custom_query:
            redirect_uri = f"{redirect_uri}?{urlencode(custom_query)}"

        request = PresentationRequest(
            id=request_id,
            nonce=nonce,
            presentation_definition=presentation_definition,
            redirect_uri=redirect_uri,
            callback_url=callback_url,
            response_mode=response_mode,
        )
        self.requests.put(request_id, request)
        LOGGER.info("Created presentation request %s", request_id)
        return request

    def new_request_for_schemas(
        self, schema_uris: Sequence[str], **kwargs
    ) -> PresentationRequest:
        """Create a request for one credential per schema URI."""
        return self.new_request(definition_for_schemas(schema_uris), **kwargs)

    def new_request_for_types(
        self, vc_types: Sequence[str], **kwargs
    ) -> PresentationRequest:
        """Create a request for one credential per credential type."""
        return self.new_request(definition_for_types(vc_types), **kwargs)

    def get_request(self, state: str) -> Optional[PresentationRequest]:
        """Return a pending request without consuming it."""
        return self.requests.get(state)

    def policies_for(
        self,
        request: PresentationRequest,
        submission: Optional[Mapping[str, Any]] = None,
    ) -> List[VerificationPolicy]:
        """Return the mandatory policies for request followed by configured ones."""
        return [
            SignaturePolicy(self.processors),
            ChallengePolicy(request.nonce, apply_to_vc=False, apply_to_vp=True),
            VpTokenClaimPolicy(request.presentation_definition, submission),
            HolderBindingPolicy(),
            *self.policy_registry.resolve_all(self.config.additional_policies),
        ]

    def _parse_presentation(
        self, vp_token: Optional[str]
    ) -> Optional[ParsedPresentation]:
        if not vp_token:
            return None
        for fmt in self.processors.pres_verifiers:
            try:
                return self.processors.pres_verifier_for_format(
                    fmt
                ).parse_presentation(vp_token)
            except (ValueError, CredProcessorError) as err:
                LOGGER.debug("vp_token is not %s: %s", fmt, err)
        return None

    def _verify_id_token(
        self, id_token: str, presentation: Optional[ParsedPresentation]
    ) -> PolicyResult:
        errors = []
        try:
            claims = self.jwt_service.parse_claims(id_token)
        except ValueError as err:
            return PolicyResult(ID_TOKEN_POLICY, False, [f"Malformed id_token: {err}"])
        subject = claims.get("sub")
        if not subject:
            errors.append("id_token has no subject")
        elif not self.jwt_service.verify(id_token, subject=subject):
            errors.append("id_token is not signed by its subject")
        if presentation and presentation.holder != subject:
            errors.append("id_token subject is not the presentation holder")
        return PolicyResult(ID_TOKEN_POLICY, not errors, errors)

    async def verify_response(
        self,
        state: str,
        id_token: Optional[str],
        vp_token: Optional[str],
        presentation_submission: Optional[Mapping[str, Any]] = None,
    ) -> VerificationResult:
        """Verify a wallet response against the request it answers.

        The request is consumed before verification, so a response can be
        evaluated at most once. An invalid presentation yields a result with
        ``valid`` False rather than an exception.
        """
        request = self.requests.pop(state)
        if request is None:
            raise RequestNotFound(f"No pending presentation request for {state}")

        presentation = self._parse_presentation(vp_token)
        subject = presentation.holder if presentation else None
        policy_results: List[PolicyResult] = []

        if id_token:
            try:
                subject = self.jwt_service.parse_claims(id_token).get("sub")
            except ValueError:
                subject = None
            policy_results.append(self._verify_id_token(id_token, presentation))

        if presentation is None:
            policy_results.append(
                PolicyResult(
                    "VpTokenParsing", False, ["vp_token missing or unparseable"]
                )
            )
            valid = False
            credentials = []
        else:
            pipeline = await verify_presentation(
                presentation, self.policies_for(request, presentation_submission)
            )
            policy_results.extend(pipeline.policy_results)
            valid = all(result.is_success for result in policy_results)
            credentials = [dict(c.vc) for c in presentation.credentials]

        result = VerificationResult(
            id=request.id,
            subject=subject,
            valid=valid,
            vp_token=vp_token,
            auth_token=request.id if valid else None,
            policy_results=[r.serialize() for r in policy_results],
            credentials=credentials,
        )
        self.results.put(result.id, result)
        LOGGER.info("Verified response for %s: valid=%s", state, valid)
        return result

    def get_verification_redirection_uri(
        self, result: VerificationResult, ui_url: Optional[str] = None
    ) -> str:
        """Return where to send the user after verification."""
        ui_url = ui_url or self.config.verifier_ui_url
        query = urlencode({"access_token": result.id})
        if result.valid:
            return f"{ui_url}/success/?{query}"
        return f"{ui_url}/error/?{query}"

    def get_verification_result(self, id: str) -> Optional[VerificationResult]:
        """Return a verification result once, invalidating it on read."""
        return self.results.pop(id)

