"""Issue, present and verify credentials in the jwt_vc format."""

import datetime
import logging
import uuid
from typing import Any, Dict, List, Mapping, Optional, Sequence

from vc_portal.cred_processor import (
    CredProcessorError,
    CredVerifier,
    Holder,
    Issuer,
    PresVerifier,
    VerifyResult,
)
from vc_portal.did_utils import DIDResolver, PrivateKey
from vc_portal.jwt import decode_unverified, jwt_sign, jwt_verify, signer_did
from vc_portal.models.credential import ParsedCredential, ParsedPresentation

LOGGER = logging.getLogger(__name__)

VC_CONTEXT = "https://www.w3.org/2018/credentials/v1"


def _timestamp(value: Optional[str]) -> Optional[int]:
    """Convert an XML schema dateTime into a unix timestamp."""
    if not value:
        return None
    parsed = datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return int(parsed.timestamp())


def _issuer_id(issuer: Any) -> Optional[str]:
    if isinstance(issuer, Mapping):
        return issuer.get("id")
    return issuer


def _object(value: Any, name: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise CredProcessorError(f"{name} must be a JSON object")
    return value


def _subject(vc: Mapping[str, Any]) -> Dict[str, Any]:
    return dict(_object(vc.get("credentialSubject") or {}, "credentialSubject"))


def _credential_list(vp: Mapping[str, Any]) -> List[Any]:
    credentials = vp.get("verifiableCredential") or []
    if isinstance(credentials, (str, Mapping)):
        return [credentials]
    if not isinstance(credentials, list):
        raise CredProcessorError("verifiableCredential must be a list")
    return credentials


class JwtVcCredProcessor(Issuer, Holder, CredVerifier, PresVerifier):
    """Credential processor class for jwt_vc format."""

    format = "jwt_vc"

    def __init__(self, resolver: DIDResolver):
        """Initialize the processor."""
        self.resolver = resolver

    async def issue(
        self,
        credential: Mapping[str, Any],
        key: PrivateKey,
        kid: str,
    ) -> str:
        """Return signed credential in JWT format."""
        vc = {k: v for k, v in credential.items() if k != "proof"}
        issuer = _issuer_id(vc.get("issuer"))
        if not issuer:
            raise CredProcessorError("Credential has no issuer")
        subject = (vc.get("credentialSubject") or {}).get("id")

        payload = {
            "vc": vc,
            "iss": issuer,
            "nbf": _timestamp(vc.get("issuanceDate") or vc.get("validFrom"))
            or int(datetime.datetime.now(datetime.timezone.utc).timestamp()),
        }
        if vc.get("id"):
            payload["jti"] = vc["id"]
        if subject:
            payload["sub"] = subject
        expiration = _timestamp(vc.get("expirationDate") or vc.get("validUntil"))
        if expiration:
            payload["exp"] = expiration

        return jwt_sign({}, payload, key, kid)

    async def create_presentation(
        self,
        credentials: Sequence[Any],
        holder: str,
        key: PrivateKey,
        kid: str,
        challenge: str,
        audience: Optional[str] = None,
    ) -> str:
        """Return a JWT presentation of credentials bound to challenge."""
        pres_id = f"urn:uuid:{uuid.uuid4()}"
        payload = {
            "iss": holder,
            "sub": holder,
            "jti": pres_id,
            "nonce": challenge,
            "iat": int(datetime.datetime.now(datetime.timezone.utc).timestamp()),
            "vp": {
                "@context": [VC_CONTEXT],
                "type": ["VerifiablePresentation"],
                "id": pres_id,
                "holder": holder,
                "verifiableCredential": list(credentials),
            },
        }
        if audience:
            payload["aud"] = audience
        return jwt_sign({}, payload, key, kid)

    async def verify_credential(self, credential: Any) -> VerifyResult:
        """Verify a credential in JWT VC format, signed by its issuer."""
        res = jwt_verify(self.resolver, credential)
        if res.verified and signer_did(res.headers) != res.payload.get("iss"):
            LOGGER.debug("Credential is not signed by its issuer")
            return VerifyResult(verified=False, payload=res.payload)
        return VerifyResult(verified=res.verified, payload=res.payload)

    async def verify_presentation(self, presentation: Any) -> VerifyResult:
        """Verify a presentation and every JWT credential embedded in it.

        The presentation must be signed by its holder.
        """
        res = jwt_verify(self.resolver, presentation)
        if not res.verified:
            return VerifyResult(verified=False, payload=res.payload)

        vp = res.payload.get("vp")
        if not isinstance(vp, Mapping):
            return VerifyResult(verified=False, payload=res.payload)
        holder = res.payload.get("iss")
        if signer_did(res.headers) != holder or vp.get("holder", holder) != holder:
            LOGGER.debug("Presentation is not signed by its holder")
            return VerifyResult(verified=False, payload=res.payload)

        for credential in _credential_list(vp):
            if not isinstance(credential, str):
                continue
            inner = await self.verify_credential(credential)
            if not inner.verified:
                LOGGER.debug("Embedded credential failed verification")
                return VerifyResult(verified=False, payload=res.payload)
        return VerifyResult(verified=True, payload=res.payload)

    def parse_credential(self, credential: Any) -> ParsedCredential:
        """Decode a JWT credential into its VC document."""
        if isinstance(credential, Mapping):
            return ParsedCredential(
                fmt="ldp_vc",
                raw=credential,
                vc=credential,
                issuer=_issuer_id(credential.get("issuer")),
                subject=_subject(credential).get("id"),
                id=credential.get("id"),
            )
        if not isinstance(credential, str):
            raise CredProcessorError("Credential must be a JWT or a JSON object")

        payload = decode_unverified(credential).payload
        if "vc" not in payload:
            raise CredProcessorError("JWT has no vc claim")
        vc = dict(_object(payload["vc"], "vc claim"))
        vc.setdefault("id", payload.get("jti"))
        vc.setdefault("issuer", payload.get("iss"))
        subject = _subject(vc)
        if payload.get("sub"):
            subject.setdefault("id", payload["sub"])
        vc["credentialSubject"] = subject
        return ParsedCredential(
            fmt=self.format,
            raw=credential,
            vc=vc,
            issuer=_issuer_id(vc.get("issuer")),
            subject=subject.get("id"),
            id=vc.get("id"),
            challenge=payload.get("nonce"),
        )

    def parse_presentation(self, presentation: Any) -> ParsedPresentation:
        """Decode a JWT presentation and its embedded credentials."""
        payload = decode_unverified(presentation).payload
        if "vp" not in payload:
            raise CredProcessorError("JWT has no vp claim")
        vp = _object(payload["vp"], "vp claim")
        credentials = [
            self.parse_credential(credential) for credential in _credential_list(vp)
        ]
        audience = payload.get("aud")
        if isinstance(audience, list):
            audience = audience[0] if audience else None
        return ParsedPresentation(
            fmt=self.format,
            raw=presentation,
            vp=vp,
            holder=payload.get("iss") or vp.get("holder"),
            challenge=payload.get("nonce"),
            audience=audience,
            credentials=credentials,
        )
