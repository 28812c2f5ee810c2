"""Credential format negotiation."""

from typing import Any, Mapping, Optional

JWT_VC = "jwt_vc"
LDP_VC = "ldp_vc"

# Preferred encoding per DID method
PREFERRED_FORMATS = {
    "iota": LDP_VC,
    "ebsi": JWT_VC,
}
DEFAULT_FORMAT = JWT_VC
FALLBACK_FORMATS = (JWT_VC, LDP_VC)


def did_method(did: str) -> str:
    """Return the method segment of a DID, e.g. ``key`` for ``did:key:z6M..``."""
    parts = did.split(":", 2)
    if len(parts) < 3 or parts[0] != "did" or not parts[1]:
        raise ValueError(f"Not a DID: {did}")
    return parts[1]


def preferred_format(did: str) -> str:
    """Return the format preferred for credentials bound to did."""
    return PREFERRED_FORMATS.get(did_method(did), DEFAULT_FORMAT)


def negotiate_format(
    credential_type: str,
    subject_did: str,
    supported_credentials: Mapping[str, Any],
) -> Optional[str]:
    """Choose the format to request a credential type in.

    Args:
        credential_type: The credential type to request
        subject_did: DID the credential will be bound to
        supported_credentials: Issuer metadata ``credentials_supported``,
            mapping credential type to ``{"formats": {format: ...}}``

    Returns:
        The format to request, or None if the issuer advertises the type but
        in no usable format
    """
    preferred = preferred_format(subject_did)
    metadata = supported_credentials.get(credential_type)
    if metadata is None:
        return preferred

    formats = metadata.get("formats") or {}
    if preferred in formats:
        return preferred
    for fmt in FALLBACK_FORMATS:
        if fmt in formats:
            return fmt
    return None
