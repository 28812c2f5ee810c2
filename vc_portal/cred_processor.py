"""CredProcessor interface and exception."""

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol, Sequence

from .did_utils import PrivateKey
from .errors import VcPortalError
from .models.credential import ParsedCredential, ParsedPresentation


@dataclass
class VerifyResult:
    """Result of verification."""

    verified: bool
    payload: Any


class Issuer(Protocol):
    """Issuer protocol."""

    async def issue(
        self,
        credential: Mapping[str, Any],
        key: PrivateKey,
        kid: str,
    ) -> Any:
        """Sign an unsigned credential document."""
        ...


class Holder(Protocol):
    """Holder protocol."""

    async def create_presentation(
        self,
        credentials: Sequence[Any],
        holder: str,
        key: PrivateKey,
        kid: str,
        challenge: str,
        audience: Optional[str] = None,
    ) -> Any:
        """Wrap credentials into a presentation bound to challenge."""
        ...


class CredVerifier(Protocol):
    """Credential verifier protocol."""

    async def verify_credential(self, credential: Any) -> VerifyResult:
        """Verify credential."""
        ...

    def parse_credential(self, credential: Any) -> ParsedCredential:
        """Decode credential without verifying it."""
        ...


class PresVerifier(Protocol):
    """Presentation verifier protocol."""

    async def verify_presentation(self, presentation: Any) -> VerifyResult:
        """Verify presentation."""
        ...

    def parse_presentation(self, presentation: Any) -> ParsedPresentation:
        """Decode presentation and embedded credentials without verifying them."""
        ...


class CredProcessorError(VcPortalError):
    """Base class for CredProcessor errors."""


class CredProcessors:
    """Registry for credential format processors."""

    def __init__(
        self,
        issuers: Optional[Mapping[str, Issuer]] = None,
        holders: Optional[Mapping[str, Holder]] = None,
        cred_verifiers: Optional[Mapping[str, CredVerifier]] = None,
        pres_verifiers: Optional[Mapping[str, PresVerifier]] = None,
    ):
        """Initialize the processor registry."""
        self.issuers = dict(issuers) if issuers else {}
        self.holders = dict(holders) if holders else {}
        self.cred_verifiers = dict(cred_verifiers) if cred_verifiers else {}
        self.pres_verifiers = dict(pres_verifiers) if pres_verifiers else {}

    def issuer_for_format(self, format: str) -> Issuer:
        """Return the processor to handle the given format."""
        processor = self.issuers.get(format)
        if not processor:
            raise CredProcessorError(f"No loaded issuer for format {format}")
        return processor

    def holder_for_format(self, format: str) -> Holder:
        """Return the processor to handle the given format."""
        processor = self.holders.get(format)
        if not processor:
            raise CredProcessorError(f"No loaded holder for format {format}")
        return processor

    def cred_verifier_for_format(self, format: str) -> CredVerifier:
        """Return the processor to handle the given format."""
        processor = self.cred_verifiers.get(format)
        if not processor:
            raise CredProcessorError(
                f"No loaded credential verifier for format {format}"
            )
        return processor

    def pres_verifier_for_format(self, format: str) -> PresVerifier:
        """Return the processor to handle the given format."""
        processor = self.pres_verifiers.get(format)
        if not processor:
            raise CredProcessorError(
                f"No loaded presentation verifier for format {format}"
            )
        return processor

    def register_issuer(self, format: str, processor: Issuer):
        """Register a new processor for a format."""
        self.issuers[format] = processor

    def register_holder(self, format: str, processor: Holder):
        """Register a new processor for a format."""
        self.holders[format] = processor

    def register_cred_verifier(self, format: str, processor: CredVerifier):
        """Register a new processor for a format."""
        self.cred_verifiers[format] = processor

    def register_pres_verifier(self, format: str, processor: PresVerifier):
        """Register a new processor for a format."""
        self.pres_verifiers[format] = processor

    def issuing_formats(self) -> Sequence[str]:
        """Return the formats credentials can be issued in."""
        return list(self.issuers)
