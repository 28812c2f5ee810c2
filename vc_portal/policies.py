"""Verification policies and the pipeline that runs them.

A policy checks a presentation, its embedded credentials, or both. Every
policy in a pipeline runs, and the presentation is valid only if all pass.
"""

import datetime
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError

from .cred_processor import CredProcessors
from .errors import VcPortalError
from .models.credential import ParsedCredential, ParsedPresentation
from .pex import PresentationExchangeEvaluator

LOGGER = logging.getLogger(__name__)


class UnknownPolicyError(VcPortalError):
    """Raised when a policy name cannot be resolved."""


@dataclass
class PolicyResult:
    """Outcome of one policy."""

    policy: str
    is_success: bool
    errors: List[str] = field(default_factory=list)

    def serialize(self) -> dict:
        """Return the JSON shape of this result."""
        return {
            "policy": self.policy,
            "isSuccess": self.is_success,
            "errors": self.errors,
        }


class VerificationPolicy:
    """Base class for policies.

    Subclasses override ``check_presentation`` and/or ``check_credential``,
    returning a list of error messages; an empty list is a pass.
    """

    apply_to_vp: bool = True
    apply_to_vc: bool = True
    description: str = ""

    @property
    def name(self) -> str:
        """Return the name this policy is registered under."""
        return type(self).__name__

    async def check_presentation(self, presentation: ParsedPresentation) -> List[str]:
        """Check the presentation itself."""
        return []

    async def check_credential(self, credential: ParsedCredential) -> List[str]:
        """Check one embedded credential."""
        return []

    async def verify(self, presentation: ParsedPresentation) -> PolicyResult:
        """Apply the policy to a presentation and its credentials."""
        errors = []
        if self.apply_to_vp:
            errors.extend(await self.check_presentation(presentation))
        if self.apply_to_vc:
            for credential in presentation.credentials:
                errors.extend(await self.check_credential(credential))
        return PolicyResult(self.name, not errors, errors)


class SignaturePolicy(VerificationPolicy):
    """Verify signatures of the presentation and every credential."""

    description = "Verify by signature"

    def __init__(self, processors: CredProcessors):
        """Initialize the policy."""
        self.processors = processors

    async def check_presentation(self, presentation: ParsedPresentation) -> List[str]:
        processor = self.processors.pres_verifier_for_format(presentation.fmt)
        result = await processor.verify_presentation(presentation.raw)
        return [] if result.verified else ["Presentation signature is invalid"]

    async def check_credential(self, credential: ParsedCredential) -> List[str]:
        processor = self.processors.cred_verifier_for_format(credential.fmt)
        result = await processor.verify_credential(credential.raw)
        if result.verified:
            return []
        return [f"Signature of credential {credential.id} is invalid"]


class ChallengePolicy(VerificationPolicy):
    """Check that the challenge embedded in the proof matches the expected one."""

    description = "Verify challenge"

    def __init__(
        self, challenge: str, apply_to_vc: bool = False, apply_to_vp: bool = True
    ):
        """Initialize the policy."""
        self.challenge = challenge
        self.apply_to_vc = apply_to_vc
        self.apply_to_vp = apply_to_vp

    async def check_presentation(self, presentation: ParsedPresentation) -> List[str]:
        if presentation.challenge != self.challenge:
            return ["Presentation challenge does not match request nonce"]
        return []

    async def check_credential(self, credential: ParsedCredential) -> List[str]:
        if credential.challenge != self.challenge:
            return [f"Challenge of credential {credential.id} does not match"]
        return []


class VpTokenClaimPolicy(VerificationPolicy):
    """Check that the presented credentials satisfy the requested claims."""

    description = "Verify VP token claims against the presentation definition"
    apply_to_vc = False

    def __init__(
        self,
        presentation_definition: Mapping[str, Any],
        submission: Optional[Mapping[str, Any]] = None,
    ):
        """Initialize the policy."""
        self.evaluator = PresentationExchangeEvaluator.compile(presentation_definition)
        self.submission = submission

    async def check_presentation(self, presentation: ParsedPresentation) -> List[str]:
        result = self.evaluator.verify(presentation.credentials, self.submission)
        return [] if result.verified else [result.details or "Claims not satisfied"]


class HolderBindingPolicy(VerificationPolicy):
    """Check that every credential was issued to the presentation holder."""

    description = "Verify credentials are bound to the presentation holder"
    apply_to_vc = False

    async def check_presentation(self, presentation: ParsedPresentation) -> List[str]:
        return [
            f"Credential {credential.id} is not bound to {presentation.holder}"
            for credential in presentation.credentials
            if credential.subject != presentation.holder
        ]


def _parse_datetime(value: str) -> datetime.datetime:
    parsed = datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed


class ExpirationDateAfterPolicy(VerificationPolicy):
    """Reject credentials past their expiration date."""

    description = "Verify by expiration date"
    apply_to_vp = False

    def __init__(self, now: Optional[Callable[[], datetime.datetime]] = None):
        """Initialize the policy."""
        self._now = now or (lambda: datetime.datetime.now(datetime.timezone.utc))

    async def check_credential(self, credential: ParsedCredential) -> List[str]:
        expiration = credential.vc.get("expirationDate") or credential.vc.get(
            "validUntil"
        )
        if expiration and _parse_datetime(expiration) < self._now():
            return [f"Credential {credential.id} expired at {expiration}"]
        return []


class ValidFromBeforePolicy(VerificationPolicy):
    """Reject credentials not yet valid."""

    description = "Verify by valid from date"
    apply_to_vp = False

    def __init__(self, now: Optional[Callable[[], datetime.datetime]] = None):
        """Initialize the policy."""
        self._now = now or (lambda: datetime.datetime.now(datetime.timezone.utc))

    async def check_credential(self, credential: ParsedCredential) -> List[str]:
        valid_from = credential.vc.get("validFrom") or credential.vc.get(
            "issuanceDate"
        )
        if valid_from and _parse_datetime(valid_from) > self._now():
            return [f"Credential {credential.id} is not valid before {valid_from}"]
        return []


class TrustedIssuerPolicy(VerificationPolicy):
    """Accept only credentials issued by one of the given DIDs."""

    description = "Verify issuer is trusted"
    apply_to_vp = False

    def __init__(self, trusted_issuers: Sequence[str]):
        """Initialize the policy."""
        if isinstance(trusted_issuers, str):
            trusted_issuers = [trusted_issuers]
        self.trusted_issuers = set(trusted_issuers)

    async def check_credential(self, credential: ParsedCredential) -> List[str]:
        if credential.issuer not in self.trusted_issuers:
            return [f"Issuer {credential.issuer} is not trusted"]
        return []


class JsonSchemaPolicy(VerificationPolicy):
    """Validate credentials against a JSON schema."""

    description = "Verify by JSON schema"
    apply_to_vp = False

    def __init__(self, schema: Mapping[str, Any]):
        """Initialize the policy."""
        try:
            Draft7Validator.check_schema(schema)
        except SchemaError as err:
            raise ValueError(f"Invalid JSON schema: {err.message}") from err
        self.validator = Draft7Validator(schema)

    async def check_credential(self, credential: ParsedCredential) -> List[str]:
        return [
            f"{credential.id}: {error.message}"
            for error in self.validator.iter_errors(dict(credential.vc))
        ]


PolicyFactory = Callable[[Any], VerificationPolicy]


class PolicyRegistry:
    """Resolve policies by name and optional argument."""

    def __init__(self, processors: Optional[CredProcessors] = None):
        """Initialize the registry with the built-in policies."""
        self._factories: Dict[str, PolicyFactory] = {}
        self._requires_argument: Dict[str, bool] = {}
        if processors is not None:
            self.register("SignaturePolicy", lambda _: SignaturePolicy(processors))
        self.register("ChallengePolicy", ChallengePolicy, requires_argument=True)
        self.register("VpTokenClaimPolicy", VpTokenClaimPolicy, requires_argument=True)
        self.register("HolderBindingPolicy", lambda _: HolderBindingPolicy())
        self.register(
            "ExpirationDateAfterPolicy", lambda _: ExpirationDateAfterPolicy()
        )
        self.register("ValidFromBeforePolicy", lambda _: ValidFromBeforePolicy())
        self.register(
            "TrustedIssuerPolicy", TrustedIssuerPolicy, requires_argument=True
        )
        self.register("JsonSchemaPolicy", JsonSchemaPolicy, requires_argument=True)

    def register(
        self, name: str, factory: PolicyFactory, requires_argument: bool = False
    ):
        """Register a policy factory under name."""
        self._factories[name] = factory
        self._requires_argument[name] = requires_argument

    def list_policies(self) -> List[str]:
        """Return the registered policy names."""
        return list(self._factories)

    def resolve(self, name: str, argument: Any = None) -> VerificationPolicy:
        """Instantiate the policy registered under name."""
        factory = self._factories.get(name)
        if factory is None:
            raise UnknownPolicyError(f"Unknown verification policy {name}")
        if self._requires_argument[name] and argument is None:
            raise UnknownPolicyError(f"Policy {name} requires an argument")
        try:
            return factory(argument)
        except (TypeError, ValueError) as err:
            raise UnknownPolicyError(f"Invalid argument for policy {name}") from err

    def resolve_all(
        self, configured: Sequence[Mapping[str, Any]]
    ) -> List[VerificationPolicy]:
        """Resolve ``[{"policy": name, "argument": ...}]`` entries in order."""
        return [
            self.resolve(entry["policy"], entry.get("argument")) for entry in configured
        ]


@dataclass
class PipelineResult:
    """Aggregate outcome of a pipeline run."""

    valid: bool
    policy_results: List[PolicyResult]


async def verify_presentation(
    presentation: ParsedPresentation, policies: Sequence[VerificationPolicy]
) -> PipelineResult:
    """Run every policy; the presentation is valid iff all of them pass."""
    results = []
    for policy in policies:
        try:
            result = await policy.verify(presentation)
        except Exception as err:
            LOGGER.exception("Policy %s raised", policy.name)
            result = PolicyResult(policy.name, False, [str(err)])
        LOGGER.debug("Policy %s: %s", result.policy, result.is_success)
        results.append(result)

    return PipelineResult(
        valid=bool(results) and all(r.is_success for r in results),
        policy_results=results,
    )
