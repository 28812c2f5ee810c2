"""Errors raised by the protocol engine."""


class VcPortalError(Exception):
    """Base class for VC portal errors."""


class NotFoundOrExpired(VcPortalError):
    """A request, result or session is absent from its registry."""


class RequestNotFound(NotFoundOrExpired):
    """Presentation request or verification result not found."""


class SessionNotFound(NotFoundOrExpired):
    """Issuance session not found."""


class InvalidState(VcPortalError):
    """An operation was called out of order for its session."""


class WrongFlow(InvalidState):
    """Operation does not apply to the flow the session was started with."""


class UserNotConfirmed(InvalidState):
    """No user is bound to the session."""


class NoSubjectBound(InvalidState):
    """No subject DID is bound to the session."""


class SubjectAlreadyBound(InvalidState):
    """The session is already bound to a different subject."""


class UpstreamRejected(VcPortalError):
    """An external issuer refused or failed a request."""


class IssuerUnreachable(UpstreamRejected):
    """The issuer could not be contacted or returned unusable metadata."""


class AuthorizationRejected(UpstreamRejected):
    """The issuer declined the pushed authorization request."""


class CredentialRejected(UpstreamRejected):
    """The issuer declined to deliver a credential."""
