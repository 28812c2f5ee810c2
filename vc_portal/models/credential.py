"""Parsed credentials and presentations."""

from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Sequence


@dataclass
class ParsedCredential:
    """A credential decoded from its wire format."""

    fmt: str
    raw: Any
    vc: Mapping[str, Any]
    issuer: Optional[str] = None
    subject: Optional[str] = None
    id: Optional[str] = None
    challenge: Optional[str] = None

    @property
    def types(self) -> Sequence[str]:
        """Return the credential's type list."""
        types = self.vc.get("type") or []
        return [types] if isinstance(types, str) else list(types)


@dataclass
class ParsedPresentation:
    """A presentation decoded from its wire format."""

    fmt: str
    raw: Any
    vp: Mapping[str, Any]
    holder: Optional[str] = None
    challenge: Optional[str] = None
    audience: Optional[str] = None
    credentials: List[ParsedCredential] = field(default_factory=list)
