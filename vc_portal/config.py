"""Retrieve configuration values."""

import re
from dataclasses import dataclass, field
from os import getenv
from typing import Any, Dict, List, Mapping, Optional

DEFAULT_EXPIRATION = 300
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8080


class ConfigError(ValueError):
    """Base class for configuration errors."""

    def __init__(self, var: str, env: str):
        """Initialize a ConfigError."""
        super().__init__(
            f"Invalid {var} specified for VC portal; use either "
            f"vc_portal.{var} config value or environment variable {env}"
        )


def expand_vars(text: str) -> str:
    """Expand ${VAR} and ${VAR:-default} references in a config value."""

    def replacer(match):
        var_expr = match.group(1)
        if ":-" in var_expr:
            var_name, default_value = var_expr.split(":-", 1)
            return getenv(var_name.strip(), default_value.strip())
        return getenv(var_expr.strip(), match.group(0))

    return re.sub(r"\$\{([^}]+)\}", replacer, text)


@dataclass
class WalletConfiguration:
    """A wallet the verifier and issuer can redirect to."""

    id: str
    url: str
    present_path: str = "api/siop/initiatePresentation"
    receive_path: str = "api/siop/initiateIssuance"
    description: str = ""

    @classmethod
    def from_dict(cls, id: str, value: Mapping[str, Any]) -> "WalletConfiguration":
        """Build from a settings entry."""
        return cls(
            id=id,
            url=value["url"],
            present_path=value.get("present_path", cls.present_path),
            receive_path=value.get("receive_path", cls.receive_path),
            description=value.get("description", id),
        )

    def present_url(self, query: str) -> str:
        """Return the wallet URL a presentation request is sent to."""
        if self.present_path:
            return f"{self.url}/{self.present_path}?{query}"
        return f"{self.url}?{query}"

    def receive_url(self, query: str) -> str:
        """Return the wallet URL a credential offer is sent to."""
        if self.receive_path:
            return f"{self.url}/{self.receive_path}?{query}"
        return f"{self.url}?{query}"

    def serialize(self) -> dict:
        """Return the JSON shape used by the wallets/list endpoints."""
        return {
            "id": self.id,
            "url": self.url,
            "presentPath": self.present_path,
            "receivePath": self.receive_path,
            "description": self.description,
        }


@dataclass
class IssuerConfiguration:
    """An OIDC4VCI issuer the wallet can obtain credentials from."""

    id: str
    url: str
    description: str = ""
    client_id: Optional[str] = None
    client_secret: Optional[str] = None

    @classmethod
    def from_dict(cls, id: str, value: Mapping[str, Any]) -> "IssuerConfiguration":
        """Build from a settings entry."""
        return cls(
            id=id,
            url=value["url"].rstrip("/"),
            description=value.get("description", id),
            client_id=value.get("client_id"),
            client_secret=value.get("client_secret"),
        )

    def serialize(self) -> dict:
        """Return the JSON shape, without client credentials."""
        return {"id": self.id, "url": self.url, "description": self.description}


@dataclass
class Config:
    """Configuration for the VC portal."""

    verifier_api_url: str
    verifier_ui_url: str
    wallet_api_url: str
    wallet_ui_url: str
    issuer_api_url: str
    issuer_ui_url: str
    jwt_secret: str
    expiration: int = DEFAULT_EXPIRATION
    additional_policies: List[Dict[str, Any]] = field(default_factory=list)
    wallets: Dict[str, WalletConfiguration] = field(default_factory=dict)
    issuers: Dict[str, IssuerConfiguration] = field(default_factory=dict)
    credential_types: List[str] = field(default_factory=lambda: ["VerifiableId"])
    users: Dict[str, str] = field(default_factory=dict)
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT

    @classmethod
    def from_settings(cls, settings: Optional[Mapping[str, Any]] = None) -> "Config":
        """Retrieve configuration from a settings mapping and the environment."""
        settings = settings or {}

        def required(var: str) -> str:
            env = f"VC_PORTAL_{var.upper()}"
            value = settings.get(var) or getenv(env)
            if not value:
                raise ConfigError(var, env)
            return expand_vars(value).rstrip("/")

        expiration = settings.get("expiration") or getenv(
            "VC_PORTAL_EXPIRATION", str(DEFAULT_EXPIRATION)
        )
        try:
            expiration = int(expiration)
        except ValueError as err:
            raise ConfigError("expiration", "VC_PORTAL_EXPIRATION") from err
        if expiration <= 0:
            raise ConfigError("expiration", "VC_PORTAL_EXPIRATION")

        port = settings.get("port") or getenv("VC_PORTAL_PORT", str(DEFAULT_PORT))
        try:
            port = int(port)
        except ValueError as err:
            raise ConfigError("port", "VC_PORTAL_PORT") from err

        return cls(
            verifier_api_url=required("verifier_api_url"),
            verifier_ui_url=required("verifier_ui_url"),
            wallet_api_url=required("wallet_api_url"),
            wallet_ui_url=required("wallet_ui_url"),
            issuer_api_url=required("issuer_api_url"),
            issuer_ui_url=required("issuer_ui_url"),
            jwt_secret=required("jwt_secret"),
            expiration=expiration,
            host=settings.get("host") or getenv("VC_PORTAL_HOST", DEFAULT_HOST),
            port=port,
            additional_policies=list(settings.get("additional_policies") or []),
            wallets={
                id: WalletConfiguration.from_dict(id, value)
                for id, value in (settings.get("wallets") or {}).items()
            },
            issuers={
                id: IssuerConfiguration.from_dict(id, value)
                for id, value in (settings.get("issuers") or {}).items()
            },
            credential_types=list(
                settings.get("credential_types") or ["VerifiableId"]
            ),
            users=dict(settings.get("users") or {}),
        )

    def default_wallet(self) -> WalletConfiguration:
        """Return the wallet used when a caller names none."""
        if self.wallets:
            return next(iter(self.wallets.values()))
        return WalletConfiguration(
            id="x-device",
            url="openid://",
            present_path="",
            receive_path="",
            description="cross device",
        )
