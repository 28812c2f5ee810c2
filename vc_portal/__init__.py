"""VC portal: OIDC4VCI issuance and SIOPv2/OIDC4VP presentation."""

import logging
from typing import Optional

from aiohttp import web

from .app_resources import AppResources
from .cache import ExpireAfterWriteRegistry
from .config import Config
from .context import UserContextLoader
from .cred_processor import CredProcessors
from .did_utils import DIDResolver
from .issuer import IssuerManager
from .jwt import JwtService
from .oidc4vci_client import IssuerMetadataProvider, OIDC4VCIClient
from .policies import PolicyRegistry
from .public_routes import register
from .public_routes.constants import (
    CONFIG_KEY,
    CONTEXTS_KEY,
    ISSUER_KEY,
    JWT_SERVICE_KEY,
    VERIFIED_REDIRECTS_KEY,
    VERIFIER_KEY,
    WALLET_ISSUANCE_KEY,
)
from .verifier import VerifierManager
from .wallet_issuance import CredentialIssuanceManager

LOGGER = logging.getLogger(__name__)


async def startup(app: web.Application):
    """Startup handler; open shared resources."""
    await AppResources.startup()


async def shutdown(app: web.Application):
    """Cleanup handler; release shared resources."""
    await AppResources.shutdown()


def setup(
    app: web.Application,
    config: Config,
    metadata_provider: Optional[IssuerMetadataProvider] = None,
):
    """Wire the protocol engine into app and register its routes."""
    LOGGER.info("Setting up VC portal...")
    resolver = DIDResolver()

    from jwt_vc import setup as setup_jwt_vc

    processors = CredProcessors()
    setup_jwt_vc(processors, resolver)

    jwt_service = JwtService(resolver, config.jwt_secret)
    contexts = UserContextLoader()
    policy_registry = PolicyRegistry(processors)
    # Unknown configured policies are rejected here
    policy_registry.resolve_all(config.additional_policies)

    app[CONFIG_KEY] = config
    app[JWT_SERVICE_KEY] = jwt_service
    app[CONTEXTS_KEY] = contexts
    app[VERIFIER_KEY] = VerifierManager(
        config, processors, jwt_service, policy_registry
    )
    app[VERIFIED_REDIRECTS_KEY] = ExpireAfterWriteRegistry(config.expiration)
    app[ISSUER_KEY] = IssuerManager(config, processors, resolver)
    app[WALLET_ISSUANCE_KEY] = CredentialIssuanceManager(
        config, metadata_provider or OIDC4VCIClient(), processors, contexts
    )

    register(app)
    app.on_startup.append(startup)
    app.on_cleanup.append(shutdown)
    LOGGER.info("VC portal routes registered")


def create_app(
    config: Optional[Config] = None,
    metadata_provider: Optional[IssuerMetadataProvider] = None,
) -> web.Application:
    """Create an application serving the VC portal."""
    app = web.Application()
    setup(app, config or Config.from_settings(), metadata_provider)
    return app


def main():
    """Run the VC portal server."""
    logging.basicConfig(level=logging.INFO)
    config = Config.from_settings()
    LOGGER.info("VC portal config: host=%s, port=%s", config.host, config.port)
    web.run_app(create_app(config), host=config.host, port=config.port)
