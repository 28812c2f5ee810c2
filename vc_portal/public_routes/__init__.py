"""Public HTTP routes of the VC portal.

Verifier endpoints live under ``/verifier-api`` and issuer endpoints under
``/issuer-api``. Wallet endpoints live under ``/api/wallet``, with user login
at ``/api/auth/login``.
"""

from aiohttp import web

from . import issuer, verifier, wallet
from .constants import (
    AUTH_API_PREFIX,
    ISSUER_API_PREFIX,
    VERIFIER_API_PREFIX,
    WALLET_API_PREFIX,
)


def register(app: web.Application):
    """Register routes."""
    v = VERIFIER_API_PREFIX
    i = ISSUER_API_PREFIX
    w = WALLET_API_PREFIX
    app.add_routes(
        [
            web.get(f"{v}/wallets/list", verifier.list_wallets, allow_head=False),
            web.get(f"{v}/present", verifier.present, allow_head=False),
            web.get(
                f"{v}/presentXDevice", verifier.present_cross_device, allow_head=False
            ),
            web.post(f"{v}/verify", verifier.verify),
            web.get(f"{v}/isVerified", verifier.is_verified, allow_head=False),
            web.get(f"{v}/auth", verifier.auth, allow_head=False),
            web.get(f"{v}/policies/list", verifier.list_policies, allow_head=False),
            web.get(f"{i}/wallets/list", issuer.list_wallets, allow_head=False),
            web.get(
                f"{i}/credentials/listIssuables",
                issuer.list_issuables,
                allow_head=False,
            ),
            web.post(f"{i}/credentials/issuance/request", issuer.issuance_request),
            web.get(
                f"{i}/oidc/.well-known/openid-configuration",
                issuer.openid_configuration,
                allow_head=False,
            ),
            web.post(f"{i}/oidc/par", issuer.par),
            web.get(f"{i}/oidc/fulfillPAR", issuer.fulfill_par, allow_head=False),
            web.post(f"{i}/oidc/token", issuer.token),
            web.post(f"{i}/oidc/credential", issuer.credential),
            web.get(f"{w}/issuance/start", wallet.start_issuance, allow_head=False),
            web.get(
                f"{w}/issuance/startIssuerInitiatedIssuance",
                wallet.start_issuer_initiated_issuance,
                allow_head=False,
            ),
            web.get(
                f"{w}/issuance/continueIssuerInitiatedIssuance",
                wallet.continue_issuer_initiated_issuance,
                allow_head=False,
            ),
            web.get(f"{w}/issuance/info", wallet.issuance_info, allow_head=False),
            web.post(f"{w}/issuance/findIssuers", wallet.find_issuers),
            web.get(
                f"{w}/siop/finalizeIssuance", wallet.finalize_issuance, allow_head=False
            ),
            web.post(f"{AUTH_API_PREFIX}/login", wallet.login),
            web.get(f"{w}/did/list", wallet.list_dids, allow_head=False),
            web.post(f"{w}/did/create", wallet.create_did),
            web.get(f"{w}/did/{{did}}", wallet.resolve_did, allow_head=False),
            web.get(
                f"{w}/credentials/list", wallet.list_credentials, allow_head=False
            ),
            web.delete(f"{w}/credentials/{{id}}", wallet.delete_credential),
        ]
    )
