"""Tests for configuration loading."""

import pytest

from vc_portal.config import Config, ConfigError

REQUIRED = {
    "verifier_api_url": "http://verifier.test/verifier-api/",
    "verifier_ui_url": "http://verifier-ui.test",
    "wallet_api_url": "http://wallet.test/api/wallet",
    "wallet_ui_url": "http://wallet-ui.test",
    "issuer_api_url": "http://issuer.test/issuer-api",
    "issuer_ui_url": "http://issuer-ui.test",
    "jwt_secret": "secret",
}


def test_from_settings_defaults():
    config = Config.from_settings(REQUIRED)
    assert config.verifier_api_url == "http://verifier.test/verifier-api"
    assert config.expiration == 300
    assert config.additional_policies == []
    assert config.wallets == {}
    assert config.credential_types == ["VerifiableId"]
    assert config.users == {}
    assert config.port == 8080


def test_missing_required_value(monkeypatch):
    monkeypatch.delenv("VC_PORTAL_JWT_SECRET", raising=False)
    settings = {k: v for k, v in REQUIRED.items() if k != "jwt_secret"}
    with pytest.raises(ConfigError) as exc_info:
        Config.from_settings(settings)
    assert "jwt_secret" in str(exc_info.value)
    assert "VC_PORTAL_JWT_SECRET" in str(exc_info.value)


def test_environment_fallback(monkeypatch):
    monkeypatch.setenv("VC_PORTAL_JWT_SECRET", "from-env")
    monkeypatch.setenv("VC_PORTAL_EXPIRATION", "60")
    settings = {k: v for k, v in REQUIRED.items() if k != "jwt_secret"}
    config = Config.from_settings(settings)
    assert config.jwt_secret == "from-env"
    assert config.expiration == 60


@pytest.mark.parametrize("expiration", ["soon", "0", "-5"])
def test_invalid_expiration(monkeypatch, expiration):
    monkeypatch.setenv("VC_PORTAL_EXPIRATION", expiration)
    with pytest.raises(ConfigError):
        Config.from_settings(REQUIRED)


def test_variable_expansion(monkeypatch):
    monkeypatch.setenv("PORTAL_HOST", "portal.example")
    settings = {
        **REQUIRED,
        "wallet_ui_url": "https://${PORTAL_HOST}/wallet",
        "issuer_ui_url": "https://${MISSING_HOST:-fallback.example}/issuer",
    }
    config = Config.from_settings(settings)
    assert config.wallet_ui_url == "https://portal.example/wallet"
    assert config.issuer_ui_url == "https://fallback.example/issuer"


def test_wallets_and_issuers():
    config = Config.from_settings(
        {
            **REQUIRED,
            "wallets": {"walt.id": {"url": "https://wallet.example"}},
            "issuers": {
                "walt.id": {
                    "url": "https://issuer.example/oidc/",
                    "client_id": "portal",
                    "client_secret": "s3cret",
                }
            },
        }
    )
    wallet = config.wallets["walt.id"]
    assert wallet.present_url("a=b") == (
        "https://wallet.example/api/siop/initiatePresentation?a=b"
    )
    assert wallet.receive_url("a=b") == (
        "https://wallet.example/api/siop/initiateIssuance?a=b"
    )
    assert config.default_wallet() is wallet
    issuer = config.issuers["walt.id"]
    assert issuer.url == "https://issuer.example/oidc"
    assert issuer.client_secret == "s3cret"
    assert issuer.serialize() == {
        "id": "walt.id",
        "url": "https://issuer.example/oidc",
        "description": "walt.id",
    }


def test_users():
    config = Config.from_settings({**REQUIRED, "users": {"alice": "secret"}})
    assert config.users == {"alice": "secret"}


def test_default_wallet_is_cross_device():
    wallet = Config.from_settings(REQUIRED).default_wallet()
    assert wallet.present_url("a=b") == "openid://?a=b"
