"""Tests for the issuer side of the issuance protocol."""

import json
from urllib.parse import parse_qs, urlparse

import pytest

from vc_portal.errors import SessionNotFound, SubjectAlreadyBound, WrongFlow
from vc_portal.issuer import OAuthError
from vc_portal.jwt import decode_unverified, jwt_sign, jwt_verify
from vc_portal.models.issuance import (
    AUTHORIZATION_CODE_GRANT_TYPE,
    PAR_REQUEST_URI_PREFIX,
    PRE_AUTHORIZED_CODE_GRANT_TYPE,
    PROOF_TYP,
    IssuableCredential,
    Issuables,
)

REDIRECT_URI = "http://wallet.test/api/wallet/siop/finalizeIssuance"


@pytest.fixture
def issuables():
    yield Issuables(
        {"VerifiableId": IssuableCredential("VerifiableId", {"firstName": "Alice"})}
    )


@pytest.fixture
def proof(issuer_manager, holder_context, holder_did):
    """Return a function creating a holder proof of possession."""

    def _proof(nonce, typ=PROOF_TYP, audience=None, did=None):
        did = did or holder_did
        payload = {
            "iss": did,
            "nonce": nonce,
            "aud": audience or issuer_manager.issuer_url,
        }
        jwt = jwt_sign(
            {"typ": typ},
            payload,
            holder_context.keys.signing_key(did),
            holder_context.keys.kid(did),
        )
        return {"proof_type": "jwt", "jwt": jwt}

    yield _proof


def par_form(**extra):
    form = {
        "response_type": "code",
        "client_id": REDIRECT_URI,
        "redirect_uri": REDIRECT_URI,
        "state": "wallet-state",
        "nonce": "wallet-nonce",
        "authorization_details": json.dumps(
            [
                {
                    "type": "openid_credential",
                    "credential_type": "VerifiableId",
                    "format": "jwt_vc",
                }
            ]
        ),
    }
    form.update(extra)
    return form


def pre_authorized_token(manager, issuables, **kwargs):
    offer = manager.new_issuance_initiation_request(issuables, True, **kwargs)
    return offer, manager.token(
        PRE_AUTHORIZED_CODE_GRANT_TYPE,
        offer.pre_authorized_code,
        kwargs.get("user_pin"),
    )


class TestOffer:
    """Issuer-initiated offers."""

    def test_pre_authorized(self, issuer_manager, issuables):
        offer = issuer_manager.new_issuance_initiation_request(issuables, True)
        assert offer.issuer_url == issuer_manager.issuer_url
        assert offer.credential_types == ["VerifiableId"]
        assert offer.pre_authorized_code
        assert not offer.user_pin_required
        assert offer.op_state is None

    def test_pin_required(self, issuer_manager, issuables):
        offer = issuer_manager.new_issuance_initiation_request(
            issuables, True, user_pin="1234"
        )
        assert offer.user_pin_required

    def test_not_pre_authorized(self, issuer_manager, issuables):
        offer = issuer_manager.new_issuance_initiation_request(
            issuables, False, user_pin="1234"
        )
        assert offer.pre_authorized_code is None
        assert not offer.user_pin_required
        session = issuer_manager.get_session(offer.op_state)
        assert session.issuables is issuables
        assert session.user_pin is None

    def test_empty_issuables(self, issuer_manager):
        with pytest.raises(ValueError):
            issuer_manager.new_issuance_initiation_request(Issuables(), True)


class TestPushedAuthorization:
    """Pushed authorization requests and the authorization endpoint."""

    def test_par_creates_session(self, issuer_manager, config):
        request_uri, expires_in = issuer_manager.par(par_form())
        assert request_uri.startswith(PAR_REQUEST_URI_PREFIX)
        assert expires_in == config.expiration

        session = issuer_manager.get_session(request_uri[len(PAR_REQUEST_URI_PREFIX) :])
        assert session.credential_types == ["VerifiableId"]
        assert session.auth_request["state"] == "wallet-state"
        assert not session.pre_authorized

    def test_par_with_op_state(self, issuer_manager, issuables):
        offer = issuer_manager.new_issuance_initiation_request(issuables, False)
        request_uri, _ = issuer_manager.par(par_form(op_state=offer.op_state))
        assert request_uri == f"{PAR_REQUEST_URI_PREFIX}{offer.op_state}"
        session = issuer_manager.get_session(offer.op_state)
        assert session.auth_request["redirect_uri"] == REDIRECT_URI
        assert session.issuables is issuables

    def test_par_with_unknown_op_state(self, issuer_manager):
        with pytest.raises(SessionNotFound):
            issuer_manager.par(par_form(op_state="unknown"))

    @pytest.mark.parametrize(
        "extra",
        [
            {"redirect_uri": ""},
            {"authorization_details": "not json"},
            {"authorization_details": "{}"},
            {"authorization_details": json.dumps([{"type": "other"}])},
        ],
    )
    def test_par_rejects(self, issuer_manager, extra):
        with pytest.raises(ValueError):
            issuer_manager.par(par_form(**extra))

    def test_fulfill_par(self, issuer_manager, config):
        request_uri, _ = issuer_manager.par(par_form())
        session_id = request_uri[len(PAR_REQUEST_URI_PREFIX) :]
        assert issuer_manager.fulfill_par(request_uri) == (
            f"{config.issuer_ui_url}/?sessionId={session_id}"
        )
        assert issuer_manager.fulfill_par("unknown").startswith(
            f"{config.issuer_ui_url}/IssuanceError?"
        )

    def test_authorize(self, issuer_manager, issuables):
        request_uri, _ = issuer_manager.par(par_form())
        session_id = request_uri[len(PAR_REQUEST_URI_PREFIX) :]

        redirect = issuer_manager.authorize(session_id, issuables)

        assert redirect.startswith(f"{REDIRECT_URI}?")
        params = parse_qs(urlparse(redirect).query)
        assert params["state"] == ["wallet-state"]
        assert issuer_manager.codes.get(params["code"][0]) == session_id
        assert issuer_manager.get_session(session_id).issuables is issuables

    def test_authorize_binds_user(self, issuer_manager, issuables):
        request_uri, _ = issuer_manager.par(par_form())
        session_id = request_uri[len(PAR_REQUEST_URI_PREFIX) :]

        issuer_manager.authorize(session_id, issuables, user_id="alice")
        assert issuer_manager.get_session(session_id).user_id == "alice"

        issuer_manager.authorize(session_id, issuables, user_id="alice")
        with pytest.raises(SubjectAlreadyBound):
            issuer_manager.authorize(session_id, issuables, user_id="mallory")
        assert issuer_manager.get_session(session_id).user_id == "alice"

    def test_authorize_errors(self, issuer_manager, issuables):
        with pytest.raises(SessionNotFound):
            issuer_manager.authorize("unknown", issuables)

        offer = issuer_manager.new_issuance_initiation_request(issuables, False)
        with pytest.raises(WrongFlow):
            issuer_manager.authorize(offer.op_state, issuables)

        request_uri, _ = issuer_manager.par(par_form())
        with pytest.raises(ValueError):
            issuer_manager.authorize(
                request_uri[len(PAR_REQUEST_URI_PREFIX) :], Issuables()
            )


class TestToken:
    """Token endpoint."""

    def test_pre_authorized(self, issuer_manager, issuables, config):
        offer, tokens = pre_authorized_token(issuer_manager, issuables)
        session = issuer_manager.get_session(tokens["access_token"])
        assert session.token_issued
        assert tokens["token_type"] == "Bearer"
        assert tokens["expires_in"] == config.expiration
        assert tokens["c_nonce"] == session.nonce

        id_token = jwt_verify(issuer_manager.resolver, tokens["id_token"])
        assert id_token.verified
        assert id_token.payload["iss"] == issuer_manager.issuer_url
        assert id_token.payload["sub"] == session.id

    def test_code_is_single_use(self, issuer_manager, issuables):
        offer, _ = pre_authorized_token(issuer_manager, issuables)
        with pytest.raises(OAuthError) as err:
            issuer_manager.token(
                PRE_AUTHORIZED_CODE_GRANT_TYPE, offer.pre_authorized_code
            )
        assert err.value.error == "invalid_grant"

    def test_authorization_code(self, issuer_manager, issuables):
        request_uri, _ = issuer_manager.par(par_form())
        redirect = issuer_manager.authorize(
            request_uri[len(PAR_REQUEST_URI_PREFIX) :], issuables
        )
        code = parse_qs(urlparse(redirect).query)["code"][0]

        tokens = issuer_manager.token(AUTHORIZATION_CODE_GRANT_TYPE, code)

        claims = decode_unverified(tokens["id_token"]).payload
        assert claims["aud"] == REDIRECT_URI
        assert claims["nonce"] == "wallet-nonce"

    def test_pin(self, issuer_manager, issuables):
        offer = issuer_manager.new_issuance_initiation_request(
            issuables, True, user_pin="1234"
        )
        code = offer.pre_authorized_code
        with pytest.raises(OAuthError) as err:
            issuer_manager.token(PRE_AUTHORIZED_CODE_GRANT_TYPE, code)
        assert err.value.error == "invalid_request"
        with pytest.raises(OAuthError) as err:
            issuer_manager.token(PRE_AUTHORIZED_CODE_GRANT_TYPE, code, "0000")
        assert err.value.error == "invalid_grant"

        tokens = issuer_manager.token(PRE_AUTHORIZED_CODE_GRANT_TYPE, code, "1234")
        assert tokens["access_token"]

    def test_grant_type_must_match_offer(self, issuer_manager, issuables):
        offer = issuer_manager.new_issuance_initiation_request(issuables, True)
        with pytest.raises(OAuthError) as err:
            issuer_manager.token(
                AUTHORIZATION_CODE_GRANT_TYPE, offer.pre_authorized_code
            )
        assert err.value.error == "invalid_grant"

    @pytest.mark.parametrize(
        "grant_type, code, error",
        [
            ("password", "code", "unsupported_grant_type"),
            (AUTHORIZATION_CODE_GRANT_TYPE, None, "invalid_request"),
            (AUTHORIZATION_CODE_GRANT_TYPE, "unknown", "invalid_grant"),
        ],
    )
    def test_rejected(self, issuer_manager, grant_type, code, error):
        with pytest.raises(OAuthError) as err:
            issuer_manager.token(grant_type, code)
        assert err.value.error == error
        assert err.value.serialize()["error"] == error

    def test_expired_code(self, issuer_manager, issuables, config, clock):
        offer = issuer_manager.new_issuance_initiation_request(issuables, True)
        clock.advance(config.expiration)
        with pytest.raises(OAuthError):
            issuer_manager.token(
                PRE_AUTHORIZED_CODE_GRANT_TYPE, offer.pre_authorized_code
            )


class TestCredential:
    """Credential endpoint."""

    async def test_issue(
        self, issuer_manager, issuables, proof, processors, holder_did
    ):
        _, tokens = pre_authorized_token(issuer_manager, issuables)

        fmt, credential = await issuer_manager.fulfill_credential(
            tokens["access_token"],
            {"type": "VerifiableId", "proof": proof(tokens["c_nonce"])},
        )

        assert fmt == "jwt_vc"
        verifier = processors.cred_verifier_for_format("jwt_vc")
        assert (await verifier.verify_credential(credential)).verified
        parsed = verifier.parse_credential(credential)
        assert parsed.issuer == issuer_manager.did
        assert parsed.subject == holder_did
        assert parsed.vc["credentialSubject"]["firstName"] == "Alice"
        assert issuer_manager.get_session(tokens["access_token"]).did == holder_did

    async def test_nonce_stays_valid_for_the_token(
        self, issuer_manager, issuables, proof
    ):
        _, tokens = pre_authorized_token(issuer_manager, issuables)
        request = {"type": "VerifiableId", "proof": proof(tokens["c_nonce"])}
        await issuer_manager.fulfill_credential(tokens["access_token"], request)
        await issuer_manager.fulfill_credential(tokens["access_token"], request)

    async def test_invalid_token(self, issuer_manager, issuables, proof):
        offer = issuer_manager.new_issuance_initiation_request(issuables, False)
        for token in (None, "unknown", offer.op_state):
            with pytest.raises(OAuthError) as err:
                await issuer_manager.fulfill_credential(
                    token, {"type": "VerifiableId", "proof": proof("n")}
                )
            assert err.value.error == "invalid_token"
            assert err.value.status == 401

    async def test_unknown_type(self, issuer_manager, issuables, proof):
        _, tokens = pre_authorized_token(issuer_manager, issuables)
        with pytest.raises(OAuthError) as err:
            await issuer_manager.fulfill_credential(
                tokens["access_token"],
                {"type": "VerifiableDiploma", "proof": proof(tokens["c_nonce"])},
            )
        assert err.value.error == "unsupported_credential_type"
        assert err.value.status == 404

    async def test_unknown_format(self, issuer_manager, issuables, proof):
        _, tokens = pre_authorized_token(issuer_manager, issuables)
        with pytest.raises(OAuthError) as err:
            await issuer_manager.fulfill_credential(
                tokens["access_token"],
                {
                    "type": "VerifiableId",
                    "format": "mso_mdoc",
                    "proof": proof(tokens["c_nonce"]),
                },
            )
        assert err.value.error == "unsupported_credential_format"

    @pytest.mark.parametrize(
        "make_proof",
        [
            lambda proof, nonce: None,
            lambda proof, nonce: {"proof_type": "cwt", "jwt": "x"},
            lambda proof, nonce: {"proof_type": "jwt", "jwt": "garbage"},
            lambda proof, nonce: proof(nonce, typ="JWT"),
            lambda proof, nonce: proof("stale-nonce"),
            lambda proof, nonce: proof(nonce, audience="http://elsewhere.test"),
            lambda proof, nonce: proof(nonce, audience=["http://elsewhere.test"]),
            lambda proof, nonce: proof(nonce, audience=42),
        ],
    )
    async def test_bad_proof(self, issuer_manager, issuables, proof, make_proof):
        _, tokens = pre_authorized_token(issuer_manager, issuables)
        with pytest.raises(OAuthError) as err:
            await issuer_manager.fulfill_credential(
                tokens["access_token"],
                {"type": "VerifiableId", "proof": make_proof(proof, tokens["c_nonce"])},
            )
        assert err.value.error == "invalid_or_missing_proof"

    async def test_proof_audience_list(self, issuer_manager, issuables, proof):
        _, tokens = pre_authorized_token(issuer_manager, issuables)
        audience = ["http://other.test", f"{issuer_manager.issuer_url}/"]
        fmt, _ = await issuer_manager.fulfill_credential(
            tokens["access_token"],
            {
                "type": "VerifiableId",
                "proof": proof(tokens["c_nonce"], audience=audience),
            },
        )
        assert fmt == "jwt_vc"

    async def test_forged_proof_signature(self, issuer_manager, issuables, proof):
        _, tokens = pre_authorized_token(issuer_manager, issuables)
        valid = proof(tokens["c_nonce"])
        header, payload, signature = valid["jwt"].split(".")
        forged = {
            "proof_type": "jwt",
            "jwt": f"{header}.{payload}.{signature[:-4]}AAAA",
        }
        with pytest.raises(OAuthError) as err:
            await issuer_manager.fulfill_credential(
                tokens["access_token"], {"type": "VerifiableId", "proof": forged}
            )
        assert err.value.error == "invalid_or_missing_proof"

    async def test_holder_cannot_change(
        self, issuer_manager, issuables, proof, holder_context
    ):
        _, tokens = pre_authorized_token(issuer_manager, issuables)
        await issuer_manager.fulfill_credential(
            tokens["access_token"],
            {"type": "VerifiableId", "proof": proof(tokens["c_nonce"])},
        )
        other = holder_context.keys.create_did()
        with pytest.raises(OAuthError):
            await issuer_manager.fulfill_credential(
                tokens["access_token"],
                {"type": "VerifiableId", "proof": proof(tokens["c_nonce"], did=other)},
            )


class TestMetadata:
    """Provider metadata."""

    def test_provider_metadata(self, issuer_manager):
        metadata = issuer_manager.provider_metadata()
        base = "http://issuer.test/issuer-api/oidc"
        assert metadata["issuer"] == base
        assert metadata["pushed_authorization_request_endpoint"] == f"{base}/par"
        assert metadata["authorization_endpoint"] == f"{base}/fulfillPAR"
        assert metadata["token_endpoint"] == f"{base}/token"
        assert metadata["credential_endpoint"] == f"{base}/credential"
        supported = metadata["credentials_supported"]["VerifiableId"]["formats"]
        assert supported["jwt_vc"]["cryptographic_binding_methods_supported"] == [
            "did"
        ]

    def test_list_credential_types(self, issuer_manager):
        assert issuer_manager.list_credential_types() == ["VerifiableId"]
