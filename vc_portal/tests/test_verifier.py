"""Tests for the verifier side of the presentation protocol."""

import json
from urllib.parse import parse_qs, urlparse

import pytest

from vc_portal.cache import ExpireAfterWriteRegistry
from vc_portal.context import KeyStore
from vc_portal.errors import RequestNotFound
from vc_portal.jwt import jwt_sign
from vc_portal.models.presentation import RESPONSE_MODE_FORM_POST, RESPONSE_MODE_POST
from vc_portal.verifier import VerifierManager


@pytest.fixture
def manager(config, processors, jwt_service, policy_registry, clock):
    yield VerifierManager(
        config,
        processors,
        jwt_service,
        policy_registry,
        request_cache=ExpireAfterWriteRegistry(config.expiration, clock=clock),
        result_cache=ExpireAfterWriteRegistry(config.expiration, clock=clock),
    )


@pytest.fixture
def attacker_keys():
    keys = KeyStore()
    keys.create_did()
    yield keys


@pytest.fixture
async def verifiable_id(issue_credential, holder_did):
    yield await issue_credential("VerifiableId", holder_did, firstName="Alice")


class TestNewRequest:
    """Presentation request creation."""

    def test_request_for_types(self, manager, config):
        request = manager.new_request_for_types(["VerifiableId"])
        assert request.id == request.state
        assert request.redirect_uri == f"{config.verifier_api_url}/verify"
        assert manager.get_request(request.id) is request

        params = request.to_query_params()
        assert params["nonce"] == request.nonce
        assert params["response_type"] == "vp_token id_token"
        claims = json.loads(params["claims"])
        definition = claims["vp_token"]["presentation_definition"]
        assert definition["input_descriptors"][0]["id"] == "VerifiableId-0"

    def test_request_for_schemas_with_state(self, manager):
        request = manager.new_request_for_schemas(
            ["https://schemas.example/id"], state="my-state"
        )
        assert request.id == "my-state"
        assert request.nonce != "my-state"
        assert manager.get_request("my-state") is request

    def test_custom_query_is_appended_to_redirect(self, manager):
        request = manager.new_request_for_types(
            ["VerifiableId"], custom_query={"session": "abc"}
        )
        parsed = urlparse(request.redirect_uri)
        assert parse_qs(parsed.query) == {"session": ["abc"]}

    def test_wallet_url_round_trip(self, manager):
        request = manager.new_request_for_types(["VerifiableId"])
        query = urlparse(request.to_url()).query
        params = {k: v[0] for k, v in parse_qs(query).items()}
        received = type(request).from_query_params(params)
        assert received.id == request.id
        assert received.nonce == request.nonce
        assert received.presentation_definition == request.presentation_definition

    def test_response_mode(self, manager):
        request = manager.new_request_for_types(["VerifiableId"])
        assert request.to_query_params()["response_mode"] == RESPONSE_MODE_FORM_POST
        request = manager.new_request_for_types(
            ["VerifiableId"], response_mode=RESPONSE_MODE_POST
        )
        assert request.to_query_params()["response_mode"] == "post"

    def test_request_expires(self, manager, config, clock):
        request = manager.new_request_for_types(["VerifiableId"])
        clock.advance(config.expiration)
        assert manager.get_request(request.id) is None


class TestVerifyResponse:
    """Response verification."""

    async def test_valid_presentation(
        self, manager, present, verifiable_id, holder_did
    ):
        request = manager.new_request_for_types(["VerifiableId"])
        vp_token = await present([verifiable_id], request.nonce)

        result = await manager.verify_response(request.id, None, vp_token)

        assert result.valid
        assert result.subject == holder_did
        assert result.auth_token == request.id
        assert [r["policy"] for r in result.policy_results] == [
            "SignaturePolicy",
            "ChallengePolicy",
            "VpTokenClaimPolicy",
            "HolderBindingPolicy",
        ]
        assert result.credentials[0]["credentialSubject"]["firstName"] == "Alice"

    async def test_request_consumed_by_first_response(
        self, manager, present, verifiable_id
    ):
        request = manager.new_request_for_types(["VerifiableId"])
        vp_token = await present([verifiable_id], request.nonce)
        await manager.verify_response(request.id, None, vp_token)

        with pytest.raises(RequestNotFound):
            await manager.verify_response(request.id, None, vp_token)

    async def test_unknown_state(self, manager):
        with pytest.raises(RequestNotFound):
            await manager.verify_response("unknown", None, "vp")

    async def test_expired_request(
        self, manager, present, verifiable_id, config, clock
    ):
        request = manager.new_request_for_types(["VerifiableId"])
        vp_token = await present([verifiable_id], request.nonce)
        clock.advance(config.expiration + 1)
        with pytest.raises(RequestNotFound):
            await manager.verify_response(request.id, None, vp_token)

    async def test_result_retrievable_once(self, manager, present, verifiable_id):
        request = manager.new_request_for_types(["VerifiableId"])
        vp_token = await present([verifiable_id], request.nonce)
        result = await manager.verify_response(request.id, None, vp_token)

        assert manager.get_verification_result(result.id) is result
        assert manager.get_verification_result(result.id) is None

    async def test_wrong_nonce_is_invalid_but_cached(
        self, manager, present, verifiable_id
    ):
        request = manager.new_request_for_types(["VerifiableId"])
        vp_token = await present([verifiable_id], "replayed-nonce")

        result = await manager.verify_response(request.id, None, vp_token)

        assert not result.valid
        assert result.auth_token is None
        failed = [r["policy"] for r in result.policy_results if not r["isSuccess"]]
        assert failed == ["ChallengePolicy"]
        assert manager.get_verification_result(request.id) is result

    async def test_unsatisfied_definition(self, manager, present, verifiable_id):
        request = manager.new_request_for_types(["VerifiableDiploma"])
        vp_token = await present([verifiable_id], request.nonce)
        result = await manager.verify_response(request.id, None, vp_token)
        assert not result.valid

    @pytest.mark.parametrize("vp_token", [None, "", "garbage", "a.b.c"])
    async def test_unparseable_vp_token(self, manager, vp_token):
        request = manager.new_request_for_types(["VerifiableId"])
        result = await manager.verify_response(request.id, None, vp_token)
        assert not result.valid
        assert result.policy_results[-1]["policy"] == "VpTokenParsing"
        assert manager.get_verification_result(request.id) is result

    async def test_id_token_of_holder(
        self, manager, present, verifiable_id, jwt_service, holder_context, holder_did
    ):
        request = manager.new_request_for_types(["VerifiableId"])
        vp_token = await present([verifiable_id], request.nonce)
        id_token = jwt_service.sign(
            holder_context.keys.signing_key(holder_did),
            holder_context.keys.kid(holder_did),
            {"sub": holder_did, "nonce": request.nonce},
        )

        result = await manager.verify_response(request.id, id_token, vp_token)

        assert result.valid
        assert result.subject == holder_did
        assert result.policy_results[0]["policy"] == "IdTokenSignaturePolicy"

    async def test_id_token_of_someone_else(
        self, manager, present, verifiable_id, jwt_service, holder_context
    ):
        other_did = holder_context.keys.create_did()
        request = manager.new_request_for_types(["VerifiableId"])
        vp_token = await present([verifiable_id], request.nonce)
        id_token = jwt_service.sign(
            holder_context.keys.signing_key(other_did),
            holder_context.keys.kid(other_did),
            {"sub": other_did},
        )

        result = await manager.verify_response(request.id, id_token, vp_token)

        assert not result.valid
        assert result.subject == other_did

    async def test_additional_policies(
        self, manager, config, present, verifiable_id, issuer_did
    ):
        config.additional_policies = [
            {"policy": "TrustedIssuerPolicy", "argument": [issuer_did]}
        ]
        request = manager.new_request_for_types(["VerifiableId"])
        vp_token = await present([verifiable_id], request.nonce)
        assert (await manager.verify_response(request.id, None, vp_token)).valid

        config.additional_policies = [
            {"policy": "TrustedIssuerPolicy", "argument": ["did:key:z6Mkother"]}
        ]
        request = manager.new_request_for_types(["VerifiableId"])
        vp_token = await present([verifiable_id], request.nonce)
        result = await manager.verify_response(request.id, None, vp_token)
        assert not result.valid
        assert result.policy_results[-1]["policy"] == "TrustedIssuerPolicy"

    async def test_redirection_uri(self, manager, config, present, verifiable_id):
        request = manager.new_request_for_types(["VerifiableId"])
        vp_token = await present([verifiable_id], request.nonce)
        valid = await manager.verify_response(request.id, None, vp_token)
        assert manager.get_verification_redirection_uri(valid) == (
            f"{config.verifier_ui_url}/success/?access_token={request.id}"
        )

        request = manager.new_request_for_types(["VerifiableId"])
        invalid = await manager.verify_response(request.id, None, None)
        assert manager.get_verification_redirection_uri(
            invalid, "http://ui.test"
        ).startswith("http://ui.test/error/?access_token=")


class TestImpersonation:
    """Responses signed by a key that does not belong to the claimed holder."""

    async def test_presentation_signed_by_someone_else(
        self, manager, processors, verifiable_id, holder_did, attacker_keys
    ):
        attacker = attacker_keys.list_dids()[0]
        request = manager.new_request_for_types(["VerifiableId"])
        vp_token = await processors.holder_for_format("jwt_vc").create_presentation(
            [verifiable_id],
            holder_did,
            attacker_keys.signing_key(attacker),
            attacker_keys.kid(attacker),
            request.nonce,
        )

        result = await manager.verify_response(request.id, None, vp_token)

        assert not result.valid
        assert result.auth_token is None
        failed = [r["policy"] for r in result.policy_results if not r["isSuccess"]]
        assert failed == ["SignaturePolicy"]

    async def test_id_token_signed_by_someone_else(
        self, manager, present, verifiable_id, jwt_service, holder_did, attacker_keys
    ):
        attacker = attacker_keys.list_dids()[0]
        request = manager.new_request_for_types(["VerifiableId"])
        vp_token = await present([verifiable_id], request.nonce)
        id_token = jwt_service.sign(
            attacker_keys.signing_key(attacker),
            attacker_keys.kid(attacker),
            {"sub": holder_did, "nonce": request.nonce},
        )

        result = await manager.verify_response(request.id, id_token, vp_token)

        assert not result.valid
        assert result.policy_results[0] == {
            "policy": "IdTokenSignaturePolicy",
            "isSuccess": False,
            "errors": ["id_token is not signed by its subject"],
        }

    async def test_id_token_without_subject(
        self, manager, present, verifiable_id, jwt_service, holder_context, holder_did
    ):
        request = manager.new_request_for_types(["VerifiableId"])
        vp_token = await present([verifiable_id], request.nonce)
        id_token = jwt_service.sign(
            holder_context.keys.signing_key(holder_did),
            holder_context.keys.kid(holder_did),
            {"nonce": request.nonce},
        )

        result = await manager.verify_response(request.id, id_token, vp_token)

        assert not result.valid
        assert "id_token has no subject" in result.policy_results[0]["errors"]

    async def test_credential_of_someone_else(
        self, manager, present, issue_credential
    ):
        other = await issue_credential("VerifiableId", "did:key:z6Mkvictim")
        request = manager.new_request_for_types(["VerifiableId"])
        vp_token = await present([other], request.nonce)

        result = await manager.verify_response(request.id, None, vp_token)

        assert not result.valid
        failed = [r["policy"] for r in result.policy_results if not r["isSuccess"]]
        assert failed == ["HolderBindingPolicy"]


class TestMalformedPresentation:
    """Well-signed tokens with the wrong shape never raise."""

    @pytest.fixture
    def sign_vp(self, holder_context, holder_did):
        def _sign(vp, nonce):
            return jwt_sign(
                {},
                {"iss": holder_did, "nonce": nonce, "vp": vp},
                holder_context.keys.signing_key(holder_did),
                holder_context.keys.kid(holder_did),
            )

        yield _sign

    async def test_vp_claim_not_an_object(self, manager, sign_vp):
        request = manager.new_request_for_types(["VerifiableId"])
        vp_token = sign_vp("oops", request.nonce)

        result = await manager.verify_response(request.id, None, vp_token)

        assert not result.valid
        assert result.policy_results[-1]["policy"] == "VpTokenParsing"
        assert manager.get_verification_result(request.id) is result

    async def test_credential_subject_not_an_object(
        self, manager, sign_vp, issuer_keys, issuer_did
    ):
        credential = jwt_sign(
            {},
            {
                "iss": issuer_did,
                "vc": {
                    "type": ["VerifiableCredential", "VerifiableId"],
                    "credentialSubject": [1],
                },
            },
            issuer_keys.signing_key(issuer_did),
            issuer_keys.kid(issuer_did),
        )
        request = manager.new_request_for_types(["VerifiableId"])
        vp_token = sign_vp({"verifiableCredential": [credential]}, request.nonce)

        result = await manager.verify_response(request.id, None, vp_token)

        assert not result.valid
        assert result.policy_results[-1]["policy"] == "VpTokenParsing"

    @pytest.mark.parametrize("credentials", [42, [{"credentialSubject": "x"}]])
    async def test_bad_credential_list(self, manager, sign_vp, credentials):
        request = manager.new_request_for_types(["VerifiableId"])
        vp_token = sign_vp({"verifiableCredential": credentials}, request.nonce)

        result = await manager.verify_response(request.id, None, vp_token)

        assert not result.valid
        assert result.policy_results[-1]["policy"] == "VpTokenParsing"
