"""DID utility functions: did:key and did:jwk creation and resolution."""

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

import base58
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from jwt import PyJWK, PyJWTError
from jwt.algorithms import ECAlgorithm, OKPAlgorithm

from .formats import did_method
from .utils import b64_to_dict, bytes_to_b64

LOGGER = logging.getLogger(__name__)

PrivateKey = Union[Ed25519PrivateKey, ec.EllipticCurvePrivateKey]
PublicKey = Union[Ed25519PublicKey, ec.EllipticCurvePublicKey]


class ResolverError(Exception):
    """Raised when a DID or DID URL cannot be resolved."""


@dataclass(frozen=True)
class KeyType:
    """Key type with its JWS algorithm and multicodec prefix."""

    key_type: str
    jws_alg: str
    multicodec_prefix: bytes


ED25519 = KeyType("ed25519", "EdDSA", b"\xed\x01")
P256 = KeyType("p256", "ES256", b"\x80\x24")
KEY_TYPES = {ED25519.key_type: ED25519, P256.key_type: P256}


def create_key(key_type: KeyType = ED25519) -> PrivateKey:
    """Generate a new private key."""
    if key_type == ED25519:
        return Ed25519PrivateKey.generate()
    if key_type == P256:
        return ec.generate_private_key(ec.SECP256R1())
    raise ValueError(f"Unsupported key type {key_type.key_type}")


def key_type_of(key: Union[PrivateKey, PublicKey]) -> KeyType:
    """Return the key type of a private or public key."""
    if isinstance(key, (Ed25519PrivateKey, Ed25519PublicKey)):
        return ED25519
    if isinstance(key, (ec.EllipticCurvePrivateKey, ec.EllipticCurvePublicKey)):
        if isinstance(key.curve, ec.SECP256R1):
            return P256
    raise ValueError(f"Unsupported key {type(key).__name__}")


def public_key_jwk(key: Union[PrivateKey, PublicKey]) -> Dict[str, Any]:
    """Return the public JWK for a key."""
    if isinstance(key, (Ed25519PrivateKey, ec.EllipticCurvePrivateKey)):
        key = key.public_key()
    if key_type_of(key) == ED25519:
        return OKPAlgorithm.to_jwk(key, as_dict=True)
    return ECAlgorithm.to_jwk(key, as_dict=True)


def key_from_jwk(jwk: Dict[str, Any]) -> PublicKey:
    """Load a public key from a JWK."""
    public = {k: v for k, v in jwk.items() if k != "d"}
    return PyJWK(public).key


def _public_key_bytes(key: PublicKey) -> bytes:
    if key_type_of(key) == ED25519:
        return key.public_bytes(Encoding.Raw, PublicFormat.Raw)
    return key.public_bytes(Encoding.X962, PublicFormat.CompressedPoint)


def did_key_for(key: Union[PrivateKey, PublicKey]) -> str:
    """Return the did:key for a key."""
    if isinstance(key, (Ed25519PrivateKey, ec.EllipticCurvePrivateKey)):
        key = key.public_key()
    prefixed = key_type_of(key).multicodec_prefix + _public_key_bytes(key)
    return "did:key:z" + base58.b58encode(prefixed).decode()


def did_jwk_for(key: Union[PrivateKey, PublicKey]) -> str:
    """Return the did:jwk for a key."""
    jwk = public_key_jwk(key)
    jwk["use"] = "sig"
    encoded = json.dumps(jwk, separators=(",", ":")).encode()
    return "did:jwk:" + bytes_to_b64(encoded, urlsafe=True, pad=False)


def default_kid(did: str) -> str:
    """Return the verification method id used to sign as did."""
    method = did_method(did)
    if method == "key":
        return f"{did}#{did.split(':', 2)[2]}"
    if method == "jwk":
        return f"{did}#0"
    return f"{did}#key-1"


def resolve_did_key(did: str) -> PublicKey:
    """Decode the public key embedded in a did:key."""
    multibase = did.split(":", 2)[2]
    if not multibase.startswith("z"):
        raise ResolverError(f"Unsupported multibase encoding in {did}")
    try:
        key_bytes = base58.b58decode(multibase[1:])
    except ValueError as err:
        raise ResolverError(f"Invalid did:key {did}") from err

    for key_type in KEY_TYPES.values():
        prefix = key_type.multicodec_prefix
        if key_bytes.startswith(prefix):
            raw = key_bytes[len(prefix) :]
            try:
                if key_type == ED25519:
                    return Ed25519PublicKey.from_public_bytes(raw)
                return ec.EllipticCurvePublicKey.from_encoded_point(
                    ec.SECP256R1(), raw
                )
            except ValueError as err:
                raise ResolverError(f"Invalid key material in {did}") from err
    raise ResolverError(f"Unknown key type in {did}")


def resolve_did_jwk(did: str) -> PublicKey:
    """Decode the public key embedded in a did:jwk."""
    try:
        jwk = b64_to_dict(did.split(":", 2)[2])
        return key_from_jwk(jwk)
    except (ValueError, KeyError, PyJWTError) as err:
        raise ResolverError(f"Invalid did:jwk {did}") from err


class DIDResolver:
    """Resolve DIDs to public keys, dispatching on DID method."""

    def __init__(
        self, resolvers: Optional[Dict[str, Callable[[str], PublicKey]]] = None
    ):
        """Initialize the resolver with the did:key and did:jwk methods."""
        self._resolvers: Dict[str, Callable[[str], PublicKey]] = {
            "key": resolve_did_key,
            "jwk": resolve_did_jwk,
        }
        if resolvers:
            self._resolvers.update(resolvers)

    def supports(self, did: str) -> bool:
        """Check whether the DID's method can be resolved."""
        try:
            return did_method(did) in self._resolvers
        except ValueError:
            return False

    def resolve_key(self, did_url: str) -> PublicKey:
        """Return the public key for a DID or DID URL."""
        did = did_url.split("#", 1)[0]
        try:
            method = did_method(did)
        except ValueError as err:
            raise ResolverError(str(err)) from err
        resolver = self._resolvers.get(method)
        if not resolver:
            raise ResolverError(f"No resolver for DID method {method}")
        LOGGER.debug("Resolving key material for %s", did_url)
        return resolver(did)

    def resolve(self, did: str) -> Dict[str, Any]:
        """Return a minimal DID document for did."""
        jwk = public_key_jwk(self.resolve_key(did))
        kid = default_kid(did)
        return {
            "@context": ["https://www.w3.org/ns/did/v1"],
            "id": did,
            "verificationMethod": [
                {
                    "id": kid,
                    "type": "JsonWebKey2020",
                    "controller": did,
                    "publicKeyJwk": jwk,
                }
            ],
            "authentication": [kid],
            "assertionMethod": [kid],
        }
