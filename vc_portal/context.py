"""Per-user execution contexts: key material and credential storage.

A ``UserContext`` is passed explicitly to every operation that signs as a
holder or stores credentials for one; nothing reads the current user from
ambient state.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List

from .did_utils import (
    ED25519,
    KeyType,
    PrivateKey,
    create_key,
    default_kid,
    did_jwk_for,
    did_key_for,
)

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserInfo:
    """Authenticated portal user."""

    id: str


class KeyStore:
    """In-memory store of DID keys owned by one user."""

    def __init__(self):
        """Initialize an empty store."""
        self._keys: Dict[str, PrivateKey] = {}
        self._lock = threading.Lock()

    def create_did(self, method: str = "key", key_type: KeyType = ED25519) -> str:
        """Create a key and return the DID controlling it."""
        key = create_key(key_type)
        if method == "key":
            did = did_key_for(key)
        elif method == "jwk":
            did = did_jwk_for(key)
        else:
            raise ValueError(f"Cannot create DIDs of method {method}")
        with self._lock:
            self._keys[did] = key
        LOGGER.info("Created %s", did)
        return did

    def import_key(self, did: str, key: PrivateKey):
        """Store an existing key under did."""
        with self._lock:
            self._keys[did] = key

    def has_did(self, did: str) -> bool:
        """Check whether this store holds the key for did."""
        with self._lock:
            return did in self._keys

    def signing_key(self, did: str) -> PrivateKey:
        """Return the private key for did."""
        with self._lock:
            key = self._keys.get(did)
        if key is None:
            raise KeyError(f"No key for {did}")
        return key

    def kid(self, did: str) -> str:
        """Return the verification method id for did."""
        return default_kid(did)

    def list_dids(self) -> List[str]:
        """Return all DIDs held in this store."""
        with self._lock:
            return list(self._keys)


class CredentialStore:
    """In-memory credential store owned by one user."""

    def __init__(self):
        """Initialize an empty store."""
        self._credentials: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def store(self, id: str, credential: Any):
        """Store a credential under id, replacing any previous one."""
        with self._lock:
            self._credentials[id] = credential

    def entries(self) -> Dict[str, Any]:
        """Return every stored credential keyed by id."""
        with self._lock:
            return dict(self._credentials)

    def delete(self, id: str) -> bool:
        """Delete a credential, returning whether it existed."""
        with self._lock:
            return self._credentials.pop(id, None) is not None


@dataclass
class UserContext:
    """Keys and credentials scoped to one user."""

    user: UserInfo
    keys: KeyStore = field(default_factory=KeyStore)
    credentials: CredentialStore = field(default_factory=CredentialStore)


class UserContextLoader:
    """Create or load the context for a user."""

    def __init__(self):
        """Initialize the loader."""
        self._contexts: Dict[str, UserContext] = {}
        self._lock = threading.Lock()

    def load(self, user: UserInfo) -> UserContext:
        """Return the context for user, creating it on first use."""
        with self._lock:
            context = self._contexts.get(user.id)
            if context is None:
                context = UserContext(user)
                self._contexts[user.id] = context
                LOGGER.debug("Created context for user %s", user.id)
            return context
