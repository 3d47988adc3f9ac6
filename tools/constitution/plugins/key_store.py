"""
Chain-of-trust key store.

A single ROOT key is compiled in and is the only trust anchor. Every other
key must name an existing ACTIVE parent of the rank directly above it
(PUBLISHER under ROOT, DEVELOPER under PUBLISHER). Trust is never cached:
validate_key() walks the ancestry on every call, under the store lock, so a
revocation is visible to the very next check of any descendant.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, Union

from pydantic import ValidationError

from ..models import utc_now
from .models import KeyStatus, KeyType, KeyValidationReason, KeyValidationResult, SigningKey

logger = logging.getLogger("constitution.plugins.keys")

ROOT_KEY_ID = "constitution-root-2024"

ROOT_KEY = SigningKey(
    key_id=ROOT_KEY_ID,
    type=KeyType.ROOT,
    public_key=(
        "-----BEGIN PUBLIC KEY-----\n"
        "MCowBQYDK2VwAyEACo8LrI50eSYD8CHuywKF1DsH6OgizqHmGUeIHZgwxlw=\n"
        "-----END PUBLIC KEY-----\n"
    ),
    holder="Constitution Trust Root",
    created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    expires_at=datetime(2034, 1, 1, tzinfo=timezone.utc),
    status=KeyStatus.ACTIVE,
)

# Rank a key's parent must hold.
_REQUIRED_PARENT_TYPE = {
    KeyType.PUBLISHER: KeyType.ROOT,
    KeyType.DEVELOPER: KeyType.PUBLISHER,
}

_IMPORT_ORDER = {KeyType.ROOT: 0, KeyType.PUBLISHER: 1, KeyType.DEVELOPER: 2}


@dataclass
class KeyStoreStats:
    total: int = 0
    active: int = 0
    revoked: int = 0
    expired: int = 0
    by_type: Dict[KeyType, int] = field(default_factory=lambda: {t: 0 for t in KeyType})


class KeyStore:
    def __init__(self, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._lock = threading.RLock()
        self._clock = clock
        self._keys: Dict[str, SigningKey] = {ROOT_KEY.key_id: ROOT_KEY}
        self._revoked: Set[str] = set()

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    def add_key(self, key: Union[SigningKey, Mapping[str, Any]]) -> bool:
        if not isinstance(key, SigningKey):
            try:
                key = SigningKey.model_validate(key)
            except ValidationError as exc:
                logger.warning("rejected malformed signing key: %d error(s)", exc.error_count())
                return False

        if key.type is KeyType.ROOT:
            logger.warning("refused to add ROOT key %s at runtime", key.key_id)
            return False

        with self._lock:
            if key.key_id in self._keys:
                return False
            if not key.parent_key_id:
                return False
            parent = self._keys.get(key.parent_key_id)
            if parent is None or not self._is_usable(parent):
                return False
            if parent.type is not _REQUIRED_PARENT_TYPE[key.type]:
                logger.warning(
                    "refused key %s: %s keys must chain to a %s key",
                    key.key_id,
                    key.type.value,
                    _REQUIRED_PARENT_TYPE[key.type].value,
                )
                return False
            self._keys[key.key_id] = key
            if key.status is KeyStatus.REVOKED:
                self._revoked.add(key.key_id)

        logger.info("added %s key %s (parent=%s)", key.type.value, key.key_id, key.parent_key_id)
        return True

    def revoke_key(self, key_id: str) -> bool:
        with self._lock:
            key = self._keys.get(key_id)
            if key is None or key.type is KeyType.ROOT:
                return False
            self._keys[key_id] = key.model_copy(update={"status": KeyStatus.REVOKED})
            self._revoked.add(key_id)
        logger.warning("revoked key %s", key_id)
        return True

    def remove_key(self, key_id: str) -> bool:
        """Descendants of a removed key lose their chain of trust."""
        with self._lock:
            key = self._keys.get(key_id)
            if key is None or key.type is KeyType.ROOT:
                return False
            del self._keys[key_id]
            self._revoked.discard(key_id)
        logger.info("removed key %s", key_id)
        return True

    def clear_non_root_keys(self) -> None:
        with self._lock:
            self._keys = {ROOT_KEY.key_id: ROOT_KEY}
            self._revoked.clear()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_key(self, key_id: str) -> Optional[SigningKey]:
        with self._lock:
            return self._keys.get(key_id)

    def get_keys_by_type(self, key_type: KeyType) -> List[SigningKey]:
        with self._lock:
            return [k for k in self._keys.values() if k.type is key_type]

    def get_active_keys(self) -> List[SigningKey]:
        with self._lock:
            return [k for k in self._keys.values() if self._is_usable(k)]

    def is_key_revoked(self, key_id: str) -> bool:
        with self._lock:
            return key_id in self._revoked

    def is_key_expired(self, key: SigningKey) -> bool:
        return key.expires_at <= self._clock()

    def _is_usable(self, key: SigningKey) -> bool:
        return (
            key.status is KeyStatus.ACTIVE
            and key.key_id not in self._revoked
            and not self.is_key_expired(key)
        )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_key(self, key_id: str) -> KeyValidationResult:
        with self._lock:
            key = self._keys.get(key_id)
            if key is None:
                return KeyValidationResult(valid=False, reason=KeyValidationReason.NOT_FOUND)
            if key.status is KeyStatus.REVOKED or key_id in self._revoked:
                return KeyValidationResult(valid=False, key=key, reason=KeyValidationReason.REVOKED)
            if key.status is KeyStatus.EXPIRED or self.is_key_expired(key):
                return KeyValidationResult(valid=False, key=key, reason=KeyValidationReason.EXPIRED)
            if not self.validate_chain_of_trust(key):
                return KeyValidationResult(
                    valid=False, key=key, reason=KeyValidationReason.INVALID_CHAIN
                )
            return KeyValidationResult(valid=True, key=key)

    def validate_chain_of_trust(self, key: SigningKey, _seen: Optional[Set[str]] = None) -> bool:
        """Every ancestor up to ROOT must be present, ACTIVE and unexpired."""
        with self._lock:
            if key.type is KeyType.ROOT:
                return key.key_id == ROOT_KEY.key_id and self._is_usable(key)
            seen = _seen if _seen is not None else set()
            if key.key_id in seen or not key.parent_key_id:
                return False
            seen.add(key.key_id)
            parent = self._keys.get(key.parent_key_id)
            if parent is None or not self._is_usable(parent):
                return False
            if parent.type is not _REQUIRED_PARENT_TYPE.get(key.type):
                return False
            return self.validate_chain_of_trust(parent, seen)

    def get_trust_chain(self, key_id: str) -> List[SigningKey]:
        """The key followed by its ancestors, leaf first."""
        chain: List[SigningKey] = []
        with self._lock:
            current = self._keys.get(key_id)
            while current is not None and current not in chain:
                chain.append(current)
                if not current.parent_key_id:
                    break
                current = self._keys.get(current.parent_key_id)
        return chain

    # ------------------------------------------------------------------
    # Import / export
    # ------------------------------------------------------------------

    def export_keys(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [k.to_wire() for k in self._keys.values()]

    def import_keys(self, keys: Iterable[Union[SigningKey, Mapping[str, Any]]]) -> int:
        """Add non-root keys, parents first. Returns the number accepted."""
        parsed: List[SigningKey] = []
        for raw in keys:
            try:
                parsed.append(raw if isinstance(raw, SigningKey) else SigningKey.model_validate(raw))
            except ValidationError as exc:
                logger.warning("skipped malformed key on import: %d error(s)", exc.error_count())
        parsed.sort(key=lambda k: _IMPORT_ORDER[k.type])
        return sum(1 for key in parsed if key.type is not KeyType.ROOT and self.add_key(key))

    def stats(self) -> KeyStoreStats:
        stats = KeyStoreStats()
        with self._lock:
            stats.total = len(self._keys)
            for key in self._keys.values():
                stats.by_type[key.type] += 1
                if key.status is KeyStatus.REVOKED or key.key_id in self._revoked:
                    stats.revoked += 1
                elif self.is_key_expired(key):
                    stats.expired += 1
                else:
                    stats.active += 1
        return stats
