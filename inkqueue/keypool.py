"""Provider credential pool with priority-then-LRU selection."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union
from pydantic import SecretStr
from .exceptions import PoolExhaustedError
from .models import Credential, utcnow

logger = logging.getLogger(__name__)

DISABLE_THRESHOLD = 5

_NEVER = datetime.min.replace(tzinfo=timezone.utc)


def mask_secret(secret: str) -> str:
    """Return a prefix/suffix fragment of a secret, never the whole value."""
    if len(secret) > 14:
        return f"{secret[:10]}...{secret[-4:]}"
    shown = len(secret) // 4
    if shown == 0:
        return "***"
    return f"{secret[:shown]}...{secret[-shown:]}"


class KeyPool:
    """Tracks interchangeable API keys and their health.

    ``select`` prefers the highest priority tier among active keys and,
    within it, the key used longest ago; a key that was never used wins over
    any used one. Failures are recorded as state and never raised, so the
    queue keeps drawing from whatever is left.
    """

    def __init__(self, notifier=None, disable_threshold: int = DISABLE_THRESHOLD):
        self.notifier = notifier
        self.disable_threshold = disable_threshold
        self._keys: Dict[str, Credential] = {}
        self._next_index = 1

    def initialize(self, secrets: Union[str, Iterable[str]]) -> None:
        """Replace the pool with fresh records for the given secrets.

        Accepts a list or a comma separated string.
        """
        if isinstance(secrets, str):
            secrets = secrets.split(",")
        secret_list = [s.strip() for s in secrets if s and s.strip()]
        if not secret_list:
            raise ValueError("At least one API key is required")

        self._keys = {}
        self._next_index = 1
        for secret in secret_list:
            if not self._has_secret(secret):
                self._new_record(secret)
        logger.info("Key pool initialized with %d keys", len(self._keys))

    def _new_record(self, secret: str) -> Credential:
        key = Credential(id=f"key_{self._next_index}", secret=SecretStr(secret))
        self._next_index += 1
        self._keys[key.id] = key
        return key

    def _has_secret(self, secret: str) -> bool:
        return any(k.secret.get_secret_value() == secret for k in self._keys.values())

    def _notify(self, key: Credential) -> None:
        if self.notifier is not None:
            self.notifier.broadcast("key_update", self._masked(key))

    def select(self) -> Tuple[str, str]:
        """Pick the next key to use. Returns ``(key_id, secret)``."""
        active = [k for k in self._keys.values() if k.is_active]
        if not active:
            raise PoolExhaustedError()

        top = max(k.priority for k in active)
        tier = [k for k in active if k.priority == top]
        # min() keeps the first of equal candidates, so ties go to the oldest key
        chosen = min(tier, key=lambda k: k.last_used_at or _NEVER)

        logger.debug(
            "Selected %s (priority %d, last used %s)",
            chosen.id,
            chosen.priority,
            chosen.last_used_at.isoformat() if chosen.last_used_at else "never",
        )
        return chosen.id, chosen.secret.get_secret_value()

    def report_success(self, key_id: str) -> None:
        key = self._keys.get(key_id)
        if key is None:
            return
        key.last_used_at = utcnow()
        key.total_usage += 1
        logger.debug("%s succeeded (total usage %d)", key_id, key.total_usage)
        self._notify(key)

    def report_failure(self, key_id: str, reason: str = "") -> None:
        """Count a failure against a key, disabling it at the threshold.

        The key is also stamped as just used, so a retry rotates to a
        different key of the same tier.
        """
        key = self._keys.get(key_id)
        if key is None:
            return
        key.fail_count += 1
        key.last_used_at = utcnow()
        logger.warning("%s failed (%d failures): %s", key_id, key.fail_count, reason)
        if key.is_active and key.fail_count >= self.disable_threshold:
            key.is_active = False
            logger.error("%s disabled after %d failures", key_id, key.fail_count)
        self._notify(key)

    def reactivate(self, key_id: str) -> bool:
        key = self._keys.get(key_id)
        if key is None:
            return False
        key.is_active = True
        key.fail_count = 0
        logger.info("%s reactivated", key_id)
        self._notify(key)
        return True

    def add(self, secret: str) -> Optional[Credential]:
        """Add a key. Returns None if it is blank or already in the pool."""
        secret = (secret or "").strip()
        if not secret or self._has_secret(secret):
            return None
        key = self._new_record(secret)
        logger.info("Added %s", key.id)
        self._notify(key)
        return key.model_copy()

    def remove(self, key_id: str) -> bool:
        key = self._keys.pop(key_id, None)
        if key is None:
            return False
        logger.info("Removed %s", key_id)
        if self.notifier is not None:
            self.notifier.broadcast("key_update", {**self._masked(key), "removed": True})
        return True

    def update_metadata(
        self,
        key_id: str,
        alias: Optional[str] = None,
        tags: Optional[List[str]] = None,
        priority: Optional[int] = None,
    ) -> bool:
        """Update a key's alias, tags and/or priority; None leaves a field alone."""
        key = self._keys.get(key_id)
        if key is None:
            return False
        if alias is not None:
            key.alias = alias
        if tags is not None:
            key.tags = list(tags)
        if priority is not None:
            key.priority = int(priority)
        logger.info("Updated %s (alias=%r, tags=%r, priority=%r)", key_id, alias, tags, priority)
        self._notify(key)
        return True

    def get(self, key_id: str) -> Optional[Credential]:
        key = self._keys.get(key_id)
        return key.model_copy() if key else None

    def _masked(self, key: Credential) -> Dict[str, Any]:
        data = key.model_dump(mode="json", exclude={"secret"})
        data["key"] = mask_secret(key.secret.get_secret_value())
        return data

    def stats(self) -> List[Dict[str, Any]]:
        """Per-key usage records with masked secrets."""
        return [self._masked(k) for k in self._keys.values()]

    def preview(self) -> Dict[str, str]:
        """Report which key ``select`` would return next, masked."""
        key_id, secret = self.select()
        return {"key_id": key_id, "key": mask_secret(secret)}

    def count(self) -> int:
        return len(self._keys)

    def active_count(self) -> int:
        return sum(1 for k in self._keys.values() if k.is_active)
