from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator

from skillgate.core.errors import SigningLockedError
from skillgate.trust.keystore import StoredIdentity, load_identity, open_key
from skillgate.trust.signing import KeyMaterial

logger = logging.getLogger(__name__)


class UnlockedSigningSession:
    """Holds the decrypted signing key in memory for a bounded idle period.

    The key is never written back to disk. Any use after ``idle_timeout``
    seconds without activity evicts it and raises ``SigningLockedError``.
    """

    def __init__(
        self,
        identity_path: Path,
        idle_timeout: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.identity_path = identity_path
        self.idle_timeout = idle_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._key: KeyMaterial | None = None
        self._last_used = 0.0

    def identity(self) -> StoredIdentity | None:
        return load_identity(self.identity_path)

    def acquire(self, passphrase: str) -> KeyMaterial:
        stored = self.identity()
        if stored is None:
            raise SigningLockedError("no signing identity exists; run keygen first")
        key = open_key(stored, passphrase)
        with self._lock:
            self._key = key
            self._last_used = self._clock()
        logger.info("signing session unlocked for instance %s", stored.instance_id[:12])
        return key

    def release(self) -> None:
        with self._lock:
            was_unlocked = self._key is not None
            self._key = None
        if was_unlocked:
            logger.info("signing session locked")

    @property
    def unlocked(self) -> bool:
        with self._lock:
            self._evict_if_idle()
            return self._key is not None

    def key(self) -> KeyMaterial:
        with self._lock:
            self._evict_if_idle()
            if self._key is None:
                raise SigningLockedError("signing session is locked")
            self._last_used = self._clock()
            return self._key

    def _evict_if_idle(self) -> None:
        if self._key is not None and self._clock() - self._last_used > self.idle_timeout:
            self._key = None
            logger.info("signing session evicted after idle timeout")

    @contextmanager
    def scoped(self, passphrase: str) -> Iterator[KeyMaterial]:
        key = self.acquire(passphrase)
        try:
            yield key
        finally:
            self.release()
