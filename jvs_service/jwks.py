"""Public key discovery.

Publishes every ENABLED version of every configured key as a JWK Set, so
external verifiers can check tokens without access to the backend. The set is
cached for ``cache_timeout``; a refresh failure is raised rather than serving
a stale set past its lifetime.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .backend import Deadline
from .crypto import curve_for_algorithm, public_key_to_jwk
from .rotation import RotationEngine

logger = logging.getLogger("jvs_service.jwks")


class KeySetPublisher:
    def __init__(
        self,
        engine: RotationEngine,
        keys: Iterable[str],
        *,
        key_rings: Iterable[str] = (),
        cache_timeout: float = 300.0,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.engine = engine
        self.backend = engine.backend
        self.keys = list(dict.fromkeys(keys))
        self.key_rings = list(dict.fromkeys(key_rings))
        self.cache_timeout = float(cache_timeout)
        self._monotonic = monotonic
        self._cached: Optional[Tuple[float, Dict[str, Any]]] = None
        # Guards the cache slot only, never held across backend calls.
        self._lock = threading.Lock()

    def _all_keys(self, d: Deadline) -> List[str]:
        keys = list(self.keys)
        for ring in self.key_rings:
            for k in self.backend.list_keys(ring, timeout=d.remaining()):
                if k not in keys:
                    keys.append(k)
        return keys

    def build(self, *, deadline: Optional[Deadline] = None) -> Dict[str, Any]:
        """Build the JWK Set from the backend, bypassing the cache."""
        d = self.engine.make_deadline(deadline)
        entries: List[Dict[str, str]] = []
        for key in self._all_keys(d):
            for v in self.engine.enabled_versions(key, deadline=d):
                info = self.backend.get_public_key(v.name, timeout=d.remaining())
                entries.append(public_key_to_jwk(v.name, info.pem, curve_for_algorithm(info.algorithm)))
        entries.sort(key=lambda e: e["kid"])
        return {"keys": entries}

    def jwks(self, *, deadline: Optional[Deadline] = None) -> Dict[str, Any]:
        with self._lock:
            cached = self._cached
        if cached is not None and self._monotonic() - cached[0] < self.cache_timeout:
            return cached[1]
        fresh = self.build(deadline=deadline)
        with self._lock:
            self._cached = (self._monotonic(), fresh)
        logger.debug("refreshed public key set (%d keys)", len(fresh["keys"]))
        return fresh

    def invalidate(self) -> None:
        with self._lock:
            self._cached = None
