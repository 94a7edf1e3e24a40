"""
PHASE 2: Anonymous Identity Resolution
======================================

Every device gets a stable 5-digit anonymous id without accounts.

RESOLUTION ORDER (strict):
--------------------------
1. Hash the device fingerprint (deterministic for an unchanged device)
2. Device cache hit         -> return it, NO remote call (returning device)
3. Store lookup by hash     -> cache and return (site data was cleared,
                               but anonymous_users still knows this device)
4. Insert a random candidate in [10000, 99999] -> cache and return
5. ConflictError on insert  -> re-query by hash; if another session already
                               created this device's identity, adopt it;
                               otherwise try a new candidate (5 attempts)
6. Attempts exhausted       -> deterministic fallback id from the hash
7. Whatever id we settle on is written to the device cache (best effort)

WHY A DETERMINISTIC FALLBACK:
-----------------------------
With the store down we still owe the user *some* id, and it must be the same
one next session. hash(fingerprint_hash) % 90000 + 10000 gives exactly that,
at the cost of a higher collision rate with other devices. That degradation
is accepted; it is not an error and is never surfaced.

FINGERPRINTS ARE NOT CREDENTIALS:
---------------------------------
Two devices with identical browser characteristics share a fingerprint and
therefore an identity. This is a best-effort stability key, nothing more.
"""

import base64
import enum
import hashlib
import json
import logging
import random
from dataclasses import dataclass
from typing import Callable, Optional

from django.conf import settings

from .exceptions import ConflictError, TransientStoreError
from .store import DeviceCache, RecordStore, IDENTITIES

logger = logging.getLogger(__name__)

MIN_ANONYMOUS_ID = 10000
MAX_ANONYMOUS_ID = 99999
ID_SPACE = MAX_ANONYMOUS_ID - MIN_ANONYMOUS_ID + 1
FINGERPRINT_DIAGNOSTIC_LENGTH = 500


@dataclass(frozen=True)
class DeviceFingerprint:
    """Browser/device characteristics reported by the client."""
    user_agent: str = ''
    language: str = ''
    platform: str = ''
    screen_resolution: str = ''
    timezone: str = ''
    canvas: str = ''

    @classmethod
    def from_request(cls, request, data: Optional[dict] = None) -> 'DeviceFingerprint':
        """
        Build a fingerprint from request headers plus client-reported parts.

        Client-reported values win; headers fill in user agent and language.
        """
        data = data or {}
        accept_language = request.META.get('HTTP_ACCEPT_LANGUAGE', '')
        header_language = accept_language.split(',')[0].split(';')[0].strip()
        return cls(
            user_agent=data.get('user_agent') or request.META.get('HTTP_USER_AGENT', ''),
            language=data.get('language') or header_language,
            platform=data.get('platform', ''),
            screen_resolution=data.get('screen_resolution', ''),
            timezone=data.get('timezone', ''),
            canvas=data.get('canvas', ''),
        )

    def serialize(self) -> str:
        # Fixed key order, no timestamp: the same device must serialize the same way
        payload = json.dumps({
            'userAgent': self.user_agent,
            'language': self.language,
            'platform': self.platform,
            'screenResolution': self.screen_resolution,
            'timezone': self.timezone,
            'canvas': self.canvas,
        }, separators=(',', ':'))
        return base64.b64encode(payload.encode('utf-8')).decode('ascii')

    @property
    def fingerprint_hash(self) -> str:
        """MD5 hex digest of the serialized fingerprint. A lookup key, not a secret."""
        return hashlib.md5(self.serialize().encode('ascii')).hexdigest()


@dataclass(frozen=True)
class DeviceIdentity:
    """The resolved anonymous identity: {id, fingerprint_hash}."""
    id: str
    fingerprint_hash: str


class ResolverState(enum.Enum):
    UNRESOLVED = 'unresolved'
    RESOLVED = 'resolved'


class ResolutionSource(enum.Enum):
    CACHE = 'cache'
    REMOTE = 'remote'
    CREATED = 'created'
    ADOPTED = 'adopted'
    FALLBACK = 'fallback'


def generate_candidate_id() -> str:
    """Uniform random 5-digit id in [10000, 99999]."""
    return str(random.randint(MIN_ANONYMOUS_ID, MAX_ANONYMOUS_ID))


def is_anonymous_id(value) -> bool:
    return (
        isinstance(value, str)
        and len(value) == 5
        and value.isdigit()
        and MIN_ANONYMOUS_ID <= int(value) <= MAX_ANONYMOUS_ID
    )


def string_hash(value: str) -> int:
    """31-multiplier string hash wrapped to a signed 32-bit integer."""
    h = 0
    for ch in value:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    return h - 0x100000000 if h & 0x80000000 else h


def fallback_anonymous_id(fingerprint_hash: str) -> str:
    """Deterministic id for a device when the store can't give us one."""
    return str(abs(string_hash(fingerprint_hash)) % ID_SPACE + MIN_ANONYMOUS_ID)


class IdentityResolver:
    """
    Resolves the anonymous identity for one device, once per session.

    resolve() is idempotent: after the first call the same DeviceIdentity is
    returned with no further cache or store access. It never raises store
    errors; the worst case is the deterministic fallback id.
    """

    def __init__(
        self,
        store: RecordStore,
        cache: DeviceCache,
        fingerprint: DeviceFingerprint,
        max_attempts: Optional[int] = None,
        id_generator: Callable[[], str] = generate_candidate_id,
    ):
        self.store = store
        self.cache = cache
        self.fingerprint = fingerprint
        self.max_attempts = max_attempts or settings.BOARD_IDENTITY_MAX_ATTEMPTS
        self.id_generator = id_generator
        self.cache_key = settings.BOARD_IDENTITY_CACHE_KEY
        self.insert_attempts = 0
        self.source: Optional[ResolutionSource] = None
        self._identity: Optional[DeviceIdentity] = None

    @property
    def state(self) -> ResolverState:
        return ResolverState.RESOLVED if self._identity else ResolverState.UNRESOLVED

    def resolve(self) -> DeviceIdentity:
        if self._identity is not None:
            return self._identity

        fingerprint_hash = self.fingerprint.fingerprint_hash

        cached = self._read_cache()
        if cached is not None:
            # Fast path: returning device, no remote call at all
            return self._settle(cached, fingerprint_hash, ResolutionSource.CACHE, write_cache=False)

        existing = self._lookup(fingerprint_hash)
        if existing is not None:
            return self._settle(existing, fingerprint_hash, ResolutionSource.REMOTE)

        while self.insert_attempts < self.max_attempts:
            self.insert_attempts += 1
            candidate = self.id_generator()
            try:
                self.store.insert(IDENTITIES, {
                    'anonymous_id': candidate,
                    'device_fingerprint': self.fingerprint.serialize()[:FINGERPRINT_DIAGNOSTIC_LENGTH],
                    'device_fingerprint_hash': fingerprint_hash,
                })
            except ConflictError:
                logger.info(
                    f"Identity candidate {candidate} conflicted "
                    f"(attempt {self.insert_attempts}/{self.max_attempts})"
                )
                # Another session may have just created this device's identity
                existing = self._lookup(fingerprint_hash)
                if existing is not None:
                    return self._settle(existing, fingerprint_hash, ResolutionSource.ADOPTED)
                continue
            except TransientStoreError as e:
                logger.warning(
                    f"Identity insert failed (attempt {self.insert_attempts}/{self.max_attempts}): {e}"
                )
                continue
            return self._settle(candidate, fingerprint_hash, ResolutionSource.CREATED)

        fallback = fallback_anonymous_id(fingerprint_hash)
        logger.warning(
            f"Identity resolution exhausted {self.max_attempts} attempts, "
            f"using fallback id {fallback}"
        )
        return self._settle(fallback, fingerprint_hash, ResolutionSource.FALLBACK)

    def _read_cache(self) -> Optional[str]:
        try:
            cached = self.cache.get(self.cache_key)
        except Exception as e:
            logger.warning(f"Device cache read failed, resolving remotely: {e}")
            return None
        if cached is not None and not is_anonymous_id(cached):
            logger.warning(f"Ignoring malformed cached anonymous id {cached!r}")
            return None
        return cached

    def _lookup(self, fingerprint_hash: str) -> Optional[str]:
        try:
            row = self.store.find_one(IDENTITIES, device_fingerprint_hash=fingerprint_hash)
        except TransientStoreError as e:
            logger.warning(f"Identity lookup failed: {e}")
            return None
        return row['anonymous_id'] if row else None

    def _settle(
        self,
        anonymous_id: str,
        fingerprint_hash: str,
        source: ResolutionSource,
        write_cache: bool = True,
    ) -> DeviceIdentity:
        if write_cache:
            try:
                self.cache.set(self.cache_key, anonymous_id)
            except Exception as e:
                # Non-fatal: next session simply resolves remotely again
                logger.warning(f"Device cache write failed: {e}")
        self._identity = DeviceIdentity(id=anonymous_id, fingerprint_hash=fingerprint_hash)
        self.source = source
        logger.debug(f"Resolved anonymous-{anonymous_id} via {source.value}")
        return self._identity
