"""
Session-scoped board context.

BoardSession owns everything one client session needs: the record store, the
device cache, the resolved identity, transient copies of the feed and
comment threads, and a request sequencer. It is created by the top-level
controller (one per API request) and torn down with close(). There is no
module-level state.

STALE RESPONSES:
----------------
Each refresh takes a token from the sequencer for its entity key before
fetching. When the fetch returns, the result is only kept if the token is
still the latest one for that key; an older, superseded response is
discarded instead of overwriting newer data.

Scope: the sequencer lives and dies with its BoardSession. The API views
open one session per HTTP request, so there it only ever sees a single
token per key; the guard matters for in-process callers that hold one
session across several refreshes (scripts, or a refresh that re-enters
while another is in flight). Ordering between separate HTTP requests is
the client's concern.
"""

import itertools
import logging
from typing import Optional

from django.conf import settings

from .exceptions import EntityNotFoundError, IdentityRequiredError
from .identity import DeviceFingerprint, DeviceIdentity, IdentityResolver, is_anonymous_id
from .media import MediaStore, StorageMediaStore
from .queries import get_comment_thread, get_feed, reaction_summary
from .services import ReactionCoordinator, create_comment, create_confession
from .store import (
    DeviceCache,
    DjangoRecordStore,
    RecordStore,
    SessionDeviceCache,
    COMMENTS,
    CONFESSIONS,
)

logger = logging.getLogger(__name__)


class RequestSequencer:
    """Monotonic request tokens per entity key."""

    def __init__(self):
        self._counter = itertools.count(1)
        self._latest = {}

    def begin(self, key) -> int:
        token = next(self._counter)
        self._latest[key] = token
        return token

    def is_current(self, key, token: int) -> bool:
        return self._latest.get(key) == token


class BoardSession:
    def __init__(
        self,
        store: RecordStore,
        cache: DeviceCache,
        fingerprint: Optional[DeviceFingerprint] = None,
        media_store: Optional[MediaStore] = None,
    ):
        self.store = store
        self.cache = cache
        self.fingerprint = fingerprint
        self.media_store = media_store
        self.sequencer = RequestSequencer()
        self.reactions = ReactionCoordinator(store)
        self.resolver: Optional[IdentityResolver] = None
        self.confessions: list[dict] = []
        self.comments: dict = {}
        self._identity: Optional[DeviceIdentity] = None

    @classmethod
    def from_request(cls, request, fingerprint: Optional[DeviceFingerprint] = None) -> 'BoardSession':
        return cls(
            store=DjangoRecordStore(),
            cache=SessionDeviceCache(request.session),
            fingerprint=fingerprint,
            media_store=StorageMediaStore(),
        )

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def resolve_identity(self) -> DeviceIdentity:
        """Run identity resolution once for this session."""
        if self.fingerprint is None:
            raise ValueError("A device fingerprint is required to resolve an identity")
        if self.resolver is None:
            self.resolver = IdentityResolver(self.store, self.cache, self.fingerprint)
        self._identity = self.resolver.resolve()
        return self._identity

    @property
    def viewer_id(self) -> Optional[str]:
        """The resolved id, or the one cached on the device, or None."""
        if self._identity is not None:
            return self._identity.id
        try:
            cached = self.cache.get(settings.BOARD_IDENTITY_CACHE_KEY)
        except Exception as e:
            logger.warning(f"Device cache read failed: {e}")
            return None
        return cached if is_anonymous_id(cached) else None

    def require_viewer(self) -> str:
        viewer_id = self.viewer_id
        if viewer_id is None:
            raise IdentityRequiredError("Anonymous identity not initialized for this device")
        return viewer_id

    # ------------------------------------------------------------------
    # Reads (re-fetch is truth)
    # ------------------------------------------------------------------

    def refresh_feed(self, sort: str = 'latest') -> Optional[list[dict]]:
        """Fetch the feed; returns None if a newer refresh superseded this one."""
        token = self.sequencer.begin('feed')
        feed = get_feed(self.store, self.viewer_id, sort)
        if not self.sequencer.is_current('feed', token):
            logger.debug("Discarding stale feed response")
            return None
        self.confessions = feed
        return feed

    def refresh_comments(self, confession_id) -> Optional[list]:
        """Fetch one thread; returns None if a newer refresh superseded this one."""
        key = ('comments', str(confession_id))
        token = self.sequencer.begin(key)
        thread = get_comment_thread(self.store, confession_id, self.viewer_id)
        if not self.sequencer.is_current(key, token):
            logger.debug(f"Discarding stale comments response for {confession_id}")
            return None
        self.comments[str(confession_id)] = thread
        return thread

    def entity_summary(self, entity_kind: str, entity_id) -> Optional[dict]:
        key = (entity_kind, str(entity_id))
        token = self.sequencer.begin(key)
        summary = reaction_summary(self.store, entity_kind, entity_id, self.viewer_id)
        if not self.sequencer.is_current(key, token):
            logger.debug(f"Discarding stale summary for {entity_kind} {entity_id}")
            return None
        return summary

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def react(self, entity_kind: str, entity_id, is_like: bool) -> dict:
        """Apply a reaction, then re-read the entity's counts."""
        viewer_id = self.require_viewer()
        table = CONFESSIONS if entity_kind == 'confession' else COMMENTS
        if self.store.find_one(table, id=entity_id) is None:
            raise EntityNotFoundError(f"{entity_kind.capitalize()} {entity_id} does not exist.")
        result = self.reactions.apply_reaction(entity_kind, entity_id, viewer_id, is_like)
        summary = self.entity_summary(entity_kind, entity_id) or {}
        return {'action': result.action, **summary}

    def post_comment(self, confession_id, content: str, parent_comment_id=None) -> dict:
        viewer_id = self.require_viewer()
        return create_comment(self.store, confession_id, viewer_id, content, parent_comment_id)

    def post_confession(self, content: Optional[str], files=()) -> dict:
        viewer_id = self.require_viewer()
        return create_confession(self.store, self.media_store, viewer_id, content, files)

    def close(self):
        """Drop every transient copy held by this session."""
        self.confessions = []
        self.comments = {}
        self._identity = None
        self.resolver = None
