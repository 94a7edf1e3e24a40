"""
PHASE 3: Write Side - Reactions, Comments and Confessions
=========================================================

REACTION STATE MACHINE:
-----------------------
One voter, one votable entity (confession or comment), three states:

    NONE    --like-->    LIKE        (insert)
    NONE    --dislike--> DISLIKE     (insert)
    LIKE    --like-->    NONE        (delete: clicking again retracts)
    LIKE    --dislike--> DISLIKE     (update in place)
    DISLIKE --dislike--> NONE        (delete)
    DISLIKE --like-->    LIKE        (update in place)

No other transitions exist.

WHY UPDATE INSTEAD OF DELETE + INSERT ON SWITCH:
------------------------------------------------
A switch is a single mutation, so there is never a moment where the voter
has zero reactions and a concurrent read shows the wrong totals.

CONCURRENCY STRATEGY:
---------------------
Read-before-write plus the (entity, user_id) unique constraint.
If two requests from the same voter race and both try to insert, the
loser gets ConflictError; it re-reads the winner's row and updates it to
its own polarity (last write wins). If that row was already retracted, the
insert is retried once. Either way at most one row exists.

Counts are NOT touched here. Callers re-read (queries.reaction_summary)
after every call.
"""

import logging
import time
from dataclasses import dataclass
from typing import Literal, Optional

from django.conf import settings

from .exceptions import BoardError, ConflictError, EntityNotFoundError, TransientStoreError, ValidationError
from .media import MediaStore, media_kind, validate_uploads
from .store import RecordStore, COMMENTS, CONFESSIONS, VOTABLE_ENTITIES

logger = logging.getLogger(__name__)

ReactionAction = Literal['created', 'removed', 'switched']


@dataclass(frozen=True)
class ReactionResult:
    """What apply_reaction did, and the voter's reaction afterwards."""
    action: ReactionAction
    is_like: Optional[bool]


class ReactionCoordinator:
    """
    Applies one voter's like/dislike click to a votable entity.

    Store errors (TransientStoreError) propagate to the caller, which
    reports them. Nothing is mutated locally.
    """

    def __init__(self, store: RecordStore):
        self.store = store

    def apply_reaction(
        self,
        entity_kind: str,
        entity_id,
        voter_id: str,
        desired_is_like: bool,
    ) -> ReactionResult:
        """
        Toggle, retract or switch the voter's reaction.

        OPERATION:
        1. Look up the voter's reaction row for this entity
        2. None           -> insert with desired polarity
        3. Same polarity  -> delete (retract)
        4. Other polarity -> update in place (switch)
        """
        try:
            table, column = VOTABLE_ENTITIES[entity_kind]
        except KeyError:
            raise ValueError(f"Invalid entity kind: {entity_kind}")

        existing = self.store.find_one(table, **{column: entity_id, 'user_id': voter_id})

        if existing is None:
            row = {column: entity_id, 'user_id': voter_id, 'is_like': desired_is_like}
            try:
                self.store.insert(table, row)
            except ConflictError:
                # Same voter inserted concurrently: last write wins
                logger.info(f"Concurrent reaction on {entity_kind} {entity_id} by {voter_id}")
                existing = self.store.find_one(table, **{column: entity_id, 'user_id': voter_id})
                if existing is None:
                    # The winner's row was retracted in between; one more try,
                    # a second ConflictError propagates
                    self.store.insert(table, row)
                elif bool(existing['is_like']) != desired_is_like:
                    self.store.update(table, existing['id'], {'is_like': desired_is_like})
            return ReactionResult(action='created', is_like=desired_is_like)

        if bool(existing['is_like']) == desired_is_like:
            self.store.delete(table, existing['id'])
            return ReactionResult(action='removed', is_like=None)

        self.store.update(table, existing['id'], {'is_like': desired_is_like})
        return ReactionResult(action='switched', is_like=desired_is_like)


def create_comment(
    store: RecordStore,
    confession_id,
    user_id: str,
    content: str,
    parent_comment_id=None,
) -> dict:
    """
    Create a comment, or a reply when parent_comment_id is given.

    VALIDATION (before any write):
    - content must not be blank
    - confession must exist (EntityNotFoundError otherwise)
    - parent must exist and belong to the same confession

    REPLY-OF-REPLY POLICY:
    Threads are one level deep. Replying to a reply stores the new comment
    under that reply's top-level parent instead, so nothing is ever hidden
    by the thread builder.
    """
    content = (content or '').strip()
    if not content:
        raise ValidationError("Comment cannot be empty.", field='content')

    if store.find_one(CONFESSIONS, id=confession_id) is None:
        raise EntityNotFoundError(f"Confession {confession_id} does not exist.")

    if parent_comment_id is not None:
        parent = store.find_one(COMMENTS, id=parent_comment_id)
        if parent is None or str(parent['confession_id']) != str(confession_id):
            raise ValidationError(
                'Parent comment must belong to the same confession.',
                field='parent_comment_id'
            )
        if parent['parent_comment_id'] is not None:
            logger.debug(f"Flattening reply-to-reply under {parent['parent_comment_id']}")
            parent_comment_id = parent['parent_comment_id']

    return store.insert(COMMENTS, {
        'confession_id': confession_id,
        'parent_comment_id': parent_comment_id,
        'user_id': user_id,
        'content': content,
    })


def validate_confession(content: Optional[str], files) -> str:
    """Validate a confession before anything is uploaded. Returns trimmed content."""
    content = (content or '').strip()
    max_length = settings.BOARD_CONFESSION_MAX_LENGTH

    if not content and not files:
        raise ValidationError('Please write something or upload files', field='content')
    if len(content) > max_length:
        raise ValidationError(
            f"Confession must be at most {max_length} characters.",
            field='content'
        )
    validate_uploads(files)
    return content


def create_confession(
    store: RecordStore,
    media_store: MediaStore,
    user_id: str,
    content: Optional[str] = None,
    files=(),
) -> dict:
    """
    Validate, upload media, then insert the confession.

    If any upload (or the insert) fails the confession is NOT created and
    the files uploaded so far are deleted again; the original error
    propagates. Files are named {user_id}-{epoch_ms}-{index}.{ext}.
    """
    files = list(files)
    content = validate_confession(content, files)

    media_urls = []
    stored = []
    timestamp = int(time.time() * 1000)
    try:
        for index, upload in enumerate(files):
            ext = upload.name.rsplit('.', 1)[-1] if '.' in upload.name else 'bin'
            name = f"{user_id}-{timestamp}-{index}.{ext}"
            url = media_store.put(name, upload.read(), upload.content_type)
            stored.append(name)
            media_urls.append({'url': url, 'type': media_kind(upload.content_type)})

        confession = store.insert(CONFESSIONS, {
            'user_id': user_id,
            'content': content or None,
            'media_urls': media_urls,
            'media_type': 'mixed' if media_urls else None,
        })
    except BoardError:
        # No row will reference what was already uploaded
        _discard_uploads(media_store, stored)
        raise
    logger.info(f"Confession {confession['id']} posted by anonymous-{user_id} with {len(media_urls)} media")
    return confession


def _discard_uploads(media_store: MediaStore, names: list[str]) -> None:
    for name in names:
        try:
            media_store.delete(name)
        except TransientStoreError as e:
            logger.warning(f"Could not remove orphaned upload {name}: {e}")
