"""
PHASE 4: Read Side - Feed, Counts and Comment Threads
=====================================================

Every read recomputes counts from reaction rows. Nothing is incremented or
decremented locally, so a refresh after any mutation is the source of truth
even with other voters acting concurrently.

THREAD FETCH:
-------------
1 query for all comments of a confession (ordered by created_at)
1 query for all their reactions (prefetch)
Then assemble_thread() builds the two-level tree in Python, O(n).

    SELECT * FROM confession_comments WHERE confession_id = %s ORDER BY created_at;
    SELECT * FROM comment_likes WHERE comment_id IN (...);

FEED FETCH:
-----------
1 query for the confessions with COUNT(confession_comments) annotated
1 query for all their reactions (prefetch)
Comment rows themselves are never loaded for the feed.
"""

import logging
from typing import Optional, TypedDict

from django.conf import settings

from .exceptions import ValidationError
from .media import decode_media_urls
from .store import RecordStore, CONFESSIONS, COMMENTS, VOTABLE_ENTITIES

logger = logging.getLogger(__name__)

SORT_OPTIONS = ('latest', 'oldest', 'popular')


class CommentNode(TypedDict):
    """A comment with its tallies, the viewer's reaction and direct replies."""
    id: str
    confession_id: str
    parent_comment_id: Optional[str]
    user_id: str
    content: str
    created_at: object
    likes_count: int
    dislikes_count: int
    user_reaction: Optional[bool]
    replies: list


def summarize_reactions(reactions: list[dict], viewer_id: Optional[str]) -> tuple[int, int, Optional[bool]]:
    """
    Count likes/dislikes and find the viewer's own reaction.

    Reactions are deduplicated by voter first (the later row wins), so a
    duplicated voter is counted once.

    Returns (likes_count, dislikes_count, user_reaction) where user_reaction
    is True/False, or None when there is no viewer or no reaction. None is
    NOT a dislike.
    """
    by_voter = {}
    for reaction in reactions:
        by_voter[reaction['user_id']] = bool(reaction['is_like'])

    likes_count = sum(1 for is_like in by_voter.values() if is_like)
    dislikes_count = len(by_voter) - likes_count
    user_reaction = by_voter.get(viewer_id) if viewer_id else None
    return likes_count, dislikes_count, user_reaction


def assemble_thread(rows: list[dict], viewer_id: Optional[str] = None) -> list[CommentNode]:
    """
    Build the parent -> replies tree from flat comment rows.

    Each row carries its reaction rows under 'comment_likes'. Pure function:
    no I/O, input is not modified.

    Algorithm: O(n log n) for the sort, then two O(n) passes

    1. Sort rows by created_at (stable, so ties keep input order)
    2. Decorate each row with counts and the viewer's reaction
    3. Parents (no parent_comment_id) become roots, in order
    4. Replies attach to their root in order

    Example Input (flat, in created order):
        [{id: 1, parent: None}, {id: 2, parent: 1}, {id: 3, parent: 1}, {id: 4, parent: None}]

    Example Output:
        [{id: 1, replies: [{id: 2}, {id: 3}]}, {id: 4, replies: []}]

    EDGE CASES:
    - A reply whose parent isn't in rows is dropped (logged at debug)
    - A reply to a reply (legacy rows) is flattened under the top-level
      ancestor, since new writes are flattened the same way
    """
    ordered = sorted(rows, key=lambda row: row['created_at'])

    parent_of = {row['id']: row.get('parent_comment_id') for row in ordered}
    roots = {}
    tree = []
    replies = []

    for row in ordered:
        likes_count, dislikes_count, user_reaction = summarize_reactions(
            row.get('comment_likes') or [], viewer_id
        )
        node = CommentNode(
            id=row['id'],
            confession_id=row['confession_id'],
            parent_comment_id=row.get('parent_comment_id'),
            user_id=row['user_id'],
            content=row['content'],
            created_at=row['created_at'],
            likes_count=likes_count,
            dislikes_count=dislikes_count,
            user_reaction=user_reaction,
            replies=[],
        )
        if node['parent_comment_id'] is None:
            roots[node['id']] = node
            tree.append(node)
        else:
            replies.append(node)

    for node in replies:
        root_id = _top_level_ancestor(node['parent_comment_id'], parent_of)
        if root_id in roots:
            roots[root_id]['replies'].append(node)
        else:
            logger.debug(f"Dropping orphan reply {node['id']} (parent {node['parent_comment_id']})")

    return tree


def _top_level_ancestor(comment_id, parent_of: dict):
    seen = set()
    while parent_of.get(comment_id) is not None and comment_id not in seen:
        seen.add(comment_id)
        comment_id = parent_of[comment_id]
    return comment_id


def get_comment_rows(store: RecordStore, confession_id) -> list[dict]:
    """All comments of a confession with their reactions, oldest first."""
    return store.list_with_joins(
        COMMENTS,
        predicate={'confession_id': confession_id},
        joins=('comment_likes',),
        order=('created_at',),
    )


def get_comment_thread(store: RecordStore, confession_id, viewer_id: Optional[str]) -> list[CommentNode]:
    """Main entry point for a thread: fetch + assemble."""
    return assemble_thread(get_comment_rows(store, confession_id), viewer_id)


def get_feed(
    store: RecordStore,
    viewer_id: Optional[str],
    sort: str = 'latest',
    limit: Optional[int] = None,
) -> list[dict]:
    """
    Fetch the confession feed with counts and the viewer's reactions.

    SORT OPTIONS:
    - latest:  newest first
    - oldest:  oldest first
    - popular: the newest `limit` confessions re-ordered by
               likes - dislikes (descending, ties keep newest first)

    Sorting applies to confessions only; comment threads are always
    chronological.
    """
    if sort not in SORT_OPTIONS:
        raise ValidationError(
            f"Unknown sort '{sort}'. Expected one of: {', '.join(SORT_OPTIONS)}",
            field='sort'
        )
    limit = limit or settings.BOARD_FEED_LIMIT
    order = ('created_at',) if sort == 'oldest' else ('-created_at',)

    rows = store.list_with_joins(
        CONFESSIONS,
        joins=('confession_likes',),
        order=order,
        limit=limit,
        counts=('confession_comments',),
    )

    feed = []
    for row in rows:
        likes_count, dislikes_count, user_reaction = summarize_reactions(
            row.get('confession_likes') or [], viewer_id
        )
        feed.append({
            'id': row['id'],
            'user_id': row['user_id'],
            'content': row['content'],
            'media_urls': decode_media_urls(row.get('media_urls')),
            'created_at': row['created_at'],
            'likes_count': likes_count,
            'dislikes_count': dislikes_count,
            'comments_count': row.get('confession_comments_count') or 0,
            'user_reaction': user_reaction,
        })

    if sort == 'popular':
        feed.sort(key=lambda item: item['likes_count'] - item['dislikes_count'], reverse=True)

    return feed


def reaction_summary(store: RecordStore, entity_kind: str, entity_id, viewer_id: Optional[str]) -> dict:
    """Fresh counts for one votable entity, read straight from its reaction rows."""
    try:
        table, column = VOTABLE_ENTITIES[entity_kind]
    except KeyError:
        raise ValueError(f"Invalid entity kind: {entity_kind}")

    reactions = store.list_with_joins(table, predicate={column: entity_id}, order=('created_at',))
    likes_count, dislikes_count, user_reaction = summarize_reactions(reactions, viewer_id)
    return {
        'likes_count': likes_count,
        'dislikes_count': dislikes_count,
        'user_reaction': user_reaction,
    }
