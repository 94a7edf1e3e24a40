"""
PHASE 1: Data Models for the Confession Board
==============================================

Design Philosophy:
------------------
1. No accounts. Every author and voter is a 5-digit anonymous id, stored as
   a plain string column (user_id) rather than a foreign key.
   - The id is resolved per device (see identity.py) and cached on the device
   - Trade-off: no referential integrity to anonymous_users, but posting never
     blocks on identity bookkeeping

2. Comments use the Adjacency List pattern (parent_comment FK)
   - Threads are exactly two levels: top-level comments and their replies
   - Replies to replies are flattened at write time (services.create_comment)

3. Reactions are separate tables per votable entity
   - ConfessionReaction / CommentReaction, each with is_like polarity
   - Unique constraint (entity, user_id) is THE consistency invariant:
     at most one reaction per voter per entity

4. No denormalized counters anywhere
   - likes/dislikes/comments are counted from rows at read time
   - Trade-off: counting on every read, but concurrent voters never drift

Indexes Strategy:
-----------------
- anonymous_users.device_fingerprint_hash: unique, the lookup key for step 3
  of identity resolution
- confession_comments.confession + created_at: fetching a thread in order
- reactions (entity, user_id): uniqueness + "what did this voter pick"
"""

import uuid

from django.db import models
from django.utils import timezone


class AnonymousIdentity(models.Model):
    """
    One row per device that ever resolved an identity.

    anonymous_id is unique across all identities ever created; the database
    constraint is what detects two sessions racing for the same candidate.
    device_fingerprint_hash is unique too, so two sessions racing on the SAME
    device collide on the hash and the loser adopts the winner's id.
    """
    anonymous_id = models.CharField(max_length=5, unique=True)
    # Truncated raw fingerprint, kept for diagnostics only
    device_fingerprint = models.CharField(max_length=500, blank=True, default='')
    device_fingerprint_hash = models.CharField(max_length=64, unique=True)
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = 'anonymous_users'
        verbose_name_plural = 'anonymous identities'

    def __str__(self):
        return f"anonymous-{self.anonymous_id}"


class Confession(models.Model):
    """
    A top-level post. Text, media, or both.

    media_urls holds a JSON list of {"url": ..., "type": "image"|"video"}.
    Always read it through media.decode_media_urls(), never directly.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user_id = models.CharField(max_length=5, db_index=True)
    content = models.TextField(null=True, blank=True)
    media_urls = models.JSONField(default=list, blank=True)
    # 'mixed' when any media is attached
    media_type = models.CharField(max_length=10, null=True, blank=True)
    created_at = models.DateTimeField(default=timezone.now, db_index=True)

    class Meta:
        db_table = 'confessions'
        ordering = ['-created_at']

    def __str__(self):
        preview = (self.content or '[media]')[:50]
        return f"{preview} by anonymous-{self.user_id}"


class ConfessionReaction(models.Model):
    """
    A voter's like (is_like=True) or dislike (is_like=False) on a confession.

    Switching polarity is an UPDATE of this row, never delete + insert.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    confession = models.ForeignKey(
        Confession,
        on_delete=models.CASCADE,
        related_name='confession_likes',
    )
    user_id = models.CharField(max_length=5)
    is_like = models.BooleanField()
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = 'confession_likes'
        ordering = ['created_at']
        constraints = [
            models.UniqueConstraint(
                fields=['confession', 'user_id'],
                name='unique_reaction_per_voter_per_confession'
            )
        ]

    def __str__(self):
        verb = 'liked' if self.is_like else 'disliked'
        return f"anonymous-{self.user_id} {verb} confession {self.confession_id}"


class ConfessionComment(models.Model):
    """
    Comment on a confession, or a reply to a top-level comment.

    parent_comment always points at a top-level comment (one level deep).
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    confession = models.ForeignKey(
        Confession,
        on_delete=models.CASCADE,
        related_name='confession_comments',
    )
    parent_comment = models.ForeignKey(
        'self',
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name='replies',
    )
    user_id = models.CharField(max_length=5)
    content = models.TextField()
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = 'confession_comments'
        ordering = ['created_at']  # Oldest first within a thread
        indexes = [
            models.Index(fields=['confession', 'created_at']),
        ]

    def __str__(self):
        return f"Comment by anonymous-{self.user_id} on {self.confession_id}"


class CommentReaction(models.Model):
    """Like/dislike on a comment or reply. Same invariant as ConfessionReaction."""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    comment = models.ForeignKey(
        ConfessionComment,
        on_delete=models.CASCADE,
        related_name='comment_likes',
    )
    user_id = models.CharField(max_length=5)
    is_like = models.BooleanField()
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = 'comment_likes'
        ordering = ['created_at']
        constraints = [
            models.UniqueConstraint(
                fields=['comment', 'user_id'],
                name='unique_reaction_per_voter_per_comment'
            )
        ]

    def __str__(self):
        verb = 'liked' if self.is_like else 'disliked'
        return f"anonymous-{self.user_id} {verb} comment {self.comment_id}"
