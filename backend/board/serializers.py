"""
PHASE 5: DRF Serializers
=========================

Serializers handle:
1. Validation of incoming request bodies
2. Rendering of the dicts produced by queries.py (feed items, threads)

DESIGN DECISIONS:
-----------------
1. Output serializers are plain Serializers, not ModelSerializers: they
   render pre-computed dicts with counts and the viewer's reaction
2. Business validation (lengths, media limits, parent checks) lives in
   services.py so it runs the same way from the API and from scripts
3. Recursive rendering for comment replies, as a SerializerMethodField
"""

from rest_framework import serializers


class FingerprintSerializer(serializers.Serializer):
    """Device characteristics reported by the client. All optional."""
    user_agent = serializers.CharField(required=False, allow_blank=True, max_length=1000)
    language = serializers.CharField(required=False, allow_blank=True, max_length=100)
    platform = serializers.CharField(required=False, allow_blank=True, max_length=100)
    screen_resolution = serializers.CharField(required=False, allow_blank=True, max_length=50)
    timezone = serializers.CharField(required=False, allow_blank=True, max_length=100)
    # Canvas data URLs are long
    canvas = serializers.CharField(required=False, allow_blank=True, max_length=200000)


class IdentitySerializer(serializers.Serializer):
    anonymous_id = serializers.CharField()
    fingerprint_hash = serializers.CharField()
    # How the id was settled: cache, remote, created, adopted or fallback
    source = serializers.CharField()


class MediaItemSerializer(serializers.Serializer):
    url = serializers.CharField()
    type = serializers.ChoiceField(choices=['image', 'video'])


class ConfessionSerializer(serializers.Serializer):
    """Feed item: confession with counts and the viewer's reaction."""
    id = serializers.UUIDField()
    user_id = serializers.CharField()
    content = serializers.CharField(allow_null=True)
    media_urls = MediaItemSerializer(many=True)
    created_at = serializers.DateTimeField()
    likes_count = serializers.IntegerField()
    dislikes_count = serializers.IntegerField()
    comments_count = serializers.IntegerField()
    user_reaction = serializers.BooleanField(allow_null=True)


class ConfessionCreateSerializer(serializers.Serializer):
    """
    Text part of a new confession. Files come from request.FILES.

    Trimming and limits are enforced by services.validate_confession.
    """
    content = serializers.CharField(required=False, allow_blank=True, trim_whitespace=False)


class CommentSerializer(serializers.Serializer):
    """A single stored comment (no counts, no replies)."""
    id = serializers.UUIDField()
    confession_id = serializers.UUIDField()
    parent_comment_id = serializers.UUIDField(allow_null=True)
    user_id = serializers.CharField()
    content = serializers.CharField()
    created_at = serializers.DateTimeField()


class CommentTreeSerializer(CommentSerializer):
    """
    Serializer for the assembled thread.

    Renders the CommentNode dicts built by queries.assemble_thread().
    """
    likes_count = serializers.IntegerField()
    dislikes_count = serializers.IntegerField()
    user_reaction = serializers.BooleanField(allow_null=True)
    replies = serializers.SerializerMethodField()

    def get_replies(self, obj):
        """Recursively serialize replies."""
        return CommentTreeSerializer(obj['replies'], many=True).data


class CommentCreateSerializer(serializers.Serializer):
    """
    Body for a new comment or reply.

    Parent/confession consistency is checked by services.create_comment.
    """
    content = serializers.CharField(allow_blank=True, max_length=5000)
    parent_comment_id = serializers.UUIDField(required=False, allow_null=True)


class ReactionSerializer(serializers.Serializer):
    """Body for a like (true) or dislike (false) click."""
    is_like = serializers.BooleanField()


class ReactionSummarySerializer(serializers.Serializer):
    action = serializers.ChoiceField(choices=['created', 'removed', 'switched'])
    likes_count = serializers.IntegerField()
    dislikes_count = serializers.IntegerField()
    user_reaction = serializers.BooleanField(allow_null=True)
