"""
PHASE 6: DRF Views
==================

API endpoints for the confession board.

IDENTITY NOTE:
--------------
There are no accounts. A device calls POST /api/identity/ once with its
fingerprint; the resolved anonymous id is cached in the device's signed
session cookie. Every mutation reads the voter from that cache and is
refused (403) until the device has resolved an identity.

SESSION LIFECYCLE:
------------------
Each request gets its own BoardSession (store, device cache, sequencer,
transient copies). It is created in initial() and closed in
finalize_response(), so nothing survives between requests except the
device cache itself.
"""

from rest_framework import status
from rest_framework.parsers import FormParser, JSONParser, MultiPartParser
from rest_framework.views import APIView
from rest_framework.response import Response

from .identity import DeviceFingerprint
from .media import decode_media_urls
from .serializers import (
    FingerprintSerializer,
    IdentitySerializer,
    ConfessionSerializer,
    ConfessionCreateSerializer,
    CommentSerializer,
    CommentTreeSerializer,
    CommentCreateSerializer,
    ReactionSerializer,
    ReactionSummarySerializer,
)
from .session import BoardSession
from .store import CONFESSIONS


class BoardSessionMixin:
    """Opens a BoardSession per request and tears it down afterwards."""
    board = None

    def initial(self, request, *args, **kwargs):
        super().initial(request, *args, **kwargs)
        self.board = BoardSession.from_request(request)

    def finalize_response(self, request, response, *args, **kwargs):
        if self.board is not None:
            self.board.close()
        return super().finalize_response(request, response, *args, **kwargs)


class IdentityView(BoardSessionMixin, APIView):
    """
    GET  /api/identity/  -> the id cached on this device, or 404
    POST /api/identity/  -> resolve (or re-use) this device's id

    Body (all optional, headers fill user agent and language):
    {
        "user_agent": "...",
        "language": "en-US",
        "platform": "Linux x86_64",
        "screen_resolution": "1920x1080",
        "timezone": "Europe/Berlin",
        "canvas": "data:image/png;base64,..."
    }

    Resolution never fails: with the store down the device still gets its
    deterministic fallback id (source = "fallback").
    """

    def get(self, request):
        viewer_id = self.board.viewer_id
        if viewer_id is None:
            return Response(
                {'error': 'Anonymous identity not initialized'},
                status=status.HTTP_404_NOT_FOUND
            )
        return Response({'anonymous_id': viewer_id})

    def post(self, request):
        serializer = FingerprintSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        self.board.fingerprint = DeviceFingerprint.from_request(request, serializer.validated_data)
        identity = self.board.resolve_identity()

        return Response(IdentitySerializer({
            'anonymous_id': identity.id,
            'fingerprint_hash': identity.fingerprint_hash,
            'source': self.board.resolver.source.value,
        }).data)


class FeedView(BoardSessionMixin, APIView):
    """
    GET /api/feed/?sort=latest|oldest|popular

    Latest 50 confessions with like/dislike/comment counts and, when the
    device has an identity, its own reaction on each.

    Query: 2 (confessions with comment counts + reactions prefetch)
    """

    def get(self, request):
        sort = request.query_params.get('sort', 'latest')
        feed = self.board.refresh_feed(sort) or []
        return Response({
            'sort': sort,
            'results': ConfessionSerializer(feed, many=True).data,
        })


class ConfessionCreateView(BoardSessionMixin, APIView):
    """
    POST /api/confessions/   (multipart/form-data)

    Fields:
    - content: text, optional if files are attached (max 1000 chars)
    - files:   up to 7 images/videos, 3MB each

    Everything is validated before any upload starts.
    """
    parser_classes = [MultiPartParser, FormParser, JSONParser]

    def post(self, request):
        serializer = ConfessionCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        files = request.FILES.getlist('files')
        confession = self.board.post_confession(serializer.validated_data.get('content'), files)

        data = ConfessionSerializer({
            **confession,
            'media_urls': decode_media_urls(confession['media_urls']),
            'likes_count': 0,
            'dislikes_count': 0,
            'comments_count': 0,
            'user_reaction': None,
        }).data
        return Response(data, status=status.HTTP_201_CREATED)


class CommentListCreateView(BoardSessionMixin, APIView):
    """
    GET  /api/confessions/<id>/comments/   -> assembled thread
    POST /api/confessions/<id>/comments/   -> new comment or reply

    Body:
    {
        "content": "Comment text",
        "parent_comment_id": "uuid"  // optional, for replies
    }

    Threads are always oldest-first, whatever sort the feed uses.
    """

    def get(self, request, confession_id):
        if self.board.store.find_one(CONFESSIONS, id=confession_id) is None:
            return Response(
                {'error': 'Confession not found'},
                status=status.HTTP_404_NOT_FOUND
            )
        thread = self.board.refresh_comments(confession_id) or []
        return Response(CommentTreeSerializer(thread, many=True).data)

    def post(self, request, confession_id):
        serializer = CommentCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        comment = self.board.post_comment(
            confession_id,
            serializer.validated_data['content'],
            serializer.validated_data.get('parent_comment_id'),
        )
        return Response(CommentSerializer(comment).data, status=status.HTTP_201_CREATED)


class ReactionView(BoardSessionMixin, APIView):
    """
    POST /api/confessions/<id>/react/
    POST /api/comments/<id>/react/

    Body: { "is_like": true | false }

    Same button again retracts, the other button switches. The response
    carries counts re-read from the store after the write.

    Returns:
    {
        "action": "created" | "removed" | "switched",
        "likes_count": 3,
        "dislikes_count": 1,
        "user_reaction": true | false | null
    }
    """
    entity_kind = None

    def post(self, request, entity_id):
        serializer = ReactionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = self.board.react(self.entity_kind, entity_id, serializer.validated_data['is_like'])
        return Response(ReactionSummarySerializer(result).data)
