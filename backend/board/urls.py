"""
Board App URL Configuration
"""
from django.urls import path
from .views import (
    IdentityView,
    FeedView,
    ConfessionCreateView,
    CommentListCreateView,
    ReactionView,
)

urlpatterns = [
    # Identity
    path('identity/', IdentityView.as_view(), name='identity'),

    # Feed
    path('feed/', FeedView.as_view(), name='feed'),

    # Confessions
    path('confessions/', ConfessionCreateView.as_view(), name='confession-create'),
    path('confessions/<uuid:confession_id>/comments/', CommentListCreateView.as_view(), name='comments'),
    path(
        'confessions/<uuid:entity_id>/react/',
        ReactionView.as_view(entity_kind='confession'),
        name='react-confession'
    ),

    # Comments
    path(
        'comments/<uuid:entity_id>/react/',
        ReactionView.as_view(entity_kind='comment'),
        name='react-comment'
    ),
]
