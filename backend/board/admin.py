"""
Django Admin Configuration for Board Models
"""
from django.contrib import admin
from .models import (
    AnonymousIdentity,
    Confession,
    ConfessionReaction,
    ConfessionComment,
    CommentReaction,
)


@admin.register(AnonymousIdentity)
class AnonymousIdentityAdmin(admin.ModelAdmin):
    list_display = ['anonymous_id', 'device_fingerprint_hash', 'created_at']
    search_fields = ['anonymous_id', 'device_fingerprint_hash']
    readonly_fields = ['anonymous_id', 'device_fingerprint', 'device_fingerprint_hash', 'created_at']

    def has_add_permission(self, request):
        # Identities are only ever created by identity resolution
        return False

    def has_change_permission(self, request, obj=None):
        # Identities are immutable
        return False


@admin.register(Confession)
class ConfessionAdmin(admin.ModelAdmin):
    list_display = ['id', 'user_id', 'media_type', 'created_at']
    list_filter = ['created_at', 'media_type']
    search_fields = ['content', 'user_id']
    readonly_fields = ['created_at']


@admin.register(ConfessionComment)
class ConfessionCommentAdmin(admin.ModelAdmin):
    list_display = ['id', 'confession', 'user_id', 'parent_comment', 'created_at']
    list_filter = ['created_at']
    search_fields = ['content', 'user_id']
    readonly_fields = ['created_at']


class ReactionAdmin(admin.ModelAdmin):
    list_display = ['user_id', 'is_like', 'created_at']
    list_filter = ['is_like', 'created_at']
    search_fields = ['user_id']

    def has_add_permission(self, request):
        # Reactions only change through the toggle logic
        return False

    def has_change_permission(self, request, obj=None):
        return False


admin.site.register(ConfessionReaction, ReactionAdmin)
admin.site.register(CommentReaction, ReactionAdmin)
