"""
System checks for the BOARD_* settings.

Run by `manage.py check` and before every management command, so a bad
environment value fails at startup instead of on the first request.
"""
from django.conf import settings
from django.core.checks import Error, register

POSITIVE_INT_SETTINGS = [
    'BOARD_IDENTITY_MAX_ATTEMPTS',
    'BOARD_CONFESSION_MAX_LENGTH',
    'BOARD_MEDIA_MAX_FILES',
    'BOARD_MEDIA_MAX_BYTES',
    'BOARD_FEED_LIMIT',
]


@register()
def check_board_settings(app_configs, **kwargs):
    errors = []
    for name in POSITIVE_INT_SETTINGS:
        value = getattr(settings, name, None)
        if not isinstance(value, int) or value < 1:
            errors.append(Error(
                f"{name} must be a positive integer, got {value!r}.",
                id='board.E001',
            ))

    cache_key = getattr(settings, 'BOARD_IDENTITY_CACHE_KEY', None)
    if not isinstance(cache_key, str) or not cache_key:
        errors.append(Error(
            'BOARD_IDENTITY_CACHE_KEY must be a non-empty string.',
            id='board.E002',
        ))
    return errors
