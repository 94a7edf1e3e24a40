"""
Board App Configuration
"""
from django.apps import AppConfig


class BoardConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'board'
    verbose_name = 'Confession Board'

    def ready(self):
        # Register settings checks when app is ready
        import board.checks  # noqa
