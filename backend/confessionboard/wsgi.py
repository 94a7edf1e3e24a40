"""
WSGI config for the confessionboard project.
"""
import os
from django.core.wsgi import get_wsgi_application

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'confessionboard.settings')
application = get_wsgi_application()
