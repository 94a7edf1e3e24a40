"""
Confession board URL Configuration
"""
from django.conf import settings
from django.conf.urls.static import static
from django.contrib import admin
from django.urls import path, include
from django.http import JsonResponse


def api_root(request):
    """Root endpoint with API information."""
    return JsonResponse({
        'message': 'Confession Board API Server',
        'version': '1.0',
        'endpoints': {
            'identity': '/api/identity/',
            'feed': '/api/feed/',
            'confessions': '/api/confessions/',
            'comments': '/api/confessions/<id>/comments/',
            'react': '/api/<confessions|comments>/<id>/react/',
        },
        'admin': '/admin/',
    })


urlpatterns = [
    path('', api_root, name='api-root'),
    path('admin/', admin.site.urls),
    path('api/', include('board.urls')),
] + static(settings.MEDIA_URL, document_root=settings.MEDIA_ROOT)
