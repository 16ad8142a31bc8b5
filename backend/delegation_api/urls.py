"""
URL configuration for the delegation_api project.
"""

from django.contrib import admin
from django.urls import path, include
from django.http import JsonResponse
from drf_spectacular.views import SpectacularAPIView, SpectacularRedocView, SpectacularSwaggerView


def home_view(request):
    """Root endpoint pointing at the planning API."""
    return JsonResponse({
        'message': 'Task Delegation Planning API',
        'version': '1.0.0',
        'endpoints': {
            'API Root': '/api/',
            'Validate Dependencies': 'POST /api/dependencies/validate/',
            'Lock Plan': 'POST /api/projects/<id>/planning/lock/',
            'Run Assignments': 'POST /api/projects/<id>/assignments/run/',
            'Replan': 'POST /api/projects/<id>/replan/',
            'Board': 'GET /api/projects/<id>/workflow/board/',
            'API Documentation': '/api/docs/',
            'OpenAPI Schema': '/api/schema/',
        }
    })


urlpatterns = [
    path('', home_view, name='home'),
    path('admin/', admin.site.urls),
    path('api/', include('planning.urls')),
    # OpenAPI/Swagger Documentation
    path('api/schema/', SpectacularAPIView.as_view(), name='schema'),
    path('api/docs/', SpectacularSwaggerView.as_view(url_name='schema'), name='swagger-ui'),
    path('api/redoc/', SpectacularRedocView.as_view(url_name='schema'), name='redoc'),
]
