"""
Clinical URLs - PN cases and appointments.
"""
from django.urls import include, path
from rest_framework.routers import DefaultRouter

from .views import AppointmentViewSet, CaseViewSet

router = DefaultRouter()
router.register(r'cases', CaseViewSet, basename='case')
router.register(r'appointments', AppointmentViewSet, basename='appointment')

urlpatterns = [
    path('', include(router.urls)),
]
