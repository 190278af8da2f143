"""
Course viewsets - read access to packages and ledgers, manual adjustment.
"""
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response

from apps.authz.permissions import IsClinicalStaff
from apps.clinical.views import call_domain
from apps.courses.models import Course
from apps.courses.serializers import (
    CourseAdjustSerializer,
    CourseSerializer,
    CourseUsageEntrySerializer,
)
from apps.courses.services import adjust_sessions, verify_course_ledger


class CourseViewSet(viewsets.ReadOnlyModelViewSet):
    """
    ViewSet for Course endpoints.

    Endpoints:
    - GET /api/v1/courses/courses/
    - GET /api/v1/courses/courses/{id}/
    - GET /api/v1/courses/courses/{id}/usage/
    - POST /api/v1/courses/courses/{id}/adjust/  (Admin only)
    - GET /api/v1/courses/courses/{id}/verify/
    """
    serializer_class = CourseSerializer
    permission_classes = [IsClinicalStaff]

    def get_queryset(self):
        """
        Filters:
        - patient_id: patient UUID
        - status: course status
        """
        queryset = Course.objects.select_related('patient', 'clinic')

        patient_id = self.request.query_params.get('patient_id')
        if patient_id:
            queryset = queryset.filter(patient_id=patient_id)

        status_filter = self.request.query_params.get('status')
        if status_filter:
            queryset = queryset.filter(status=status_filter)

        return queryset

    @action(detail=True, methods=['get'], url_path='usage')
    def usage(self, request, pk=None):
        """GET /api/v1/courses/courses/{id}/usage/ - ledger, oldest first"""
        course = self.get_object()
        entries = course.usage_entries.select_related('case', 'reversal').order_by('created_at')
        return Response(CourseUsageEntrySerializer(entries, many=True).data)

    @action(detail=True, methods=['post'], url_path='adjust')
    def adjust(self, request, pk=None):
        """
        POST /api/v1/courses/courses/{id}/adjust/

        Request body: {"signed_amount": -1, "reason": "..."}

        Returns:
            201: Ledger entry created, body has the entry and the course
            400: Zero amount, missing reason, counters out of range
            403: Not an administrator
        """
        course = self.get_object()
        serializer = CourseAdjustSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        entry, error = call_domain(
            adjust_sessions,
            course,
            serializer.validated_data['signed_amount'],
            serializer.validated_data['reason'],
            request.user,
        )
        if error:
            return error

        return Response(
            {
                'entry': CourseUsageEntrySerializer(entry).data,
                'course': CourseSerializer(course).data,
            },
            status=status.HTTP_201_CREATED
        )

    @action(detail=True, methods=['get'], url_path='verify')
    def verify(self, request, pk=None):
        """GET /api/v1/courses/courses/{id}/verify/ - counters vs. ledger check"""
        course = self.get_object()
        return Response({'course_id': str(course.id), 'consistent': verify_course_ledger(course)})
