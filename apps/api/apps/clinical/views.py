"""
Clinical viewsets for PN cases and appointments.

Views are thin: they validate request shape with serializers, call the case
state machine or the appointment bridge, and translate domain errors into
HTTP responses (400 validation, 403 forbidden, 404 missing, 409 linkage).
"""
from django.core.exceptions import ObjectDoesNotExist, PermissionDenied, ValidationError
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response

from apps.authz.permissions import IsClinicalStaff
from apps.core.api_errors import error_response
from apps.core.observability import get_sanitized_logger
from apps.clinical.exceptions import LinkageInconsistencyError
from apps.clinical.models import Appointment, Case
from apps.clinical.serializers import (
    AppointmentBookingSerializer,
    AppointmentCancelSerializer,
    AppointmentCompleteSerializer,
    AppointmentDetailSerializer,
    AppointmentListSerializer,
    AppointmentRescheduleSerializer,
    AppointmentStatusSerializer,
    CaseCreateSerializer,
    CaseDetailSerializer,
    CaseListSerializer,
    CaseStatusHistorySerializer,
    CaseTransitionSerializer,
    ConflictCheckSerializer,
    LinkCourseSerializer,
)
from apps.clinical.services import create_case, link_course_to_case, transition_case
from apps.clinical.services_appointments import (
    book_appointment,
    cancel_appointment,
    complete_appointment,
    find_appointment_conflicts,
    reschedule_appointment,
    update_appointment_status,
)

logger = get_sanitized_logger(__name__)


def call_domain(func, *args, **kwargs):
    """
    Run a domain operation and map its errors to a response.

    Returns:
        (result, None) on success, (None, Response) on a domain error
    """
    try:
        return func(*args, **kwargs), None
    except LinkageInconsistencyError as e:
        error, http_status = e, status.HTTP_409_CONFLICT
    except PermissionDenied as e:
        error, http_status = e, status.HTTP_403_FORBIDDEN
    except ValidationError as e:
        error, http_status = e, status.HTTP_400_BAD_REQUEST
    except ObjectDoesNotExist as e:
        error, http_status = e, status.HTTP_404_NOT_FOUND

    logger.info(
        'Domain operation rejected',
        extra={
            'event': 'api_domain_error',
            'operation': func.__name__,
            'error_type': error.__class__.__name__,
            'status_code': http_status,
        }
    )
    return None, error_response(error, http_status)


class CaseViewSet(mixins.CreateModelMixin, viewsets.ReadOnlyModelViewSet):
    """
    ViewSet for PN case endpoints.

    Endpoints:
    - POST /api/v1/clinical/cases/
    - GET /api/v1/clinical/cases/
    - GET /api/v1/clinical/cases/{id}/
    - POST /api/v1/clinical/cases/{id}/transition/
    - POST /api/v1/clinical/cases/{id}/link-course/
    - GET /api/v1/clinical/cases/{id}/history/

    Cases are never edited directly nor deleted; status changes go through
    /transition/.
    """
    permission_classes = [IsClinicalStaff]

    def get_queryset(self):
        """
        Filters:
        - status: case status
        - patient_id: patient UUID
        - target_clinic: clinic code
        """
        queryset = Case.objects.select_related('patient', 'source_clinic', 'target_clinic')

        status_filter = self.request.query_params.get('status')
        if status_filter:
            queryset = queryset.filter(status=status_filter)

        patient_id = self.request.query_params.get('patient_id')
        if patient_id:
            queryset = queryset.filter(patient_id=patient_id)

        target_clinic = self.request.query_params.get('target_clinic')
        if target_clinic:
            queryset = queryset.filter(target_clinic__code=target_clinic)

        return queryset.order_by('-created_at')

    def get_serializer_class(self):
        if self.action == 'list':
            return CaseListSerializer
        if self.action == 'create':
            return CaseCreateSerializer
        return CaseDetailSerializer

    def create(self, request, *args, **kwargs):
        """POST /api/v1/clinical/cases/ - manual referral (PENDING)"""
        serializer = CaseCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        case, error = call_domain(create_case, created_by=request.user, **serializer.validated_data)
        if error:
            return error

        return Response(CaseDetailSerializer(case).data, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=['post'], url_path='transition')
    def transition(self, request, pk=None):
        """
        POST /api/v1/clinical/cases/{id}/transition/

        Request body:
        {
            "status": "ACCEPTED",
            "reason": "...",              # cancellation / reversal
            "pt_diagnosis": "...",        # assessment (cross-clinic accept)
            "subjective": "...", ...      # SOAP note (completion)
        }

        Returns:
            200: Transition applied, body is the updated case
            400: Unknown status, invalid transition, missing data
            403: Reversal requested by a non-privileged user
            409: Case and appointment links disagree
        """
        case = self.get_object()
        serializer = CaseTransitionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        payload = dict(serializer.validated_data)
        target_status = payload.pop('status')

        result, error = call_domain(transition_case, case.id, target_status, request.user, payload)
        if error:
            return error

        return Response(CaseDetailSerializer(result.case).data, status=status.HTTP_200_OK)

    @action(detail=True, methods=['post'], url_path='link-course')
    def link_course(self, request, pk=None):
        """POST /api/v1/clinical/cases/{id}/link-course/ with {"course_id": ...}"""
        case = self.get_object()
        serializer = LinkCourseSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        case, error = call_domain(
            link_course_to_case, case.id, serializer.validated_data['course_id'], request.user
        )
        if error:
            return error

        return Response(CaseDetailSerializer(case).data)

    @action(detail=True, methods=['get'], url_path='history')
    def history(self, request, pk=None):
        """GET /api/v1/clinical/cases/{id}/history/ - status audit trail, oldest first"""
        case = self.get_object()
        entries = case.status_history.select_related('changed_by').order_by('created_at')
        return Response(CaseStatusHistorySerializer(entries, many=True).data)


class AppointmentViewSet(mixins.CreateModelMixin, viewsets.ReadOnlyModelViewSet):
    """
    ViewSet for Appointment endpoints.

    Endpoints:
    - POST /api/v1/clinical/appointments/  (optional auto_create_case)
    - GET /api/v1/clinical/appointments/
    - GET /api/v1/clinical/appointments/{id}/
    - POST /api/v1/clinical/appointments/{id}/complete/
    - POST /api/v1/clinical/appointments/{id}/cancel/
    - POST /api/v1/clinical/appointments/{id}/reschedule/
    - POST /api/v1/clinical/appointments/{id}/status/
    - POST /api/v1/clinical/appointments/check-conflicts/
    """
    permission_classes = [IsClinicalStaff]

    def get_queryset(self):
        """
        Filters:
        - status: appointment status
        - date_from / date_to: appointment_date range
        - pt_id: physiotherapist UUID
        - patient_id: patient UUID
        - clinic: clinic code
        """
        queryset = Appointment.objects.select_related('patient', 'clinic', 'pt', 'case')

        status_filter = self.request.query_params.get('status')
        if status_filter:
            queryset = queryset.filter(status=status_filter)

        date_from = self.request.query_params.get('date_from')
        if date_from:
            queryset = queryset.filter(appointment_date__gte=date_from)

        date_to = self.request.query_params.get('date_to')
        if date_to:
            queryset = queryset.filter(appointment_date__lte=date_to)

        pt_id = self.request.query_params.get('pt_id')
        if pt_id:
            queryset = queryset.filter(pt_id=pt_id)

        patient_id = self.request.query_params.get('patient_id')
        if patient_id:
            queryset = queryset.filter(patient_id=patient_id)

        clinic = self.request.query_params.get('clinic')
        if clinic:
            queryset = queryset.filter(clinic__code=clinic)

        return queryset.order_by('appointment_date', 'start_time')

    def get_serializer_class(self):
        if self.action == 'list':
            return AppointmentListSerializer
        if self.action == 'create':
            return AppointmentBookingSerializer
        return AppointmentDetailSerializer

    def _detail_response(self, appointment, http_status=status.HTTP_200_OK, **extra):
        data = AppointmentDetailSerializer(appointment).data
        data.update(extra)
        return Response(data, status=http_status)

    def create(self, request, *args, **kwargs):
        """
        POST /api/v1/clinical/appointments/

        Overlapping bookings for the same PT are allowed; they are returned
        in ``conflicts`` so the UI can warn.
        """
        serializer = AppointmentBookingSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        data = dict(serializer.validated_data)
        auto_create_case = data.pop('auto_create_case', False)

        result, error = call_domain(book_appointment, data, request.user, auto_create_case=auto_create_case)
        if error:
            return error

        return self._detail_response(
            result.appointment,
            http_status=status.HTTP_201_CREATED,
            case_id=str(result.case.id) if result.case else None,
            pn_code=result.case.pn_code if result.case else None,
            conflicts=AppointmentListSerializer(result.conflicts, many=True).data,
        )

    @action(detail=True, methods=['post'], url_path='complete')
    def complete(self, request, pk=None):
        """
        POST /api/v1/clinical/appointments/{id}/complete/

        Body carries the assessment (when the case needs one) and SOAP note
        used to accept and complete the linked case.
        """
        appointment = self.get_object()
        serializer = AppointmentCompleteSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result, error = call_domain(
            complete_appointment, appointment.id, request.user, dict(serializer.validated_data)
        )
        if error:
            return error

        return self._detail_response(
            result.appointment,
            case_status=result.case.status if result.case else None,
            course_entry_id=str(result.usage_entry.id) if result.usage_entry else None,
        )

    @action(detail=True, methods=['post'], url_path='cancel')
    def cancel(self, request, pk=None):
        """POST /api/v1/clinical/appointments/{id}/cancel/ with {"reason": ...}"""
        appointment = self.get_object()
        serializer = AppointmentCancelSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result, error = call_domain(
            cancel_appointment, appointment.id, request.user, serializer.validated_data['reason']
        )
        if error:
            return error

        return self._detail_response(
            result.appointment,
            case_status=result.case.status if result.case else None,
        )

    @action(detail=True, methods=['post'], url_path='reschedule')
    def reschedule(self, request, pk=None):
        """POST /api/v1/clinical/appointments/{id}/reschedule/"""
        appointment = self.get_object()
        serializer = AppointmentRescheduleSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result, error = call_domain(
            reschedule_appointment, appointment.id, actor=request.user, **serializer.validated_data
        )
        if error:
            return error

        return self._detail_response(
            result.appointment,
            conflicts=AppointmentListSerializer(result.conflicts, many=True).data,
        )

    @action(detail=True, methods=['post'], url_path='status')
    def update_status(self, request, pk=None):
        """POST /api/v1/clinical/appointments/{id}/status/ for CONFIRMED, IN_PROGRESS, NO_SHOW"""
        appointment = self.get_object()
        serializer = AppointmentStatusSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        appointment, error = call_domain(
            update_appointment_status, appointment.id, serializer.validated_data['status'], request.user
        )
        if error:
            return error

        return self._detail_response(appointment)

    @action(detail=False, methods=['post'], url_path='check-conflicts')
    def check_conflicts(self, request):
        """
        POST /api/v1/clinical/appointments/check-conflicts/

        Returns:
            {"has_conflicts": bool, "conflicts": [...]}
        """
        serializer = ConflictCheckSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        conflicts = find_appointment_conflicts(
            data['pt'],
            data['appointment_date'],
            data['start_time'],
            data['end_time'],
            exclude_id=data.get('exclude_id'),
        )
        return Response({
            'has_conflicts': bool(conflicts),
            'conflicts': AppointmentListSerializer(conflicts, many=True).data,
        })
