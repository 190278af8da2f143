"""
Tests for the observability layer.

Validates that metrics, logs, and events are emitted correctly
without logging PHI/PII.
"""
import json
import logging
from unittest.mock import MagicMock, Mock, patch

import pytest
from django.db import DatabaseError
from django.http import HttpResponse
from django.test import RequestFactory
from prometheus_client import REGISTRY

from apps.clinical.exceptions import ForbiddenTransitionError
from apps.clinical.services import transition_case
from apps.core.observability.correlation import (
    RequestCorrelationMiddleware,
    clear_request_context,
    get_request_id,
)
from apps.core.observability.events import (
    log_appointment_cancelled,
    log_domain_event,
    log_linkage_inconsistency,
)
from apps.core.observability.logging import (
    REDACTED,
    SanitizedJSONFormatter,
    sanitize_dict,
)
from apps.core.observability.metrics import metrics


def sample(name, **labels):
    return REGISTRY.get_sample_value(name, labels) or 0


class TestRequestCorrelation:
    """Test request correlation middleware."""

    def setup_method(self):
        self.factory = RequestFactory()
        self.middleware = RequestCorrelationMiddleware(lambda r: HttpResponse())

    def teardown_method(self):
        clear_request_context()

    def test_generates_request_id_if_missing(self):
        request = self.factory.get('/api/v1/clinical/cases/')

        self.middleware.process_request(request)

        assert request.request_id
        assert get_request_id() == request.request_id

    def test_propagates_existing_request_id(self):
        request = self.factory.get('/api/v1/clinical/cases/', HTTP_X_REQUEST_ID='req-123')

        self.middleware.process_request(request)

        assert request.request_id == 'req-123'

    def test_echoes_headers_and_clears_context(self):
        request = self.factory.get('/api/v1/clinical/cases/', HTTP_X_REQUEST_ID='req-123', HTTP_X_TRACE_ID='tr-9')
        self.middleware.process_request(request)

        response = self.middleware.process_response(request, HttpResponse())

        assert response['X-Request-ID'] == 'req-123'
        assert response['X-Trace-ID'] == 'tr-9'
        assert get_request_id() is None


class TestSanitization:
    """Test PHI/PII sanitization."""

    def test_clinical_free_text_redacted(self):
        data = {
            'case_id': 'case-1',
            'pt_diagnosis': 'Lumbar strain',
            'subjective': 'Pain reduced',
            'reason': 'Patient moved away',
            'walk_in_phone': '0899999999',
            'walk_in_email': 'guest@example.com',
            'status': 'ACCEPTED',
        }

        sanitized = sanitize_dict(data)

        assert sanitized['case_id'] == 'case-1'
        assert sanitized['status'] == 'ACCEPTED'
        assert sanitized['pt_diagnosis'] == REDACTED
        assert sanitized['subjective'] == REDACTED
        assert sanitized['reason'] == REDACTED
        assert sanitized['walk_in_phone'] == REDACTED
        assert sanitized['walk_in_email'] == REDACTED

    def test_nested_and_listed_dicts(self):
        data = {
            'case': {'id': 'case-1', 'patient': {'first_name': 'Somchai', 'id': 'p-1'}},
            'soap_notes': [{'plan': 'Continue', 'id': 'n-1'}],
        }

        sanitized = sanitize_dict(data)

        assert sanitized['case']['patient']['first_name'] == REDACTED
        assert sanitized['case']['patient']['id'] == 'p-1'
        assert sanitized['soap_notes'][0] == {'plan': REDACTED, 'id': 'n-1'}

    def test_identifiers_preserved(self):
        data = {'case_id': 'c', 'course_id': 'k', 'appointment_id': 'a', 'session_delta': 1}

        assert sanitize_dict(data) == data

    def test_json_formatter_redacts_extras(self):
        record = logging.LogRecord('test', logging.INFO, __file__, 1, 'Case accepted', None, None)
        record.case_id = 'case-1'
        record.pt_chief_complaint = 'Pain when bending'
        record.payload = {'notes': 'private', 'status': 'ACCEPTED'}

        output = json.loads(SanitizedJSONFormatter().format(record))

        assert output['message'] == 'Case accepted'
        assert output['case_id'] == 'case-1'
        assert output['pt_chief_complaint'] == REDACTED
        assert output['payload'] == {'notes': REDACTED, 'status': 'ACCEPTED'}


class TestMetricsEmission:
    """Test that metrics are emitted correctly."""

    def test_metrics_registry_has_all_metrics(self):
        assert hasattr(metrics, 'exceptions_total')
        assert hasattr(metrics, 'case_transition_total')
        assert hasattr(metrics, 'case_transition_duration_seconds')
        assert hasattr(metrics, 'case_status_history_created_total')
        assert hasattr(metrics, 'course_ledger_entries_total')
        assert hasattr(metrics, 'course_ledger_inconsistency_total')
        assert hasattr(metrics, 'appointment_bridge_total')
        assert hasattr(metrics, 'appointment_conflicts_detected_total')

    @pytest.mark.django_db
    def test_transition_counts_success_and_rejection(self, same_clinic_case, pt_user):
        labels = {'from_status': 'PENDING', 'to_status': 'ACCEPTED'}
        success_before = sample('case_transition_total', result='success', **labels)
        history_before = sample('case_status_history_created_total', is_reversal='false')

        transition_case(same_clinic_case.id, 'ACCEPTED', pt_user)

        assert sample('case_transition_total', result='success', **labels) == success_before + 1
        assert sample('case_status_history_created_total', is_reversal='false') == history_before + 1

        rejected_labels = {'from_status': 'ACCEPTED', 'to_status': 'PENDING', 'result': 'rejected'}
        rejected_before = sample('case_transition_total', **rejected_labels)

        with pytest.raises(ForbiddenTransitionError):
            transition_case(same_clinic_case.id, 'PENDING', pt_user, {'reason': 'Oops'})

        assert sample('case_transition_total', **rejected_labels) == rejected_before + 1


class TestDomainEvents:
    """Test domain event logging."""

    @patch('apps.core.observability.events.logger')
    def test_log_domain_event_structure(self, mock_logger):
        log_domain_event(
            'case_transition',
            entity_type='Case',
            entity_id='case-123',
            entity_ids={'case_id': 'case-123'},
            from_status='PENDING',
            notes='free text',
        )

        mock_logger.info.assert_called_once()
        extra = mock_logger.info.call_args[1]['extra']
        assert extra['event'] == 'case_transition'
        assert extra['entity_type'] == 'Case'
        assert extra['case_id'] == 'case-123'
        assert extra['result'] == 'success'
        assert extra['from_status'] == 'PENDING'
        assert extra['notes'] == REDACTED

    @patch('apps.core.observability.events.logger')
    def test_rejected_events_log_as_warning(self, mock_logger):
        log_domain_event('case_transition', result='rejected')

        mock_logger.warning.assert_called_once()
        mock_logger.info.assert_not_called()

    @patch('apps.core.observability.events.logger')
    def test_linkage_inconsistency_logged_as_error(self, mock_logger):
        log_linkage_inconsistency('case-1', 'appt-2', case_appointment_id=None)

        mock_logger.error.assert_called_once()
        extra = mock_logger.error.call_args[1]['extra']
        assert extra['event'] == 'linkage_inconsistency'
        assert extra['case_id'] == 'case-1'
        assert extra['appointment_id'] == 'appt-2'
        assert extra['result'] == 'inconsistent'

    @patch('apps.core.observability.events.logger')
    def test_appointment_cancelled_has_no_reason_text(self, mock_logger):
        appointment = Mock(id='appt-1', case_id='case-1', cancellation_reason='Patient is sick')

        log_appointment_cancelled(appointment, origin='case')

        extra = mock_logger.info.call_args[1]['extra']
        assert extra['origin'] == 'case'
        assert 'Patient is sick' not in extra.values()


@pytest.mark.django_db
class TestHealthChecks:
    """Test health check endpoints."""

    def test_healthz_returns_200(self, client):
        response = client.get('/healthz')

        assert response.status_code == 200
        data = response.json()
        assert data['status'] == 'ok'
        assert 'version' in data

    def test_readyz_checks_database(self, client):
        response = client.get('/readyz')

        assert response.status_code == 200
        assert response.json()['checks']['database'] is True

    def test_suite_runs_on_in_memory_sqlite(self):
        from django.db import connection

        assert connection.vendor == 'sqlite'
        assert connection.settings_dict['ENGINE'] == 'django.db.backends.sqlite3'

    @patch('apps.core.observability.health.connection')
    def test_readyz_fails_on_db_error(self, mock_connection, client):
        mock_connection.cursor.side_effect = DatabaseError('DB connection failed')

        response = client.get('/readyz')

        assert response.status_code == 503
        data = response.json()
        assert data['status'] == 'not_ready'
        assert data['checks']['database'] is False


class TestTracingIntegration:
    """Test tracing span creation."""

    def test_trace_span_without_sdk(self):
        from apps.core.observability.tracing import trace_span

        with trace_span('test_operation', attributes={'case_id': '123'}):
            pass

    @patch('apps.core.observability.tracing.tracer')
    def test_trace_span_sets_attributes(self, mock_tracer):
        from apps.core.observability.tracing import trace_span

        mock_span = MagicMock()
        mock_tracer.start_as_current_span.return_value.__enter__.return_value = mock_span

        with trace_span('transition_case', attributes={'case_id': 'c-1', 'skipped': None}):
            pass

        mock_tracer.start_as_current_span.assert_called_once()
        mock_span.set_attribute.assert_called_once_with('case_id', 'c-1')

    @patch('apps.core.observability.tracing.tracer')
    def test_trace_span_marks_errors(self, mock_tracer):
        from apps.core.observability.tracing import trace_span

        mock_span = MagicMock()
        mock_tracer.start_as_current_span.return_value.__enter__.return_value = mock_span

        with pytest.raises(ValueError):
            with trace_span('transition_case'):
                raise ValueError('boom')

        mock_span.set_attribute.assert_called_with('error.type', 'ValueError')
        mock_span.set_status.assert_called_once()
