"""
Metrics instrumentation on top of prometheus_client.
"""
from prometheus_client import Counter, Histogram


class MetricsRegistry:
    """
    Central metrics registry for PhysioSync.

    Provides typed access to all application metrics.
    """

    def __init__(self):
        self._setup_metrics()

    def _create_counter(self, name, description, labels=None):
        return Counter(name, description, labels or [])

    def _create_histogram(self, name, description, labels=None, buckets=None):
        if buckets:
            return Histogram(name, description, labels or [], buckets=buckets)
        return Histogram(name, description, labels or [])

    def _setup_metrics(self):
        """Setup all application metrics."""

        # ===================================================================
        # HTTP / generic
        # ===================================================================
        self.exceptions_total = self._create_counter(
            'exceptions_total',
            'Total exceptions',
            ['exception_type', 'location']
        )

        # ===================================================================
        # Case state machine
        # ===================================================================
        self.case_transition_total = self._create_counter(
            'case_transition_total',
            'PN case status transitions',
            ['from_status', 'to_status', 'result']
        )

        self.case_transition_duration_seconds = self._create_histogram(
            'case_transition_duration_seconds',
            'Duration of a case transition including side effects',
            buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5]
        )

        self.case_status_history_created_total = self._create_counter(
            'case_status_history_created_total',
            'Case status history entries written',
            ['is_reversal']
        )

        # ===================================================================
        # Course ledger
        # ===================================================================
        self.course_ledger_entries_total = self._create_counter(
            'course_ledger_entries_total',
            'Course ledger operations',
            ['action_type', 'result']  # result: success|noop|rejected
        )

        self.course_ledger_inconsistency_total = self._create_counter(
            'course_ledger_inconsistency_total',
            'Course ledger consistency checks that failed'
        )

        # ===================================================================
        # Appointment bridge
        # ===================================================================
        self.appointment_bridge_total = self._create_counter(
            'appointment_bridge_total',
            'Appointment bridge operations',
            ['operation', 'result']
        )

        self.appointment_conflicts_detected_total = self._create_counter(
            'appointment_conflicts_detected_total',
            'Overlapping appointments reported at booking time'
        )


# Global metrics instance
metrics = MetricsRegistry()
