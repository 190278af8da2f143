"""
Assessment and SOAP capture tests.
"""
import pytest

from apps.clinical.assessment import clean_assessment, clean_soap, requires_assessment
from apps.clinical.exceptions import IncompleteAssessmentError, IncompleteSOAPError
from apps.clinical.services import create_case


@pytest.mark.django_db
class TestRequiresAssessment:

    def test_cross_clinic_case_requires_assessment(self, case):
        assert requires_assessment(case) is True

    def test_same_clinic_case_does_not(self, same_clinic_case):
        assert requires_assessment(same_clinic_case) is False

    def test_referral_into_exempt_clinic_does_not(self, patient, clinic_main, clinic_branch2, admin_user):
        case = create_case(
            patient=patient,
            source_clinic=clinic_branch2,
            target_clinic=clinic_main,
            diagnosis='Shoulder pain',
            purpose='Physiotherapy',
            created_by=admin_user,
        )

        assert requires_assessment(case) is False

    def test_exempt_clinic_is_configurable(self, case, settings):
        settings.NO_ASSESSMENT_CLINIC_CODE = 'CL002'

        assert requires_assessment(case) is False


class TestCleanAssessment:

    def test_complete_payload(self, assessment_payload):
        cleaned = clean_assessment(assessment_payload, required=True)

        assert cleaned == assessment_payload

    def test_whitespace_is_trimmed(self, assessment_payload):
        assessment_payload['pt_diagnosis'] = '  Lumbar strain  '

        assert clean_assessment(assessment_payload, required=True)['pt_diagnosis'] == 'Lumbar strain'

    def test_all_missing_fields_reported(self):
        with pytest.raises(IncompleteAssessmentError) as exc_info:
            clean_assessment({'pt_diagnosis': 'Lumbar strain', 'pt_chief_complaint': '   '}, required=True)

        assert exc_info.value.missing_fields == [
            'pt_chief_complaint',
            'pt_present_history',
            'pt_pain_score',
        ]

    @pytest.mark.parametrize('score', [-1, 11, 'abc', 4.5, True])
    def test_invalid_pain_score(self, assessment_payload, score):
        assessment_payload['pt_pain_score'] = score

        with pytest.raises(IncompleteAssessmentError) as exc_info:
            clean_assessment(assessment_payload, required=True)

        assert exc_info.value.missing_fields == ['pt_pain_score']

    @pytest.mark.parametrize('score,expected', [(0, 0), (10, 10), ('7', 7), (3.0, 3)])
    def test_pain_score_bounds_and_coercion(self, assessment_payload, score, expected):
        assessment_payload['pt_pain_score'] = score

        assert clean_assessment(assessment_payload, required=True)['pt_pain_score'] == expected

    def test_optional_assessment_keeps_only_supplied_fields(self):
        assert clean_assessment({}, required=False) == {}
        assert clean_assessment(None, required=False) == {}
        assert clean_assessment({'pt_diagnosis': 'Strain'}, required=False) == {'pt_diagnosis': 'Strain'}

    def test_optional_assessment_still_rejects_bad_score(self):
        with pytest.raises(IncompleteAssessmentError):
            clean_assessment({'pt_pain_score': 42}, required=False)


class TestCleanSOAP:

    def test_complete_note(self, soap_payload):
        soap = clean_soap({**soap_payload, 'notes': ' follow up '})

        assert soap.subjective == 'Pain reduced'
        assert soap.plan == 'Continue twice weekly'
        assert soap.notes == 'follow up'

    def test_notes_optional(self, soap_payload):
        assert clean_soap(soap_payload).notes == ''

    def test_missing_fields_reported(self):
        with pytest.raises(IncompleteSOAPError) as exc_info:
            clean_soap({'subjective': 'Better', 'objective': ' '})

        assert exc_info.value.missing_fields == ['objective', 'assessment', 'plan']

    def test_empty_payload(self):
        with pytest.raises(IncompleteSOAPError) as exc_info:
            clean_soap(None)

        assert len(exc_info.value.missing_fields) == 4
