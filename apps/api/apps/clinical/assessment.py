"""
Clinical assessment and SOAP payload validation.

Payloads are plain dicts (request data or keyword arguments). Both
validators return only cleaned values and raise with the complete list of
missing fields so the UI can highlight all of them at once.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional

from django.conf import settings

from .exceptions import IncompleteAssessmentError, IncompleteSOAPError

ASSESSMENT_TEXT_FIELDS = ('pt_diagnosis', 'pt_chief_complaint', 'pt_present_history')
PAIN_SCORE_FIELD = 'pt_pain_score'
SOAP_FIELDS = ('subjective', 'objective', 'assessment', 'plan')

PAIN_SCORE_MIN = 0
PAIN_SCORE_MAX = 10


@dataclass(frozen=True)
class SOAPData:
    subjective: str
    objective: str
    assessment: str
    plan: str
    notes: str = ''


def requires_assessment(case) -> bool:
    """
    Whether accepting ``case`` needs a PT assessment.

    Cross-clinic referrals need one, except into the clinic configured as
    NO_ASSESSMENT_CLINIC_CODE. Same-clinic cases never do.
    """
    if case.source_clinic_id == case.target_clinic_id:
        return False
    return case.target_clinic.code != settings.NO_ASSESSMENT_CLINIC_CODE


def _text(payload, field) -> str:
    value = payload.get(field)
    if value is None:
        return ''
    return str(value).strip()


def _pain_score(value) -> Optional[int]:
    """Parse a 0-10 pain score; None when missing or invalid."""
    if value is None or value == '' or isinstance(value, bool):
        return None
    try:
        score = int(value)
    except (TypeError, ValueError):
        return None
    if isinstance(value, float) and value != score:
        return None
    if not PAIN_SCORE_MIN <= score <= PAIN_SCORE_MAX:
        return None
    return score


def clean_assessment(payload: Optional[Dict[str, Any]], required: bool) -> Dict[str, Any]:
    """
    Validate the assessment part of a transition payload.

    Args:
        payload: Request payload (may be None)
        required: Whether every assessment field must be present

    Returns:
        Dict of Case field values to persist. When not required only the
        fields actually supplied are returned.

    Raises:
        IncompleteAssessmentError: Required fields missing, or a supplied
            pain score outside 0-10
    """
    payload = payload or {}
    cleaned = {}
    missing = []

    for field in ASSESSMENT_TEXT_FIELDS:
        value = _text(payload, field)
        if value:
            cleaned[field] = value
        elif required:
            missing.append(field)

    raw_score = payload.get(PAIN_SCORE_FIELD)
    score = _pain_score(raw_score)
    if score is not None:
        cleaned[PAIN_SCORE_FIELD] = score
    elif required or raw_score not in (None, ''):
        missing.append(PAIN_SCORE_FIELD)

    if missing:
        raise IncompleteAssessmentError(missing)

    return cleaned


def clean_soap(payload: Optional[Dict[str, Any]]) -> SOAPData:
    """
    Validate the SOAP note of a completion payload.

    Raises:
        IncompleteSOAPError: Any of subjective/objective/assessment/plan is
            missing or blank
    """
    payload = payload or {}
    values = {field: _text(payload, field) for field in SOAP_FIELDS}
    missing = [field for field, value in values.items() if not value]
    if missing:
        raise IncompleteSOAPError(missing)

    return SOAPData(notes=_text(payload, 'notes'), **values)
