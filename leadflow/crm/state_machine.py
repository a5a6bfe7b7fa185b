from __future__ import annotations

from leadflow.crm.errors import InvalidStateError
from leadflow.crm.models import CRMLead, LeadStatus


ALREADY_CONVERTED_MESSAGE = "Lead is already converted"
NOT_QUALIFIED_MESSAGE = "Lead must be qualified before conversion"
CONVERTED_DELETE_MESSAGE = "Cannot delete converted lead"


def conversion_blocker(lead: CRMLead) -> str | None:
    if lead.is_converted:
        return ALREADY_CONVERTED_MESSAGE
    if lead.status != LeadStatus.QUALIFIED:
        return NOT_QUALIFIED_MESSAGE
    return None


def can_convert(lead: CRMLead) -> bool:
    return conversion_blocker(lead) is None


def ensure_can_convert(lead: CRMLead) -> None:
    blocker = conversion_blocker(lead)
    if blocker is not None:
        raise InvalidStateError(blocker, details={"lead_id": str(lead.id), "status": lead.status})


def ensure_can_delete(lead: CRMLead) -> None:
    if lead.is_converted:
        raise InvalidStateError(CONVERTED_DELETE_MESSAGE, details={"lead_id": str(lead.id)})
