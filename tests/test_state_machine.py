from __future__ import annotations

import uuid
from datetime import datetime, timezone

import pytest

from leadflow.crm.errors import InvalidStateError
from leadflow.crm.models import CRMLead, LeadStatus
from leadflow.crm.state_machine import (
    ALREADY_CONVERTED_MESSAGE,
    NOT_QUALIFIED_MESSAGE,
    can_convert,
    conversion_blocker,
    ensure_can_convert,
    ensure_can_delete,
)


def _lead(status: LeadStatus, *, converted: bool = False) -> CRMLead:
    lead = CRMLead(
        id=uuid.uuid4(),
        first_name="Alan",
        last_name="Turing",
        email="alan@example.com",
        source="Web",
        status=status.value,
        is_converted=converted,
    )
    if converted:
        lead.converted_at = datetime.now(timezone.utc)
    return lead


@pytest.mark.parametrize("status", [LeadStatus.NEW, LeadStatus.CONTACTED, LeadStatus.LOST])
def test_only_qualified_leads_convert(status: LeadStatus) -> None:
    lead = _lead(status)

    assert can_convert(lead) is False
    assert conversion_blocker(lead) == NOT_QUALIFIED_MESSAGE
    with pytest.raises(InvalidStateError):
        ensure_can_convert(lead)


def test_qualified_lead_converts() -> None:
    lead = _lead(LeadStatus.QUALIFIED)

    assert can_convert(lead) is True
    ensure_can_convert(lead)


def test_converted_flag_checked_before_status() -> None:
    lead = _lead(LeadStatus.QUALIFIED, converted=True)

    assert conversion_blocker(lead) == ALREADY_CONVERTED_MESSAGE


def test_converted_lead_cannot_be_deleted() -> None:
    with pytest.raises(InvalidStateError) as exc_info:
        ensure_can_delete(_lead(LeadStatus.CONVERTED, converted=True))

    assert exc_info.value.to_details()["reason"] == "invalid_state"
    ensure_can_delete(_lead(LeadStatus.LOST))
