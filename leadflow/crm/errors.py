from __future__ import annotations

from typing import Any


class CRMError(Exception):
    """Base error for CRM lead operations; carries the HTTP status the API renders."""

    code = "crm_error"
    status_code = 400

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_details(self) -> dict[str, Any]:
        return {"reason": self.code, **self.details}


class NotFoundError(CRMError):
    code = "not_found"
    status_code = 404

    def __init__(self, entity: str, entity_id: Any) -> None:
        super().__init__(f"{entity} not found", details={"entity": entity, "id": str(entity_id)})
        self.entity = entity
        self.entity_id = entity_id


class DuplicateEmailError(CRMError):
    code = "duplicate_email"

    def __init__(self, email: str) -> None:
        super().__init__("Lead with this email already exists", details={"email": email})
        self.email = email


class InvalidStateError(CRMError):
    code = "invalid_state"


class LeadValidationError(CRMError):
    code = "validation_error"
    status_code = 422


class PersistenceError(CRMError):
    code = "persistence_error"
    status_code = 500
