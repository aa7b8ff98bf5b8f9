from __future__ import annotations

from typing import Any


class CRMError(Exception):
    """Base error for funnel, stage and lead rule violations."""

    code = "crm_error"
    status_code = 400

    def __init__(self, message: str, details: Any = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)


class NotFoundError(CRMError):
    code = "not_found"
    status_code = 404

    def __init__(self, resource: str, resource_id: int | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} not found", {"resource": resource, "id": resource_id})


class InvalidOrderError(CRMError):
    """Raised when a requested stage position falls outside 1..max."""

    code = "invalid_stage_order"
    status_code = 422

    def __init__(self, requested: int, max_order: int) -> None:
        self.requested = requested
        self.max_order = max_order
        super().__init__(
            "Invalid order position",
            {"requested": requested, "min": 1, "max": max_order},
        )


class InvalidStageForFunnelError(CRMError):
    """Raised when a target stage does not belong to the lead's funnel."""

    code = "invalid_stage_for_funnel"
    status_code = 422

    def __init__(self, stage_id: int | None, funnel_id: int) -> None:
        self.stage_id = stage_id
        self.funnel_id = funnel_id
        super().__init__(
            "stage does not belong to the lead's funnel",
            {"stage_id": stage_id, "funnel_id": funnel_id},
        )


class NoAdjacentStageError(CRMError):
    code = "no_adjacent_stage"
    status_code = 422

    def __init__(self, stage_id: int, direction: str) -> None:
        self.stage_id = stage_id
        self.direction = direction
        super().__init__(f"no {direction} stage", {"stage_id": stage_id, "direction": direction})


class StageInUseError(CRMError):
    code = "stage_in_use"
    status_code = 409

    def __init__(self, stage_id: int, lead_count: int) -> None:
        self.stage_id = stage_id
        self.lead_count = lead_count
        super().__init__(
            "stage still has leads",
            {"stage_id": stage_id, "lead_count": lead_count},
        )


class ImmutableTransactionError(CRMError):
    """Raised when something tries to rewrite or remove an audit row."""

    code = "transaction_immutable"
    status_code = 500

    def __init__(self, transaction_id: int | None, operation: str) -> None:
        self.transaction_id = transaction_id
        self.operation = operation
        super().__init__(
            f"lead transactions are append-only; refused {operation}",
            {"transaction_id": transaction_id, "operation": operation},
        )
