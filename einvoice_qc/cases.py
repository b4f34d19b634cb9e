"""
Case workflow for compliance exceptions.

Exceptions are never recomputed in place; only their case status and
reason code move, through the transitions below.
"""

from typing import Any, Optional

from .schemas import CaseStatus, ComplianceException, DatasetType


class CaseTransitionError(ValueError):
    """Raised for a disallowed status change or an unknown reason code."""


ALLOWED_TRANSITIONS: dict[CaseStatus, frozenset[CaseStatus]] = {
    CaseStatus.OPEN: frozenset({CaseStatus.IN_REVIEW, CaseStatus.RESOLVED, CaseStatus.WAIVED}),
    CaseStatus.IN_REVIEW: frozenset({CaseStatus.OPEN, CaseStatus.RESOLVED, CaseStatus.WAIVED}),
    CaseStatus.RESOLVED: frozenset({CaseStatus.OPEN}),
    CaseStatus.WAIVED: frozenset({CaseStatus.OPEN}),
}

REASON_CODES: dict[DatasetType, tuple[str, ...]] = {
    DatasetType.AP: (
        "REQUEST_VENDOR_CORRECTION",
        "DUPLICATE_REJECT",
        "MARK_NON_RECOVERABLE",
        "ACCEPT_WITH_VARIANCE",
    ),
    DatasetType.AR: (
        "REISSUE_INVOICE",
        "CREDIT_NOTE_NEEDED",
        "CORRECT_BUYER_DATA_AND_RESEND",
    ),
}


def allowed_reason_codes(direction: Any = None) -> list[str]:
    """Reason codes for one direction, or for both when no direction is given."""
    if direction is None:
        return [code for codes in REASON_CODES.values() for code in codes]
    return list(REASON_CODES[DatasetType(direction)])


def can_transition(current: CaseStatus, target: CaseStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def transition_case(
    exception: ComplianceException,
    status: Any,
    reason_code: Optional[str] = None,
    direction: Any = None,
) -> ComplianceException:
    """
    Move an exception to a new case status.

    Args:
        exception: Exception to update (left untouched; a copy is returned)
        status: Target CaseStatus or its value
        reason_code: Optional reason code; validated against the direction
        direction: AP or AR; defaults to the exception's dataset type

    Returns:
        A copy of the exception with the new status and reason code

    Raises:
        CaseTransitionError: For an unknown status, a disallowed transition,
            or a reason code that does not belong to the direction
    """
    try:
        target = CaseStatus(status)
    except ValueError:
        raise CaseTransitionError(f"Unknown case status {status!r}") from None

    if not can_transition(exception.case_status, target):
        raise CaseTransitionError(
            f"Cannot move exception {exception.id} from {exception.case_status.value} to {target.value}"
        )

    if reason_code is not None:
        effective = direction if direction is not None else exception.dataset_type
        try:
            allowed = allowed_reason_codes(effective)
        except ValueError:
            raise CaseTransitionError(f"Unknown direction {effective!r}") from None
        if reason_code not in allowed:
            raise CaseTransitionError(f"Reason code {reason_code!r} is not valid here; expected one of {', '.join(allowed)}")

    # Reopening clears the previous resolution reason
    new_reason = reason_code if target != CaseStatus.OPEN else None
    return exception.model_copy(update={"case_status": target, "reason_code": new_reason})
