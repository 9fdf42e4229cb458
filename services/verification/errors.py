# services/verification/errors.py
from __future__ import annotations

from typing import Dict, List, Optional


class ReviewError(Exception):
    """Base for every failure surfaced by the review workflow."""

    default_message = "Something went wrong. Please try again."

    def __init__(self, message: Optional[str] = None, *, status: Optional[int] = None) -> None:
        self.status = status
        self.user_message = message or self.default_message
        super().__init__(self.user_message)


class NotFoundError(ReviewError):
    default_message = "The requested batch or report could not be found."


class UnauthorizedError(ReviewError):
    """Credential missing or expired. The auth boundary owns remediation."""

    default_message = "Your session has expired. Please sign in again."


class ForbiddenError(ReviewError):
    default_message = "You do not have permission to perform this action."


class ValidationFailedError(ReviewError):
    default_message = "The submitted data was rejected."

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        field_errors: Optional[Dict[str, List[str]]] = None,
        status: Optional[int] = None,
    ) -> None:
        self.field_errors: Dict[str, List[str]] = dict(field_errors or {})
        super().__init__(aggregate_field_errors(message, self.field_errors), status=status)


class NetworkError(ReviewError):
    """Transport failure or an unexpected response status."""

    default_message = "Could not reach the server. Please try again."


class NotSubmittableError(ReviewError):
    """No selection, or the selected draft is not in 'completed' status."""

    default_message = "Select a completed report before submitting."


def aggregate_field_errors(message: Optional[str], field_errors: Dict[str, List[str]]) -> str:
    """Fold field-level messages into a single human-readable line."""
    parts = []
    for field_name, msgs in field_errors.items():
        if isinstance(msgs, str):
            msgs = [msgs]
        for m in msgs or []:
            parts.append(f"{field_name}: {m}")

    head = (message or "").strip() or ValidationFailedError.default_message
    if not parts:
        return head
    return head + " " + "; ".join(parts)
