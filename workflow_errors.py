"""
Workflow error taxonomy shared by the hiring, milestone and invoice services.

Every error carries the HTTP status the API answers with and a message that
is safe to show to the caller.
"""
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Optional


class WorkflowError(Exception):
    """Base class for failures reported back to the caller"""
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {'error': self.message}


class ValidationError(WorkflowError):
    status_code = 400


class AuthenticationRequired(WorkflowError):
    status_code = 401

    def __init__(self, message: str = 'Unauthorized - Please login'):
        super().__init__(message)


class AuthorizationError(WorkflowError):
    status_code = 403


class NotFoundError(WorkflowError):
    status_code = 404


class ConflictError(WorkflowError):
    status_code = 409


class InvalidTransitionError(ConflictError):
    """Requested milestone status change is not an edge of the state machine"""

    def __init__(self, current: str, target: str):
        super().__init__(f'Cannot move milestone from {current} to {target}')
        self.current = current
        self.target = target


class StoreError(WorkflowError):
    """A persistence call failed part-way through a workflow"""
    status_code = 500

    def __init__(self, step: str, message: Optional[str] = None):
        super().__init__(message or f'Store failure during step: {step}')
        self.step = step

    def to_dict(self) -> Dict[str, Any]:
        return {'error': self.message, 'step': self.step}


class PaymentGatewayError(WorkflowError):
    """The remote payment gateway refused or could not be reached"""
    status_code = 502


class InvoiceNotFound(NotFoundError):
    def __init__(self, invoice_id: str):
        super().__init__('invoice not found')
        self.invoice_id = invoice_id


CENT = Decimal('0.01')


def parse_amount(value: Any, field: str = 'amount') -> Decimal:
    """
    Parse a money amount coming from a request body

    Accepts ints, floats and numeric strings. Booleans, NaN/Infinity,
    non-numeric and non-positive values raise ValidationError.

    Returns:
        Decimal: the amount rounded to cents
    """
    if value is None or value == '' or isinstance(value, bool):
        raise ValidationError(f'{field} is required')

    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f'{field} must be a number')

    if not amount.is_finite():
        raise ValidationError(f'{field} must be a number')

    try:
        amount = amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValidationError(f'{field} is too large')

    if amount <= 0:
        raise ValidationError(f'{field} must be greater than zero')
    return amount
