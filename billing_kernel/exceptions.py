"""
Typed Exception Hierarchy for the Billing Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers (API handlers, the job runner) must react to billing errors by TYPE,
never by parsing messages:

    try:
        service.record_payment(...)
    except PaymentConflictError as e:
        return api_response(409, code=e.code, status=e.status)
    except ValidationError as e:
        return api_response(400, code=e.code, guard=e.guard)

Every exception has a ``code`` class attribute (machine-readable, API-safe)
and carries structured data as attributes.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    BillingError (base)
    |
    +-- ValidationError                 bad input shape / failed guard
    |
    +-- ConflictError                   caller should refetch and retry
    |   +-- IllegalTransitionError
    |   +-- PaymentConflictError
    |   +-- OptimisticLockError
    |   +-- AlreadyConvertedError
    |   +-- DuplicateGenerationError
    |   +-- ImmutabilityViolationError
    |
    +-- DocumentNotFoundError
    |
    +-- ExternalServiceError            gateway / mailer failure
    |
    +-- ConfigurationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Validation      | VALIDATION_FAILED           | Input rejected or guard failed
----------------|-----------------------------|-----------------------------------------
Conflict        | ILLEGAL_TRANSITION          | Action not allowed from current status
                | PAYMENT_CONFLICT            | Payment on cancelled/refunded/paid invoice
                | OPTIMISTIC_LOCK_CONFLICT    | Concurrent modification detected
                | ALREADY_CONVERTED           | Estimate already produced an invoice
                | DUPLICATE_GENERATION        | Template run date already materialised
                | IMMUTABILITY_VIOLATION      | Payment record update/delete attempted
----------------|-----------------------------|-----------------------------------------
Lookup          | DOCUMENT_NOT_FOUND          | Id not found in this organization
----------------|-----------------------------|-----------------------------------------
External        | EXTERNAL_SERVICE_ERROR      | Gateway or mailer failed
----------------|-----------------------------|-----------------------------------------
Config          | CONFIGURATION_ERROR         | Settings file invalid

Nothing here is fatal to the process: every error is scoped to one document
operation.
"""


class BillingError(Exception):
    """
    Base exception for all billing errors.

    All subclasses must have a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "BILLING_ERROR"


# Validation


class ValidationError(BillingError):
    """Input was rejected or a transition guard failed."""

    code: str = "VALIDATION_FAILED"

    def __init__(self, guard: str, detail: str):
        self.guard = guard
        self.detail = detail
        super().__init__(f"{guard}: {detail}")


# Conflicts


class ConflictError(BillingError):
    """Base exception for state conflicts. Recoverable by refetch + retry."""

    code: str = "CONFLICT"


class IllegalTransitionError(ConflictError):
    """The requested action is not allowed from the document's current status."""

    code: str = "ILLEGAL_TRANSITION"

    def __init__(self, document_type: str, document_id: str, status: str, action: str):
        self.document_type = document_type
        self.document_id = document_id
        self.status = status
        self.action = action
        super().__init__(
            f"Cannot {action} {document_type} {document_id} in status '{status}'"
        )


class PaymentConflictError(ConflictError):
    """A payment cannot be applied to the invoice in its current state."""

    code: str = "PAYMENT_CONFLICT"

    def __init__(self, invoice_id: str, status: str, reason: str):
        self.invoice_id = invoice_id
        self.status = status
        self.reason = reason
        super().__init__(
            f"Cannot apply payment to invoice {invoice_id} ({status}): {reason}"
        )


class OptimisticLockError(ConflictError):
    """Optimistic locking conflict detected."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"Optimistic lock conflict on {entity_type} {entity_id}: "
            "entity was modified by another transaction"
        )


class AlreadyConvertedError(ConflictError):
    """The estimate has already been converted into an invoice."""

    code: str = "ALREADY_CONVERTED"

    def __init__(self, estimate_id: str, invoice_id: str):
        self.estimate_id = estimate_id
        self.invoice_id = invoice_id
        super().__init__(
            f"Estimate {estimate_id} already converted to invoice {invoice_id}"
        )


class DuplicateGenerationError(ConflictError):
    """An invoice already exists for this template run date."""

    code: str = "DUPLICATE_GENERATION"

    def __init__(self, template_id: str, run_date: str):
        self.template_id = template_id
        self.run_date = run_date
        super().__init__(
            f"Template {template_id} already generated an invoice for {run_date}"
        )


class ImmutabilityViolationError(ConflictError):
    """Attempted to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Lookup


class DocumentNotFoundError(BillingError):
    """No document with this id exists in the caller's organization."""

    code: str = "DOCUMENT_NOT_FOUND"

    def __init__(self, document_type: str, document_id: str):
        self.document_type = document_type
        self.document_id = document_id
        super().__init__(f"{document_type} not found: {document_id}")


# External collaborators


class ExternalServiceError(BillingError):
    """A collaborator (payment gateway, mailer) failed."""

    code: str = "EXTERNAL_SERVICE_ERROR"

    def __init__(self, service: str, detail: str):
        self.service = service
        self.detail = detail
        super().__init__(f"{service} failed: {detail}")


# Configuration


class ConfigurationError(BillingError):
    """Billing settings are missing or invalid."""

    code: str = "CONFIGURATION_ERROR"

    def __init__(self, setting: str, detail: str):
        self.setting = setting
        self.detail = detail
        super().__init__(f"Invalid setting '{setting}': {detail}")
