"""Domain exceptions for the Session Clearinghouse.

These exceptions are framework-agnostic and represent business rule violations.
They are caught and translated to HTTP responses by the API layer's middleware.
Every error carries enough context (entity id, current status) for the caller
to decide whether to re-read, retry with the same idempotency key, or escalate.
"""


class ClearinghouseError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, code: str = "CLEARINGHOUSE_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


# --- Input Errors ---


class ValidationError(ClearinghouseError):
    """Raised for bad input. Never retried automatically."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message=message, code="VALIDATION_ERROR")
        self.field = field


class EntityNotFoundError(ClearinghouseError):
    """Raised when an entity id does not exist in the ledger."""

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(
            message=f"{entity.capitalize()} not found: {entity_id}",
            code="NOT_FOUND",
        )
        self.entity = entity
        self.entity_id = entity_id


# --- State Errors ---


class ConflictError(ClearinghouseError):
    """Raised when a conditional write lost a race or a claim is already taken."""

    def __init__(
        self,
        entity_id: str,
        current_status: str | None,
        message: str | None = None,
    ) -> None:
        super().__init__(
            message=message or f"Conflicting write on {entity_id} (status: {current_status})",
            code="CONFLICT",
        )
        self.entity_id = entity_id
        self.current_status = current_status


class InvalidStateError(ClearinghouseError):
    """Raised when an entity is in the wrong phase for the attempted transition.

    Example: MarkCompleted on a service that is still AVAILABLE.
    """

    def __init__(self, entity_id: str, current_state: str, attempted: str) -> None:
        super().__init__(
            message=f"Invalid transition for {entity_id}: {current_state} -> {attempted}",
            code="INVALID_STATE",
        )
        self.entity_id = entity_id
        self.current_state = current_state
        self.attempted = attempted


class ServiceUnavailableError(ClearinghouseError):
    """Raised when a booking target is gone or already claimed."""

    def __init__(self, service_id: str, current_status: str | None = None) -> None:
        super().__init__(
            message=f"Service unavailable: {service_id} (status: {current_status})",
            code="SERVICE_UNAVAILABLE",
        )
        self.service_id = service_id
        self.current_status = current_status


class EscrowNotPendingError(InvalidStateError):
    """Raised when a release/refund targets an escrow that already settled."""

    def __init__(self, escrow_id: str, current_state: str, attempted: str) -> None:
        super().__init__(escrow_id, current_state, attempted)
        self.code = "ESCROW_NOT_PENDING"
        self.message = f"Escrow {escrow_id} is not pending (status: {current_state})"
        self.args = (self.message,)


class AlreadyResolvedError(ClearinghouseError):
    def __init__(self, dispute_id: str) -> None:
        super().__init__(
            message=f"Dispute already resolved: {dispute_id}",
            code="ALREADY_RESOLVED",
        )
        self.dispute_id = dispute_id


# --- Payment Errors ---


class TransferError(ClearinghouseError):
    """Raised when the payment rail definitively rejects a transfer."""

    def __init__(self, message: str, idempotency_key: str | None = None) -> None:
        super().__init__(message=message, code="TRANSFER_ERROR")
        self.idempotency_key = idempotency_key


class TransferTimeoutError(TransferError):
    """Raised when a transfer did not answer in time, or its outcome is otherwise unknown.

    The outcome is unknown: re-read the escrow before retrying, and retry
    only with the same idempotency key.
    """

    def __init__(
        self, idempotency_key: str, timeout: float | None, message: str | None = None
    ) -> None:
        super().__init__(
            message=message
            or f"Transfer outcome unknown after {timeout}s (key: {idempotency_key})",
            idempotency_key=idempotency_key,
        )
        self.code = "TRANSFER_TIMEOUT"
        self.timeout = timeout


class FundingFailedError(ClearinghouseError):
    """Raised when the client->custodian funding transfer was rejected."""

    def __init__(self, escrow_id: str, booking_id: str, reason: str) -> None:
        super().__init__(
            message=f"Funding failed for escrow {escrow_id} (booking {booking_id}): {reason}",
            code="FUNDING_FAILED",
        )
        self.escrow_id = escrow_id
        self.booking_id = booking_id
        self.reason = reason


# --- Quality Oracle Errors ---


class OracleError(ClearinghouseError):
    """Raised when the quality oracle cannot produce a verdict."""

    def __init__(self, message: str, session_ref: str | None = None) -> None:
        super().__init__(message=message, code="ORACLE_ERROR")
        self.session_ref = session_ref


class OracleTimeoutError(OracleError):
    def __init__(self, session_ref: str, timeout: float | None) -> None:
        super().__init__(
            message=f"Quality oracle timed out after {timeout}s for session {session_ref}",
            session_ref=session_ref,
        )
        self.code = "ORACLE_TIMEOUT"
        self.timeout = timeout


# --- Storage Errors ---


class LedgerError(ClearinghouseError):
    """Raised when the ledger store fails or returns an unreadable record."""

    def __init__(self, message: str, key: str | None = None) -> None:
        super().__init__(message=message, code="LEDGER_ERROR")
        self.key = key
