from dataclasses import dataclass
from fastapi import status


KIND_AUTHENTICATION = "authentication"
KIND_AUTHORIZATION = "authorization"
KIND_CONFLICT = "conflict"
KIND_NOT_FOUND = "not_found"
KIND_VALIDATION = "validation"
KIND_INFRASTRUCTURE = "infrastructure"


@dataclass(frozen=True)
class ErrorDefinition:
    code: str
    message: str
    status_code: int
    kind: str = KIND_VALIDATION
    retryable: bool = False


class ErrorCatalog:
    INVALID_TOKEN = ErrorDefinition(
        "INVALID_TOKEN",
        "Invalid token",
        status.HTTP_401_UNAUTHORIZED,
        KIND_AUTHENTICATION,
    )
    TOKEN_EXPIRED = ErrorDefinition(
        "TOKEN_EXPIRED",
        "Token has expired",
        status.HTTP_401_UNAUTHORIZED,
        KIND_AUTHENTICATION,
    )
    UNKNOWN_SUBJECT = ErrorDefinition(
        "UNKNOWN_SUBJECT",
        "Token subject is unknown",
        status.HTTP_401_UNAUTHORIZED,
        KIND_AUTHENTICATION,
    )
    INVALID_CREDENTIALS = ErrorDefinition(
        "INVALID_CREDENTIALS",
        "Invalid credentials",
        status.HTTP_401_UNAUTHORIZED,
        KIND_AUTHENTICATION,
    )
    USER_INACTIVE = ErrorDefinition(
        "USER_INACTIVE",
        "User is inactive",
        status.HTTP_403_FORBIDDEN,
        KIND_AUTHENTICATION,
    )
    ORGANIZATION_INACTIVE = ErrorDefinition(
        "ORGANIZATION_INACTIVE",
        "Organization is inactive",
        status.HTTP_403_FORBIDDEN,
        KIND_AUTHENTICATION,
    )
    FORBIDDEN = ErrorDefinition(
        "FORBIDDEN",
        "Forbidden - insufficient permissions",
        status.HTTP_403_FORBIDDEN,
        KIND_AUTHORIZATION,
    )
    MATERIAL_NOT_FOUND = ErrorDefinition(
        "MATERIAL_NOT_FOUND",
        "Material not found",
        status.HTTP_404_NOT_FOUND,
        KIND_NOT_FOUND,
    )
    TRANSFER_NOT_FOUND = ErrorDefinition(
        "TRANSFER_NOT_FOUND",
        "Transfer request not found",
        status.HTTP_404_NOT_FOUND,
        KIND_NOT_FOUND,
    )
    NOTIFICATION_NOT_FOUND = ErrorDefinition(
        "NOTIFICATION_NOT_FOUND",
        "Notification not found",
        status.HTTP_404_NOT_FOUND,
        KIND_NOT_FOUND,
    )
    INVALID_TRANSFER_STATUS = ErrorDefinition(
        "INVALID_TRANSFER_STATUS",
        "Invalid transfer status transition",
        status.HTTP_409_CONFLICT,
        KIND_CONFLICT,
        True,
    )
    INSUFFICIENT_QUANTITY = ErrorDefinition(
        "INSUFFICIENT_QUANTITY",
        "Insufficient quantity available",
        status.HTTP_409_CONFLICT,
        KIND_CONFLICT,
        True,
    )
    MATERIAL_UNAVAILABLE = ErrorDefinition(
        "MATERIAL_UNAVAILABLE",
        "Material is not available",
        status.HTTP_409_CONFLICT,
        KIND_CONFLICT,
        True,
    )
    VALIDATION_ERROR = ErrorDefinition(
        "VALIDATION_ERROR",
        "Validation error",
        status.HTTP_422_UNPROCESSABLE_ENTITY,
    )
    ATTACHMENT_NOT_FOUND = ErrorDefinition(
        "ATTACHMENT_NOT_FOUND",
        "Attachment not found",
        status.HTTP_422_UNPROCESSABLE_ENTITY,
    )
    IDEMPOTENCY_KEY_REUSED_WITH_DIFFERENT_PAYLOAD = ErrorDefinition(
        "IDEMPOTENCY_KEY_REUSED_WITH_DIFFERENT_PAYLOAD",
        "Idempotency key reused with different payload",
        status.HTTP_409_CONFLICT,
        KIND_CONFLICT,
    )
    IDEMPOTENCY_REQUEST_IN_PROGRESS = ErrorDefinition(
        "IDEMPOTENCY_REQUEST_IN_PROGRESS",
        "Idempotency request already in progress",
        status.HTTP_409_CONFLICT,
        KIND_CONFLICT,
        True,
    )
    IDEMPOTENCY_REPLAY = ErrorDefinition(
        "IDEMPOTENCY_REPLAY",
        "Idempotent replay",
        status.HTTP_200_OK,
    )
    LOCK_TIMEOUT = ErrorDefinition(
        "LOCK_TIMEOUT",
        "Lock wait timeout",
        status.HTTP_409_CONFLICT,
        KIND_INFRASTRUCTURE,
        True,
    )
    DB_UNAVAILABLE = ErrorDefinition(
        "DB_UNAVAILABLE",
        "Database unavailable",
        status.HTTP_503_SERVICE_UNAVAILABLE,
        KIND_INFRASTRUCTURE,
        True,
    )
    AUDIT_WRITE_FAILED = ErrorDefinition(
        "AUDIT_WRITE_FAILED",
        "Audit trail could not be recorded",
        status.HTTP_503_SERVICE_UNAVAILABLE,
        KIND_INFRASTRUCTURE,
        True,
    )
    INTERNAL_ERROR = ErrorDefinition(
        "INTERNAL_ERROR",
        "Internal server error",
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        KIND_INFRASTRUCTURE,
    )


class AppError(Exception):
    def __init__(self, error: ErrorDefinition, details: object | None = None):
        self.error = error
        self.details = details
        super().__init__(error.message)

    @property
    def retryable(self) -> bool:
        return self.error.retryable
