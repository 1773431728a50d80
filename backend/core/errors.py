# backend/core/errors.py
"""Billing error taxonomy.

Validation and business-rule errors carry a message that is safe to show the
caller. Gateway and database errors keep the underlying cause for the logs and
expose only a generic message.
"""

from typing import Any, Dict, Optional


class BillingError(Exception):
    status_code = 500
    code = "billing_error"
    public_message = "Something went wrong while processing your billing request"

    def __init__(self, message: str, *, metadata: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.metadata = metadata or {}

    @property
    def user_message(self) -> str:
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.user_message, "error": self.code}


class ValidationError(BillingError):
    status_code = 400
    code = "validation_error"

    def __init__(self, message: str, *, field: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None):
        super().__init__(message, metadata=metadata)
        self.field = field

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.field:
            data["field"] = self.field
        return data


class NotFoundError(BillingError):
    status_code = 404
    code = "not_found"


class BusinessRuleError(BillingError):
    status_code = 400
    code = "business_rule"


class ExternalGatewayError(BillingError):
    code = "gateway_error"
    public_message = "The payment provider could not process the request. Please try again later."

    def __init__(
            self,
            message: str,
            *,
            retryable: bool = False,
            ambiguous: bool = False,
            metadata: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, metadata=metadata)
        self.retryable = retryable
        # Transport failures (timeouts, dropped connections): the gateway may or may not have acted.
        self.ambiguous = ambiguous

    @property
    def status_code(self) -> int:  # type: ignore[override]
        return 502 if self.retryable else 500

    @property
    def user_message(self) -> str:
        return self.public_message


class DatabaseError(BillingError):
    status_code = 500
    code = "database_error"

    @property
    def user_message(self) -> str:
        return self.public_message
