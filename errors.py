"""
Domain errors raised by the services and rendered by the API layer.
"""
from typing import Any, Dict, Optional


class StoreError(Exception):
    status_code = 500

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra: Dict[str, Any] = extra

    def to_dict(self) -> Dict[str, Any]:
        body = {"detail": self.message, "error": type(self).__name__}
        body.update(self.extra)
        return body


class ValidationError(StoreError):
    status_code = 400


class InsufficientStockError(StoreError):
    status_code = 400

    def __init__(self, message: str = "Insufficient stock", variant_id: Optional[str] = None, **extra: Any):
        if variant_id is not None:
            extra["variant_id"] = variant_id
        super().__init__(message, **extra)


class NotFoundError(StoreError):
    status_code = 404


class ConflictError(StoreError):
    status_code = 409


class AuthError(StoreError):
    status_code = 401


class GatewayError(StoreError):
    status_code = 502
