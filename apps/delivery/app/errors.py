from typing import Optional


class DeliveryError(Exception):
    """
    Base for every error the delivery service reports to its callers.
    `code` is a stable machine-readable token clients can branch on.
    """

    status_code = 400
    code = "delivery_error"

    def __init__(self, message: str, code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message}


class ValidationFailed(DeliveryError):
    code = "invalid_request"


class BusinessRuleViolation(DeliveryError):
    code = "business_rule"


class DistanceExceeded(BusinessRuleViolation):
    code = "distance_exceeded"

    def __init__(self, distance_km: float, max_distance_km: float):
        super().__init__(f"address is {distance_km:.1f} km away; delivery is limited to {max_distance_km:g} km")
        self.distance_km = distance_km
        self.max_distance_km = max_distance_km


class InvalidTransition(DeliveryError):
    status_code = 409
    code = "invalid_transition"

    def __init__(self, source: str, target: str):
        super().__init__(f"cannot change order status from {source} to {target}")
        self.source = source
        self.target = target


class NotFound(DeliveryError):
    status_code = 404
    code = "not_found"


class Forbidden(DeliveryError):
    status_code = 403
    code = "forbidden"


class Unauthorized(DeliveryError):
    status_code = 401
    code = "unauthorized"


class RateLimited(DeliveryError):
    status_code = 429
    code = "rate_limited"


class CourierNotConfigured(DeliveryError):
    status_code = 503
    code = "lalamove_not_configured"


class CourierUnavailable(DeliveryError):
    status_code = 502
    code = "provider_unavailable"
