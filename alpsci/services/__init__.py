"""Service layer — business logic orchestration."""


class ServiceError(Exception):
    """Base service exception."""


class NotFoundError(ServiceError):
    """Resource not found (-> HTTP 404)."""


class ValidationError(ServiceError):
    """Input validation or state error (-> HTTP 422)."""


class AuthenticationError(ServiceError):
    """Credential rejected (-> HTTP 401)."""


class TransportError(ServiceError):
    """Upstream provider or network failure (-> HTTP 502)."""
