class ServiceError(Exception):
    """Base exception for service-level errors."""


class NotFoundError(ServiceError):
    pass


class ValidationError(ServiceError):
    pass


class SMSDeliveryError(ServiceError):
    """Base class for everything the SMS gateway can fail with."""


class ConfigurationError(SMSDeliveryError):
    """Gateway credentials are missing; no recipient can be attempted."""


class GatewayRejection(SMSDeliveryError):
    """The provider answered with an error status."""

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransportError(SMSDeliveryError):
    """No response was received from the provider."""


class BulkLimitExceeded(SMSDeliveryError):
    pass
