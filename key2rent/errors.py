class Key2RentError(Exception):
    status_code = 500

    def __init__(self, message: str, code: str = None):
        super().__init__(message)
        self.message = message
        self.code = code


class ConfigurationError(Key2RentError):
    """Gateway credentials or settings are missing."""


class ValidationError(Key2RentError):
    status_code = 400


class RateLimitError(Key2RentError):
    status_code = 429


class GatewayError(Key2RentError):
    """The payment gateway rejected the request or could not be reached."""


class NotFoundError(Key2RentError):
    status_code = 404


class MetadataError(GatewayError):
    """A callback metadata item the caller needs is absent."""
