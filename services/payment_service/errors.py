"""Domain errors raised by the payment service. Routes map them to HTTP responses."""


class PaymentServiceError(Exception):
    """Base class; status_code is the HTTP status the API answers with."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInput(PaymentServiceError):
    status_code = 400


class SignatureMismatch(PaymentServiceError):
    status_code = 400


class PaymentNotFound(PaymentServiceError):
    status_code = 404


class RegistrationClosed(PaymentServiceError):
    status_code = 403


class ConfigurationError(PaymentServiceError):
    status_code = 500


class LedgerWriteError(PaymentServiceError):
    status_code = 500
