from fastapi import status


class CheckoutError(Exception):
    """Base for errors surfaced to the caller with a user-facing message."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class Unauthenticated(CheckoutError):
    status_code = status.HTTP_401_UNAUTHORIZED

    def __init__(self, message: str = "Unauthenticated."):
        super().__init__(message)


class Unauthorized(CheckoutError):
    status_code = status.HTTP_403_FORBIDDEN


class NotFound(CheckoutError):
    status_code = status.HTTP_404_NOT_FOUND


class ValidationFailure(CheckoutError):
    status_code = status.HTTP_400_BAD_REQUEST


class ConcurrentModification(CheckoutError):
    status_code = status.HTTP_409_CONFLICT


class OrderCreationFailed(CheckoutError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class ExternalProviderFailure(CheckoutError):
    status_code = status.HTTP_502_BAD_GATEWAY
