class EscrowError(Exception):
    """Base class for failures scoped to one booking/payment pair."""


class ValidationError(EscrowError):
    pass


class NotFoundError(ValidationError):
    pass


class InvalidStateError(EscrowError):
    pass


class GatewayError(EscrowError):
    def __init__(self, message: str, booking_id: str | None = None):
        super().__init__(message)
        self.booking_id = booking_id


class BookingCreationError(EscrowError):
    pass


class PaymentInitializationError(EscrowError):
    """
    Booking was stored but its payment could not be initialized.
    Retry the payment leg alone with `booking_id`.
    """

    def __init__(self, message: str, booking_id: str):
        super().__init__(message)
        self.booking_id = booking_id
