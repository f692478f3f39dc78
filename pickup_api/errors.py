"""Booking error taxonomy.

Every business-rule failure raised by the services maps onto one of these
classes; the app-level error handler renders them as ``{'error', 'code'}``
JSON with the class status code.
"""


class BookingError(Exception):
    """Base exception for booking operations."""

    status_code = 400
    code = 'BOOKING_ERROR'

    def __init__(self, message, code=None, status_code=None, details=None):
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self):
        payload = {'error': self.message, 'code': self.code}
        if self.details:
            payload['details'] = self.details
        return payload


class ValidationError(BookingError):
    """Malformed or missing input; the message is always safe to show."""
    status_code = 400
    code = 'VALIDATION_ERROR'

    def __init__(self, message, field=None):
        super().__init__(message, details={'field': field} if field else None)


class NotFound(BookingError):
    status_code = 404
    code = 'NOT_FOUND'


class DuplicateBooking(BookingError):
    status_code = 409
    code = 'DUPLICATE_BOOKING'

    def __init__(self, message='You already have a booking for this game. Check your email for your confirmation.'):
        super().__init__(message)


class CapacityExceeded(BookingError):
    status_code = 409
    code = 'CAPACITY_EXCEEDED'

    def __init__(self, message='Not enough spots available'):
        super().__init__(message)


class AlreadyCancelled(BookingError):
    status_code = 409
    code = 'ALREADY_CANCELLED'

    def __init__(self, message='This booking has already been cancelled'):
        super().__init__(message)


class PastGame(BookingError):
    status_code = 400
    code = 'PAST_GAME'

    def __init__(self, message='Cannot cancel past games'):
        super().__init__(message)


class GameClosed(BookingError):
    status_code = 409
    code = 'GAME_CLOSED'

    def __init__(self, message='This game is no longer accepting bookings'):
        super().__init__(message)


class AlreadyWaitlisted(BookingError):
    status_code = 409
    code = 'ALREADY_WAITLISTED'

    def __init__(self, message='You are already on the waitlist for this game'):
        super().__init__(message)


class AlreadyReserved(BookingError):
    status_code = 409
    code = 'ALREADY_RESERVED'

    def __init__(self, message='You already have an RSVP for this game'):
        super().__init__(message)


class SignatureError(BookingError):
    status_code = 400
    code = 'SIGNATURE_ERROR'

    def __init__(self, message='Webhook signature verification failed'):
        super().__init__(message)


class PaymentGatewayError(BookingError):
    status_code = 502
    code = 'PAYMENT_GATEWAY_ERROR'


class InternalError(BookingError):
    status_code = 500
    code = 'INTERNAL_ERROR'

    def __init__(self, message='Something went wrong. Please try again.'):
        super().__init__(message)
