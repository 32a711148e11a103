from app.models.driver import Driver
from app.models.pricing_config import PricingConfigVersion
from app.models.quote import Quote
from app.models.booking import Booking, BookingConfirmation
from app.models.modification import BookingModification
from app.models.cancellation import Cancellation
from app.models.payment import Payment, PaymentEvent
from app.models.notification import NotificationJob

__all__ = [
    "Driver", "PricingConfigVersion", "Quote", "Booking", "BookingConfirmation",
    "BookingModification", "Cancellation", "Payment", "PaymentEvent", "NotificationJob",
]
