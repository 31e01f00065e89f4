from bazaarlink.models.user import User
from bazaarlink.models.delivery_agent_profile import DeliveryAgentProfile
from bazaarlink.models.order import Order, OrderStatus, OrderStatusEntry, PartySnapshot
from bazaarlink.models.notification import Notification
from bazaarlink.models.payment_event import PaymentEvent

__all__ = [
    "User",
    "DeliveryAgentProfile",
    "Order",
    "OrderStatus",
    "OrderStatusEntry",
    "PartySnapshot",
    "Notification",
    "PaymentEvent",
]
