from .order import Order, OrderStatus, ALLOWED_TRANSITIONS, PURCHASED_STATUSES

__all__ = ["Order", "OrderStatus", "ALLOWED_TRANSITIONS", "PURCHASED_STATUSES"]
