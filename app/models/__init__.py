# Import all models here so SQLAlchemy registers them with Base.metadata
from app.models.order import OrderRecord, OrderStatus, can_transition

__all__ = [
    "OrderRecord",
    "OrderStatus",
    "can_transition",
]
