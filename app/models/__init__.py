# Import all models here so SQLAlchemy registers them with Base.metadata
from app.models.order import Order
from app.models.product import Product
from app.models.shipment import Shipment

__all__ = [
    "Order",
    "Product",
    "Shipment",
]
