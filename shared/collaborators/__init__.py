from shared.collaborators.base import (
    CollaboratorError,
    CollaboratorRejectedError,
    CollaboratorUnavailableError,
)
from shared.collaborators.invoice import InvoiceGenerator
from shared.collaborators.notification import NotificationSender, TemplateKind
from shared.collaborators.shipment import ShipmentGateway, ShipmentHandle, TrackingInfo

__all__ = [
    "CollaboratorError",
    "CollaboratorRejectedError",
    "CollaboratorUnavailableError",
    "InvoiceGenerator",
    "NotificationSender",
    "ShipmentGateway",
    "ShipmentHandle",
    "TemplateKind",
    "TrackingInfo",
]
