from aiokafka import AIOKafkaProducer
from fastapi import Header, HTTPException, Request, status

from shared.collaborators.notification import NotificationSender
from shared.collaborators.shipment import ShipmentGateway


def request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def caller_identity(x_user_id: str | None = Header(default=None)) -> str:
    """Authenticated customer id, set by the auth gateway in front of this service."""
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not authenticated")
    return x_user_id


def kafka_producer(request: Request) -> AIOKafkaProducer:
    return request.app.state.kafka_producer


def notification_sender(request: Request) -> NotificationSender:
    return request.app.state.notifications


def shipment_gateway(request: Request) -> ShipmentGateway:
    return request.app.state.shipments
