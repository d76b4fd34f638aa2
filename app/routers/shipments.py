import logging

from aiokafka import AIOKafkaProducer
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import kafka_producer, notification_sender, request_id, shipment_gateway
from app.schemas.order import TrackingResponse
from app.services import order_service
from shared.collaborators.base import CollaboratorRejectedError, CollaboratorUnavailableError
from shared.collaborators.notification import NotificationSender
from shared.collaborators.shipment import ShipmentGateway

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/{order_id}/refresh", response_model=TrackingResponse)
async def refresh_tracking(
    order_id: str,
    req_id: str = Depends(request_id),
    gateway: ShipmentGateway = Depends(shipment_gateway),
    notifications: NotificationSender = Depends(notification_sender),
    producer: AIOKafkaProducer = Depends(kafka_producer),
    db: AsyncSession = Depends(get_db),
) -> TrackingResponse:
    try:
        return await order_service.refresh_tracking(
            db, order_id, gateway, notifications, req_id, producer
        )
    except order_service.ShipmentNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Shipment not found")
    except order_service.OrderNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
    except CollaboratorUnavailableError as exc:
        logger.warning(
            "Carrier unavailable during tracking refresh",
            extra={"order_id": order_id, "request_id": req_id, "error": str(exc)},
        )
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Carrier unavailable")
    except CollaboratorRejectedError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
