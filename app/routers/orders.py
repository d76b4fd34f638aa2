import logging

from aiokafka import AIOKafkaProducer
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import caller_identity, kafka_producer, request_id
from app.schemas.order import OrderCreate, OrderResponse, PaymentUpdate
from app.services import order_service

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
async def place_order(
    body: OrderCreate,
    caller: str = Depends(caller_identity),
    req_id: str = Depends(request_id),
    producer: AIOKafkaProducer = Depends(kafka_producer),
    db: AsyncSession = Depends(get_db),
) -> OrderResponse:
    logger.info(
        "Received place_order request",
        extra={"request_id": req_id, "user_id": caller, "item_count": len(body.items)},
    )
    try:
        return await order_service.create_order(db, body, caller, req_id, producer)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: str,
    caller: str = Depends(caller_identity),
    req_id: str = Depends(request_id),
    db: AsyncSession = Depends(get_db),
) -> OrderResponse:
    logger.info(
        "Received get_order request",
        extra={"request_id": req_id, "order_id": order_id},
    )
    try:
        return await order_service.get_order_details(db, order_id, caller)
    except order_service.OrderNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")


@router.post("/{order_id}/payment", response_model=OrderResponse)
async def record_payment(
    order_id: str,
    body: PaymentUpdate,
    req_id: str = Depends(request_id),
    producer: AIOKafkaProducer = Depends(kafka_producer),
    db: AsyncSession = Depends(get_db),
) -> OrderResponse:
    """Payment callback: the checkout flow reports the gateway's verdict here."""
    logger.info(
        "Received payment callback",
        extra={"request_id": req_id, "order_id": order_id, "payment_status": body.status.value},
    )
    try:
        return await order_service.record_payment(db, order_id, body, req_id, producer)
    except order_service.OrderNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
    except order_service.PaymentTransitionError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
