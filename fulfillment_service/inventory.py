import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import case, update
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_service.models import Product
from shared.events import OrderItemSnapshot

logger = logging.getLogger(__name__)


@dataclass
class InventoryAdjustment:
    adjusted: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)


async def decrement_stock(
    db: AsyncSession,
    items: list[OrderItemSnapshot],
    *,
    now: datetime,
    order_id: str | None = None,
) -> InventoryAdjustment:
    """
    Decrement stock for each line item, in order, inside the caller's transaction.

    Each decrement is a single conditional UPDATE evaluated by the database, so
    concurrent pipelines never lose an update. Stock is floored at zero.
    Unknown products are logged and skipped.
    """
    adjustment = InventoryAdjustment()
    for item in items:
        result = await db.execute(
            update(Product)
            .where(Product.id == item.product_id)
            .values(
                stock=case(
                    (Product.stock > item.quantity, Product.stock - item.quantity),
                    else_=0,
                ),
                last_updated=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.warning(
                "Product not found, skipping stock adjustment",
                extra={"order_id": order_id, "product_id": item.product_id},
            )
            adjustment.missing.append(item.product_id)
            continue
        adjustment.adjusted.append(item.product_id)

    logger.info(
        "Inventory adjusted",
        extra={
            "order_id": order_id,
            "adjusted": len(adjustment.adjusted),
            "missing": len(adjustment.missing),
        },
    )
    return adjustment
