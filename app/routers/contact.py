import logging

from fastapi import APIRouter, Depends, HTTPException, status

from app.config import settings
from app.dependencies import notification_sender, request_id
from app.schemas.contact import ContactMessage, ContactResponse
from app.services import contact_service
from shared.collaborators.base import CollaboratorError
from shared.collaborators.notification import NotificationSender

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("", response_model=ContactResponse)
async def send_contact_message(
    body: ContactMessage,
    req_id: str = Depends(request_id),
    notifications: NotificationSender = Depends(notification_sender),
) -> ContactResponse:
    try:
        return await contact_service.send_contact_message(body, notifications, settings.support_email)
    except contact_service.MissingFieldsError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except CollaboratorError as exc:
        logger.error(
            "Failed to deliver contact message",
            extra={"request_id": req_id, "error": str(exc)},
        )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Message could not be sent, please try again later",
        )
