import logging

from app.schemas.contact import ContactMessage, ContactResponse
from shared.collaborators.notification import NotificationSender, TemplateKind

logger = logging.getLogger(__name__)


class MissingFieldsError(ValueError):
    """A contact form was submitted with an empty required field."""


async def send_contact_message(
    message: ContactMessage,
    notifications: NotificationSender,
    support_email: str,
) -> ContactResponse:
    fields = (message.name, message.email, message.subject, message.message)
    if not all(value and value.strip() for value in fields):
        raise MissingFieldsError("Missing required fields")

    logger.info(
        "Received contact message",
        extra={"contact_name": message.name, "contact_email": message.email},
    )
    await notifications.send(
        support_email,
        TemplateKind.CONTACT_MESSAGE,
        message.model_dump(),
    )
    return ContactResponse(success=True, message="Message sent successfully")
