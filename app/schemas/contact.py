from pydantic import BaseModel


class ContactMessage(BaseModel):
    # Presence is checked by the service so the caller gets one readable error
    name: str | None = None
    email: str | None = None
    subject: str | None = None
    message: str | None = None


class ContactResponse(BaseModel):
    success: bool
    message: str
