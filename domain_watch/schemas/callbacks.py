from pydantic import BaseModel


class WebhookTestOut(BaseModel):
    success: bool
    status_code: int | None = None
    error: str | None = None
    message: str
