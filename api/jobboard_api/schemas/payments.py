from typing import Literal

from pydantic import BaseModel

WebhookDisposition = Literal["applied", "unchanged", "ignored", "dropped"]


class WebhookAck(BaseModel):
    status: WebhookDisposition
    posting_id: str | None = None
