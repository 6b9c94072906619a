"""WhatsApp Cloud API webhook envelope (v1).

Only the parts the pipeline reads are modelled; unknown keys are ignored,
unknown message types fail validation.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

SCHEMA_VERSION = "v1"

MediaType = Literal[
    "image",
    "audio",
    "video",
    "document",
    "sticker",
    "location",
    "contacts",
    "interactive",
    "button",
    "reaction",
    "order",
    "system",
    "unsupported",
]


class _Model(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class TextBody(_Model):
    body: str


class TextMessage(_Model):
    type: Literal["text"]
    id: str
    from_: str = Field(alias="from")
    timestamp: int
    text: TextBody


class MediaMessage(_Model):
    type: MediaType
    id: str
    from_: str = Field(alias="from")
    timestamp: int


InboundEvent = Annotated[Union[TextMessage, MediaMessage], Field(discriminator="type")]


class StatusUpdate(_Model):
    id: str
    status: Literal["sent", "delivered", "read", "failed", "deleted"]
    timestamp: int
    recipient_id: Optional[str] = None


class PhoneMetadata(_Model):
    display_phone_number: Optional[str] = None
    phone_number_id: Optional[str] = None


class ChangeValue(_Model):
    messaging_product: Literal["whatsapp"] = "whatsapp"
    metadata: PhoneMetadata = Field(default_factory=PhoneMetadata)
    messages: list[InboundEvent] = Field(default_factory=list)
    statuses: list[StatusUpdate] = Field(default_factory=list)


class Change(_Model):
    field: str = "messages"
    value: ChangeValue


class Entry(_Model):
    id: Optional[str] = None
    changes: list[Change] = Field(default_factory=list)


class WebhookEnvelope(_Model):
    object: Literal["whatsapp_business_account"]
    entry: list[Entry]


@dataclass(frozen=True)
class InboundMessage:
    """Normalized text message, lives only until it becomes a queue item."""

    message_id: str
    tenant_id: object
    sender: str
    recipient: Optional[str]
    text: str
    timestamp: datetime
