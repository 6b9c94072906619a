from app.schemas.whatsapp import SCHEMA_VERSION, InboundMessage, TextMessage, WebhookEnvelope

__all__ = ["SCHEMA_VERSION", "InboundMessage", "TextMessage", "WebhookEnvelope"]
