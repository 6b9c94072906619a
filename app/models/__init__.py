from app.models.conversation import Conversation
from app.models.dedup_record import DeduplicationRecord
from app.models.outbox_event import OutboxDelivery, OutboxEvent
from app.models.pipeline_alert import PipelineAlert
from app.models.queue_item import QueueItem
from app.models.sequence_state import SequenceState
from app.models.tenant import Tenant

__all__ = [
    "Tenant",
    "QueueItem",
    "DeduplicationRecord",
    "SequenceState",
    "Conversation",
    "OutboxEvent",
    "OutboxDelivery",
    "PipelineAlert",
]
