"""Change data capture: records, channel fan-out and the capture bus."""

from .bus import ChangeCaptureBus
from .channels import ChangeChannels, DeadLetter
from .records import GLOBAL_TOPIC, ChangeRecord, entity_topic, operation_topic

__all__ = [
    "GLOBAL_TOPIC",
    "ChangeCaptureBus",
    "ChangeChannels",
    "ChangeRecord",
    "DeadLetter",
    "entity_topic",
    "operation_topic",
]
