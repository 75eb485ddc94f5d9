from .containers import ResourceContainerService, slot_capacity
from .hardware import detect_hardware
from .queues import ResourceQueueService
from .slots import SlotPool
