"""Business logic services."""

from streetmed.services.admission_service import AdmissionService
from streetmed.services.assignment_service import AssignmentService
from streetmed.services.lottery_service import LotteryService
from streetmed.services.order_service import OrderService
from streetmed.services.pending_queue_service import PendingQueueService
from streetmed.services.redis_service import RedisService
from streetmed.services.round_service import RoundService

__all__ = [
    "AdmissionService",
    "AssignmentService",
    "LotteryService",
    "OrderService",
    "PendingQueueService",
    "RedisService",
    "RoundService",
]
