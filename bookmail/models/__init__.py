from bookmail.models.assignment import AssignmentDeliveryTime, AssignmentStatus, BookAssignment
from bookmail.models.base import Base
from bookmail.models.book import Book, Lesson
from bookmail.models.delivery_log import DeliveryLog, DeliveryReason, DeliveryStatus
from bookmail.models.scheduler_run import RunStatus, SchedulerRun, TriggerSource
from bookmail.models.user import User

__all__ = [
    "Base",
    "User",
    "Book",
    "Lesson",
    "BookAssignment",
    "AssignmentStatus",
    "AssignmentDeliveryTime",
    "DeliveryLog",
    "DeliveryStatus",
    "DeliveryReason",
    "SchedulerRun",
    "RunStatus",
    "TriggerSource",
]
