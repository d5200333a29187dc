from clearance.repositories.applications import ApplicationsRepository
from clearance.repositories.counters import CountersRepository
from clearance.repositories.notifications import NotificationsRepository
from clearance.repositories.profiles import ProfilesRepository
from clearance.repositories.review_queue import ReviewQueueRepository

__all__ = [
    "ApplicationsRepository",
    "CountersRepository",
    "NotificationsRepository",
    "ProfilesRepository",
    "ReviewQueueRepository",
]
