# schoolpickup/models/__init__.py - Import all models so SQLAlchemy can discover them

from schoolpickup.models.base import Base

from schoolpickup.models.parent import Parent, ParentRole
from schoolpickup.models.class_model import Class
from schoolpickup.models.student import Student, StudentParent
from schoolpickup.models.authorization import PickupAuthorization
from schoolpickup.models.pickup import PickupRequest, PickupHistory, PickupStatus
from schoolpickup.models.notification import Notification

__all__ = [
    "Base",
    "Parent",
    "ParentRole",
    "Class",
    "Student",
    "StudentParent",
    "PickupAuthorization",
    "PickupRequest",
    "PickupHistory",
    "PickupStatus",
    "Notification",
]
