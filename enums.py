import enum


class UserRole(str, enum.Enum):
    ADMIN = 'Admin'
    MANAGER = 'Manager'
    MEMBER = 'Member'


class TaskStatus(str, enum.Enum):
    TODO = 'ToDo'
    IN_PROGRESS = 'InProgress'
    REVIEW = 'Review'
    DONE = 'Done'


class TaskPriority(str, enum.Enum):
    LOW = 'Low'
    MEDIUM = 'Medium'
    HIGH = 'High'
    CRITICAL = 'Critical'


class ProjectStatus(str, enum.Enum):
    PLANNED = 'planned'
    ACTIVE = 'active'
    COMPLETED = 'completed'
    ARCHIVED = 'archived'


class AuthMethod(str, enum.Enum):
    CREDENTIALS = 'credentials'
    OAUTH = 'oauth'


def values(enum_cls):
    """給 marshmallow validate.OneOf 用"""
    return [member.value for member in enum_cls]
