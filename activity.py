"""
任務活動日誌

每種活動類型是一個 dataclass, details 欄位存的就是 dataclass 的內容,
讀回來時依 type 轉回對應的類別。
"""
from dataclasses import dataclass, asdict, field
from typing import ClassVar, Tuple
from models import ActivityLog


@dataclass(frozen=True)
class TaskCreated:
    kind: ClassVar[str] = 'created'
    title: str

    def describe(self):
        return f'Task "{self.title}" created'


@dataclass(frozen=True)
class StatusChanged:
    kind: ClassVar[str] = 'status_changed'
    old_status: str
    new_status: str
    # Admin/Manager 沒經過 Review 直接標成 Done
    forced: bool = False

    def describe(self):
        text = f'Task status changed from {self.old_status} to {self.new_status}'
        return f'{text} (forced)' if self.forced else text


@dataclass(frozen=True)
class AssigneesChanged:
    kind: ClassVar[str] = 'assigned'
    added_ids: Tuple[int, ...] = field(default_factory=tuple)
    removed_ids: Tuple[int, ...] = field(default_factory=tuple)

    def describe(self):
        return 'Task assignees updated'


@dataclass(frozen=True)
class Commented:
    kind: ClassVar[str] = 'commented'
    comment_id: int

    def describe(self):
        return 'Comment added'


@dataclass(frozen=True)
class TimeLogged:
    kind: ClassVar[str] = 'time_logged'
    hours: float

    def describe(self):
        return f'{self.hours:g} hours logged'


@dataclass(frozen=True)
class AttachmentAdded:
    kind: ClassVar[str] = 'attachment_added'
    filename: str

    def describe(self):
        return f'Attachment "{self.filename}" added'


ACTIVITY_KINDS = {
    cls.kind: cls
    for cls in (TaskCreated, StatusChanged, AssigneesChanged, Commented, TimeLogged, AttachmentAdded)
}


def record_activity(session, task_id, user_id, entry):
    """
    新增一筆活動日誌到 session (不 commit)

    跟觸發它的寫入在同一個 transaction
    """
    if type(entry) not in ACTIVITY_KINDS.values():
        raise TypeError(f'Unknown activity entry: {entry!r}')

    details = asdict(entry)
    for key, value in details.items():
        if isinstance(value, tuple):
            details[key] = list(value)

    log = ActivityLog(
        type=entry.kind,
        description=entry.describe(),
        task_id=task_id,
        user_id=user_id,
        details=details,
    )
    session.add(log)
    return log


def entry_from_log(log):
    cls = ACTIVITY_KINDS.get(log.type)
    if cls is None:
        raise ValueError(f'Unknown activity type: {log.type}')

    details = dict(log.details or {})
    for key, value in details.items():
        if isinstance(value, list):
            details[key] = tuple(value)
    return cls(**details)


def serialize_activity(log):
    return {
        'id': log.id,
        'type': log.type,
        'description': log.description,
        'details': log.details,
        'user': {
            'id': log.user.id,
            'name': log.user.name,
        } if log.user else None,
        'created_at': log.created_at.isoformat() if log.created_at else None,
    }
