import pytest

from activity import (
    AssigneesChanged, AttachmentAdded, Commented, StatusChanged, TaskCreated, TimeLogged,
    entry_from_log, record_activity,
)
from models import ActivityLog


class RecordingSession:
    def __init__(self):
        self.added = []

    def add(self, obj):
        self.added.append(obj)


def test_record_activity_adds_typed_row():
    session = RecordingSession()
    log = record_activity(session, 5, 2, StatusChanged('Review', 'Done'))

    assert session.added == [log]
    assert log.type == 'status_changed'
    assert log.task_id == 5
    assert log.user_id == 2
    assert log.details == {'old_status': 'Review', 'new_status': 'Done', 'forced': False}
    assert log.description == 'Task status changed from Review to Done'


def test_forced_status_change_is_described():
    log = record_activity(RecordingSession(), 1, 1, StatusChanged('ToDo', 'Done', forced=True))
    assert log.description.endswith('(forced)')
    assert log.details['forced'] is True


def test_assignee_ids_are_stored_as_lists():
    log = record_activity(RecordingSession(), 1, 1, AssigneesChanged(added_ids=(3, 4), removed_ids=(2,)))

    assert log.type == 'assigned'
    assert log.details == {'added_ids': [3, 4], 'removed_ids': [2]}
    assert entry_from_log(log) == AssigneesChanged(added_ids=(3, 4), removed_ids=(2,))


@pytest.mark.parametrize('entry, kind', [
    (TaskCreated('Write docs'), 'created'),
    (Commented(12), 'commented'),
    (TimeLogged(1.5), 'time_logged'),
    (AttachmentAdded('brief.pdf'), 'attachment_added'),
])
def test_each_kind_maps_back_to_its_class(entry, kind):
    log = record_activity(RecordingSession(), 1, 1, entry)
    assert log.type == kind
    assert log.entry == entry


def test_time_logged_description():
    assert TimeLogged(1.5).describe() == '1.5 hours logged'
    assert TimeLogged(2.0).describe() == '2 hours logged'


def test_unknown_entries_are_rejected():
    with pytest.raises(TypeError):
        record_activity(RecordingSession(), 1, 1, {'type': 'status_changed'})

    with pytest.raises(ValueError):
        entry_from_log(ActivityLog(type='archived', description='?', details={}))
