from circulation.services.activity import SYSTEM, ActionType, ActivityLog, Entity, Performer


def test_record_and_read_back(db_file, clock):
    log = ActivityLog(db_file, clock=clock)

    entry = log.record(ActionType.BOOK_ADDED, SYSTEM, Entity("book", "Dune", 1), 'Added "Dune"')

    assert entry.id is not None
    assert entry.to_dict() == {
        "id": entry.id,
        "actionType": "BOOK_ADDED",
        "performedBy": {"userName": "system", "userRole": "system"},
        "targetEntity": {"entityType": "book", "entityId": 1, "entityName": "Dune"},
        "description": 'Added "Dune"',
        "timestamp": "2024-03-01T09:00:00+00:00",
    }


def test_recent_is_newest_first_and_filterable(db_file, clock):
    log = ActivityLog(db_file, clock=clock)
    librarian = Performer("Libby", "librarian")
    log.record(ActionType.BOOK_ADDED, librarian, Entity("book", "Dune", 1), "added")
    clock.advance(minutes=5)
    log.record(ActionType.BOOK_BORROWED, SYSTEM, Entity("book", "Dune", 1), "borrowed")
    clock.advance(minutes=5)
    log.record(ActionType.BOOK_RETURNED, SYSTEM, Entity("book", "Dune", 1), "returned")

    assert [a.action_type for a in log.recent()] == ["BOOK_RETURNED", "BOOK_BORROWED", "BOOK_ADDED"]
    assert [a.action_type for a in log.recent(limit=1)] == ["BOOK_RETURNED"]

    filtered = log.recent(action_types=[ActionType.BOOK_ADDED, "BOOK_BORROWED"])
    assert [a.action_type for a in filtered] == ["BOOK_BORROWED", "BOOK_ADDED"]
    assert filtered[-1].performer_name == "Libby"


def test_storage_failure_is_swallowed(tmp_path):
    log = ActivityLog(str(tmp_path / "missing" / "db.sqlite"))
    assert log.record(ActionType.USER_ADDED, SYSTEM, Entity("user", "Ada"), "Registered Ada") is None


def test_action_types_cover_recorded_events():
    assert {a.value for a in ActionType} == {
        "BOOK_ADDED", "BOOK_UPDATED", "BOOK_REMOVED", "BOOK_BORROWED", "BOOK_RETURNED",
        "BOOK_RENEWED", "FINE_PAID", "USER_ADDED", "USER_UPDATED",
    }
