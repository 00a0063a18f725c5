import sqlite3

import pytest
from fastapi.testclient import TestClient

from circulation.api import create_app
from circulation.config import settings
from circulation.inventory import Inventory
from circulation.services.activity import ActivityLog
from circulation.services.cache_manager import StatisticsCache
from circulation.services.notifications import NotificationService, NotificationStore

AUTH = {"X-API-Key": settings.api_key}


@pytest.fixture
def client(db_file, clock):
    notifier = NotificationService(NotificationStore(db_file), webhook_url=None, clock=clock)
    app = create_app(db_file, clock=clock, cache=StatisticsCache(ttl_seconds=300), notifier=notifier)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def book(client):
    response = client.post("/books", headers=AUTH, json={
        "title": "Dune", "author": "Frank Herbert", "isbn": "978-0-441-17271-9",
        "category": "Fiction", "totalCopies": 1,
    })
    assert response.status_code == 201
    return response.json()["book"]


@pytest.fixture
def member(client):
    response = client.post("/users", json={"name": "Ada Reader", "email": "ada@example.com"})
    assert response.status_code == 201
    return response.json()["user"]


def _borrow(client, book, member, **extra):
    return client.post("/transactions", json={"bookId": book["id"], "userId": member["id"], **extra})


def test_health(client):
    body = client.get("/health").json()
    assert body["status"] == "healthy"
    assert body["database"] is True
    assert body["timestamp"] == "2024-03-01T09:00:00+00:00"
    assert "hit_ratio" in body["cache"]


def test_borrow_and_late_return(client, clock, book, member):
    response = _borrow(client, book, member)
    assert response.status_code == 201
    tx = response.json()["transaction"]
    assert tx["status"] == "active"
    assert tx["dueDate"] == "2024-03-15"
    assert tx["bookTitle"] == "Dune"

    stored = client.get(f"/books/{book['id']}").json()["book"]
    assert stored["availableCopies"] == 0
    assert stored["status"] == "borrowed"

    clock.advance(days=17)
    assert client.get(f"/transactions/{tx['id']}").json()["transaction"]["status"] == "overdue"

    response = client.patch(f"/transactions/{tx['id']}", json={"action": "return"})
    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "Book returned successfully. Late fee: $1.50"
    assert body["transaction"]["status"] == "returned"
    assert body["transaction"]["fineAmount"] == 1.5
    assert body["transaction"]["returnDate"] == "2024-03-18"

    stored = client.get(f"/books/{book['id']}").json()["book"]
    assert stored["availableCopies"] == 1
    assert stored["status"] == "available"


def test_second_return_is_rejected(client, book, member):
    tx = _borrow(client, book, member).json()["transaction"]
    client.patch(f"/transactions/{tx['id']}", json={"action": "return"})

    response = client.patch(f"/transactions/{tx['id']}", json={"action": "return"})
    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_ACTION"


def test_renew_and_pay_fine(client, clock, book, member):
    tx = _borrow(client, book, member).json()["transaction"]

    renewed = client.patch(f"/transactions/{tx['id']}", json={"action": "renew", "renewDays": 7}).json()
    assert renewed["transaction"]["dueDate"] == "2024-03-22"
    assert renewed["transaction"]["type"] == "renew"

    bad = client.patch(f"/transactions/{tx['id']}", json={"action": "renew", "renewDays": 400})
    assert bad.status_code == 400
    assert bad.json()["details"]["field"] == "renewDays"

    clock.advance(days=23)
    client.patch(f"/transactions/{tx['id']}", json={"action": "return"})
    paid = client.patch(f"/transactions/{tx['id']}", json={"action": "payFine"}).json()
    assert paid["message"] == "Fine marked as paid"
    assert paid["transaction"]["finePaid"] is True
    assert paid["transaction"]["fineAmount"] == 1.0


def test_patch_requires_known_action(client, book, member):
    tx = _borrow(client, book, member).json()["transaction"]

    missing = client.patch(f"/transactions/{tx['id']}", json={})
    assert missing.status_code == 400
    assert missing.json() == {
        "success": False,
        "error": "VALIDATION_ERROR",
        "details": {"field": "action", "message": "Action is required"},
    }

    unknown = client.patch(f"/transactions/{tx['id']}", json={"action": "lose"})
    assert unknown.status_code == 400
    assert unknown.json()["error"] == "INVALID_ACTION"

    assert client.patch("/transactions/999", json={"action": "return"}).status_code == 404


def test_borrow_errors(client, book, member):
    missing = client.post("/transactions", json={"bookId": book["id"]})
    assert missing.status_code == 400
    assert missing.json()["error"] == "VALIDATION_ERROR"

    no_user = client.post("/transactions", json={"bookId": book["id"], "userId": 999})
    assert no_user.status_code == 404

    no_book = client.post("/transactions", json={"bookId": 999, "userId": member["id"]})
    assert no_book.status_code == 404
    assert no_book.json()["details"] == "Book with ID 999 not found"

    assert _borrow(client, book, member).status_code == 201
    exhausted = _borrow(client, book, member)
    assert exhausted.status_code == 400
    assert exhausted.json()["error"] == "NO_COPIES_AVAILABLE"


def test_suspended_member_cannot_borrow(client, book, member):
    response = client.patch(f"/users/{member['id']}", json={"status": "suspended"})
    assert response.json()["user"]["status"] == "suspended"

    blocked = _borrow(client, book, member)
    assert blocked.status_code == 400
    assert blocked.json()["error"] == "POLICY_VIOLATION"


def test_list_transactions(client, clock, book, member):
    tx = _borrow(client, book, member).json()["transaction"]

    assert client.get("/transactions").status_code == 400
    bad_status = client.get("/transactions", params={"userId": member["id"], "status": "lost"})
    assert bad_status.status_code == 400
    assert bad_status.json()["details"]["field"] == "status"

    clock.advance(days=15)
    overdue = client.get("/transactions", params={"userId": member["id"], "status": "overdue"}).json()
    assert [t["id"] for t in overdue["transactions"]] == [tx["id"]]
    active = client.get("/transactions", params={"userId": member["id"], "status": "active"}).json()
    assert active["transactions"] == []


def test_reconcile_and_overdue_notifications(client, clock, book, member):
    _borrow(client, book, member)
    clock.advance(days=20)

    first = client.post("/transactions/reconcile").json()
    assert first["updated"] == 1
    assert first["transactions"][0]["status"] == "overdue"
    assert client.post("/transactions/reconcile").json()["updated"] == 0

    notes = client.get("/notifications", params={"userId": member["id"]}).json()
    assert [n["type"] for n in notes["notifications"]] == ["overdue_alert", "borrow_confirmation"]
    assert notes["notifications"][0]["fineAmount"] == 3.0
    assert notes["unreadCount"] == 2


def test_notification_read_flags(client, clock, book, member):
    tx = _borrow(client, book, member).json()["transaction"]
    clock.advance(days=16)
    client.patch(f"/transactions/{tx['id']}", json={"action": "return"})

    notes = client.get("/notifications", params={"userId": member["id"]}).json()
    assert notes["unreadCount"] == 3
    assert {n["type"] for n in notes["notifications"]} == {
        "borrow_confirmation", "return_confirmation", "fine_notice",
    }

    first_id = notes["notifications"][0]["id"]
    read = client.patch(f"/notifications/{first_id}/read").json()
    assert read["notification"]["isRead"] is True
    assert client.patch("/notifications/9999/read").status_code == 404

    assert client.patch("/notifications/read-all", params={"userId": member["id"]}).json()["updated"] == 2
    unread = client.get("/notifications", params={"userId": member["id"], "unreadOnly": True}).json()
    assert unread["notifications"] == []
    assert client.get("/notifications").status_code == 400


def test_statistics_endpoint_caches(client, book, member):
    _borrow(client, book, member)

    first = client.get("/statistics", params={"period": 30}).json()
    assert first["success"] is True
    assert first["cached"] is False
    assert first["data"]["overview"]["activeLoans"] == 1

    second = client.get("/statistics", params={"period": 30}).json()
    assert second["cached"] is True
    assert second["data"] == first["data"]


@pytest.mark.parametrize("period", ["0", "366", "abc"])
def test_statistics_rejects_bad_period(client, period):
    response = client.get("/statistics", params={"period": period})
    assert response.status_code == 400
    assert response.json()["details"]["field"] == "period"


def test_catalog_mutations_require_api_key(client, book):
    payload = {"title": "Emma", "author": "Jane Austen", "isbn": "9780141439587", "category": "Fiction"}

    assert client.post("/books", json=payload).status_code == 403
    wrong = client.post("/books", json=payload, headers={"X-API-Key": "nope"})
    assert wrong.status_code == 403
    assert wrong.json()["error"] == "FORBIDDEN"
    assert client.delete(f"/books/{book['id']}").status_code == 403


def test_catalog_crud(client, book):
    duplicate = client.post("/books", headers=AUTH, json={
        "title": "Dune again", "author": "Frank Herbert", "isbn": "9780441172719", "category": "Fiction",
    })
    assert duplicate.status_code == 400
    assert duplicate.json()["details"]["field"] == "isbn"

    updated = client.put(f"/books/{book['id']}", headers=AUTH, json={"totalCopies": 3, "location": "A-12"})
    assert updated.json()["book"]["availableCopies"] == 3
    assert updated.json()["book"]["location"] == "A-12"

    assert [b["title"] for b in client.get("/books", params={"q": "herbert"}).json()["books"]] == ["Dune"]
    assert client.get("/books", params={"category": "Science"}).json()["books"] == []

    assert client.delete(f"/books/{book['id']}", headers=AUTH).status_code == 200
    assert client.get(f"/books/{book['id']}").status_code == 404
    assert client.delete(f"/books/{book['id']}", headers=AUTH).status_code == 404


def test_request_body_validation_uses_error_envelope(client):
    response = client.post("/books", headers=AUTH, json={"author": "Nobody", "isbn": "1234567890",
                                                         "category": "Fiction"})
    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "VALIDATION_ERROR"
    assert body["details"]["field"] == "title"


def test_users(client, member):
    client.post("/users", json={"name": "Libby", "email": "libby@example.com", "role": "librarian"})

    students = client.get("/users", params={"role": "student"}).json()["users"]
    assert [u["name"] for u in students] == ["Ada Reader"]
    assert client.get(f"/users/{member['id']}").json()["user"]["email"] == "ada@example.com"
    assert client.get("/users/999").status_code == 404

    duplicate = client.post("/users", json={"name": "Ada Again", "email": "ADA@example.com"})
    assert duplicate.status_code == 400


def test_activity_feed(client, book, member):
    _borrow(client, book, member)

    feed = client.get("/activities").json()["activities"]
    assert [a["actionType"] for a in feed][:3] == ["BOOK_BORROWED", "USER_ADDED", "BOOK_ADDED"]
    assert feed[0]["performedBy"] == {"userName": "Ada Reader", "userRole": "student"}

    only_books = client.get("/activities", params={"actionType": "BOOK_ADDED"}).json()["activities"]
    assert [a["actionType"] for a in only_books] == ["BOOK_ADDED"]


def test_database_errors_become_500(client, monkeypatch):
    def broken(self, category=None):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(Inventory, "list_books", broken)

    response = client.get("/books")
    assert response.status_code == 500
    body = response.json()
    assert body["error"] == "INTERNAL_ERROR"
    assert "disk I/O" not in body["details"]


def test_renew_days_zero_uses_default_extension(client, book, member):
    tx = _borrow(client, book, member).json()["transaction"]

    renewed = client.patch(f"/transactions/{tx['id']}", json={"action": "renew", "renewDays": 0})
    assert renewed.status_code == 200
    assert renewed.json()["transaction"]["dueDate"] == "2024-03-29"


def test_borrow_survives_broken_webhook(db_file, clock, book, member):
    notifier = NotificationService(NotificationStore(db_file), webhook_url="http://[::1", clock=clock)
    app = create_app(db_file, clock=clock, cache=StatisticsCache(ttl_seconds=300), notifier=notifier)
    with TestClient(app) as c:
        response = _borrow(c, book, member)
        assert response.status_code == 201
        tx = response.json()["transaction"]

        assert c.get(f"/books/{book['id']}").json()["book"]["availableCopies"] == 0
        loans = c.get("/transactions", params={"userId": member["id"]}).json()["transactions"]
        assert [t["id"] for t in loans] == [tx["id"]]
        assert c.get("/notifications", params={"userId": member["id"]}).json()["notifications"]

        returned = c.patch(f"/transactions/{tx['id']}", json={"action": "return"})
        assert returned.status_code == 200


def test_borrow_survives_failing_follow_ups(client, monkeypatch, book, member):
    def boom(self, *args, **kwargs):
        raise RuntimeError("side effect failed")

    monkeypatch.setattr(NotificationStore, "save", boom)
    monkeypatch.setattr(ActivityLog, "record", boom)

    response = _borrow(client, book, member)
    assert response.status_code == 201
    tx = response.json()["transaction"]
    assert client.get(f"/books/{book['id']}").json()["book"]["availableCopies"] == 0

    assert client.patch(f"/transactions/{tx['id']}", json={"action": "renew"}).status_code == 200
    assert client.patch(f"/transactions/{tx['id']}", json={"action": "return"}).status_code == 200
    assert client.patch(f"/transactions/{tx['id']}", json={"action": "payFine"}).status_code == 200
    assert client.get(f"/books/{book['id']}").json()["book"]["availableCopies"] == 1
