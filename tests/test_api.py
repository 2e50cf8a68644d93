from datetime import timedelta

import pytest

from circulation.models import utcnow

pytestmark = pytest.mark.integration


def _iso(value):
    return value.isoformat()


def _create_book(client, isbn="9780321765723", total_copies=1, title="Clean Code"):
    response = client.post(
        "/api/books",
        json={"title": title, "author": "Robert C. Martin", "isbn": isbn, "total_copies": total_copies},
    )
    assert response.status_code == 201
    return response.json()["data"]


def _create_borrower(client, email="reader@example.com", name="Reader"):
    response = client.post("/api/borrowers", json={"name": name, "email": email})
    assert response.status_code == 201
    return response.json()["data"]


def _borrow(client, borrower_id, book_id, days=14):
    return client.post(
        "/api/borrowings",
        json={"borrower_id": borrower_id, "book_id": book_id, "due_date": _iso(utcnow() + timedelta(days=days))},
    )


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["db"] is True
    assert body["cache"] == "memory"


def test_list_books_envelope(client):
    _create_book(client)

    response = client.get("/api/books")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["count"] == 1
    assert body["data"][0]["available_copies"] == 1


def test_create_book_validation_error(client):
    response = client.post("/api/books", json={"title": "X", "author": "Y", "isbn": "not-an-isbn"})

    assert response.status_code == 400
    error = response.json()["error"]
    assert error["kind"] == "Invalid"
    assert any("isbn" in detail for detail in error["details"])


def test_duplicate_isbn_returns_409(client):
    _create_book(client)

    response = client.post("/api/books", json={"title": "Other", "author": "A", "isbn": "9780321765723"})

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "DUPLICATE_VALUE"


def test_get_missing_book_returns_404(client):
    response = client.get("/api/books/999")

    assert response.status_code == 404
    assert response.json() == {"success": False, "error": {"kind": "NotFound", "message": "Book not found"}}


def test_update_book_rejects_available_copies(client):
    book = _create_book(client, total_copies=2)

    response = client.put(f"/api/books/{book['id']}", json={"available_copies": 5})
    assert response.status_code == 400

    response = client.put(f"/api/books/{book['id']}", json={"total_copies": 4})
    assert response.status_code == 200
    assert response.json()["data"]["available_copies"] == 4


def test_borrow_and_return_flow(client):
    book = _create_book(client, total_copies=1)
    first = _create_borrower(client, "first@example.com")
    second = _create_borrower(client, "second@example.com")

    response = _borrow(client, first["id"], book["id"])
    assert response.status_code == 201
    borrowing = response.json()["data"]
    assert borrowing["status"] == "OPEN"
    assert borrowing["book_title"] == "Clean Code"
    assert client.get(f"/api/books/{book['id']}").json()["data"]["available_copies"] == 0

    response = _borrow(client, second["id"], book["id"])
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "OUT_OF_STOCK"

    response = client.put(f"/api/borrowings/{borrowing['id']}/return")
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "RETURNED"
    assert client.get(f"/api/books/{book['id']}").json()["data"]["available_copies"] == 1

    response = client.put(f"/api/borrowings/{borrowing['id']}/return")
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "ALREADY_RETURNED"


def test_return_with_explicit_date(client):
    book = _create_book(client)
    reader = _create_borrower(client)
    borrowing = _borrow(client, reader["id"], book["id"]).json()["data"]
    returned_at = utcnow() + timedelta(hours=1)

    response = client.put(f"/api/borrowings/{borrowing['id']}/return", json={"return_date": _iso(returned_at)})

    assert response.status_code == 200
    assert response.json()["data"]["return_date"].startswith(returned_at.strftime("%Y-%m-%dT%H:%M"))


def test_duplicate_loan_returns_409(client):
    book = _create_book(client, total_copies=3)
    reader = _create_borrower(client)
    assert _borrow(client, reader["id"], book["id"]).status_code == 201

    response = _borrow(client, reader["id"], book["id"])

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "DUPLICATE_ACTIVE_LOAN"


def test_borrow_unknown_entities_returns_404(client):
    book = _create_book(client)

    response = _borrow(client, 42, book["id"])

    assert response.status_code == 404
    assert response.json()["error"]["message"] == "Borrower not found"


def test_due_date_before_borrow_date_returns_400(client):
    book = _create_book(client)
    reader = _create_borrower(client)

    response = _borrow(client, reader["id"], book["id"], days=-1)

    assert response.status_code == 400
    assert response.json()["error"]["kind"] == "Invalid"


def test_status_filters(client):
    book = _create_book(client, total_copies=2)
    late = _create_borrower(client, "late@example.com")
    current = _create_borrower(client, "current@example.com")
    now = utcnow()
    client.post(
        "/api/borrowings",
        json={
            "borrower_id": late["id"],
            "book_id": book["id"],
            "borrow_date": _iso(now - timedelta(days=10)),
            "due_date": _iso(now - timedelta(days=4, hours=2)),
        },
    )
    _borrow(client, current["id"], book["id"])

    active = client.get("/api/borrowings", params={"status": "active"}).json()
    overdue = client.get("/api/borrowings", params={"status": "overdue"}).json()

    assert active["count"] == 2
    assert overdue["count"] == 1
    assert overdue["data"][0]["borrower_id"] == late["id"]
    assert overdue["data"][0]["days_overdue"] == 4
    assert client.get("/api/borrowings", params={"status": "lost"}).status_code == 400


def test_borrower_history_and_delete_conflict(client):
    book = _create_book(client)
    reader = _create_borrower(client)
    borrowing = _borrow(client, reader["id"], book["id"]).json()["data"]

    history = client.get(f"/api/borrowers/{reader['id']}/history").json()
    assert [row["id"] for row in history["data"]] == [borrowing["id"]]

    response = client.delete(f"/api/borrowers/{reader['id']}")
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "ACTIVE_BORROWINGS_EXIST"
    assert client.get(f"/api/borrowers/{reader['id']}").status_code == 200


def test_delete_open_borrowing_restores_copy(client):
    book = _create_book(client)
    reader = _create_borrower(client)
    borrowing = _borrow(client, reader["id"], book["id"]).json()["data"]

    response = client.delete(f"/api/borrowings/{borrowing['id']}")

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert client.get(f"/api/books/{book['id']}").json()["data"]["available_copies"] == 1
    assert client.get(f"/api/borrowings/{borrowing['id']}").status_code == 404


def test_invalid_borrower_email(client):
    response = client.post("/api/borrowers", json={"name": "Bad", "email": "not-an-email"})

    assert response.status_code == 400


def test_cache_endpoints(client):
    book = _create_book(client)
    client.get("/api/books")
    client.get(f"/api/books/{book['id']}")

    stats = client.get("/api/cache/stats").json()["data"]
    assert stats["memory_cache_size"] >= 2
    assert stats["redis_available"] is False

    response = client.delete("/api/cache/books", params={"id": book["id"]})
    assert response.status_code == 200
    assert response.json()["removed"] >= 2

    client.get("/api/books")
    response = client.delete("/api/cache")
    assert response.status_code == 200
    assert client.get("/api/cache/stats").json()["data"]["memory_cache_size"] == 0

    assert client.delete("/api/cache/unknown").status_code == 400
