import pytest

from circulation.errors import ConflictError, InvalidError, NotFoundError


def test_create_and_get_book(books):
    created = books.create_book(title=" Ulysses ", author="James Joyce", isbn="9780199535675", total_copies=3)

    assert created["title"] == "Ulysses"
    assert created["available_copies"] == created["total_copies"] == 3
    assert books.get_book(created["id"])["isbn"] == "9780199535675"


def test_duplicate_isbn_is_a_conflict(books):
    books.create_book(title="A", author="B", isbn="1234567890")

    with pytest.raises(ConflictError) as excinfo:
        books.create_book(title="C", author="D", isbn="1234567890")

    assert excinfo.value.code == ConflictError.DUPLICATE_VALUE
    assert len(books.list_books()) == 1


def test_get_missing_book(books):
    with pytest.raises(NotFoundError):
        books.get_book(404)


def test_search_and_availability_filter(books, borrowings, make_borrower, due_in):
    dune = books.create_book(title="Dune", author="Frank Herbert", isbn="9780441013593", total_copies=1)
    books.create_book(title="Emma", author="Jane Austen", isbn="9780141439587", total_copies=2)
    borrowings.create_borrowing(make_borrower()["id"], dune["id"], due_date=due_in())

    assert [b["title"] for b in books.list_books(search="herbert")] == ["Dune"]
    assert [b["title"] for b in books.list_books(search="9780141")] == ["Emma"]
    assert [b["title"] for b in books.list_books(available=True)] == ["Emma"]
    assert [b["title"] for b in books.list_books()] == ["Dune", "Emma"]
    assert [b["title"] for b in books.list_books(limit=1, offset=1)] == ["Emma"]


def test_update_book_fields_and_cache(books):
    book = books.create_book(title="Old", author="Author", isbn="1112223334")
    assert books.get_book(book["id"])["title"] == "Old"

    updated = books.update_book(book["id"], title="New")

    assert updated["title"] == "New"
    assert updated["author"] == "Author"
    assert books.get_book(book["id"])["title"] == "New"


def test_update_total_copies_goes_through_ledger(books, borrowings, make_borrower, due_in):
    book = books.create_book(title="T", author="A", isbn="1112223334", total_copies=3)
    borrowings.create_borrowing(make_borrower()["id"], book["id"], due_date=due_in())

    updated = books.update_book(book["id"], total_copies=5)

    assert (updated["total_copies"], updated["available_copies"]) == (5, 4)


def test_update_rejects_direct_available_copies(books):
    book = books.create_book(title="T", author="A", isbn="1112223334", total_copies=3)

    with pytest.raises(InvalidError):
        books.update_book(book["id"], available_copies=10)

    assert books.get_book(book["id"])["available_copies"] == 3


def test_update_without_fields_is_invalid(books):
    book = books.create_book(title="T", author="A", isbn="1112223334")

    with pytest.raises(InvalidError):
        books.update_book(book["id"])


def test_update_isbn_conflict(books):
    books.create_book(title="T", author="A", isbn="1112223334")
    other = books.create_book(title="U", author="B", isbn="5556667778")

    with pytest.raises(ConflictError):
        books.update_book(other["id"], isbn="1112223334")


def test_delete_book_blocked_by_open_borrowing(books, borrowings, make_borrower, due_in):
    book = books.create_book(title="T", author="A", isbn="1112223334")
    record = borrowings.create_borrowing(make_borrower()["id"], book["id"], due_date=due_in())

    with pytest.raises(ConflictError) as excinfo:
        books.delete_book(book["id"])
    assert excinfo.value.code == ConflictError.ACTIVE_BORROWINGS_EXIST

    borrowings.return_borrowing(record["id"])
    books.delete_book(book["id"])
    with pytest.raises(NotFoundError):
        books.get_book(book["id"])
    assert borrowings.list_all() == []


def test_create_borrower_normalises_email(borrowers):
    created = borrowers.create_borrower(name="Grace", email=" Grace@Example.com ", phone="555-0100")

    assert created["email"] == "grace@example.com"
    assert borrowers.get_borrower(created["id"])["phone"] == "555-0100"


def test_duplicate_email_is_a_conflict(borrowers):
    borrowers.create_borrower(name="A", email="a@example.com")

    with pytest.raises(ConflictError):
        borrowers.create_borrower(name="B", email="a@example.com")


def test_search_borrowers(borrowers):
    borrowers.create_borrower(name="Alan Turing", email="alan@example.com")
    borrowers.create_borrower(name="Grace Hopper", email="grace@navy.mil")

    assert [b["name"] for b in borrowers.list_borrowers(search="navy")] == ["Grace Hopper"]
    assert len(borrowers.list_borrowers()) == 2


def test_update_borrower_refreshes_borrowing_lists(borrowers, borrowings, make_book, due_in):
    reader = borrowers.create_borrower(name="Old Name", email="old@example.com")
    borrowings.create_borrowing(reader["id"], make_book()["id"], due_date=due_in())
    assert borrowings.list_all()[0]["borrower_name"] == "Old Name"

    borrowers.update_borrower(reader["id"], name="New Name")

    assert borrowings.list_all()[0]["borrower_name"] == "New Name"
    assert borrowers.get_borrower(reader["id"])["name"] == "New Name"


def test_scenario_e_borrower_with_open_loan_cannot_be_deleted(borrowers, borrowings, make_book, due_in):
    reader = borrowers.create_borrower(name="Keep Me", email="keep@example.com")
    borrowings.create_borrowing(reader["id"], make_book()["id"], due_date=due_in())

    with pytest.raises(ConflictError) as excinfo:
        borrowers.delete_borrower(reader["id"])

    assert excinfo.value.code == ConflictError.ACTIVE_BORROWINGS_EXIST
    stored = borrowers.get_borrower(reader["id"])
    assert (stored["name"], stored["email"]) == ("Keep Me", "keep@example.com")


def test_delete_borrower_without_open_loans(borrowers):
    reader = borrowers.create_borrower(name="Gone", email="gone@example.com")

    borrowers.delete_borrower(reader["id"])

    with pytest.raises(NotFoundError):
        borrowers.get_borrower(reader["id"])
