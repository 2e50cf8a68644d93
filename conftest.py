from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from circulation.api import create_app
from circulation.borrowing import BorrowingService
from circulation.catalog import BookService, BorrowerService
from circulation.database import Database
from circulation.ledger import InventoryLedger
from circulation.models import utcnow
from circulation.services.cache_manager import CacheManager, ResponseCache


@pytest.fixture
def database(tmp_path, request):
    # Her test için benzersiz bir veritabanı dosyası oluştur
    db_file = tmp_path / f"test_{request.node.name}.db"
    db = Database(f"sqlite:///{db_file}", echo=False)
    db.create_tables()
    yield db
    db.dispose()


@pytest.fixture
def cache():
    return ResponseCache(CacheManager())


@pytest.fixture
def ledger():
    return InventoryLedger()


@pytest.fixture
def books(database, cache, ledger):
    return BookService(database, cache, ledger)


@pytest.fixture
def borrowers(database, cache):
    return BorrowerService(database, cache)


@pytest.fixture
def borrowings(database, cache, ledger):
    return BorrowingService(database, cache, ledger)


@pytest.fixture
def make_book(books):
    counter = {"n": 0}

    def _make(total_copies=1, title=None, author="Test Author"):
        counter["n"] += 1
        n = counter["n"]
        return books.create_book(
            title=title or f"Book {n}",
            author=author,
            isbn=f"978000000{n:04d}",
            total_copies=total_copies,
        )

    return _make


@pytest.fixture
def make_borrower(borrowers):
    counter = {"n": 0}

    def _make(name=None):
        counter["n"] += 1
        n = counter["n"]
        return borrowers.create_borrower(name=name or f"Reader {n}", email=f"reader{n}@example.com")

    return _make


@pytest.fixture
def due_in():
    def _due(days=14):
        return utcnow() + timedelta(days=days)

    return _due


@pytest.fixture
def client(database, cache):
    app = create_app(database=database, cache=cache)
    with TestClient(app) as test_client:
        yield test_client
