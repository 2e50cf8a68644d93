import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from circulation.database import Database
from circulation.errors import ConflictError, InvalidError, NotFoundError
from circulation.ledger import InventoryLedger
from circulation.models import Book, Borrower, Borrowing, as_utc_naive
from circulation.services.cache_manager import (
    BOOK_NAMESPACE,
    BORROWER_NAMESPACE,
    ResponseCache,
    make_key,
)

logger = logging.getLogger(__name__)


def _open_loan_count(session: Session, column, entity_id: int) -> int:
    stmt = select(func.count(Borrowing.id)).where(column == entity_id, Borrowing.return_date.is_(None))
    return session.execute(stmt).scalar_one()


def _clean_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


class BookService:
    """Kitap kataloğu: arama, ayrıntı ve CRUD. Kopya sayıları defter üzerinden değişir."""

    UPDATABLE_FIELDS = ("title", "author", "isbn", "shelf_location", "total_copies")

    def __init__(self, database: Database, cache: ResponseCache, ledger: Optional[InventoryLedger] = None) -> None:
        self.database = database
        self.cache = cache
        self.ledger = ledger or InventoryLedger()

    def list_books(
        self,
        search: Optional[str] = None,
        available: Optional[bool] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """Başlık, yazar veya ISBN'ye göre ara; isteğe bağlı olarak yalnızca mevcut kitaplar."""
        search = _clean_text(search)
        key = make_key(BOOK_NAMESPACE, "list", search=search, available=available, limit=limit, offset=offset)

        def load() -> List[Dict[str, Any]]:
            stmt = select(Book)
            if search:
                pattern = f"%{search}%"
                stmt = stmt.where(or_(Book.title.ilike(pattern), Book.author.ilike(pattern), Book.isbn.ilike(pattern)))
            if available:
                stmt = stmt.where(Book.available_copies > 0)
            stmt = stmt.order_by(Book.title.asc(), Book.id).offset(offset)
            if limit is not None:
                stmt = stmt.limit(limit)
            with self.database.session() as session:
                return [book.to_dict() for book in session.execute(stmt).scalars().all()]

        return self.cache.read_through(key, "book", load)

    def get_book(self, book_id: int) -> Dict[str, Any]:
        key = make_key(BOOK_NAMESPACE, "detail", id=book_id)

        def load() -> Dict[str, Any]:
            with self.database.session() as session:
                book = session.get(Book, book_id)
                if book is None:
                    raise NotFoundError("Book not found")
                return book.to_dict()

        return self.cache.read_through(key, "book", load)

    def create_book(
        self,
        title: str,
        author: str,
        isbn: str,
        total_copies: int = 1,
        shelf_location: Optional[str] = None,
    ) -> Dict[str, Any]:
        if total_copies < 0:
            raise InvalidError("Total copies cannot be negative")
        with self.database.transaction() as session:
            book = Book(
                title=title.strip(),
                author=author.strip(),
                isbn=isbn.strip(),
                total_copies=total_copies,
                available_copies=total_copies,
                shelf_location=_clean_text(shelf_location),
            )
            session.add(book)
            self._flush_unique(session, "Book with this ISBN already exists")
            result = book.to_dict()

        logger.info("Book %s created (isbn=%s, copies=%s)", result["id"], result["isbn"], total_copies)
        self.cache.invalidate_book_cache()
        return result

    def update_book(self, book_id: int, **fields: Any) -> Dict[str, Any]:
        """Kısmi güncelleme. available_copies doğrudan ayarlanamaz; total_copies defterle yeniden hesaplanır."""
        if fields.get("available_copies") is not None:
            raise InvalidError("available_copies is managed by the inventory ledger; update total_copies instead")
        changes = {k: v for k, v in fields.items() if k in self.UPDATABLE_FIELDS and v is not None}
        if not changes:
            raise InvalidError("No valid fields to update")

        with self.database.transaction() as session:
            book = session.get(Book, book_id)
            if book is None:
                raise NotFoundError("Book not found")
            new_total = changes.pop("total_copies", None)
            for name, value in changes.items():
                setattr(book, name, value.strip() if isinstance(value, str) else value)
            self._flush_unique(session, "Book with this ISBN already exists")
            if new_total is not None:
                book = self.ledger.adjust_total(session, book_id, new_total)
            result = book.to_dict()

        logger.info("Book %s updated (%s)", book_id, ", ".join(sorted(fields)))
        self.cache.invalidate_book_cache()
        return result

    def delete_book(self, book_id: int) -> Dict[str, Any]:
        """Açık ödüncü olmayan bir kitabı, kapanmış ödünç geçmişiyle birlikte sil."""
        with self.database.transaction() as session:
            book = session.get(Book, book_id)
            if book is None:
                raise NotFoundError("Book not found")
            if _open_loan_count(session, Borrowing.book_id, book_id) > 0:
                raise ConflictError("Cannot delete book with active borrowings", ConflictError.ACTIVE_BORROWINGS_EXIST)
            session.execute(delete(Borrowing).where(Borrowing.book_id == book_id))
            session.delete(book)

        logger.info("Book %s deleted", book_id)
        self.cache.invalidate_book_cache()
        self.cache.invalidate_borrowing_cache()
        self.cache.invalidate_borrower_cache()
        return {"id": book_id, "message": "Book deleted successfully"}

    @staticmethod
    def _flush_unique(session: Session, message: str) -> None:
        try:
            session.flush()
        except IntegrityError as exc:
            raise ConflictError(message, ConflictError.DUPLICATE_VALUE) from exc


class BorrowerService:
    """Okuyucu kaydı: arama, ayrıntı ve CRUD."""

    UPDATABLE_FIELDS = ("name", "email", "phone", "registered_at")

    def __init__(self, database: Database, cache: ResponseCache) -> None:
        self.database = database
        self.cache = cache

    def list_borrowers(
        self,
        search: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        search = _clean_text(search)
        key = make_key(BORROWER_NAMESPACE, "list", search=search, limit=limit, offset=offset)

        def load() -> List[Dict[str, Any]]:
            stmt = select(Borrower)
            if search:
                pattern = f"%{search}%"
                stmt = stmt.where(or_(Borrower.name.ilike(pattern), Borrower.email.ilike(pattern)))
            stmt = stmt.order_by(Borrower.name.asc(), Borrower.id).offset(offset)
            if limit is not None:
                stmt = stmt.limit(limit)
            with self.database.session() as session:
                return [b.to_dict() for b in session.execute(stmt).scalars().all()]

        return self.cache.read_through(key, "borrower", load)

    def get_borrower(self, borrower_id: int) -> Dict[str, Any]:
        key = make_key(BORROWER_NAMESPACE, "detail", id=borrower_id)

        def load() -> Dict[str, Any]:
            with self.database.session() as session:
                borrower = session.get(Borrower, borrower_id)
                if borrower is None:
                    raise NotFoundError("Borrower not found")
                return borrower.to_dict()

        return self.cache.read_through(key, "borrower", load)

    def create_borrower(self, name: str, email: str, phone: Optional[str] = None, registered_at=None) -> Dict[str, Any]:
        with self.database.transaction() as session:
            borrower = Borrower(name=name.strip(), email=email.strip().lower(), phone=_clean_text(phone))
            if registered_at is not None:
                borrower.registered_at = as_utc_naive(registered_at)
            session.add(borrower)
            BookService._flush_unique(session, "Borrower with this email already exists")
            result = borrower.to_dict()

        logger.info("Borrower %s created", result["id"])
        self.cache.invalidate_borrower_cache()
        return result

    def update_borrower(self, borrower_id: int, **fields: Any) -> Dict[str, Any]:
        changes = {k: v for k, v in fields.items() if k in self.UPDATABLE_FIELDS and v is not None}
        if not changes:
            raise InvalidError("No valid fields to update")

        with self.database.transaction() as session:
            borrower = session.get(Borrower, borrower_id)
            if borrower is None:
                raise NotFoundError("Borrower not found")
            for name, value in changes.items():
                if name == "email":
                    value = value.strip().lower()
                elif name == "registered_at":
                    value = as_utc_naive(value)
                elif isinstance(value, str):
                    value = value.strip()
                setattr(borrower, name, value)
            BookService._flush_unique(session, "Borrower with this email already exists")
            result = borrower.to_dict()

        logger.info("Borrower %s updated", borrower_id)
        self.cache.invalidate_borrower_cache()
        # Ödünç listeleri okuyucu adını ve e-postasını gömer
        self.cache.invalidate_borrowing_cache()
        return result

    def delete_borrower(self, borrower_id: int) -> Dict[str, Any]:
        """Açık ödüncü olan okuyucu silinemez; satır değişmeden kalır."""
        with self.database.transaction() as session:
            borrower = session.get(Borrower, borrower_id)
            if borrower is None:
                raise NotFoundError("Borrower not found")
            if _open_loan_count(session, Borrowing.borrower_id, borrower_id) > 0:
                raise ConflictError(
                    "Cannot delete borrower with active borrowings", ConflictError.ACTIVE_BORROWINGS_EXIST
                )
            session.execute(delete(Borrowing).where(Borrowing.borrower_id == borrower_id))
            session.delete(borrower)

        logger.info("Borrower %s deleted", borrower_id)
        self.cache.invalidate_borrower_cache()
        self.cache.invalidate_borrowing_cache()
        return {"id": borrower_id, "message": "Borrower deleted successfully"}
