"""Ödünç yaşam döngüsü: OPEN -> RETURNED, ya da kaydın silinmesi.

Her geçiş tek bir işlem içinde ödünç satırını ve envanter defterini birlikte
değiştirir; commit sonrası ilgili önbellek ad alanları eşzamanlı olarak
geçersiz kılınır.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from circulation.config import settings
from circulation.database import Database
from circulation.errors import ConflictError, InvalidError, NotFoundError
from circulation.ledger import InventoryLedger
from circulation.models import Book, Borrower, Borrowing, as_utc_naive, utcnow
from circulation.services.cache_manager import (
    BORROWER_NAMESPACE,
    BORROWING_NAMESPACE,
    ResponseCache,
    make_key,
)

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400
OPEN_LOAN_INDEX = "uq_borrowings_open_loan"


def _as_datetime(value: Any) -> datetime:
    # Redis katmanından gelen değerler metin olarak döner
    if isinstance(value, str):
        return datetime.fromisoformat(value)
    return value


def _is_open_loan_violation(exc: IntegrityError) -> bool:
    message = str(exc.orig)
    return OPEN_LOAN_INDEX in message or "borrowings.book_id, borrowings.borrower_id" in message


class BorrowingService:
    """Ödünç kayıtlarının tek yazarı; available_copies yalnızca defter üzerinden değişir."""

    def __init__(
        self,
        database: Database,
        cache: ResponseCache,
        ledger: Optional[InventoryLedger] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.database = database
        self.cache = cache
        self.ledger = ledger or InventoryLedger()
        self._clock = clock

    # ------------------------- Geçişler ------------------------- #
    def create_borrowing(
        self,
        borrower_id: int,
        book_id: int,
        due_date: Optional[datetime] = None,
        borrow_date: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Bir kitabı ödünç ver ve zenginleştirilmiş kaydı döndür.

        due_date verilmezse borrow_date + DEFAULT_LOAN_DAYS kullanılır.
        """
        borrow_date = as_utc_naive(borrow_date) or self._clock()
        due_date = as_utc_naive(due_date) or borrow_date + timedelta(days=settings.default_loan_days)

        with self.database.transaction() as session:
            borrower = session.get(Borrower, borrower_id)
            if borrower is None:
                raise NotFoundError("Borrower not found")
            if session.get(Book, book_id) is None:
                raise NotFoundError("Book not found")
            if due_date <= borrow_date:
                raise InvalidError("Due date must be after borrow date")

            # Önce koşullu azaltma: yazma kilidini alır, stok kontrolü atomiktir
            book = self.ledger.reserve(session, book_id)

            if self._has_open_loan(session, borrower_id, book_id):
                raise ConflictError(
                    "Borrower already has this book borrowed", ConflictError.DUPLICATE_ACTIVE_LOAN
                )

            borrowing = Borrowing(
                book=book,
                borrower=borrower,
                borrow_date=borrow_date,
                due_date=due_date,
                return_date=None,
            )
            session.add(borrowing)
            try:
                session.flush()
            except IntegrityError as exc:
                if _is_open_loan_violation(exc):
                    raise ConflictError(
                        "Borrower already has this book borrowed", ConflictError.DUPLICATE_ACTIVE_LOAN
                    ) from exc
                raise
            result = borrowing.to_dict()

        logger.info(
            "Borrowing %s opened: book %s -> borrower %s (due %s)",
            result["id"], book_id, borrower_id, due_date.isoformat(),
        )
        self._invalidate_after_transition()
        return result

    def return_borrowing(self, borrowing_id: int, return_date: Optional[datetime] = None) -> Dict[str, Any]:
        """Açık bir ödüncü kapat ve kopyayı deftere geri koy."""
        with self.database.transaction() as session:
            borrowing = session.get(Borrowing, borrowing_id)
            if borrowing is None:
                raise NotFoundError("Borrowing record not found")
            if borrowing.return_date is not None:
                raise ConflictError("Book has already been returned", ConflictError.ALREADY_RETURNED)

            return_date = as_utc_naive(return_date) or self._clock()
            if return_date < borrowing.borrow_date:
                raise InvalidError("Return date cannot be before borrow date")

            # Eşzamanlı iki iade aynı kopyayı iki kez serbest bırakamaz
            closed = session.execute(
                update(Borrowing)
                .where(Borrowing.id == borrowing_id, Borrowing.return_date.is_(None))
                .values(return_date=return_date, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if closed.rowcount == 0:
                raise ConflictError("Book has already been returned", ConflictError.ALREADY_RETURNED)

            self.ledger.release(session, borrowing.book_id)
            result = self._load_enriched(session, borrowing_id).to_dict()

        logger.info("Borrowing %s returned at %s", borrowing_id, return_date.isoformat())
        self._invalidate_after_transition()
        return result

    def delete_borrowing(self, borrowing_id: int) -> Dict[str, Any]:
        """Kaydı sil; hâlâ açıksa önce kopyayı serbest bırak."""
        with self.database.transaction() as session:
            borrowing = session.get(Borrowing, borrowing_id)
            if borrowing is None:
                raise NotFoundError("Borrowing record not found")
            book_id = borrowing.book_id

            released = False
            if borrowing.return_date is None:
                removed = session.execute(
                    delete(Borrowing)
                    .where(Borrowing.id == borrowing_id, Borrowing.return_date.is_(None))
                    .execution_options(synchronize_session=False)
                )
                if removed.rowcount == 1:
                    self.ledger.release(session, book_id)
                    released = True

            if not released:
                # Kapalı kayıt (ya da arada iade edilmiş): defter etkilenmez
                removed = session.execute(
                    delete(Borrowing)
                    .where(Borrowing.id == borrowing_id)
                    .execution_options(synchronize_session=False)
                )
                if removed.rowcount == 0:
                    raise NotFoundError("Borrowing record not found")

        logger.info("Borrowing %s deleted (copy released: %s)", borrowing_id, released)
        self._invalidate_after_transition()
        return {"id": borrowing_id, "message": "Borrowing record deleted successfully"}

    # ------------------------- Okumalar ------------------------- #
    def get_by_id(self, borrowing_id: int) -> Dict[str, Any]:
        key = make_key(BORROWING_NAMESPACE, "detail", id=borrowing_id)

        def load() -> Dict[str, Any]:
            with self.database.session() as session:
                borrowing = self._load_enriched(session, borrowing_id)
                if borrowing is None:
                    raise NotFoundError("Borrowing record not found")
                return borrowing.to_dict()

        return self.cache.read_through(key, "borrowing", load)

    def list_all(self, limit: Optional[int] = None, offset: int = 0) -> List[Dict[str, Any]]:
        key = make_key(BORROWING_NAMESPACE, "list", status="all", limit=limit, offset=offset)
        return self.cache.read_through(
            key, "borrowing",
            lambda: self._query(order_by=Borrowing.borrow_date.desc(), limit=limit, offset=offset),
        )

    def list_active(self, limit: Optional[int] = None, offset: int = 0) -> List[Dict[str, Any]]:
        key = make_key(BORROWING_NAMESPACE, "list", status="active", limit=limit, offset=offset)
        return self.cache.read_through(
            key, "borrowing",
            lambda: self._query(
                Borrowing.return_date.is_(None),
                order_by=Borrowing.due_date.asc(), limit=limit, offset=offset,
            ),
        )

    def list_overdue(self, limit: Optional[int] = None, offset: int = 0) -> List[Dict[str, Any]]:
        """Süresi geçmiş açık ödünçler, days_overdue ile.

        Önbellekte tüm açık ödünçler tutulur; süre karşılaştırması ve gecikme,
        önbelleğin dolduğu an değil, isteğin işlendiği an üzerinden yapılır.
        """
        now = self._clock()
        key = make_key(BORROWING_NAMESPACE, "list", status="overdue")
        rows = self.cache.read_through(
            key, "overdue",
            lambda: self._query(Borrowing.return_date.is_(None), order_by=Borrowing.due_date.asc()),
        )
        overdue = []
        for row in rows:
            due_date = _as_datetime(row["due_date"])
            if due_date >= now:
                continue
            days = int((now - due_date).total_seconds() // SECONDS_PER_DAY)
            overdue.append({**row, "days_overdue": days})
        end = None if limit is None else offset + limit
        return overdue[offset:end]

    def list_for_borrower(self, borrower_id: int) -> List[Dict[str, Any]]:
        """Bir okuyucunun tüm ödünç geçmişi, en yeni önce."""
        key = make_key(BORROWER_NAMESPACE, "history", id=borrower_id)

        def load() -> List[Dict[str, Any]]:
            with self.database.session() as session:
                if session.get(Borrower, borrower_id) is None:
                    raise NotFoundError("Borrower not found")
            return self._query(
                Borrowing.borrower_id == borrower_id,
                order_by=Borrowing.borrow_date.desc(),
            )

        return self.cache.read_through(key, "borrower", load)

    # ------------------------- Yardımcılar ------------------------- #
    def _query(self, *criteria, order_by, limit: Optional[int] = None, offset: int = 0) -> List[Dict[str, Any]]:
        stmt = (
            select(Borrowing)
            .options(joinedload(Borrowing.book), joinedload(Borrowing.borrower))
            .where(*criteria)
            .order_by(order_by, Borrowing.id)
        )
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        with self.database.session() as session:
            return [b.to_dict() for b in session.execute(stmt).scalars().all()]

    @staticmethod
    def _load_enriched(session: Session, borrowing_id: int) -> Optional[Borrowing]:
        stmt = (
            select(Borrowing)
            .options(joinedload(Borrowing.book), joinedload(Borrowing.borrower))
            .where(Borrowing.id == borrowing_id)
            .execution_options(populate_existing=True)
        )
        return session.execute(stmt).scalar_one_or_none()

    @staticmethod
    def _has_open_loan(session: Session, borrower_id: int, book_id: int) -> bool:
        stmt = select(Borrowing.id).where(
            Borrowing.borrower_id == borrower_id,
            Borrowing.book_id == book_id,
            Borrowing.return_date.is_(None),
        )
        return session.execute(stmt.limit(1)).first() is not None

    def _invalidate_after_transition(self) -> None:
        # Kullanılabilirlik değişti: kitaplar, ödünçler ve okuyucu geçmişleri bayat
        self.cache.invalidate_borrowing_cache()
        self.cache.invalidate_book_cache()
        self.cache.invalidate_borrower_cache()
