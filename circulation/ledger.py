"""Kitap kopya sayıları için envanter defteri.

`available_copies` alanına yazan tek yer burasıdır. Tüm komutlar çağıranın
oturumunda çalışır; böylece tetikleyen ödünç değişikliğiyle aynı işlemde
commit ya da rollback edilirler.

Defterin koruduğu eşitlik: available_copies == max(0, total_copies - açık ödünç sayısı).
Toplam, ödünçteki kopya sayısının altına indirilebilir; o durumda iade edilen
kopyalar rafa dönmez, toplam yeniden karşılanana kadar dolaşımdan çekilir.
"""

import logging

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from circulation.errors import ConflictError, InvalidError, LedgerInvariantError, NotFoundError
from circulation.models import Book, Borrowing

logger = logging.getLogger(__name__)


class InventoryLedger:

    def reserve(self, session: Session, book_id: int) -> Book:
        """Mevcut kopyayı bir azalt; yalnızca available_copies > 0 ise.

        Kontrol ve azaltma tek bir koşullu UPDATE'tir, ayrı bir oku-yaz çifti
        değildir; eşzamanlı iki ödünç aynı son kopyayı alamaz.
        """
        result = session.execute(
            update(Book)
            .where(Book.id == book_id, Book.available_copies > 0)
            .values(available_copies=Book.available_copies - 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            if self._load(session, book_id) is None:
                raise NotFoundError("Book not found")
            raise ConflictError("Book is not available for borrowing", ConflictError.OUT_OF_STOCK)
        book = self._load(session, book_id)
        logger.debug("Reserved copy of book %s (%s left)", book_id, book.available_copies)
        return book

    def release(self, session: Session, book_id: int) -> Book:
        """Kapanan ya da silinen bir ödüncün kopyasını geri al.

        Çağıran, ödünç satırını bu çağrıdan önce kapatmış veya silmiş olmalıdır.
        Sayı, kalan açık ödünçlerden beklenen değere getirilir: normalde bir artış,
        toplam küçültülmüşse değişiklik yok. Beklenmeyen bir başlangıç değeri
        bir yaşam döngüsü hatasıdır ve LedgerInvariantError fırlatılır.
        """
        book = self._load(session, book_id)
        if book is None:
            raise NotFoundError("Book not found")
        still_open = self._open_loans(session, book_id)
        expected_before = max(0, book.total_copies - still_open - 1)
        expected_after = max(0, book.total_copies - still_open)
        if book.available_copies != expected_before:
            raise LedgerInvariantError(
                f"Releasing book {book_id} from an inconsistent count "
                f"({book.available_copies}/{book.total_copies}, {still_open} still borrowed)"
            )

        if expected_after == expected_before:
            logger.info(
                "Returned copy of book %s withdrawn; total %s is below borrowed count",
                book_id, book.total_copies,
            )
            return book

        result = session.execute(
            update(Book)
            .where(Book.id == book_id, Book.available_copies == expected_before)
            .values(available_copies=expected_after)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise LedgerInvariantError(f"Available copies of book {book_id} changed during release")
        book = self._load(session, book_id)
        logger.debug("Released copy of book %s (%s available)", book_id, book.available_copies)
        return book

    def adjust_total(self, session: Session, book_id: int, new_total: int) -> Book:
        """Toplam kopya sayısını güncelle ve mevcut sayıyı ödünçteki kopyalardan yeniden hesapla.

        available = max(0, new_total - ödünçteki); toplam ödünçteki sayının altına da inebilir.
        """
        if new_total < 0:
            raise InvalidError("Total copies cannot be negative")
        book = self._load(session, book_id, for_update=True)
        if book is None:
            raise NotFoundError("Book not found")
        # Önceden küçültülmüş bir toplamda total - available eksik sayar
        currently_borrowed = max(book.total_copies - book.available_copies, self._open_loans(session, book_id))
        book.total_copies = new_total
        book.available_copies = max(0, new_total - currently_borrowed)
        session.flush()
        logger.info(
            "Adjusted book %s total to %s (%s borrowed, %s available)",
            book_id, new_total, currently_borrowed, book.available_copies,
        )
        return book

    @staticmethod
    def _open_loans(session: Session, book_id: int) -> int:
        stmt = select(func.count(Borrowing.id)).where(Borrowing.book_id == book_id, Borrowing.return_date.is_(None))
        return session.execute(stmt).scalar_one()

    @staticmethod
    def _load(session: Session, book_id: int, for_update: bool = False):
        stmt = select(Book).where(Book.id == book_id).execution_options(populate_existing=True)
        if for_update:
            stmt = stmt.with_for_update()
        return session.execute(stmt).scalar_one_or_none()
