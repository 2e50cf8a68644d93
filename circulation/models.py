from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    text,
)

Base = declarative_base()


def utcnow() -> datetime:
    """Saat dilimi bilgisi olmayan UTC 'şimdi' (SQLite ile tutarlı karşılaştırma için)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc_naive(value: Optional[datetime]) -> Optional[datetime]:
    """Saat dilimli bir değeri UTC'ye çevirip tzinfo'yu at; naive değerler UTC kabul edilir."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class Book(Base):
    __tablename__ = "books"
    __table_args__ = (
        CheckConstraint("total_copies >= 0", name="ck_books_total_non_negative"),
        CheckConstraint("available_copies >= 0", name="ck_books_available_non_negative"),
        CheckConstraint("available_copies <= total_copies", name="ck_books_available_le_total"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False, index=True)
    author = Column(String(255), nullable=False)
    isbn = Column(String(13), unique=True, nullable=False)
    total_copies = Column(Integer, nullable=False, default=1)
    available_copies = Column(Integer, nullable=False, default=1)
    shelf_location = Column(String(100))
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    borrowings = relationship("Borrowing", back_populates="book")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "total_copies": self.total_copies,
            "available_copies": self.available_copies,
            "shelf_location": self.shelf_location,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class Borrower(Base):
    __tablename__ = "borrowers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=False)
    phone = Column(String(20))
    registered_at = Column(DateTime, nullable=False, default=utcnow)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    borrowings = relationship("Borrowing", back_populates="borrower")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "registered_at": self.registered_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class Borrowing(Base):
    __tablename__ = "borrowings"
    __table_args__ = (
        CheckConstraint("due_date > borrow_date", name="ck_borrowings_due_after_borrow"),
        # Aynı (kitap, okuyucu) çifti için en fazla bir açık ödünç
        Index(
            "uq_borrowings_open_loan",
            "book_id",
            "borrower_id",
            unique=True,
            sqlite_where=text("return_date IS NULL"),
            postgresql_where=text("return_date IS NULL"),
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False, index=True)
    borrower_id = Column(Integer, ForeignKey("borrowers.id"), nullable=False, index=True)
    borrow_date = Column(DateTime, nullable=False, default=utcnow)
    due_date = Column(DateTime, nullable=False, index=True)
    return_date = Column(DateTime, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    book = relationship("Book", back_populates="borrowings")
    borrower = relationship("Borrower", back_populates="borrowings")

    @property
    def is_open(self) -> bool:
        return self.return_date is None

    @property
    def status(self) -> str:
        return "OPEN" if self.is_open else "RETURNED"

    def to_dict(self) -> dict:
        """Kitap ve okuyucu özetiyle zenginleştirilmiş ödünç kaydı."""
        payload = {
            "id": self.id,
            "book_id": self.book_id,
            "borrower_id": self.borrower_id,
            "borrow_date": self.borrow_date,
            "due_date": self.due_date,
            "return_date": self.return_date,
            "status": self.status,
        }
        if self.book is not None:
            payload.update(
                book_title=self.book.title,
                book_author=self.book.author,
                isbn=self.book.isbn,
            )
        if self.borrower is not None:
            payload.update(
                borrower_name=self.borrower.name,
                borrower_email=self.borrower.email,
            )
        return payload
