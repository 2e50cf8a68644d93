import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import Body, Depends, FastAPI, Path, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field, PositiveInt
from sqlalchemy import text

from circulation.borrowing import BorrowingService
from circulation.catalog import BookService, BorrowerService
from circulation.config import settings
from circulation.database import Database
from circulation.errors import LedgerInvariantError, LibraryError
from circulation.ledger import InventoryLedger
from circulation.models import utcnow
from circulation.services.cache_manager import CacheManager, ResponseCache

logger = logging.getLogger(__name__)


# --- Modeller ---
class BookModel(BaseModel):
    id: int
    title: str
    author: str
    isbn: str
    total_copies: int
    available_copies: int
    shelf_location: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class BookCreateModel(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    author: str = Field(..., min_length=1, max_length=255)
    isbn: str = Field(..., pattern=r"^(\d{10}|\d{13})$", description="10 veya 13 haneli ISBN")
    total_copies: int = Field(1, ge=0)
    shelf_location: Optional[str] = Field(None, max_length=100)


class BookUpdateModel(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    author: Optional[str] = Field(None, min_length=1, max_length=255)
    isbn: Optional[str] = Field(None, pattern=r"^(\d{10}|\d{13})$")
    total_copies: Optional[int] = Field(None, ge=0)
    # Kabul edilir ama reddedilir: mevcut sayı defter tarafından hesaplanır
    available_copies: Optional[int] = None
    shelf_location: Optional[str] = Field(None, max_length=100)


class BorrowerModel(BaseModel):
    id: int
    name: str
    email: str
    phone: Optional[str] = None
    registered_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class BorrowerCreateModel(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    email: EmailStr
    phone: Optional[str] = Field(None, max_length=20)
    registered_at: Optional[datetime] = None


class BorrowerUpdateModel(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, max_length=20)
    registered_at: Optional[datetime] = None


class BorrowingModel(BaseModel):
    id: int
    book_id: int
    borrower_id: int
    borrow_date: datetime
    due_date: datetime
    return_date: Optional[datetime] = None
    status: str
    book_title: Optional[str] = None
    book_author: Optional[str] = None
    isbn: Optional[str] = None
    borrower_name: Optional[str] = None
    borrower_email: Optional[str] = None
    days_overdue: Optional[int] = None


class BorrowingCreateModel(BaseModel):
    borrower_id: PositiveInt
    book_id: PositiveInt
    borrow_date: Optional[datetime] = None
    due_date: Optional[datetime] = Field(None, description="Varsayılan: ödünç tarihi + DEFAULT_LOAN_DAYS")


class ReturnModel(BaseModel):
    return_date: Optional[datetime] = None


def _ok(data: Any, message: Optional[str] = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"success": True, "data": data}
    if isinstance(data, list):
        payload["count"] = len(data)
    if message:
        payload["message"] = message
    return payload


def _error(status_code: int, error: Dict[str, Any]) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


# --- Bağımlılıklar ---
def get_book_service(request: Request) -> BookService:
    return request.app.state.book_service


def get_borrower_service(request: Request) -> BorrowerService:
    return request.app.state.borrower_service


def get_borrowing_service(request: Request) -> BorrowingService:
    return request.app.state.borrowing_service


def get_cache(request: Request) -> ResponseCache:
    return request.app.state.cache


def create_app(database: Optional[Database] = None, cache: Optional[ResponseCache] = None) -> FastAPI:
    """Uygulama fabrikası. Veritabanı ve önbellek enjekte edilebilir (testler için)."""
    logging.basicConfig(level=settings.log_level)

    database = database or Database()
    database.create_tables()
    cache = cache or ResponseCache(CacheManager(redis_url=settings.redis_url))
    ledger = InventoryLedger()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        # Kapanışta bağlantı havuzunu serbest bırak
        database.dispose()

    app = FastAPI(title=settings.app_name, version=settings.app_version, debug=settings.debug, lifespan=lifespan)
    app.state.database = database
    app.state.cache = cache
    app.state.book_service = BookService(database, cache, ledger)
    app.state.borrower_service = BorrowerService(database, cache)
    app.state.borrowing_service = BorrowingService(database, cache, ledger)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --- Hata eşleme ---
    @app.exception_handler(LibraryError)
    async def library_error_handler(request: Request, exc: LibraryError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return _error(exc.status_code, exc.to_dict())

    @app.exception_handler(LedgerInvariantError)
    async def ledger_error_handler(request: Request, exc: LedgerInvariantError):
        logger.error("Inventory invariant violated on %s %s: %s", request.method, request.url.path, exc)
        return _error(500, {"kind": "StorageFailure", "message": "Inventory invariant violated"})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        details = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()]
        return _error(400, {"kind": "Invalid", "message": "Validation error", "details": details})

    # --- Sağlık Kontrolü ---
    @app.get("/health")
    def health():
        db_ok = True
        try:
            with database.session() as session:
                session.execute(text("SELECT 1"))
        except LibraryError:
            db_ok = False
        return {
            "success": True,
            "status": "healthy" if db_ok else "degraded",
            "timestamp": utcnow().isoformat() + "Z",
            "db": db_ok,
            "cache": "redis+memory" if cache.get_stats()["redis_available"] else "memory",
        }

    # --- Kitaplar ---
    @app.get("/api/books")
    def list_books(
        search: Optional[str] = Query(None, description="Başlık, yazar veya ISBN içinde ara"),
        available: Optional[bool] = Query(None, description="Yalnızca mevcut kopyası olanlar"),
        limit: Optional[int] = Query(None, ge=1, le=settings.max_page_size),
        offset: int = Query(0, ge=0),
        books: BookService = Depends(get_book_service),
    ):
        rows = books.list_books(search=search, available=available, limit=limit, offset=offset)
        return _ok([BookModel(**row) for row in rows])

    @app.get("/api/books/{book_id}")
    def get_book(book_id: int = Path(..., gt=0), books: BookService = Depends(get_book_service)):
        return _ok(BookModel(**books.get_book(book_id)))

    @app.post("/api/books", status_code=201)
    def create_book(payload: BookCreateModel, books: BookService = Depends(get_book_service)):
        book = books.create_book(**payload.model_dump())
        return _ok(BookModel(**book), "Book created successfully")

    @app.put("/api/books/{book_id}")
    def update_book(
        payload: BookUpdateModel,
        book_id: int = Path(..., gt=0),
        books: BookService = Depends(get_book_service),
    ):
        book = books.update_book(book_id, **payload.model_dump(exclude_unset=True))
        return _ok(BookModel(**book), "Book updated successfully")

    @app.delete("/api/books/{book_id}")
    def delete_book(book_id: int = Path(..., gt=0), books: BookService = Depends(get_book_service)):
        result = books.delete_book(book_id)
        return {"success": True, "message": result["message"]}

    # --- Okuyucular ---
    @app.get("/api/borrowers")
    def list_borrowers(
        search: Optional[str] = Query(None, description="Ad veya e-posta içinde ara"),
        limit: Optional[int] = Query(None, ge=1, le=settings.max_page_size),
        offset: int = Query(0, ge=0),
        borrowers: BorrowerService = Depends(get_borrower_service),
    ):
        rows = borrowers.list_borrowers(search=search, limit=limit, offset=offset)
        return _ok([BorrowerModel(**row) for row in rows])

    @app.get("/api/borrowers/{borrower_id}")
    def get_borrower(borrower_id: int = Path(..., gt=0), borrowers: BorrowerService = Depends(get_borrower_service)):
        return _ok(BorrowerModel(**borrowers.get_borrower(borrower_id)))

    @app.get("/api/borrowers/{borrower_id}/history")
    def get_borrower_history(
        borrower_id: int = Path(..., gt=0),
        borrowings: BorrowingService = Depends(get_borrowing_service),
    ):
        rows = borrowings.list_for_borrower(borrower_id)
        return _ok([BorrowingModel(**row) for row in rows])

    @app.post("/api/borrowers", status_code=201)
    def create_borrower(payload: BorrowerCreateModel, borrowers: BorrowerService = Depends(get_borrower_service)):
        borrower = borrowers.create_borrower(**payload.model_dump())
        return _ok(BorrowerModel(**borrower), "Borrower created successfully")

    @app.put("/api/borrowers/{borrower_id}")
    def update_borrower(
        payload: BorrowerUpdateModel,
        borrower_id: int = Path(..., gt=0),
        borrowers: BorrowerService = Depends(get_borrower_service),
    ):
        borrower = borrowers.update_borrower(borrower_id, **payload.model_dump(exclude_unset=True))
        return _ok(BorrowerModel(**borrower), "Borrower updated successfully")

    @app.delete("/api/borrowers/{borrower_id}")
    def delete_borrower(borrower_id: int = Path(..., gt=0), borrowers: BorrowerService = Depends(get_borrower_service)):
        result = borrowers.delete_borrower(borrower_id)
        return {"success": True, "message": result["message"]}

    # --- Ödünçler ---
    @app.get("/api/borrowings")
    def list_borrowings(
        status: Optional[str] = Query(None, pattern="^(active|overdue)$", description="active | overdue"),
        limit: Optional[int] = Query(None, ge=1, le=settings.max_page_size),
        offset: int = Query(0, ge=0),
        borrowings: BorrowingService = Depends(get_borrowing_service),
    ):
        if status == "active":
            rows = borrowings.list_active(limit=limit, offset=offset)
        elif status == "overdue":
            rows = borrowings.list_overdue(limit=limit, offset=offset)
        else:
            rows = borrowings.list_all(limit=limit, offset=offset)
        return _ok([BorrowingModel(**row) for row in rows])

    @app.get("/api/borrowings/{borrowing_id}")
    def get_borrowing(
        borrowing_id: int = Path(..., gt=0),
        borrowings: BorrowingService = Depends(get_borrowing_service),
    ):
        return _ok(BorrowingModel(**borrowings.get_by_id(borrowing_id)))

    @app.post("/api/borrowings", status_code=201)
    def create_borrowing(
        payload: BorrowingCreateModel,
        borrowings: BorrowingService = Depends(get_borrowing_service),
    ):
        borrowing = borrowings.create_borrowing(
            borrower_id=payload.borrower_id,
            book_id=payload.book_id,
            due_date=payload.due_date,
            borrow_date=payload.borrow_date,
        )
        return _ok(BorrowingModel(**borrowing), "Book borrowed successfully")

    @app.put("/api/borrowings/{borrowing_id}/return")
    def return_borrowing(
        borrowing_id: int = Path(..., gt=0),
        payload: Optional[ReturnModel] = Body(None),
        borrowings: BorrowingService = Depends(get_borrowing_service),
    ):
        return_date = payload.return_date if payload else None
        borrowing = borrowings.return_borrowing(borrowing_id, return_date=return_date)
        return _ok(BorrowingModel(**borrowing), "Book returned successfully")

    @app.delete("/api/borrowings/{borrowing_id}")
    def delete_borrowing(
        borrowing_id: int = Path(..., gt=0),
        borrowings: BorrowingService = Depends(get_borrowing_service),
    ):
        result = borrowings.delete_borrowing(borrowing_id)
        return {"success": True, "message": result["message"]}

    # --- Önbellek denetimi ---
    @app.get("/api/cache/stats")
    def cache_stats(response_cache: ResponseCache = Depends(get_cache)):
        return _ok(response_cache.get_stats())

    @app.delete("/api/cache")
    def clear_cache(response_cache: ResponseCache = Depends(get_cache)):
        removed = response_cache.clear_all()
        return {"success": True, "message": "Cache cleared", "removed": removed}

    @app.delete("/api/cache/{namespace}")
    def invalidate_cache(
        namespace: str = Path(..., pattern="^(books|borrowers|borrowings)$"),
        id: Optional[int] = Query(None, gt=0),
        response_cache: ResponseCache = Depends(get_cache),
    ):
        invalidators = {
            "books": response_cache.invalidate_book_cache,
            "borrowers": response_cache.invalidate_borrower_cache,
            "borrowings": response_cache.invalidate_borrowing_cache,
        }
        removed = invalidators[namespace](id)
        return {"success": True, "message": f"{namespace} cache invalidated", "removed": removed}

    return app
