"""Ödünç işlemleri için sınıflandırılmış hatalar.

HTTP katmanı bu sınıfları durum kodlarına eşler:
NotFoundError -> 404, ConflictError -> 409, InvalidError -> 400, StorageFailure -> 500.
"""

from typing import Any, Dict, Optional


class LibraryError(Exception):
    """Tüm alan hatalarının temeli."""

    kind = "LibraryError"
    status_code = 500

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.code:
            payload["code"] = self.code
        return payload


class NotFoundError(LibraryError, LookupError):
    kind = "NotFound"
    status_code = 404

    def __init__(self, message: str = "Resource not found") -> None:
        super().__init__(message)


class ConflictError(LibraryError):
    kind = "Conflict"
    status_code = 409

    OUT_OF_STOCK = "OUT_OF_STOCK"
    DUPLICATE_ACTIVE_LOAN = "DUPLICATE_ACTIVE_LOAN"
    ALREADY_RETURNED = "ALREADY_RETURNED"
    ACTIVE_BORROWINGS_EXIST = "ACTIVE_BORROWINGS_EXIST"
    DUPLICATE_VALUE = "DUPLICATE_VALUE"


class InvalidError(LibraryError, ValueError):
    kind = "Invalid"
    status_code = 400


class StorageFailure(LibraryError):
    """Alttaki sorgu/işlem hatası. Çağıran tarafından yeniden denenebilir."""

    kind = "StorageFailure"
    status_code = 500

    def __init__(self, message: str = "Database operation failed") -> None:
        super().__init__(message)


class LedgerInvariantError(AssertionError):
    """Envanter defterinin 0 <= available <= total kuralı bozuldu.

    Bir yaşam döngüsü hatasını gösterir; sessizce düzeltilmez.
    """
