import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from circulation.config import settings
from circulation.errors import StorageFailure
from circulation.models import Base

logger = logging.getLogger(__name__)


def _configure_sqlite(dbapi_connection, connection_record) -> None:
    """Her yeni SQLite bağlantısında eşzamanlılık ve bütünlük ayarlarını uygula."""
    cursor = dbapi_connection.cursor()
    # Daha iyi eşzamanlı erişim için WAL modunu etkinleştir
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA synchronous=NORMAL;")
    # SQLite yabancı anahtarları varsayılan olarak uygulamaz
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


class Database:
    """Motor ve oturum fabrikasının sahibi; işlem sınırlarını tanımlar.

    İşlem başına bir örnek oluşturulur ve servis katmanına enjekte edilir,
    böylece testler kendi yalıtılmış veritabanlarını kullanabilir.
    """

    def __init__(self, url: Optional[str] = None, echo: Optional[bool] = None) -> None:
        self.url = url or settings.database_url
        connect_args = {}
        if self.url.startswith("sqlite"):
            connect_args = {
                "check_same_thread": False,
                "timeout": settings.database_busy_timeout,
            }
        self.engine: Engine = create_engine(
            self.url,
            echo=settings.database_echo if echo is None else echo,
            connect_args=connect_args,
            future=True,
        )
        if self.engine.dialect.name == "sqlite":
            event.listen(self.engine, "connect", _configure_sqlite)
        self.SessionLocal = sessionmaker(
            bind=self.engine,
            autoflush=False,
            autocommit=False,
            expire_on_commit=False,
        )

    def create_tables(self) -> None:
        """Eksik tabloları oluştur."""
        Base.metadata.create_all(self.engine)
        logger.info("Database schema ready at %s", self.engine.url.render_as_string(hide_password=True))

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Salt okunur işlemler için oturum. Hiçbir şey commit edilmez."""
        session = self.SessionLocal()
        try:
            yield session
        except SQLAlchemyError as exc:
            logger.error("Read query failed: %s", exc, exc_info=True)
            raise StorageFailure("Failed to read from storage") from exc
        finally:
            session.close()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Kapsamlı işlem: başarıda commit, her istisnada rollback, her durumda kapat.

        Alan hataları (NotFound, Conflict, ...) geri alındıktan sonra olduğu gibi
        yeniden yükseltilir; SQLAlchemy hataları StorageFailure olarak sınıflandırılır.
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error("Transaction rolled back: %s", exc, exc_info=True)
            raise StorageFailure("Storage transaction failed") from exc
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()
