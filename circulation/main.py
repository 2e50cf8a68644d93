import json
import logging
import os
from typing import Any, Dict, List, Optional

import httpx
import typer
import uvicorn
from rich.console import Console
from rich.table import Table

from circulation.borrowing import BorrowingService
from circulation.catalog import BookService, BorrowerService
from circulation.config import settings
from circulation.database import Database
from circulation.errors import LibraryError
from circulation.services.cache_manager import CacheManager, ResponseCache

APP_NAME = "Kütüphane Ödünç CLI"

# İzin verilen değerler: 'plain' (varsayılan), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

console = Console()
app = typer.Typer(help=APP_NAME)


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _services(database_url: Optional[str] = None):
    database = Database(database_url)
    database.create_tables()
    # CLI tek seferliktir; önbellek yalnızca bu süreç için
    cache = ResponseCache(CacheManager())
    return (
        BookService(database, cache),
        BorrowerService(database, cache),
        BorrowingService(database, cache),
    )


def print_overdue_result(rows: List[Dict[str, Any]]) -> None:
    """Gecikmiş ödünçleri mevcut çıktı moduna göre yazdır."""
    mode = get_output_mode()

    if not rows:
        print("No overdue borrowings.")
        return

    if mode == "json":
        print(json.dumps(rows, default=str, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="Overdue borrowings", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Book", style="white")
        table.add_column("Borrower", style="white")
        table.add_column("Due", style="yellow")
        table.add_column("Days", style="bold red", justify="right")
        for row in rows:
            table.add_row(
                str(row["id"]), row.get("book_title", ""), row.get("borrower_name", ""),
                str(row["due_date"]), str(row["days_overdue"]),
            )
        console.print(table)
    else:
        for row in rows:
            print(
                f"#{row['id']} {row.get('book_title', '')} - {row.get('borrower_name', '')} "
                f"({row['days_overdue']} days overdue)"
            )


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Çıktı formatı: plain | json | rich (varsayılan: plain)",
    )
):
    """CLI için genel seçenekler (ör. çıktı modu)."""
    logging.basicConfig(level=settings.log_level)
    if output:
        set_output_mode(output)


@app.command("init-db")
def cli_init_db(database_url: Optional[str] = typer.Option(None, "--database-url", help="Varsayılan: DATABASE_URL")):
    """Tabloları oluştur."""
    database = Database(database_url)
    database.create_tables()
    print(f"Database ready: {database.engine.url.render_as_string(hide_password=True)}")


@app.command("overdue")
def cli_overdue(database_url: Optional[str] = typer.Option(None, "--database-url")):
    """Süresi geçmiş açık ödünçleri listele."""
    _, _, borrowings = _services(database_url)
    try:
        print_overdue_result(borrowings.list_overdue())
    except LibraryError as e:
        print(f"Error: {e.message}")
        raise typer.Exit(code=1)


@app.command("stats")
def cli_stats(database_url: Optional[str] = typer.Option(None, "--database-url")):
    """Kitap, okuyucu ve ödünç sayıları."""
    books, borrowers, borrowings = _services(database_url)
    book_rows = books.list_books()
    stats = {
        "total_books": len(book_rows),
        "total_copies": sum(b["total_copies"] for b in book_rows),
        "available_copies": sum(b["available_copies"] for b in book_rows),
        "borrowers": len(borrowers.list_borrowers()),
        "active_borrowings": len(borrowings.list_active()),
        "overdue_borrowings": len(borrowings.list_overdue()),
    }
    if get_output_mode() == "json":
        print(json.dumps(stats))
    else:
        for name, value in stats.items():
            print(f"{name}: {value}")


@app.command("cache-stats")
def cli_cache_stats(
    api_url: Optional[str] = typer.Option(None, "--api-url", help="Varsayılan: http://API_HOST:API_PORT"),
):
    """Çalışan API'nin önbellek istatistikleri."""
    base_url = api_url or f"http://{settings.api_host}:{settings.api_port}"
    try:
        with httpx.Client(base_url=base_url, timeout=5.0) as client:
            response = client.get("/api/cache/stats")
            response.raise_for_status()
    except httpx.HTTPError as e:
        print(f"Error: could not read cache stats from {base_url}: {e}")
        raise typer.Exit(code=1)

    stats = response.json()["data"]
    if get_output_mode() == "json":
        print(json.dumps(stats))
        return
    for name in ("hits", "misses", "hit_ratio", "sets", "stale_sets", "invalidations", "memory_cache_size"):
        print(f"{name}: {stats.get(name)}")
    print(f"redis_available: {stats.get('redis_available')}")


@app.command("serve")
def cli_serve(
    host: str = typer.Option(settings.api_host, "--host"),
    port: int = typer.Option(settings.api_port, "--port"),
    reload: bool = typer.Option(False, "--reload"),
):
    """Uvicorn ile API'yi başlat."""
    print(f"Starting API on http://{host}:{port}/")
    uvicorn.run("circulation.api:create_app", factory=True, host=host, port=port, reload=reload)


if __name__ == "__main__":
    app()
