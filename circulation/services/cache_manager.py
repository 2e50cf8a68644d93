"""
Okuma-üzerinden (read-through) yanıt önbelleği.
Bellek içi katman her zaman etkindir; REDIS_URL yapılandırılmışsa Redis ikinci katman olarak kullanılır.
"""

import json
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

import redis

from circulation.config import settings

logger = logging.getLogger(__name__)

# Varlık sınıfları için anahtar ad alanları
BOOK_NAMESPACE = "book"
BORROWER_NAMESPACE = "borrower"
BORROWING_NAMESPACE = "borrowing"


def make_key(namespace: str, kind: str, **params: Any) -> str:
    """Sorgu parametrelerinden deterministik bir önbellek anahtarı oluştur.

    Parametreler ada göre sıralanır; farklı sorgu şekilleri çakışmaz.
    """
    parts = [namespace, kind]
    for name in sorted(params):
        value = params[name]
        if isinstance(value, bool):
            value = str(value).lower()
        parts.append(f"{name}={'' if value is None else value}")
    return ":".join(parts)


def _namespace_of(key: str) -> str:
    return key.split(":", 1)[0]


class CacheManager:
    """TTL'li, önek ile geçersiz kılınabilen önbellek yöneticisi."""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        max_entries: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.redis_client = None
        self.memory_cache: Dict[str, tuple] = {}
        self.memory_cache_lock = threading.RLock()
        self.max_entries = max_entries or settings.cache_max_entries
        self._clock = clock
        # Ad alanı başına geçersiz kılma sayacı; clear() tüm kuşakları ilerletir
        self._generations: Dict[str, int] = {}
        self._epoch = 0
        self.cache_stats = {
            'hits': 0,
            'misses': 0,
            'sets': 0,
            'skipped_sets': 0,
            'invalidations': 0,
            'redis_hits': 0,
            'memory_hits': 0,
            'stale_sets': 0,
        }

        if redis_url:
            self._init_redis(redis_url)

    def _init_redis(self, redis_url: str) -> None:
        """Redis bağlantısını başlat; ulaşılamıyorsa yalnızca bellek katmanı kalır."""
        try:
            client = redis.from_url(
                redis_url,
                decode_responses=False,
                socket_connect_timeout=1,
                socket_timeout=1,
                health_check_interval=30,
            )
            client.ping()
            self.redis_client = client
            logger.info("Redis cache tier initialised")
        except redis.RedisError as e:
            logger.warning(f"Redis unavailable ({e}); using memory cache only")
            self.redis_client = None

    def _make_key(self, key: str) -> str:
        return f"library_cache:{key}"

    def _serialize_value(self, value: Any) -> bytes:
        return json.dumps(value, default=str, ensure_ascii=False).encode('utf-8')

    def _deserialize_value(self, data: bytes) -> Any:
        return json.loads(data.decode('utf-8'))

    def _drop_redis(self, reason: Exception) -> None:
        # Geçersiz kılınamayan bir katman bayat veri sunabilir; devre dışı bırak
        logger.error(f"Redis cache tier disabled: {reason}")
        self.redis_client = None

    def _count(self, *names: str) -> None:
        with self.memory_cache_lock:
            for name in names:
                self.cache_stats[name] += 1

    def get(self, key: str) -> Optional[Any]:
        """Önbellekten değer al; yoksa veya süresi dolmuşsa None."""
        with self.memory_cache_lock:
            cache_entry = self.memory_cache.get(key)
            if cache_entry:
                value, expires_at = cache_entry
                if self._clock() < expires_at:
                    self.cache_stats['hits'] += 1
                    self.cache_stats['memory_hits'] += 1
                    return value
                # Süresi dolmuş, kaldır
                del self.memory_cache[key]

        if self.redis_client:
            try:
                data = self.redis_client.get(self._make_key(key))
                if data is not None:
                    self._count('hits', 'redis_hits')
                    return self._deserialize_value(data)
            except redis.RedisError as e:
                logger.warning(f"Redis get error: {e}")

        self._count('misses')
        return None

    def generation(self, key: str) -> Tuple[int, int]:
        """Anahtarın ad alanı için geçerli kuşak. Her geçersiz kılma ve temizleme bunu ilerletir."""
        with self.memory_cache_lock:
            return self._epoch, self._generations.get(_namespace_of(key), 0)

    def set(self, key: str, value: Any, ttl_seconds: int = 300, generation: Optional[Tuple[int, int]] = None) -> bool:
        """Değeri TTL ile sakla. ttl_seconds <= 0 bu anahtar için önbelleği devre dışı bırakır.

        generation verilirse ve o zamandan beri ad alanı geçersiz kılındıysa değer
        saklanmaz: yükleme sırasında commit edilmiş bir değişikliğin üzerine eski
        veri yazılamaz.
        """
        if ttl_seconds <= 0:
            self._count('skipped_sets')
            return False

        with self.memory_cache_lock:
            if generation is not None and generation != (self._epoch, self._generations.get(_namespace_of(key), 0)):
                self.cache_stats['stale_sets'] += 1
                return False

            self.memory_cache[key] = (value, self._clock() + ttl_seconds)
            self.cache_stats['sets'] += 1

            if len(self.memory_cache) > self.max_entries:
                # Sona erme zamanı en yakın %10'u at
                overflow = max(1, self.max_entries // 10)
                oldest = sorted(self.memory_cache.items(), key=lambda item: item[1][1])[:overflow]
                for k, _ in oldest:
                    self.memory_cache.pop(k, None)

            # Redis yazımı da kilit altında: araya bir geçersiz kılma giremez
            if self.redis_client:
                try:
                    self.redis_client.setex(self._make_key(key), ttl_seconds, self._serialize_value(value))
                except redis.RedisError as e:
                    logger.warning(f"Redis set error: {e}")

        return True

    def delete(self, key: str) -> bool:
        """Tek bir anahtarı sil."""
        with self.memory_cache_lock:
            memory_deleted = self.memory_cache.pop(key, None) is not None

        redis_deleted = False
        if self.redis_client:
            try:
                redis_deleted = bool(self.redis_client.delete(self._make_key(key)))
            except redis.RedisError as e:
                self._drop_redis(e)

        return memory_deleted or redis_deleted

    def invalidate(self, prefix_or_key: str) -> int:
        """Tam bir anahtarı ya da '*' ile biten bir önekle eşleşen tüm anahtarları sil.

        'book' veya 'book:*' gibi yalın bir ad alanı da önek olarak kabul edilir.
        Silinen giriş sayısını döndürür.
        """
        namespace = _namespace_of(prefix_or_key.rstrip("*"))
        with self.memory_cache_lock:
            # Silmeden önce: devam eden yüklemeler artık saklanamaz
            self._generations[namespace] = self._generations.get(namespace, 0) + 1

        if ":" not in prefix_or_key or prefix_or_key.endswith("*"):
            prefix = prefix_or_key.rstrip("*")
            if not prefix.endswith(":"):
                prefix += ":"
            count = self._invalidate_prefix(prefix)
        else:
            count = int(self.delete(prefix_or_key))

        self._count('invalidations')
        logger.debug(f"Invalidated {count} cache entries for {prefix_or_key!r}")
        return count

    def _invalidate_prefix(self, prefix: str) -> int:
        count = 0
        with self.memory_cache_lock:
            keys_to_remove = [key for key in self.memory_cache if key.startswith(prefix)]
            for key in keys_to_remove:
                self.memory_cache.pop(key, None)
                count += 1

        if self.redis_client:
            try:
                keys = list(self.redis_client.scan_iter(match=self._make_key(prefix) + "*"))
                if keys:
                    self.redis_client.delete(*keys)
            except redis.RedisError as e:
                self._drop_redis(e)

        return count

    def clear(self) -> int:
        """Tüm önbelleği temizle."""
        with self.memory_cache_lock:
            self._epoch += 1
            count = len(self.memory_cache)
            self.memory_cache.clear()

        if self.redis_client:
            try:
                keys = list(self.redis_client.scan_iter(match=self._make_key("*")))
                if keys:
                    self.redis_client.delete(*keys)
            except redis.RedisError as e:
                self._drop_redis(e)

        logger.info(f"Cache cleared ({count} memory entries)")
        return count

    def get_stats(self) -> Dict[str, Any]:
        """Önbellek istatistiklerini al."""
        with self.memory_cache_lock:
            stats = self.cache_stats.copy()
            stats['memory_cache_size'] = len(self.memory_cache)
        stats['redis_available'] = self.redis_client is not None

        lookups = stats['hits'] + stats['misses']
        stats['hit_ratio'] = stats['hits'] / lookups if lookups else 0.0
        return stats


class ResponseCache:
    """Varlık sınıfı başına TTL'leri ve geçersiz kılma kurallarını CacheManager üzerine giydirir.

    HTTP katmanına açılan önbellek denetim işlemleri de buradadır.
    """

    def __init__(self, manager: Optional[CacheManager] = None, ttls: Optional[Dict[str, int]] = None) -> None:
        self.manager = manager or CacheManager(redis_url=settings.redis_url)
        self.ttls = {
            "book": settings.cache_ttl_book,
            "borrower": settings.cache_ttl_borrower,
            "borrowing": settings.cache_ttl_borrowing,
            "overdue": settings.cache_ttl_overdue,
        }
        if ttls:
            self.ttls.update(ttls)

    def get(self, key: str) -> Optional[Any]:
        return self.manager.get(key)

    def set(self, key: str, value: Any, entity: str) -> bool:
        return self.manager.set(key, value, self.ttls[entity])

    def read_through(self, key: str, entity: str, loader: Callable[[], Any]) -> Any:
        """Önbellekte varsa onu döndür; yoksa yükle ve sakla.

        Yükleyici bir istisna fırlatırsa hiçbir şey saklanmaz. Yükleme sürerken
        ad alanı geçersiz kılınırsa değer döndürülür ama saklanmaz.
        """
        generation = self.manager.generation(key)
        cached = self.manager.get(key)
        if cached is not None:
            return cached
        value = loader()
        self.manager.set(key, value, self.ttls[entity], generation=generation)
        return value

    def invalidate_book_cache(self, book_id: Optional[int] = None) -> int:
        if book_id is not None:
            # Listeler de bu kitabı içerebilir
            return (
                self.manager.invalidate(make_key(BOOK_NAMESPACE, "detail", id=book_id))
                + self.manager.invalidate(f"{BOOK_NAMESPACE}:list:*")
            )
        return self.manager.invalidate(f"{BOOK_NAMESPACE}:*")

    def invalidate_borrower_cache(self, borrower_id: Optional[int] = None) -> int:
        if borrower_id is not None:
            return (
                self.manager.invalidate(make_key(BORROWER_NAMESPACE, "detail", id=borrower_id))
                + self.manager.invalidate(make_key(BORROWER_NAMESPACE, "history", id=borrower_id))
                + self.manager.invalidate(f"{BORROWER_NAMESPACE}:list:*")
            )
        return self.manager.invalidate(f"{BORROWER_NAMESPACE}:*")

    def invalidate_borrowing_cache(self, borrowing_id: Optional[int] = None) -> int:
        if borrowing_id is not None:
            return (
                self.manager.invalidate(make_key(BORROWING_NAMESPACE, "detail", id=borrowing_id))
                + self.manager.invalidate(f"{BORROWING_NAMESPACE}:list:*")
            )
        return self.manager.invalidate(f"{BORROWING_NAMESPACE}:*")

    def get_stats(self) -> Dict[str, Any]:
        stats = self.manager.get_stats()
        stats['ttls'] = dict(self.ttls)
        return stats

    def clear_all(self) -> int:
        return self.manager.clear()
