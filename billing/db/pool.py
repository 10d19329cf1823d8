import asyncpg
from contextlib import contextmanager
from typing import Iterator, Optional
import logging

from billing.errors import StorageError

logger = logging.getLogger(__name__)

_pool: Optional[asyncpg.Pool] = None


async def init_pool(database_url: str) -> asyncpg.Pool:
    """Инициализирует пул соединений с PostgreSQL"""
    global _pool
    _pool = await asyncpg.create_pool(
        database_url,
        min_size=1,
        max_size=10,
        command_timeout=60
    )
    logger.info("✅ Подключение к базе данных установлено")
    return _pool


async def close_pool() -> None:
    """Закрывает пул соединений"""
    global _pool
    if _pool:
        await _pool.close()
        _pool = None
        logger.info("🔒 Соединение с базой данных закрыто")


def affected_rows(command_tag: str) -> int:
    """Извлекает число строк из статуса команды ("UPDATE 3", "INSERT 0 1")"""
    if not command_tag:
        return 0
    try:
        return int(command_tag.split()[-1])
    except ValueError:
        return 0


@contextmanager
def storage_guard(operation: str) -> Iterator[None]:
    """Превращает ошибки asyncpg и соединения в StorageError"""
    try:
        yield
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
        logger.error(f"Ошибка базы данных ({operation}): {e}")
        raise StorageError(f"Ошибка базы данных: {operation}") from e
