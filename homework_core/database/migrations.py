"""
Автоматические миграции базы данных
"""

import logging
from pathlib import Path

from homework_core.database.connection import get_pool

logger = logging.getLogger(__name__)

# Путь к папке с миграциями
MIGRATIONS_DIR = Path(__file__).resolve().parent.parent.parent / "migrations"


async def run_migrations(migrations_dir: Path = MIGRATIONS_DIR) -> list[str]:
    """Выполнить все SQL-миграции из папки migrations/, вернуть имена применённых файлов"""
    pool = await get_pool()
    applied = []

    if not migrations_dir.exists():
        logger.warning(f"Папка миграций не найдена: {migrations_dir}")
        return applied

    # Получаем все .sql файлы, отсортированные по имени
    sql_files = sorted(migrations_dir.glob("*.sql"))

    if not sql_files:
        logger.info("Миграции не найдены")
        return applied

    async with pool.acquire() as conn:
        for sql_file in sql_files:
            logger.info(f"Выполняю миграцию: {sql_file.name}")
            try:
                sql_content = sql_file.read_text(encoding="utf-8")
                await conn.execute(sql_content)
                logger.info(f"Миграция {sql_file.name} выполнена")
            except Exception as e:
                # "already exists" — нормально при повторных запусках
                if "already exists" in str(e) or "duplicate key" in str(e):
                    logger.info(f"Миграция {sql_file.name} уже применена")
                else:
                    logger.error(f"Ошибка в {sql_file.name}: {e}")
                    raise
            applied.append(sql_file.name)

    return applied
