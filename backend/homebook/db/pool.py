from contextlib import contextmanager

from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from homebook.core.config import settings
from homebook.core.logging import get_logger

log = get_logger(__name__)

DB_POOL = ConnectionPool(
    settings.database_url,
    min_size=settings.db_pool_min,
    max_size=settings.db_pool_max,
    timeout=settings.db_pool_timeout,
    max_idle=settings.db_pool_max_idle,
    max_waiting=settings.db_pool_max_waiting,
    open=False,
    kwargs={"row_factory": dict_row},
)


def open_db_pool() -> None:
    DB_POOL.open()
    log.info("db_pool_opened", min_size=settings.db_pool_min, max_size=settings.db_pool_max)


def close_db_pool() -> None:
    DB_POOL.close()
    log.info("db_pool_closed")


@contextmanager
def db_conn():
    with DB_POOL.connection() as conn:
        yield conn
