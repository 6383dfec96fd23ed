import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import event
from sqlalchemy import exc as sa_exc
from sqlalchemy.pool import PoolProxiedConnection, QueuePool

from errors import PoolError, PoolErrorKind

logger = logging.getLogger(__name__)


def parse_script(text):
    """Split an init script into statements.

    Lines are trimmed; blank lines and ``--`` comments are skipped and a line
    ending in ``;`` closes the current statement.
    """
    statements = []
    buffer = []
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith('--'):
            continue
        buffer.append(line)
        if line.endswith(';'):
            statements.append(' '.join(buffer))
            buffer = []
    if buffer:
        logger.warning('Ignoring unterminated statement at end of script: %s', ' '.join(buffer)[:80])
    return statements


def _ping(dbapi_connection, connection_record, connection_proxy):
    # The pool retries the checkout on a fresh connection
    try:
        dbapi_connection.execute('SELECT 1')
    except sqlite3.Error as exc:
        raise sa_exc.DisconnectionError(f'Stale connection: {exc}') from exc


class Database:
    """Pool of sqlite3 connections backed by SQLAlchemy's ``QueuePool``.

    ``max_idle`` connections are kept open, up to ``max_active`` may be
    leased at once and ``acquire`` waits at most ``max_wait`` seconds.
    Leases are pooled connection proxies; releasing one twice is a no-op.
    """

    def __init__(self, url='file:jinja_pages?mode=memory&cache=shared', init_script=None,
                 initial_size=5, max_active=10, max_idle=5, min_idle=2, max_wait=5.0):
        if max_active < 1:
            raise ValueError('max_active must be at least 1')
        self.url = url
        self.init_script = init_script
        self.max_active = max_active
        self.max_idle = max(min(max_idle, max_active), 1)
        self.min_idle = min(min_idle, self.max_idle)
        self.initial_size = min(initial_size, max_active)
        self.max_wait = max_wait

        self._pool = QueuePool(
            self._connect,
            pool_size=self.max_idle,
            max_overflow=max_active - self.max_idle,
            timeout=max_wait,
            reset_on_return='rollback',
        )
        event.listen(self._pool, 'checkout', _ping)

        self._lock = threading.Lock()
        self._initialized = False
        self._closed = False

    @classmethod
    def from_settings(cls, settings):
        pool = settings.database.pool
        return cls(
            url=settings.database.url,
            init_script=settings.database.init_script,
            initial_size=pool.initial_size,
            max_active=pool.max_active,
            max_idle=pool.max_idle,
            min_idle=pool.min_idle,
            max_wait=pool.max_wait,
        )

    def _connect(self):
        conn = sqlite3.connect(
            self.url,
            uri=self.url.startswith('file:'),
            check_same_thread=False,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        return conn

    def initialize(self):
        with self._lock:
            if self._initialized:
                return
            if self._closed:
                raise PoolError(PoolErrorKind.CLOSED, 'Pool has been shut down')

            # Warm the pool; more than max_idle would be closed on return
            warm = min(max(self.initial_size, self.min_idle, 1), self.max_idle)
            connections = []
            try:
                for _ in range(warm):
                    connections.append(self._pool.connect())
            except (sqlite3.Error, sa_exc.SQLAlchemyError) as exc:
                self._pool.dispose()
                raise PoolError(PoolErrorKind.CONNECTION_FAILED,
                                f'Cannot open {self.url}: {exc}', cause=exc) from exc
            finally:
                for conn in connections:
                    conn.close()
            self._initialized = True

        logger.info('Database connection pool initialized (%d connections, max %d)',
                    warm, self.max_active)

        if self.init_script is None:
            logger.warning('No init script configured; schema is not guaranteed')
        elif not Path(self.init_script).is_file():
            logger.warning('Init script %s not found; running without schema guarantees',
                           self.init_script)
        else:
            self.run_script(self.init_script)

    def run_script(self, path):
        statements = parse_script(Path(path).read_text(encoding='utf-8'))
        executed = 0
        with self.connection() as conn:
            for index, statement in enumerate(statements, start=1):
                try:
                    conn.execute(statement)
                except sqlite3.Error as exc:
                    # Remaining statements are skipped; data may be partially seeded
                    logger.error('Init script %s failed at statement %d of %d: %s',
                                 path, index, len(statements), exc)
                    return executed
                executed += 1
        logger.info('Database schema and sample data initialized (%d statements)', executed)
        return executed

    def acquire(self):
        if self._closed:
            raise PoolError(PoolErrorKind.CLOSED, 'Pool has been shut down')
        try:
            return self._pool.connect()
        except sa_exc.TimeoutError as exc:
            if self._closed:
                raise PoolError(PoolErrorKind.CLOSED, 'Pool has been shut down',
                                cause=exc) from exc
            raise PoolError(PoolErrorKind.EXHAUSTED,
                            f'No connection available after {self.max_wait}s '
                            f'({self.max_active} in use)', cause=exc) from exc
        except (sqlite3.Error, sa_exc.SQLAlchemyError) as exc:
            raise PoolError(PoolErrorKind.CONNECTION_FAILED,
                            f'Cannot connect to {self.url}: {exc}', cause=exc) from exc

    def release(self, conn):
        if not isinstance(conn, PoolProxiedConnection):
            logger.warning('Releasing a connection this pool did not lease; closing it')
            self._close_quietly(conn)
            return
        if not conn.is_valid:
            logger.warning('Connection released twice; ignoring')
            return
        if self._closed:
            conn.invalidate()
            # Drop what came back so nothing stays idle after shutdown
            self._pool.dispose()
            return
        if not self._healthy(conn):
            # Closes it; the pool reconnects on the next checkout
            conn.invalidate()
            return
        # Open transactions are rolled back by the pool
        conn.close()

    def _healthy(self, conn):
        try:
            conn.execute('SELECT 1')
        except sqlite3.Error:
            logger.warning('Discarding invalid connection')
            return False
        return True

    @staticmethod
    def _close_quietly(conn):
        try:
            conn.close()
        except sqlite3.Error as exc:
            logger.warning('Error closing connection: %s', exc)

    @contextmanager
    def connection(self):
        conn = self.acquire()
        try:
            yield conn
        finally:
            self.release(conn)

    def shutdown(self):
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._pool.dispose()
        logger.info('Database connection pool closed')

    @property
    def closed(self):
        return self._closed

    def stats(self):
        return {'idle': self._pool.checkedin(), 'leased': self._pool.checkedout()}
