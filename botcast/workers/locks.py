# botcast/workers/locks.py
"""
Named, non-blocking mutual-exclusion token.

On PostgreSQL this is a session-level advisory lock held on a dedicated
connection. It bounds *active processing* to one holder per key; other
process instances keep running and simply skip their cycle.
"""
import hashlib
import logging
import threading
from typing import Dict, Optional

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine

log = logging.getLogger("botcast.locks")

# Other dialects (SQLite in tests) only need exclusion inside one process
_LOCAL_LOCKS: Dict[int, threading.Lock] = {}
_LOCAL_LOCKS_GUARD = threading.Lock()


def lock_name(queue_type: str, tenant_id: Optional[str] = None) -> str:
    name = f"botcast:queue:{queue_type}"
    return f"{name}:{tenant_id}" if tenant_id else name


def lock_key(name: str) -> int:
    """Stable signed 64-bit key for pg_try_advisory_lock(bigint)."""
    digest = hashlib.sha256(name.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


class AdvisoryLock:

    def __init__(self, engine: Engine, name: str):
        self.engine = engine
        self.name = name
        self.key = lock_key(name)
        self._conn: Optional[Connection] = None
        self._local: Optional[threading.Lock] = None
        self.held = False

    @property
    def _is_postgres(self) -> bool:
        return self.engine.dialect.name == "postgresql"

    def try_acquire(self) -> bool:
        """Never waits. True when this instance now holds the lock."""
        if self.held:
            return True

        if not self._is_postgres:
            with _LOCAL_LOCKS_GUARD:
                self._local = _LOCAL_LOCKS.setdefault(self.key, threading.Lock())
            self.held = self._local.acquire(blocking=False)
            return self.held

        conn = self.engine.connect()
        try:
            acquired = bool(conn.execute(text("SELECT pg_try_advisory_lock(:key)"), {"key": self.key}).scalar())
            conn.commit()
        except Exception:
            conn.close()
            raise

        if not acquired:
            conn.close()
            log.debug(f"🔒 Lock {self.name} held elsewhere")
            return False

        self._conn = conn
        self.held = True
        return True

    def release(self):
        if not self.held:
            return
        self.held = False

        if self._local is not None:
            self._local.release()
            self._local = None
            return

        conn, self._conn = self._conn, None
        try:
            conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": self.key})
            conn.commit()
        except Exception as e:
            # Dropping the server session drops its advisory locks
            log.error(f"❌ Failed to release lock {self.name}: {e}")
            conn.invalidate()
        finally:
            conn.close()

    def __enter__(self) -> bool:
        return self.try_acquire()

    def __exit__(self, exc_type, exc, tb):
        self.release()
