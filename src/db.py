import asyncio
import os
import sqlite3
import threading
import time

from pydantic import ValidationError

from config import Config
from errors import CounterError, StorageUnavailable
from models.generic import U64_MAX, PageSnapshot, SiteSnapshot
from utils import ERROR, LOG

I64_SPAN = 2 ** 64
I64_MAX = 2 ** 63 - 1


# sqlite INTEGER is signed 64-bit; counters are unsigned 64-bit.
def to_sql(value: int) -> int:
    return value - I64_SPAN if value > I64_MAX else value


def from_sql(value) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise StorageUnavailable(f"stored counter is not an integer: {value!r}")
    return value & U64_MAX


# https://stackoverflow.com/questions/41206800/how-should-i-handle-multiple-threads-accessing-a-sqlite-database-in-python
class LockableSqliteConnection():
    def __init__(self, dburi: str, timeout: float = 5.0):
        self.lock = threading.Lock()
        self.connection = sqlite3.connect(dburi, timeout=timeout, check_same_thread=False)
        self.cursor = None

    def __enter__(self) -> sqlite3.Cursor:
        self.lock.acquire()
        self.cursor = self.connection.cursor()
        return self.cursor

    def __exit__(self, type, value, traceback):
        # Everything done inside one `with` block commits together or not at all
        try:
            if type is None:
                self.connection.commit()
            else:
                self.connection.rollback()
        finally:
            if self.cursor is not None:
                self.cursor.close()
                self.cursor = None
            self.lock.release()

    def close(self):
        with self.lock:
            self.connection.close()


class PersistenceManager:
    """
    Sole owner of the sqlite database.

    The store is written as a full replacement of the `sites` and `pages`
    tables inside one transaction. Data counted after the last successful
    snapshot is lost on a crash; the window is one save interval.
    """
    VERSION_KEY = "db.version"
    SNAPSHOT_KEY = "snapshot.at"

    def __init__(self, config: Config):
        self.config = config
        self.path = config.db_path
        self.sql: LockableSqliteConnection | None = None
        # Refuses overlapping snapshots instead of queueing them
        self._snapshot_lock = threading.Lock()

    ################## Setup #####################

    def open(self):
        if self.sql is not None:
            return
        directory = os.path.dirname(self.path)
        try:
            if directory and not os.path.isdir(directory):
                os.makedirs(directory)
            self.sql = LockableSqliteConnection(self.path, timeout=self.config.save_timeout)
            with self.sql as cur:
                res = cur.execute("PRAGMA quick_check").fetchall()
                if res != [("ok",)]:
                    raise StorageUnavailable(f"database {self.path} failed its integrity check: {res}")
                cur.execute("PRAGMA synchronous = FULL")
            self.setup_sqlite()
        except (sqlite3.Error, OSError, StorageUnavailable) as e:
            self.close()
            if isinstance(e, StorageUnavailable):
                raise
            raise StorageUnavailable(f"cannot open database {self.path}: {e}")

    def _conn(self) -> LockableSqliteConnection:
        if self.sql is None:
            self.open()
        assert self.sql is not None
        return self.sql

    def setup_sqlite(self):
        # Creates "version-0 compatible" tables, then migrates them forward.
        with self._conn() as cur:
            cur.execute("""
                CREATE TABLE IF NOT EXISTS metadata (
                    key TEXT PRIMARY KEY UNIQUE,
                    value TEXT
                );
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS sites (
                    site TEXT PRIMARY KEY NOT NULL,
                    pv INTEGER NOT NULL DEFAULT 0,
                    uv INTEGER NOT NULL DEFAULT 0
                );
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS pages (
                    site TEXT NOT NULL,
                    path TEXT NOT NULL,
                    pv INTEGER NOT NULL DEFAULT 0,
                    uv INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (site, path)
                );
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp REAL NOT NULL,
                    action TEXT NOT NULL,
                    detail TEXT NOT NULL,
                    ip TEXT NOT NULL
                );
            """)

        self.do_migrations()

    def do_migrations(self):
        try:
            db_version = int(self.lookup_metadata(self.VERSION_KEY) or "0")
        except ValueError:
            raise StorageUnavailable(f"database {self.path} has a bad schema version")
        LOG(f"Found database version: {db_version}")

        if db_version < 1:
            LOG("-> Database version was < 1. Performing migration to version 1.")
            with self._conn() as cur:
                cur.execute("CREATE INDEX IF NOT EXISTS idx_logs_timestamp ON logs(timestamp);")
            self.set_metadata(self.VERSION_KEY, "1")

    def lookup_metadata(self, key: str) -> str | None:
        with self._conn() as cur:
            res = cur.execute("SELECT value FROM metadata WHERE key = ?", (key,)).fetchall()
        if not res:
            return None
        return res[0][0]

    def set_metadata(self, key: str, value: str):
        with self._conn() as cur:
            cur.execute("INSERT INTO metadata (key, value) VALUES (?,?) "
                        "ON CONFLICT(key) DO UPDATE SET value = excluded.value", (key, value))

    def close(self):
        if self.sql is not None:
            self.sql.close()
            self.sql = None

    ################## Load / save #####################

    def load(self, store) -> int:
        """
        Fills the store from disk and returns the number of sites loaded.
        No database file means a first run and an empty store. Anything
        unreadable raises StorageUnavailable.
        """
        if not os.path.exists(self.path):
            print(f"No database at {self.path}, starting empty")
            self.open()
            store.replace_all([])
            return 0

        self.open()
        try:
            with self._conn() as cur:
                site_rows = cur.execute("SELECT site, pv, uv FROM sites").fetchall()
                page_rows = cur.execute("SELECT site, path, pv, uv FROM pages").fetchall()
        except sqlite3.Error as e:
            raise StorageUnavailable(f"cannot read database {self.path}: {e}")

        sites: dict[str, SiteSnapshot] = dict()
        try:
            for site, pv, uv in site_rows:
                sites[site] = SiteSnapshot(site=site, pv=from_sql(pv), uv=from_sql(uv))
            for site, path, pv, uv in page_rows:
                if site not in sites:
                    # Page rows without a site row: keep the pages, zero site counts
                    sites[site] = SiteSnapshot(site=site, pv=0, uv=0)
                sites[site].pages.append(PageSnapshot.from_tuple((path, from_sql(pv), from_sql(uv))))
            store.replace_all(sites.values())
        except (ValidationError, CounterError) as e:
            if isinstance(e, StorageUnavailable):
                raise
            raise StorageUnavailable(f"database {self.path} holds invalid records: {e}")
        print(f"Loaded {len(site_rows)} sites, {len(page_rows)} pages from {self.path}")
        return len(site_rows)

    def snapshot_and_persist(self, store) -> tuple[int, int]:
        """
        Writes the store's current state as one transaction. Returns the
        number of (sites, pages) written. Raises StorageUnavailable on failure,
        in which case the previous snapshot is left untouched.
        """
        if not self._snapshot_lock.acquire(blocking=False):
            raise StorageUnavailable("previous snapshot is still running")
        try:
            snapshot = store.list()
            site_rows = [(s.site, to_sql(s.pv), to_sql(s.uv)) for s in snapshot]
            page_rows = [(s.site, p.path, to_sql(p.pv), to_sql(p.uv)) for s in snapshot for p in s.pages]
            try:
                with self._conn() as cur:
                    cur.execute("DELETE FROM pages")
                    cur.execute("DELETE FROM sites")
                    cur.executemany("INSERT INTO sites (site, pv, uv) VALUES (?,?,?)", site_rows)
                    cur.executemany("INSERT INTO pages (site, path, pv, uv) VALUES (?,?,?,?)", page_rows)
                    cur.execute("INSERT INTO metadata (key, value) VALUES (?,?) "
                                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                                (self.SNAPSHOT_KEY, str(time.time())))
            except sqlite3.Error as e:
                raise StorageUnavailable(f"snapshot to {self.path} failed: {e}")
            LOG(f"Saved {len(site_rows)} sites, {len(page_rows)} pages to {self.path}")
            return len(site_rows), len(page_rows)
        finally:
            self._snapshot_lock.release()

    def last_snapshot_at(self) -> float | None:
        v = self.lookup_metadata(self.SNAPSHOT_KEY)
        return float(v) if v is not None else None

    ################## Operation log #####################

    def add_log(self, action: str, detail: str, ip: str):
        try:
            with self._conn() as cur:
                cur.execute("INSERT INTO logs (timestamp, action, detail, ip) VALUES (?,?,?,?)",
                            (time.time(), action, detail, ip))
        except sqlite3.Error as e:
            raise StorageUnavailable(f"could not write operation log: {e}")

    def query_logs(self, page: int = 1, size: int = 20) -> tuple[list[dict], int]:
        page = max(page, 1)
        size = min(max(size, 1), 200)
        try:
            with self._conn() as cur:
                total = cur.execute("SELECT COUNT(*) FROM logs").fetchone()[0]
                rows = cur.execute(
                    "SELECT id, timestamp, action, detail, ip FROM logs ORDER BY id DESC LIMIT ? OFFSET ?",
                    (size, (page - 1) * size),
                ).fetchall()
        except sqlite3.Error as e:
            raise StorageUnavailable(f"could not read operation log: {e}")
        logs = [
            {"id": id, "timestamp": ts, "action": action, "detail": detail, "ip": ip}
            for id, ts, action, detail, ip in rows
        ]
        return logs, total


async def snapshot_task(persistence: PersistenceManager, store, interval: float, timeout: float):
    """
    Periodic save. A failed or timed-out attempt is logged and simply tried
    again on the next tick.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.wait_for(asyncio.to_thread(persistence.snapshot_and_persist, store), timeout)
        except asyncio.TimeoutError:
            ERROR(f"Snapshot timed out after {timeout}s, retrying in {interval}s")
        except StorageUnavailable as e:
            ERROR(f"Snapshot failed, retrying in {interval}s:", e)
        except Exception as e:
            ERROR(f"Unexpected snapshot error, retrying in {interval}s: {type(e).__name__}: {e}")
