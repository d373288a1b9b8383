import threading
from contextlib import contextmanager

import hazelcast
import hazelcast.errors
import psycopg
import redis
from psycopg_pool import ConnectionPool


class StoreError(Exception):
    """A read or write against the key-value store failed."""


class StoreConnectionError(StoreError):
    """The store could not be reached."""


def parse_count(raw) -> int:
    """Decode a stored counter value; a missing key counts as 0."""
    if raw is None:
        return 0
    if isinstance(raw, bytes):
        raw = raw.decode()
    s = str(raw).strip()
    if not (s.isascii() and s.isdigit()):
        raise StoreError(f"stored counter is not a non-negative integer: {raw!r}")
    return int(s)


@contextmanager
def _translate(errors, what: str, connection_errors=()):
    try:
        yield
    except connection_errors as e:
        raise StoreConnectionError(f"{what}: {e}") from e
    except errors as e:
        raise StoreError(f"{what}: {e}") from e


class Store:
    """Minimal key-value surface the counter needs."""

    name = "store"

    def connect(self) -> None:
        pass

    def get(self, key: str):
        raise NotImplementedError

    def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    def set_if_absent(self, key: str, value: str) -> bool:
        raise NotImplementedError

    def incr(self, key: str) -> int:
        raise NotImplementedError

    def close(self) -> None:
        pass


class MemoryStore(Store):
    name = "mem"

    def __init__(self):
        self._data = {}
        self._lock = threading.Lock()

    def get(self, key):
        with self._lock:
            return self._data.get(key)

    def set(self, key, value):
        with self._lock:
            self._data[key] = str(value)

    def set_if_absent(self, key, value):
        with self._lock:
            if key in self._data:
                return False
            self._data[key] = str(value)
            return True

    def incr(self, key):
        with self._lock:
            v = parse_count(self._data.get(key)) + 1
            self._data[key] = str(v)
            return v


class RedisStore(Store):
    name = "redis"

    def __init__(self, url: str, client=None):
        self.url = url
        self._client = client or redis.Redis.from_url(url, decode_responses=True)

    def _ops(self, what):
        return _translate(redis.RedisError, what, (redis.ConnectionError, redis.TimeoutError))

    def connect(self):
        with self._ops(f"connect {self.url}"):
            self._client.ping()

    def get(self, key):
        with self._ops(f"GET {key}"):
            v = self._client.get(key)
        if isinstance(v, bytes):
            v = v.decode()
        return v

    def set(self, key, value):
        with self._ops(f"SET {key}"):
            self._client.set(key, str(value))

    def set_if_absent(self, key, value):
        with self._ops(f"SET {key} NX"):
            return bool(self._client.set(key, str(value), nx=True))

    def incr(self, key):
        with self._ops(f"INCR {key}"):
            return int(self._client.incr(key))

    def close(self):
        self._client.close()


class HazelcastStore(Store):
    """Strings in a Hazelcast map; increments go through replace_if_same."""

    name = "hazelcast"
    map_name = "visit-counter"

    def __init__(self, cluster_name: str, members: list[str],
                 connect_timeout: float = 15.0, client=None):
        self.cluster_name = cluster_name
        self.members = members
        self.connect_timeout = connect_timeout
        self._client = client
        self._map = None

    def _ops(self, what):
        return _translate(hazelcast.errors.HazelcastError, what,
                          (hazelcast.errors.IllegalStateError,
                           hazelcast.errors.TargetDisconnectedError))

    def connect(self):
        with self._ops(f"connect cluster_name={self.cluster_name} members={self.members}"):
            if self._client is None:
                self._client = hazelcast.HazelcastClient(
                    cluster_name=self.cluster_name,
                    cluster_members=self.members,
                    cluster_connect_timeout=self.connect_timeout,
                )
            self._map = self._client.get_map(self.map_name).blocking()

    def _m(self):
        if self._map is None:
            # cluster was unreachable so far, try again
            self.connect()
        return self._map

    def get(self, key):
        m = self._m()
        with self._ops(f"get {key}"):
            return m.get(key)

    def set(self, key, value):
        m = self._m()
        with self._ops(f"put {key}"):
            m.set(key, str(value))

    def set_if_absent(self, key, value):
        m = self._m()
        with self._ops(f"put_if_absent {key}"):
            return m.put_if_absent(key, str(value)) is None

    def incr(self, key):
        m = self._m()
        with self._ops(f"incr {key}"):
            while True:
                old = m.get(key)
                if old is None:
                    if m.put_if_absent(key, "1") is None:
                        return 1
                    continue
                new = parse_count(old) + 1
                if m.replace_if_same(key, old, str(new)):
                    return new

    def close(self):
        if self._client is not None:
            self._client.shutdown()


class PgStore(Store):
    name = "pg"

    CREATE = "CREATE TABLE IF NOT EXISTS kv_store (key TEXT PRIMARY KEY, value TEXT NOT NULL)"

    def __init__(self, dsn: str, max_size: int = 20, connect_timeout: float = 5.0, pool=None):
        self.dsn = dsn
        self.connect_timeout = connect_timeout
        self._pool = pool or ConnectionPool(conninfo=dsn, min_size=1, max_size=max_size, open=False)

    def _ops(self, what):
        return _translate(psycopg.Error, what, (psycopg.OperationalError,))

    @contextmanager
    def _cursor(self, what):
        with self._ops(what):
            with self._pool.connection(timeout=self.connect_timeout) as conn:
                with conn.cursor() as cur:
                    yield cur

    def connect(self):
        # the pool keeps retrying in the background if the first attempt fails
        self._pool.open(wait=False)
        with self._cursor("connect") as cur:
            cur.execute(self.CREATE)

    def get(self, key):
        with self._cursor(f"select {key}") as cur:
            cur.execute("SELECT value FROM kv_store WHERE key = %s", (key,))
            row = cur.fetchone()
        return row[0] if row else None

    def set(self, key, value):
        with self._cursor(f"upsert {key}") as cur:
            cur.execute(
                "INSERT INTO kv_store (key, value) VALUES (%s, %s) "
                "ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value",
                (key, str(value)),
            )

    def set_if_absent(self, key, value):
        with self._cursor(f"insert {key}") as cur:
            cur.execute(
                "INSERT INTO kv_store (key, value) VALUES (%s, %s) ON CONFLICT (key) DO NOTHING",
                (key, str(value)),
            )
            return cur.rowcount == 1

    def incr(self, key):
        with self._cursor(f"incr {key}") as cur:
            cur.execute(
                "INSERT INTO kv_store (key, value) VALUES (%s, '1') "
                "ON CONFLICT (key) DO UPDATE SET value = (kv_store.value::bigint + 1)::text "
                "RETURNING value",
                (key,),
            )
            return int(cur.fetchone()[0])

    def close(self):
        self._pool.close()


def build_store(settings) -> Store:
    if settings.storage == "redis":
        return RedisStore(settings.redis_url)
    if settings.storage == "hazelcast":
        return HazelcastStore(settings.hc_cluster_name, list(settings.hc_members))
    if settings.storage == "pg":
        return PgStore(settings.pg_dsn, max_size=settings.threads)
    if settings.storage == "mem":
        return MemoryStore()
    raise ValueError(f"unknown storage: {settings.storage}")
