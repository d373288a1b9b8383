from contextlib import contextmanager

import psycopg
import redis

from visit_counter.store import MemoryStore, StoreConnectionError


class FlakyStore(MemoryStore):
    """
    MemoryStore that can be taken down, to simulate an unreachable store.
    """

    name = "flaky"

    def __init__(self):
        super().__init__()
        self.down = False
        self.writes = 0

    def _check(self):
        if self.down:
            raise StoreConnectionError("store is down")

    def connect(self):
        self._check()

    def get(self, key):
        self._check()
        return super().get(key)

    def set(self, key, value):
        self._check()
        self.writes += 1
        super().set(key, value)

    def set_if_absent(self, key, value):
        self._check()
        return super().set_if_absent(key, value)

    def incr(self, key):
        self._check()
        return super().incr(key)


class FakeRedis:
    """Just enough of redis.Redis for RedisStore."""

    def __init__(self):
        self.data = {}
        self.down = False
        self.closed = False

    def _check(self):
        if self.down:
            raise redis.ConnectionError("Error 111 connecting to my-redis:6379. Connection refused.")

    def ping(self):
        self._check()
        return True

    def get(self, key):
        self._check()
        return self.data.get(key)

    def set(self, key, value, nx=False):
        self._check()
        if nx and key in self.data:
            return None
        self.data[key] = value
        return True

    def incr(self, key):
        self._check()
        try:
            v = int(self.data.get(key, "0")) + 1
        except ValueError:
            raise redis.ResponseError("value is not an integer or out of range") from None
        self.data[key] = str(v)
        return v

    def close(self):
        self.closed = True


class FakeHzMap:
    def __init__(self):
        self.data = {}
        self.lost_races = 0

    def blocking(self):
        return self

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value):
        self.data[key] = value

    def put_if_absent(self, key, value):
        old = self.data.get(key)
        if old is None:
            self.data[key] = value
        return old

    def replace_if_same(self, key, old, new):
        # first attempt loses against a concurrent writer
        if self.lost_races == 0:
            self.lost_races += 1
            self.data[key] = str(int(self.data[key]) + 1)
            return False
        if self.data.get(key) != old:
            return False
        self.data[key] = new
        return True


class FakeHzClient:
    def __init__(self):
        self.map = FakeHzMap()
        self.map_names = []
        self.shut_down = False

    def get_map(self, name):
        self.map_names.append(name)
        return self.map

    def shutdown(self):
        self.shut_down = True


class FakeCursor:
    def __init__(self, pool):
        self.pool = pool
        self.rowcount = 0
        self._row = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=()):
        if self.pool.error is not None:
            raise self.pool.error
        self.pool.executed.append((sql, params))
        self._row = self.pool.rows.pop(0) if self.pool.rows else None
        self.rowcount = 0 if self._row is None else 1

    def fetchone(self):
        return self._row


class FakeConnection:
    def __init__(self, pool):
        self.pool = pool

    def cursor(self):
        return FakeCursor(self.pool)


class FakePgPool:
    """Replays canned rows; every execute() consumes one (None when empty)."""

    def __init__(self, rows=None, error=None):
        self.rows = list(rows or [])
        self.error = error
        self.executed = []
        self.opened = False
        self.closed = False

    def open(self, wait=True):
        self.opened = True

    @contextmanager
    def connection(self, timeout=None):
        if self.closed:
            raise psycopg.OperationalError("the pool is closed")
        yield FakeConnection(self)

    def close(self):
        self.closed = True
