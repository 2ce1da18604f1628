import fnmatch
import os
import sys
from collections import defaultdict
from pathlib import Path
from urllib.parse import parse_qs

# Keep the shared runtime off the network before anything imports otpauth
os.environ.setdefault("AUTH_OTP_MOCK", "true")
os.environ.setdefault("AUTH_OTP_WAIT_MS", "0")
os.environ.setdefault("BASE_URL", "http://api.example.test")
os.environ.setdefault("LOG_JSON", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import httpx  # noqa: E402
import pytest  # noqa: E402
from redis.exceptions import ConnectionError as RedisConnectionError  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from otpauth.config import Settings  # noqa: E402
from otpauth.service.auth import LOGIN_PATH  # noqa: E402
from otpauth.service.otp import EMAIL_OTP_PATH, PHONE_OTP_PATH  # noqa: E402
from otpauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from otpauth.storage.redis_pool import RedisConnectionPool  # noqa: E402


class FakeRedisServer:
    """In-memory stand-in for a redis server shared by every fake pool."""

    def __init__(self):
        self.databases = defaultdict(dict)
        self.pools = []
        self.fail_with = None
        self.fail_on_ping = False
        self.fail_on_select_restore = False
        self.refuse_connections = False

    def new_pool(self, db=0):
        pool = FakeConnectionPool(self, db)
        self.pools.append(pool)
        return pool


class FakeConnectionPool:
    """Counts borrows and releases; exposes ``_available_connections`` like redis-py."""

    def __init__(self, server, db):
        self.server = server
        self.db = db
        self.borrowed = 0
        self.released = 0
        self.disconnected = False
        self._available_connections = []

    def disconnect(self):
        self.disconnected = True
        self._available_connections.clear()


class FakeConnection:
    def __init__(self):
        self.disconnected = False

    def disconnect(self):
        self.disconnected = True


class FakeRedis:
    """Single-connection client handle bound to a FakeConnectionPool."""

    def __init__(self, pool):
        if pool.server.refuse_connections:
            raise RedisConnectionError("connection refused")
        self.pool = pool
        self.server = pool.server
        self.db = pool.db
        self.closed = False
        self.selects = []
        self.connection = FakeConnection()
        if pool._available_connections:
            pool._available_connections.pop()
        pool.borrowed += 1

    def _check(self):
        if self.server.fail_with is not None:
            raise self.server.fail_with

    def ping(self):
        if self.server.fail_on_ping:
            raise RedisConnectionError("ping failed")
        self._check()
        return True

    def select(self, db):
        if self.server.fail_on_select_restore and db == self.pool.db and self.selects:
            raise RedisConnectionError("select failed")
        self._check()
        self.selects.append(db)
        self.db = db
        return True

    def get(self, key):
        self._check()
        return self.server.databases[self.db].get(key)

    def set(self, key, value, ex=None):
        self._check()
        self.server.databases[self.db][key] = value
        return True

    def hset(self, key, mapping=None):
        self._check()
        data = self.server.databases[self.db].setdefault(key, {})
        added = sum(1 for field in mapping or {} if field not in data)
        data.update(mapping or {})
        return added

    def delete(self, *keys):
        self._check()
        data = self.server.databases[self.db]
        return sum(1 for key in keys if data.pop(key, None) is not None)

    def scan_iter(self, match=None, count=None):
        self._check()
        for key in list(self.server.databases[self.db]):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    def close(self):
        if not self.closed:
            self.closed = True
            self.pool.released += 1
            self.pool._available_connections.append(self)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def redis_server():
    return FakeRedisServer()


@pytest.fixture
def make_settings(tmp_path):
    def _make(**overrides):
        values = {
            "base_url": "http://api.example.test",
            "auth_otp_mock": False,
            "auth_otp_wait_ms": 0,
            "auth_headers_dir": str(tmp_path / "headers"),
        }
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def make_pool(redis_server):
    created = []

    def _make(settings):
        pool = RedisConnectionPool(
            settings,
            pool_factory=lambda s: redis_server.new_pool(s.redis_database),
            handle_factory=FakeRedis,
        )
        created.append(pool)
        return pool

    yield _make
    for pool in created:
        pool.close()


# Window [6:13] of this value, stripped, is the OTP "654321"
STORED_OTP_VALUE = "seed00654321 "


class FakeBackend:
    """MockTransport handler for the OTP trigger and verify-otp endpoints.

    A successful trigger persists ``stored_value`` under the OTP key in the
    fake redis server, the way the real backend does.
    """

    base_url = "http://api.example.test"

    def __init__(self, server):
        self.server = server
        self.requests = []
        self.trigger_status = 200
        self.trigger_error = None
        self.trigger_cookie = None
        self.stored_value = STORED_OTP_VALUE
        self.otp_key_prefix = "onetimepasswordsixdigit:v2:"
        self.otp_database = 0
        self.login_status = 200
        self.login_error = None
        self.login_body = {"data": {"access_token": "access-123"}}
        self.login_cookie = None

    @staticmethod
    def form(request):
        return {key: values[0] for key, values in parse_qs(request.content.decode()).items()}

    def requests_to(self, path):
        return [request for request in self.requests if request.url.path == path]

    def handler(self, request):
        request.read()
        self.requests.append(request)
        path = request.url.path
        if path in (EMAIL_OTP_PATH, PHONE_OTP_PATH):
            if self.trigger_error is not None:
                raise self.trigger_error
            form = self.form(request)
            identity = form.get("email") or form.get("phone")
            if self.trigger_status == 200 and self.stored_value is not None:
                key = self.otp_key_prefix + identity
                self.server.databases[self.otp_database][key] = self.stored_value
            cookie = self.trigger_cookie
            if callable(cookie):
                cookie = cookie(identity)
            headers = {"set-cookie": cookie} if cookie else {}
            return httpx.Response(self.trigger_status, json={"status": "sent"}, headers=headers)
        if path == LOGIN_PATH:
            if self.login_error is not None:
                raise self.login_error
            headers = {"set-cookie": self.login_cookie} if self.login_cookie else {}
            return httpx.Response(self.login_status, json=self.login_body, headers=headers)
        return httpx.Response(404, json={"error": "not found"})

    def client(self):
        return httpx.Client(base_url=self.base_url, transport=httpx.MockTransport(self.handler))


@pytest.fixture
def backend(redis_server):
    return FakeBackend(redis_server)
