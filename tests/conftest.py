import asyncio
import inspect
import os
import re
import shutil
import sys
import tempfile
from pathlib import Path

# Environment must be in place before anything builds Settings or the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="trustcore_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("SESSION_SECRET", "test-session-secret-for-testing-only-do-not-use")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("EMAIL_TRANSPORT", "log")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from trustcore.service.audit import RequestContext  # noqa: E402
from trustcore.service.roles import ROLE_ADMIN, ROLE_USER  # noqa: E402
from trustcore.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402

TEST_PASSWORD = "Passw0rd!123"
_TOKEN_RE = re.compile(r"token=([0-9a-f]{64})")


def _wipe_state() -> None:
    shutil.rmtree(Path(os.environ["SHARED_FS_ROOT"]) / "state", ignore_errors=True)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    _wipe_state()
    reset_runtime_for_tests()
    yield
    _wipe_state()
    reset_runtime_for_tests()


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def ctx():
    return RequestContext(client_ip="203.0.113.10", user_agent="pytest-agent/1.0")


@pytest.fixture
def make_user(runtime):
    """Factory creating a verified user with a password and platform role."""

    def _make(
        email="user@example.com",
        password=TEST_PASSWORD,
        *,
        role=ROLE_USER,
        verified=True,
        active=True,
    ):
        user = runtime.store.create_user(email, email_verified=verified, is_active=active)
        runtime.credentials.set_password(user.id, password)
        runtime.store.grant_role(user.id, ROLE_USER)
        if role != ROLE_USER:
            runtime.store.grant_role(user.id, role)
        return runtime.store.get_user(user.id)

    return _make


@pytest.fixture
def make_admin(make_user):
    def _make(email="admin@example.com", password=TEST_PASSWORD):
        return make_user(email, password, role=ROLE_ADMIN)

    return _make


def outbox_token(runtime, tag, to=None):
    """Pull the most recent emailed token for ``tag`` from the log transport."""
    for message in reversed(runtime.email.transport.outbox):
        if tag in message.tags and (to is None or message.to == to):
            match = _TOKEN_RE.search(message.text_body)
            if match:
                return match.group(1)
    return None


def outbox_tags(runtime):
    return [tag for message in runtime.email.transport.outbox for tag in message.tags]


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
