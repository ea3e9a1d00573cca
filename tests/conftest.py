import asyncio
import inspect
import json
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="lowcode_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
# Rate limits and cached responses use the in-process fallbacks
os.environ["REDIS_URL"] = ""

ADMIN_TOKEN = "admin-token"
USER_TOKEN = "user-token"
READER_TOKEN = "reader-token"

TEST_TOKENS = {
    ADMIN_TOKEN: {"id": "admin-1", "roles": ["admin"]},
    USER_TOKEN: {"id": "user-1", "roles": ["member"], "permissions": ["orders:write"]},
    READER_TOKEN: {"id": "user-2", "roles": ["member"], "permissions": ["orders:read"]},
}
os.environ["AUTH_STATIC_TOKENS"] = json.dumps(TEST_TOKENS)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from lowcode_runtime.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # A fresh state directory per test keeps persisted definitions from leaking
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    runtime = reset_runtime_for_tests()
    yield runtime
    monkeypatch.undo()
    reset_runtime_for_tests()


@pytest.fixture
def runtime(reset_runtime_state):
    return reset_runtime_state


@pytest.fixture
def client():
    from fastapi.testclient import TestClient

    from lowcode_runtime import app as app_module

    return TestClient(app_module.app)


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}


@pytest.fixture
def user_headers():
    return {"Authorization": f"Bearer {USER_TOKEN}"}


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
