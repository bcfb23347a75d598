import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Seed the environment before anything imports settings or builds the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="tourpass_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# In-process rate limiting keeps the suite independent of a Redis server
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tourpass.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # A fresh state directory per test; MemoryStore reloads whatever it finds there
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    reset_runtime_for_tests()
    yield


@pytest.fixture
def outbox(monkeypatch):
    """Capture verification and reset tokens instead of emailing them."""
    runtime = get_runtime()
    sent = {"verification": [], "password_reset": []}

    def _capture(kind):
        def _send(to_address, token):
            sent[kind].append((to_address, token))
            return True

        return _send

    monkeypatch.setattr(runtime.email, "send_email_verification", _capture("verification"))
    monkeypatch.setattr(runtime.email, "send_password_reset", _capture("password_reset"))
    return sent


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
