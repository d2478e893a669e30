import asyncio
import inspect
from pathlib import Path
import sys
from collections.abc import Iterator

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from songforge.config import override_runtime_env  # noqa: E402
from songforge.db import reset_engine_for_tests  # noqa: E402
from songforge.dependencies import get_app_config  # noqa: E402
from songforge.utils.metrics import reset_registry  # noqa: E402


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> bool | None:
    marker = pyfuncitem.get_closest_marker("asyncio")
    if marker is None:
        return None
    test_func = pyfuncitem.obj
    if not inspect.iscoroutinefunction(test_func):
        return None
    fixtureinfo = getattr(pyfuncitem, "_fixtureinfo", None)
    if fixtureinfo is None:
        return None
    kwargs = {name: pyfuncitem.funcargs[name] for name in fixtureinfo.argnames}
    asyncio.run(test_func(**kwargs))
    return True


@pytest.fixture(autouse=True)
def _test_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    data_dir = tmp_path / "data"
    data_dir.mkdir(parents=True, exist_ok=True)
    db_path = data_dir / "songforge.db"

    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{db_path}")
    monkeypatch.setenv("PROVIDER_API_KEY", "test-provider-key")
    monkeypatch.delenv("PROVIDER_CALLBACK_URL", raising=False)
    monkeypatch.delenv("RESEND_API_KEY", raising=False)
    monkeypatch.setenv("GENERATION_POLL_INTERVAL_SEC", "0.01")
    monkeypatch.setenv("GENERATION_WAIT_BUDGET_SEC", "1")
    monkeypatch.setenv("GENERATION_WEBHOOK_GRACE_SEC", "0")
    # Keep a developer's .env out of the test run.
    monkeypatch.chdir(tmp_path)

    override_runtime_env(None)
    get_app_config.cache_clear()
    reset_engine_for_tests()
    reset_registry()
    try:
        yield
    finally:
        reset_engine_for_tests()
        override_runtime_env(None)
        get_app_config.cache_clear()
