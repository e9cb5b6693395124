import asyncio
import inspect
import os
from pathlib import Path
import sys
from collections.abc import Iterator

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


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
def _test_environment() -> Iterator[None]:
    saved = {key: value for key, value in os.environ.items() if key.startswith("HARVEST_")}
    for key in saved:
        os.environ.pop(key)
    try:
        yield
    finally:
        for key in [key for key in os.environ if key.startswith("HARVEST_")]:
            os.environ.pop(key)
        os.environ.update(saved)


@pytest.fixture()
def sink_dir(tmp_path: Path) -> Path:
    path = tmp_path / "gtfs"
    path.mkdir(parents=True, exist_ok=True)
    return path
