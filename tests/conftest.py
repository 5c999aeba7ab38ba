from __future__ import annotations

import shutil
import sys
from pathlib import Path

import pytest

# uv/pytest may run without installing the project; ensure repo root is importable.
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from blockbench.core.config import Config  # noqa: E402
from blockbench.core.store import Store  # noqa: E402


@pytest.fixture()
def temp_dir(tmp_path: Path) -> Path:
    return tmp_path


@pytest.fixture()
def test_config(temp_dir: Path) -> Config:
    """Config fixture that points data_dir to a temp directory."""

    repo_root = Path(__file__).resolve().parents[1]
    cfg_src = repo_root / "config" / "default.yaml"
    cfg_dst_dir = temp_dir / "config"
    cfg_dst_dir.mkdir(parents=True, exist_ok=True)

    # copy default + presets
    shutil.copy2(cfg_src, cfg_dst_dir / "default.yaml")
    shutil.copytree(repo_root / "config" / "presets", cfg_dst_dir / "presets")

    c = Config.from_yaml(cfg_dst_dir / "default.yaml")
    data = c.data.model_copy(update={"provider": "static"})
    return c.model_copy(update={"data_dir": temp_dir / "data", "config_dir": cfg_dst_dir, "data": data})


@pytest.fixture()
def store(temp_dir: Path):
    s = Store(temp_dir / "data" / "blockbench.db")
    yield s
    s.close()


@pytest.fixture()
def api_app(test_config: Config, store: Store, monkeypatch: pytest.MonkeyPatch):
    """App wired to the temp config and store (ASGITransport skips lifespan)."""

    monkeypatch.setenv("BLOCKBENCH_INSECURE_OK", "1")
    monkeypatch.chdir(REPO_ROOT)
    from api.main import create_app

    app = create_app()
    app.state.config = test_config
    app.state.store = store
    return app


@pytest.fixture()
def anyio_backend() -> str:
    """The project is built on asyncio; don't run async tests under other backends."""

    return "asyncio"
