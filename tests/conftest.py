"""Pytest 配置和 fixtures。"""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

# 项目根目录
PROJECT_ROOT = Path(__file__).parent.parent

# 添加 src 目录到 Python 路径
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

FIXTURES_DIR = PROJECT_ROOT / "tests" / "fixtures"
CHATTY_CHILD = FIXTURES_DIR / "chatty_child.py"


def pytest_collection_modifyitems(config, items) -> None:
    """POSIX 专属用例在 Windows 上跳过。"""
    if sys.platform != "win32":
        return
    skip_posix = pytest.mark.skip(reason="requires POSIX process groups and signals")
    for item in items:
        if "posix" in item.keywords:
            item.add_marker(skip_posix)


@pytest.fixture(autouse=True)
def clean_config(monkeypatch: pytest.MonkeyPatch):
    """每个用例使用不受外部 PROCMAN_* 变量影响的全新配置。"""
    import procman.config as config_module

    for key in list(os.environ):
        if key.startswith("PROCMAN_"):
            monkeypatch.delenv(key, raising=False)
    config_module._config = None
    yield
    config_module._config = None


@pytest.fixture
def chatty_child() -> list[str]:
    """chatty_child.py 的 argv 前缀。"""
    return [sys.executable, str(CHATTY_CHILD)]


def py(code: str) -> list[str]:
    """argv running a Python snippet in a fresh interpreter."""
    return [sys.executable, "-c", code]
