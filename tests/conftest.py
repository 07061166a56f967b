"""
pytest 公共配置
"""

import sys
from pathlib import Path

import pytest

# 添加项目路径到 sys.path
sys.path.insert(0, str(Path(__file__).parent.parent))

from tautulli_aggregator.config import reset_config
from tautulli_aggregator.database import reset_db


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path, monkeypatch):
    """每个测试使用独立的配置和数据库单例"""
    monkeypatch.setenv("TAUTULLI_AGGREGATOR_CONFIG", str(tmp_path / "missing-config.yaml"))
    monkeypatch.setenv("TAUTULLI_AGGREGATOR_DATABASE__PATH", str(tmp_path / "default.db"))
    reset_config()
    reset_db()
    yield
    reset_config()
    reset_db()
