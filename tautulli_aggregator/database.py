"""
数据库操作抽象层

封装所有 SQLite 操作：
- servers: 上游 Tautulli 服务器注册表
- geo_cache: IP 地理位置持久缓存
"""

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .config import get_config


SCHEMA = """
CREATE TABLE IF NOT EXISTS servers (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    tautulli_url TEXT NOT NULL,
    api_key_secret TEXT NOT NULL,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS geo_cache (
    ip TEXT PRIMARY KEY,
    lat REAL,
    lon REAL,
    city TEXT,
    country TEXT,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);
"""


class Database:
    """数据库操作类"""

    def __init__(self, db_path: Optional[str] = None, timeout: Optional[int] = None):
        """
        初始化数据库连接

        Args:
            db_path: 数据库文件路径，不指定则从配置加载
            timeout: SQLite 锁等待时间（秒）
        """
        if db_path is None or timeout is None:
            config = get_config()
            db_path = db_path or config.database.path
            timeout = timeout or config.database.timeout

        self.db_path = Path(db_path)
        self.timeout = timeout

        # 确保目录存在
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def get_conn(self):
        """
        获取数据库连接（上下文管理器）

        使用方式：
            with db.get_conn() as conn:
                cursor = conn.execute("SELECT ...")
        """
        conn = sqlite3.connect(str(self.db_path), timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def init_schema(self):
        """创建表结构（幂等）"""
        with self.get_conn() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(SCHEMA)

    # =========================================================================
    # 服务器注册表
    # =========================================================================

    def get_all_servers(self) -> List[Dict[str, Any]]:
        """获取所有服务器（按 ID 排序，作为扇出的输入顺序）"""
        with self.get_conn() as conn:
            cursor = conn.execute("""
                SELECT id, name, tautulli_url, api_key_secret, created_at
                FROM servers
                ORDER BY id
            """)
            return [dict(row) for row in cursor.fetchall()]

    def get_server_by_id(self, server_id: int) -> Optional[Dict[str, Any]]:
        """根据 ID 获取服务器"""
        with self.get_conn() as conn:
            cursor = conn.execute("""
                SELECT id, name, tautulli_url, api_key_secret, created_at
                FROM servers
                WHERE id = ?
            """, (server_id,))
            row = cursor.fetchone()
            return dict(row) if row else None

    def create_server(self, name: str, tautulli_url: str, api_key: str) -> int:
        """
        创建服务器

        Returns:
            新创建的服务器 ID
        """
        with self.get_conn() as conn:
            cursor = conn.execute("""
                INSERT INTO servers (name, tautulli_url, api_key_secret)
                VALUES (?, ?, ?)
            """, (name, tautulli_url, api_key))
            return cursor.lastrowid

    def update_server(self, server_id: int, name: str, tautulli_url: str, api_key: str) -> bool:
        """
        更新服务器

        Returns:
            是否更新成功
        """
        with self.get_conn() as conn:
            cursor = conn.execute("""
                UPDATE servers SET name = ?, tautulli_url = ?, api_key_secret = ?
                WHERE id = ?
            """, (name, tautulli_url, api_key, server_id))
            return cursor.rowcount > 0

    def delete_server(self, server_id: int) -> bool:
        """
        删除服务器

        Returns:
            是否删除成功
        """
        with self.get_conn() as conn:
            cursor = conn.execute("DELETE FROM servers WHERE id = ?", (server_id,))
            return cursor.rowcount > 0

    # =========================================================================
    # 地理位置缓存（ip 列存放的是规范化后的 key）
    # =========================================================================

    def get_geo_entries(self, keys: Iterable[str]) -> List[Dict[str, Any]]:
        """一次查询批量读取缓存条目"""
        keys = list(keys)
        if not keys:
            return []
        placeholders = ",".join("?" for _ in keys)
        with self.get_conn() as conn:
            cursor = conn.execute(
                f"SELECT ip, lat, lon, city, country, updated_at FROM geo_cache WHERE ip IN ({placeholders})",
                keys
            )
            return [dict(row) for row in cursor.fetchall()]

    def get_geo_entry(self, key: str) -> Optional[Dict[str, Any]]:
        """读取单个缓存条目"""
        with self.get_conn() as conn:
            cursor = conn.execute(
                "SELECT ip, lat, lon, city, country, updated_at FROM geo_cache WHERE ip = ?",
                (key,)
            )
            row = cursor.fetchone()
            return dict(row) if row else None

    def save_geo_entries(self, entries: List[Dict[str, Any]]):
        """写入（覆盖）缓存条目，单个事务完成"""
        if not entries:
            return
        now = datetime.utcnow().strftime("%Y-%m-%d %H:%M:%S")
        with self.get_conn() as conn:
            conn.executemany("""
                INSERT OR REPLACE INTO geo_cache (ip, lat, lon, city, country, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, [
                (e["ip"], e["lat"], e["lon"], e.get("city"), e.get("country"), now)
                for e in entries
            ])

    def cleanup_geo_cache(self, max_age_days: int) -> int:
        """
        清理过期的地理位置缓存

        Returns:
            删除的条目数
        """
        cutoff = (datetime.utcnow() - timedelta(days=max_age_days)).strftime("%Y-%m-%d %H:%M:%S")
        with self.get_conn() as conn:
            cursor = conn.execute("DELETE FROM geo_cache WHERE updated_at < ?", (cutoff,))
            return cursor.rowcount


# 全局数据库实例（延迟加载）
_db: Optional[Database] = None


def get_db() -> Database:
    """获取全局数据库实例"""
    global _db
    if _db is None:
        _db = Database()
        _db.init_schema()
    return _db


def reset_db():
    """重置数据库实例（主要用于测试）"""
    global _db
    _db = None
