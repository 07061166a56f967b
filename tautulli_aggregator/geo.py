"""
IP 地理位置解析

- 持久缓存：geo_cache 表（永不过期，重新解析时覆盖）
- 回退：本地离线 GeoLite2 City 数据库（geoip2）

缓存 key 是规范化后的 IP（点号替换为下划线），返回给调用方前必须还原。
"""

import asyncio
import logging
import sqlite3
from pathlib import Path
from typing import Dict, Iterable, Optional

import geoip2.database
import geoip2.errors

from .database import Database
from .models import GeoLocation

logger = logging.getLogger(__name__)


def normalize_ip_key(ip: str) -> str:
    """IP -> 存储 key（192.168.1.1 -> 192_168_1_1）"""
    return ip.replace(".", "_")


def denormalize_ip_key(key: str) -> str:
    """存储 key -> IP（normalize_ip_key 的逆变换）"""
    return key.replace("_", ".")


def open_geo_reader(path: str) -> Optional[geoip2.database.Reader]:
    """
    打开离线 GeoIP 数据库

    文件缺失或损坏时返回 None，解析器退化为只读缓存模式。
    """
    db_path = Path(path)
    if not db_path.exists():
        logger.warning(f"GeoIP database not found at {db_path}; geo fallback disabled")
        return None
    try:
        reader = geoip2.database.Reader(str(db_path))
    except Exception as e:
        logger.warning(f"Could not load GeoIP database {db_path}: {e}; geo fallback disabled")
        return None
    logger.info(f"GeoIP database loaded: {db_path}")
    return reader


class GeoResolver:
    """IP -> 坐标解析器"""

    def __init__(self, db: Database, reader: Optional[geoip2.database.Reader] = None):
        self.db = db
        self.reader = reader

    def batch_resolve(self, ips: Iterable[str]) -> Dict[str, GeoLocation]:
        """
        一次查询批量读取缓存

        只返回缓存命中的 IP，不会触发离线库查询。
        """
        unique_ips = list(dict.fromkeys(ip for ip in ips if ip))
        if not unique_ips:
            return {}

        rows = self.db.get_geo_entries(normalize_ip_key(ip) for ip in unique_ips)

        result: Dict[str, GeoLocation] = {}
        for row in rows:
            if row.get("lat") and row.get("lon"):
                result[denormalize_ip_key(row["ip"])] = GeoLocation(
                    lat=row["lat"],
                    lon=row["lon"],
                    city=row.get("city"),
                    country=row.get("country")
                )
        return result

    def resolve_one(self, ip: str) -> Optional[GeoLocation]:
        """
        解析单个 IP

        缓存未命中时查询离线库，成功则写回缓存；查不到返回 None（不缓存否定结果）。
        """
        key = normalize_ip_key(ip)
        cached = self.db.get_geo_entry(key)
        if cached and cached.get("lat") and cached.get("lon"):
            return GeoLocation(
                lat=cached["lat"],
                lon=cached["lon"],
                city=cached.get("city"),
                country=cached.get("country")
            )

        location = self.lookup_offline(ip)
        if location is None:
            return None

        try:
            self.db.save_geo_entries([{
                "ip": key,
                "lat": location.lat,
                "lon": location.lon,
                "city": location.city,
                "country": location.country,
            }])
        except sqlite3.Error as e:
            logger.error(f"Failed to cache geo location for {ip}: {e}")

        return location

    def lookup_offline(self, ip: str) -> Optional[GeoLocation]:
        """查询离线 GeoIP 数据库"""
        if self.reader is None:
            return None
        try:
            response = self.reader.city(ip)
        except (geoip2.errors.AddressNotFoundError, ValueError):
            return None

        lat = response.location.latitude
        lon = response.location.longitude
        if lat is None or lon is None:
            return None
        return GeoLocation(lat=lat, lon=lon, city=response.city.name, country=response.country.iso_code)

    def cleanup(self, max_age_days: int) -> int:
        """删除超过 max_age_days 未更新的条目"""
        removed = self.db.cleanup_geo_cache(max_age_days)
        if removed:
            logger.info(f"Cleaned up {removed} stale geo cache entries (>{max_age_days} days old)")
        return removed

    def close(self):
        if self.reader is not None:
            self.reader.close()


async def run_geo_cleanup(resolver: GeoResolver, max_age_days: int, interval_hours: int = 24):
    """
    定期清理地理位置缓存

    仅在配置了 geo.cache_max_age_days 时启动。
    """
    logger.info(f"Starting geo cache cleanup task (max_age={max_age_days}d, interval={interval_hours}h)")

    while True:
        try:
            resolver.cleanup(max_age_days)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Geo cache cleanup error: {e}", exc_info=True)

        await asyncio.sleep(interval_hours * 3600)
