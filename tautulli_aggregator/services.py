"""
查询编排

每个入站查询的流程：
1. 从注册表读取服务器列表（可按 server_id 过滤）
2. 扇出到所有服务器（必要时经过元数据缓存）
3. 合并结果，网络视图再补全会话坐标
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Sequence

import httpx

from .config import AppConfig
from .database import Database
from .fanout import FanoutQuery, fan_out, settle_all
from .geo import GeoResolver
from .models import (
    ActiveSession,
    AnalyticsResponse,
    MetadataCache,
    MetadataCacheEntry,
    MetadataSnapshot,
    NetworkStatus,
    SessionsResponse,
    UpstreamServer,
    UserDetailResponse,
    UserTableItem,
    WatchStatsResponse,
)
from .reducer import (
    count_resolutions,
    merge_active_sessions,
    merge_analytics,
    merge_home_stats,
    merge_network_status,
    merge_user_history,
    merge_users_table,
    needs_geo,
    parse_hourly,
    parse_platform_counts,
    parse_stream_types,
    to_int,
)
from .upstream import UpstreamResponseError, describe_error, fetch_command

logger = logging.getLogger(__name__)


class NoServersConfigured(LookupError):
    """注册表中没有任何服务器"""


def filter_servers(servers: Sequence[UpstreamServer], server_filter: Optional[str]) -> List[UpstreamServer]:
    """
    按 server_id 过滤

    None / "all" 表示全部；无法解析的 ID 不匹配任何服务器。
    """
    if server_filter is None or server_filter == "" or server_filter == "all":
        return list(servers)
    try:
        wanted = int(server_filter)
    except ValueError:
        return []
    return [s for s in servers if s.id == wanted]


def metadata_cache_key(server: UpstreamServer) -> str:
    return f"server-{server.id}"


def _table_rows(data: Any) -> List[Any]:
    """表格类命令的数据在 data.data 下"""
    if isinstance(data, dict):
        rows = data.get("data")
        return rows if isinstance(rows, list) else []
    if isinstance(data, list):
        return data
    return []


class AggregationService:
    """
    聚合服务

    持有注册表、HTTP 客户端、元数据缓存和地理解析器，由应用工厂创建一次。
    """

    def __init__(
        self,
        db: Database,
        client: httpx.AsyncClient,
        metadata_cache: MetadataCache,
        geo: Optional[GeoResolver],
        config: AppConfig
    ):
        self.db = db
        self.client = client
        self.metadata_cache = metadata_cache
        self.geo = geo
        self.config = config

    @property
    def upstream(self):
        return self.config.upstream

    def load_servers(self, server_filter: Optional[str] = None) -> List[UpstreamServer]:
        """读取注册表（一次聚合期间不再变化）"""
        servers = [UpstreamServer.from_row(row) for row in self.db.get_all_servers()]
        return filter_servers(servers, server_filter)

    def require_servers(self, server_filter: Optional[str] = None) -> List[UpstreamServer]:
        """
        同 load_servers，但注册表为空时抛出 NoServersConfigured

        过滤后为空不算错误，返回空列表。
        """
        servers = self.load_servers()
        if not servers:
            raise NoServersConfigured("No servers configured")
        return filter_servers(servers, server_filter)

    # =========================================================================
    # 元数据缓存
    # =========================================================================

    async def get_snapshot(self, server: UpstreamServer) -> MetadataSnapshot:
        """
        读取 home stats + 用户列表快照

        缓存未过期时直接返回；否则并发拉取两项，全部成功后才写入缓存。
        """
        key = metadata_cache_key(server)
        now = time.time()
        cached = self.metadata_cache.get(key)
        if cached is not None and cached.is_fresh(self.config.cache.metadata_ttl_seconds, now):
            return cached.stats

        home_stats, users = await asyncio.gather(
            fetch_command(self.client, server, "get_home_stats", timeout=self.upstream.standard_timeout),
            fetch_command(self.client, server, "get_users", timeout=self.upstream.standard_timeout)
        )
        snapshot = MetadataSnapshot(home_stats=home_stats, users=users)
        self.metadata_cache.set(key, MetadataCacheEntry(key=key, timestamp=now, stats=snapshot))
        logger.debug(f"Metadata cache refreshed for {server.name}")
        return snapshot

    # =========================================================================
    # 网络状态
    # =========================================================================

    async def network_status(self) -> NetworkStatus:
        """完整网络状态：实时会话 + 缓存的 24h 播放数和用户数"""
        servers = self.load_servers()
        if not servers:
            return NetworkStatus()

        async def _worker(server: UpstreamServer) -> Dict[str, Any]:
            activity = await fetch_command(
                self.client, server, "get_activity", timeout=self.upstream.standard_timeout
            )
            snapshot = await self.get_snapshot(server)
            return {"activity": activity, "home_stats": snapshot.home_stats, "users": snapshot.users}

        results = await settle_all(servers, _worker, label="network status")
        status = merge_network_status(results)
        self.fill_locations(status.active_sessions)
        return status

    async def active_sessions(self) -> SessionsResponse:
        """仅活跃会话（高频轮询，不经过元数据缓存）"""
        servers = self.load_servers()
        if not servers:
            return SessionsResponse()

        query = FanoutQuery(command="get_activity", timeout=self.upstream.standard_timeout)
        results = await fan_out(self.client, servers, query)
        response = merge_active_sessions(results)
        self.fill_locations(response.active_sessions)
        return response

    def fill_locations(self, sessions: List[ActiveSession]):
        """
        为缺少坐标的会话补全经纬度

        先对去重后的 IP 做一次批量缓存查询，剩余未命中的再逐个走离线库。
        """
        if self.geo is None:
            return
        pending = [s for s in sessions if needs_geo(s)]
        if not pending:
            return

        locations = self.geo.batch_resolve(s.ip_address for s in pending)
        for session in pending:
            location = locations.get(session.ip_address)
            if location is None:
                location = self.geo.resolve_one(session.ip_address)
                if location is None:
                    continue
                locations[session.ip_address] = location
            session.latitude = location.lat
            session.longitude = location.lon

    # =========================================================================
    # 观看统计
    # =========================================================================

    async def watch_stats(self, days: int = 30, stat_type: str = "plays", server_filter: Optional[str] = None) -> WatchStatsResponse:
        servers = self.require_servers(server_filter)
        query = FanoutQuery(
            command="get_home_stats",
            params={"time_range": days, "stats_type": 1 if stat_type == "duration" else 0},
            timeout=self.upstream.stats_timeout
        )
        results = await fan_out(self.client, servers, query)
        return merge_home_stats(results, stat_type)

    async def user_detail(self, username: str, days: int = 30) -> UserDetailResponse:
        servers = self.require_servers()

        async def _worker(server: UpstreamServer) -> List[Any]:
            data = await fetch_command(
                self.client,
                server,
                "get_history",
                {"user": username, "length": self.upstream.history_length},
                timeout=self.upstream.history_timeout
            )
            return _table_rows(data)

        results = await settle_all(servers, _worker, label=f"history of {username}")
        return merge_user_history(username, results, days=days)

    # =========================================================================
    # 用户表
    # =========================================================================

    async def probe(self, server: UpstreamServer):
        """快速健康检查，失败时抛出异常使该服务器被跳过"""
        await fetch_command(self.client, server, "get_activity", timeout=self.upstream.health_timeout)

    async def users_table(self, server_filter: Optional[str] = None) -> List[UserTableItem]:
        servers = self.load_servers(server_filter)
        if not servers:
            return []

        async def _worker(server: UpstreamServer) -> List[Any]:
            await self.probe(server)
            data = await fetch_command(
                self.client,
                server,
                "get_users_table",
                {
                    "length": self.upstream.users_table_length,
                    "order_column": "last_seen",
                    "order_dir": "desc",
                },
                timeout=self.upstream.users_timeout
            )
            return _table_rows(data)

        results = await settle_all(servers, _worker, label="users table")
        return merge_users_table(results)

    # =========================================================================
    # 分析图表
    # =========================================================================

    async def _optional_command(
        self,
        server: UpstreamServer,
        cmd: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None
    ) -> Any:
        """信封 result != success 时只跳过该部分（返回 None）；传输错误照常抛出"""
        try:
            return await fetch_command(
                self.client, server, cmd, params,
                timeout=timeout or self.upstream.standard_timeout
            )
        except UpstreamResponseError as e:
            logger.warning(f"[{server.name}] {cmd} returned non-success: {e}")
            return None

    async def _genre_counts(self, server: UpstreamServer, home_stats: Any) -> Dict[str, int]:
        """对 top_movies / top_tv 的前 N 项并发查询元数据，按播放次数加权统计类型"""
        items: List[Dict[str, Any]] = []
        if isinstance(home_stats, list):
            for stat_id in ("top_movies", "top_tv"):
                for stat in home_stats:
                    if isinstance(stat, dict) and stat.get("stat_id") == stat_id:
                        items.extend(r for r in stat.get("rows") or [] if isinstance(r, dict))
        items = items[:self.upstream.genre_metadata_limit]

        async def _genres(item: Dict[str, Any]) -> List[str]:
            try:
                meta = await fetch_command(
                    self.client, server, "get_metadata",
                    {"rating_key": item.get("rating_key")},
                    timeout=self.upstream.standard_timeout
                )
            except Exception as e:
                logger.debug(f"[{server.name}] get_metadata {item.get('rating_key')} ignored: {describe_error(e)}")
                return []
            genres = meta.get("genres") if isinstance(meta, dict) else None
            return [str(g) for g in genres] if isinstance(genres, list) else []

        counts: Dict[str, int] = {}
        all_genres = await asyncio.gather(*(_genres(item) for item in items))
        for item, genres in zip(items, all_genres):
            weight = to_int(item.get("total_plays")) or 1
            for genre in genres:
                counts[genre] = counts.get(genre, 0) + weight
        return counts

    async def _library_quality(self, server: UpstreamServer) -> Dict[str, Dict[str, int]]:
        """电影库的清晰度分布（剧集库暂不统计）"""
        quality: Dict[str, Dict[str, int]] = {}
        libraries = await self._optional_command(server, "get_libraries")
        if not isinstance(libraries, list):
            return quality

        for library in libraries:
            if not isinstance(library, dict) or library.get("section_type") != "movie":
                continue
            media = await self._optional_command(
                server,
                "get_library_media_info",
                {"section_id": library.get("section_id"), "length": self.upstream.history_length},
                timeout=self.upstream.library_media_timeout
            )
            rows = media.get("data") if isinstance(media, dict) else None
            if not isinstance(rows, list):
                continue
            current = quality.setdefault("Movies", {})
            for bucket, count in count_resolutions(rows).items():
                current[bucket] = current.get(bucket, 0) + count
        return quality

    async def _analytics_worker(self, server: UpstreamServer, days: int) -> Dict[str, Any]:
        await self.probe(server)
        params = {"time_range": days}

        hourly = await self._optional_command(server, "get_plays_by_hourofday", {**params, "stats_type": 0})
        platforms = await self._optional_command(server, "get_plays_by_top_10_platforms", params)
        stream_types = await self._optional_command(server, "get_stream_type_by_top_10_platforms", params)
        home_stats = await self._optional_command(server, "get_home_stats", params)

        return {
            "hourly": parse_hourly(hourly),
            "platforms": parse_platform_counts(platforms),
            "stream_types": parse_stream_types(stream_types),
            "genres": await self._genre_counts(server, home_stats),
            "library_quality": await self._library_quality(server),
        }

    async def analytics(self, days: int = 30, server_filter: Optional[str] = None) -> AnalyticsResponse:
        servers = self.require_servers(server_filter)

        async def _worker(server: UpstreamServer) -> Dict[str, Any]:
            return await self._analytics_worker(server, days)

        results = await settle_all(servers, _worker, label="analytics")
        return merge_analytics(results)
