"""
数据模型定义

包括：
- 上游服务器与单服务器结果（扇出层契约）
- Pydantic 响应模型
- 元数据缓存（进程级，显式注入）
"""

import threading
import time
from typing import Any, Dict, Generic, List, Literal, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field


T = TypeVar("T")

StatType = Literal["plays", "duration"]


# =============================================================================
# 扇出层契约
# =============================================================================

class UpstreamServer(BaseModel):
    """上游 Tautulli 服务器（单次聚合期间不可变）"""
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    base_url: str
    credential: str

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "UpstreamServer":
        """由注册表行构造"""
        return cls(
            id=row["id"],
            name=row["name"],
            base_url=row["tautulli_url"],
            credential=row["api_key_secret"],
        )


class PerServerResult(BaseModel, Generic[T]):
    """单台服务器的扇出结果（请求级生命周期，合并后丢弃）"""
    server_id: int
    server_name: str
    payload: Optional[T] = None
    ok: bool = False


class MetadataSnapshot(BaseModel):
    """昂贵的快照数据：home stats + 用户列表"""
    home_stats: Any = None
    users: Any = None


class MetadataCacheEntry(BaseModel):
    """元数据缓存条目"""
    key: str
    timestamp: float
    stats: MetadataSnapshot

    def is_fresh(self, ttl_seconds: float, now: Optional[float] = None) -> bool:
        """now - timestamp < TTL"""
        if now is None:
            now = time.time()
        return now - self.timestamp < ttl_seconds


class GeoLocation(BaseModel):
    """IP 地理位置"""
    lat: float
    lon: float
    city: Optional[str] = None
    country: Optional[str] = None


# =============================================================================
# 网络状态
# =============================================================================

class ActiveSession(BaseModel):
    """当前播放会话"""
    session_id: str
    title: Optional[str] = None
    user: Optional[str] = None
    player: Optional[str] = None
    status: Optional[str] = None
    ip_address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    stream_container_decision: Optional[str] = None
    quality_profile: Optional[str] = None
    bandwidth: int = 0
    server_name: str
    server_id: int
    thumb: Optional[str] = None
    grandparent_thumb: Optional[str] = None
    art: Optional[str] = None
    grandparent_title: Optional[str] = None
    parent_media_index: Optional[str] = None
    media_index: Optional[str] = None
    year: Optional[str] = None
    duration: int = 0
    view_offset: int = 0
    progress_percent: int = 0
    media_type: Optional[str] = None


class NetworkStatus(BaseModel):
    """完整网络状态（GET /api/network/status）"""
    total_bandwidth: int = 0
    total_stream_count: int = 0
    total_transcodes: int = 0
    total_users: int = 0
    total_plays_24h: int = 0
    active_sessions: List[ActiveSession] = Field(default_factory=list)


class SessionsResponse(BaseModel):
    """仅活跃会话（GET /api/network/sessions）"""
    total_bandwidth: int = 0
    total_stream_count: int = 0
    active_sessions: List[ActiveSession] = Field(default_factory=list)


# =============================================================================
# 观看统计
# =============================================================================

class StatItem(BaseModel):
    """影片 / 剧集排名项"""
    rank: int
    title: Optional[str] = None
    thumb: Optional[str] = None
    art: Optional[str] = None
    year: Optional[str] = None
    value: int
    formatted_value: str
    users_watched: Optional[int] = None
    server_id: Optional[int] = None
    server_name: Optional[str] = None


class UserStatItem(BaseModel):
    """用户排名项"""
    rank: int
    user: Optional[str] = None
    user_thumb: Optional[str] = None
    value: int
    formatted_value: str
    server_name: str
    server_id: int


class LibraryStatItem(BaseModel):
    """媒体库排名项"""
    rank: int
    library_name: Optional[str] = None
    value: int
    formatted_value: str
    server_name: Optional[str] = None
    server_id: Optional[int] = None


class PlatformStatItem(BaseModel):
    """平台排名项"""
    rank: int
    platform: str
    value: int
    formatted_value: str


class ConcurrentStreamsItem(BaseModel):
    """单台服务器的并发峰值（不跨服务器求和）"""
    server_name: str
    server_id: int
    concurrent_streams: int = 0
    concurrent_transcodes: int = 0
    concurrent_direct_streams: int = 0
    concurrent_direct_plays: int = 0


class WatchStatsResponse(BaseModel):
    """观看统计响应（GET /api/stats）"""
    most_watched_movies: List[StatItem] = Field(default_factory=list)
    most_popular_movies: List[StatItem] = Field(default_factory=list)
    most_watched_shows: List[StatItem] = Field(default_factory=list)
    most_popular_shows: List[StatItem] = Field(default_factory=list)
    recently_watched: List[StatItem] = Field(default_factory=list)
    most_active_libraries: List[LibraryStatItem] = Field(default_factory=list)
    most_active_users: List[UserStatItem] = Field(default_factory=list)
    most_active_platforms: List[PlatformStatItem] = Field(default_factory=list)
    most_concurrent_streams: List[ConcurrentStreamsItem] = Field(default_factory=list)


# =============================================================================
# 用户
# =============================================================================

class UserTableItem(BaseModel):
    """用户表行（跨服务器按 user_id 合并）"""
    user_id: int
    username: Optional[str] = None
    friendly_name: Optional[str] = None
    thumb: Optional[str] = None
    email: Optional[str] = None
    last_seen: int = 0
    ip_address: Optional[str] = None
    platform: Optional[str] = None
    player: Optional[str] = None
    last_played: str = ""
    total_plays: int = 0
    total_duration: int = 0
    server_name: Optional[str] = None
    server_id: Optional[int] = None


class NamedCount(BaseModel):
    name: str
    count: int


class LastWatchedItem(BaseModel):
    title: Optional[str] = None
    type: Optional[str] = None
    date: int = 0
    thumb: Optional[str] = None
    server_name: str
    server_id: int


class ServerBreakdownItem(BaseModel):
    server_name: str
    server_id: int
    plays: int = 0
    duration: int = 0


class UserDetailResponse(BaseModel):
    """用户详情（GET /api/stats/user/{username}）"""
    username: str
    total_plays: int = 0
    total_duration: int = 0
    formatted_total_duration: str = "0:00:00"
    first_seen: Optional[int] = None
    last_seen: Optional[int] = None
    platforms: List[NamedCount] = Field(default_factory=list)
    players: List[NamedCount] = Field(default_factory=list)
    known_ips: List[str] = Field(default_factory=list)
    last_watched: List[LastWatchedItem] = Field(default_factory=list)
    activity_heatmap: List[int] = Field(default_factory=lambda: [0] * 24)
    server_breakdown: List[ServerBreakdownItem] = Field(default_factory=list)


# =============================================================================
# 分析图表
# =============================================================================

class HourlyActivityItem(BaseModel):
    hour: int
    plays: int = 0


class DevicePreferenceItem(BaseModel):
    name: str
    value: int  # 百分比（四舍五入，不保证总和为 100）


class PlaybackHealthItem(BaseModel):
    name: str
    value: int = 0
    color: Optional[str] = None


class LibraryQualityItem(BaseModel):
    """媒体库清晰度分布（字段名与前端图表一致）"""
    model_config = ConfigDict(populate_by_name=True)

    name: str
    uhd: int = Field(0, alias="4K")
    fhd: int = Field(0, alias="1080p")
    hd: int = Field(0, alias="720p")
    sd: int = Field(0, alias="SD")


class GenrePopularityItem(BaseModel):
    subject: str
    A: int
    fullMark: int


class AnalyticsResponse(BaseModel):
    """分析响应（GET /api/analytics）"""
    hourly_activity: List[HourlyActivityItem] = Field(default_factory=list)
    device_preferences: List[DevicePreferenceItem] = Field(default_factory=list)
    playback_health: List[PlaybackHealthItem] = Field(default_factory=list)
    library_quality: List[LibraryQualityItem] = Field(default_factory=list)
    genre_popularity: List[GenrePopularityItem] = Field(default_factory=list)


# =============================================================================
# 服务器注册表 API
# =============================================================================

class ServerResponse(BaseModel):
    """服务器响应模型（GET /api/servers）"""
    id: int
    name: str
    tautulli_url: str
    api_key_secret: Optional[str] = None  # 用于前端编辑时回填
    created_at: Optional[str] = None


class ServerCreate(BaseModel):
    """创建 / 更新服务器请求模型"""
    name: str = Field(..., min_length=1)
    tautulli_url: str = Field(..., min_length=1)
    api_key: str = Field(..., min_length=1)


# =============================================================================
# 元数据缓存
# =============================================================================

class MetadataCache:
    """
    元数据缓存

    进程级共享，由应用工厂创建并注入：
    - key 为服务器 ID，值为 MetadataCacheEntry
    - TTL 由调用方判断（entry.is_fresh）
    - 不主动淘汰，命中失效时原地覆盖
    - 服务器配置变化时整体清空
    """

    def __init__(self):
        self._entries: Dict[str, MetadataCacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[MetadataCacheEntry]:
        """读取条目，未命中返回 None"""
        with self._lock:
            return self._entries.get(key)

    def set(self, key: str, entry: MetadataCacheEntry):
        """写入条目（后写者胜出）"""
        with self._lock:
            self._entries[key] = entry

    def clear(self):
        """清空所有条目"""
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
