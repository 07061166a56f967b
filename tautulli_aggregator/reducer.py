"""
跨服务器合并与统计

把各服务器的原始结果合并为全局视图：
- 计数 / 时长求和
- 去重后的 Top-N 排名（影片、剧集、用户、平台、媒体库）
- 设备占比、类型雷达图等派生百分比
- 并发峰值按服务器分别列出（不求和）

本模块只包含纯函数，不做任何 I/O。
"""

import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Hashable, Iterable, List, Optional, Sequence, Tuple

from .fanout import successful
from .models import (
    ActiveSession,
    AnalyticsResponse,
    ConcurrentStreamsItem,
    DevicePreferenceItem,
    GenrePopularityItem,
    HourlyActivityItem,
    LastWatchedItem,
    LibraryQualityItem,
    LibraryStatItem,
    NamedCount,
    NetworkStatus,
    PerServerResult,
    PlatformStatItem,
    PlaybackHealthItem,
    ServerBreakdownItem,
    SessionsResponse,
    StatItem,
    UserDetailResponse,
    UserStatItem,
    UserTableItem,
    WatchStatsResponse,
)


TOP_N = 10
GENRE_TOP_N = 8
DEVICE_TOP_N = 4

# 单个会话带宽超过该值（kbps）视为异常数据，按 0 计
MAX_SESSION_BANDWIDTH = 10_000_000

IGNORED_USERNAMES = {"Local", "None"}

PLAYBACK_COLORS = {
    "Direct Play": "#10b981",
    "Direct Stream": "#f59e0b",
    "Transcode": "#ef4444",
}

QUALITY_BUCKETS = ("4K", "1080p", "720p", "SD")


# =============================================================================
# 解析与格式化工具
# =============================================================================

def to_int(value: Any, default: int = 0) -> int:
    """宽松解析整数（上游字段可能是 str / float / None）"""
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        pass
    number = to_float(value)
    if number is None:
        return default
    return int(number)


def to_float(value: Any) -> Optional[float]:
    """宽松解析浮点数；inf / nan 视为无效"""
    if value is None or value == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    return number if math.isfinite(number) else None


def opt_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def format_duration(seconds: int) -> str:
    """秒 -> H:MM:SS（小时不进位到天）"""
    seconds = max(int(seconds), 0)
    h = seconds // 3600
    m = (seconds % 3600) // 60
    s = seconds % 60
    return f"{h}:{m:02d}:{s:02d}"


def format_number(value: Any) -> str:
    """千位分隔符使用点号：1234567 -> 1.234.567"""
    return f"{to_int(value):,}".replace(",", ".")


def format_value(value: int, stat_type: str) -> str:
    return format_duration(value) if stat_type == "duration" else format_number(value)


def round_half_up(value: float) -> int:
    # round() 是银行家舍入，这里需要 0.5 进位
    return int(math.floor(value + 0.5))


def percent(count: int, total: int) -> int:
    if total <= 0:
        return 0
    return round_half_up(count / total * 100)


# =============================================================================
# 统计类别
# =============================================================================

class StatCategory(str, Enum):
    """get_home_stats 中的统计类别（stat_id）"""
    TOP_MOVIES = "top_movies"
    POPULAR_MOVIES = "popular_movies"
    TOP_TV = "top_tv"
    POPULAR_TV = "popular_tv"
    LAST_WATCHED = "last_watched"
    TOP_LIBRARIES = "top_libraries"
    TOP_USERS = "top_users"
    TOP_PLATFORMS = "top_platforms"
    MOST_CONCURRENT = "most_concurrent"

    @classmethod
    def from_stat_id(cls, stat_id: Any) -> Optional["StatCategory"]:
        try:
            return cls(stat_id)
        except ValueError:
            return None


GroupKey = Optional[Callable[[Dict[str, Any], int], Hashable]]


def movie_key(row: Dict[str, Any], server_id: int) -> Hashable:
    return (row.get("title"), str(row.get("year") or ""))


def show_key(row: Dict[str, Any], server_id: int) -> Hashable:
    # 剧集只按标题合并，不同季的年份归为同一条
    return row.get("title")


def user_key(row: Dict[str, Any], server_id: int) -> Hashable:
    return (row.get("user"), server_id)


def library_key(row: Dict[str, Any], server_id: int) -> Hashable:
    return (row.get("section_name"), server_id)


def platform_key(row: Dict[str, Any], server_id: int) -> Hashable:
    return row.get("platform") or "Unknown"


def server_key(row: Dict[str, Any], server_id: int) -> Hashable:
    return server_id


def _metric_value(stat_type: str) -> Callable[[Dict[str, Any]], Any]:
    field = "total_duration" if stat_type == "duration" else "total_plays"
    return lambda row: to_int(row.get(field))


def _users_watched(row: Dict[str, Any]) -> int:
    return to_int(row.get("users_watched"))


def _stopped(row: Dict[str, Any]) -> int:
    return to_int(row.get("stopped"))


def _concurrent_peaks(row: Dict[str, Any]) -> Tuple[int, int, int, int]:
    return (
        to_int(row.get("count")),
        to_int(row.get("transcode_count")),
        to_int(row.get("direct_stream_count")),
        to_int(row.get("direct_play_count")),
    )


def _sum(a: Any, b: Any) -> Any:
    return a + b


def _elementwise_max(a: Tuple[int, ...], b: Tuple[int, ...]) -> Tuple[int, ...]:
    return tuple(max(x, y) for x, y in zip(a, b))


@dataclass(frozen=True)
class CategorySpec:
    """
    每个类别的合并规则

    key: 去重 key 函数（None 表示不去重，逐行保留）
    value: 从行中取值的函数
    combine: 重复 key 的合并方式
    """
    key: GroupKey
    value: Callable[[Dict[str, Any]], Any]
    combine: Callable[[Any, Any], Any]


def category_specs(stat_type: str = "plays") -> Dict[StatCategory, CategorySpec]:
    """按统计模式（播放次数 / 时长）生成全部类别的合并规则"""
    metric = _metric_value(stat_type)
    return {
        StatCategory.TOP_MOVIES: CategorySpec(movie_key, metric, _sum),
        StatCategory.POPULAR_MOVIES: CategorySpec(movie_key, _users_watched, _sum),
        StatCategory.TOP_TV: CategorySpec(show_key, metric, _sum),
        StatCategory.POPULAR_TV: CategorySpec(show_key, _users_watched, _sum),
        StatCategory.LAST_WATCHED: CategorySpec(None, _stopped, _sum),
        StatCategory.TOP_LIBRARIES: CategorySpec(library_key, metric, _sum),
        StatCategory.TOP_USERS: CategorySpec(user_key, metric, _sum),
        StatCategory.TOP_PLATFORMS: CategorySpec(platform_key, metric, _sum),
        StatCategory.MOST_CONCURRENT: CategorySpec(server_key, _concurrent_peaks, _elementwise_max),
    }


@dataclass
class StatGroup:
    """一个去重 key 下的合并结果（保留首次出现的行作为展示信息）"""
    row: Dict[str, Any]
    server_id: int
    server_name: str
    value: Any


def fold_rows(
    groups: Dict[Hashable, StatGroup],
    spec: CategorySpec,
    rows: Iterable[Any],
    server_id: int,
    server_name: str
):
    """把一台服务器的行折叠进 groups（dict 保持首次出现顺序）"""
    for row in rows:
        if not isinstance(row, dict):
            continue
        value = spec.value(row)
        key = (len(groups),) if spec.key is None else spec.key(row, server_id)
        existing = groups.get(key)
        if existing is None:
            groups[key] = StatGroup(row=row, server_id=server_id, server_name=server_name, value=value)
        else:
            existing.value = spec.combine(existing.value, value)


def rank(
    groups: Iterable[StatGroup],
    limit: int = TOP_N,
    sort_key: Callable[[StatGroup], Any] = lambda g: g.value
) -> List[StatGroup]:
    """按值降序排列并截断；sorted 是稳定排序，并列时保持出现顺序"""
    return sorted(groups, key=sort_key, reverse=True)[:limit]


def group_home_stats(
    results: Sequence[PerServerResult],
    stat_type: str = "plays"
) -> Dict[StatCategory, Dict[Hashable, StatGroup]]:
    """按类别折叠所有成功服务器的 home stats"""
    specs = category_specs(stat_type)
    grouped: Dict[StatCategory, Dict[Hashable, StatGroup]] = {c: {} for c in StatCategory}

    for result in successful(results):
        data = result.payload
        if not isinstance(data, list):
            continue
        for stat_group in data:
            if not isinstance(stat_group, dict):
                continue
            category = StatCategory.from_stat_id(stat_group.get("stat_id"))
            if category is None:
                continue
            rows = stat_group.get("rows") or []
            if not isinstance(rows, list):
                continue
            fold_rows(grouped[category], specs[category], rows, result.server_id, result.server_name)

    return grouped


# =============================================================================
# 观看统计
# =============================================================================

def _title_items(groups: Dict[Hashable, StatGroup], stat_type: str, popular: bool) -> List[StatItem]:
    items = []
    for index, group in enumerate(rank(groups.values())):
        row = group.row
        if popular:
            formatted = format_number(group.value)
            users_watched = group.value
        else:
            formatted = format_value(group.value, stat_type)
            users_watched = to_int(row.get("users_watched")) if row.get("users_watched") is not None else None
        items.append(StatItem(
            rank=index + 1,
            title=opt_str(row.get("title")),
            thumb=opt_str(row.get("thumb")),
            art=opt_str(row.get("art")),
            year=opt_str(row.get("year")),
            value=group.value,
            formatted_value=formatted,
            users_watched=users_watched,
            server_id=group.server_id,
            server_name=group.server_name
        ))
    return items


def _format_timestamp(ts: int) -> str:
    try:
        return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")
    except (OverflowError, OSError, ValueError):
        return ""


def _recent_items(groups: Dict[Hashable, StatGroup]) -> List[StatItem]:
    return [
        StatItem(
            rank=index + 1,
            title=opt_str(group.row.get("full_title") or group.row.get("title")),
            thumb=opt_str(group.row.get("thumb")),
            art=opt_str(group.row.get("art")),
            year=opt_str(group.row.get("year")),
            value=group.value,
            formatted_value=_format_timestamp(group.value),
            server_id=group.server_id,
            server_name=group.server_name
        )
        for index, group in enumerate(rank(groups.values()))
    ]


def concurrent_peaks(groups: Dict[Hashable, StatGroup]) -> List[ConcurrentStreamsItem]:
    """每台服务器一行，按峰值流数降序；峰值为 0 的服务器不列出"""
    items = []
    for group in groups.values():
        streams, transcodes, direct_streams, direct_plays = group.value
        if streams <= 0:
            continue
        items.append(ConcurrentStreamsItem(
            server_name=group.server_name,
            server_id=group.server_id,
            concurrent_streams=streams,
            concurrent_transcodes=transcodes,
            concurrent_direct_streams=direct_streams,
            concurrent_direct_plays=direct_plays
        ))
    items.sort(key=lambda item: item.concurrent_streams, reverse=True)
    return items


def merge_home_stats(results: Sequence[PerServerResult], stat_type: str = "plays") -> WatchStatsResponse:
    """
    合并各服务器的 get_home_stats 结果

    Args:
        results: 扇出结果（失败的服务器贡献为 0）
        stat_type: plays 或 duration，决定求和字段与格式化方式

    Returns:
        WatchStatsResponse
    """
    grouped = group_home_stats(results, stat_type)

    libraries = [
        LibraryStatItem(
            rank=index + 1,
            library_name=opt_str(group.row.get("section_name")),
            value=group.value,
            formatted_value=format_value(group.value, stat_type),
            server_name=group.server_name,
            server_id=group.server_id
        )
        for index, group in enumerate(rank(grouped[StatCategory.TOP_LIBRARIES].values()))
    ]

    users = [
        UserStatItem(
            rank=index + 1,
            user=opt_str(group.row.get("user")),
            user_thumb=opt_str(group.row.get("user_thumb")),
            value=group.value,
            formatted_value=format_value(group.value, stat_type),
            server_name=group.server_name,
            server_id=group.server_id
        )
        for index, group in enumerate(rank(grouped[StatCategory.TOP_USERS].values()))
    ]

    platforms = [
        PlatformStatItem(
            rank=index + 1,
            platform=str(platform_key(group.row, group.server_id)),
            value=group.value,
            formatted_value=format_value(group.value, stat_type)
        )
        for index, group in enumerate(rank(grouped[StatCategory.TOP_PLATFORMS].values()))
    ]

    return WatchStatsResponse(
        most_watched_movies=_title_items(grouped[StatCategory.TOP_MOVIES], stat_type, popular=False),
        most_popular_movies=_title_items(grouped[StatCategory.POPULAR_MOVIES], stat_type, popular=True),
        most_watched_shows=_title_items(grouped[StatCategory.TOP_TV], stat_type, popular=False),
        most_popular_shows=_title_items(grouped[StatCategory.POPULAR_TV], stat_type, popular=True),
        recently_watched=_recent_items(grouped[StatCategory.LAST_WATCHED]),
        most_active_libraries=libraries,
        most_active_users=users,
        most_active_platforms=platforms,
        most_concurrent_streams=concurrent_peaks(grouped[StatCategory.MOST_CONCURRENT])
    )


# =============================================================================
# 网络状态
# =============================================================================

def extract_plays_24h(home_stats: Any) -> int:
    """latest_statistics 中 range=day 的合计行"""
    if not isinstance(home_stats, list):
        return 0
    for stat in home_stats:
        if isinstance(stat, dict) and stat.get("stat_id") == "latest_statistics":
            for row in stat.get("rows") or []:
                if isinstance(row, dict) and row.get("is_total") and row.get("range") == "day":
                    return to_int(row.get("count"))
    return 0


def extract_usernames(users: Any) -> List[str]:
    """有效用户名列表（排除 Local / None）"""
    if not isinstance(users, list):
        return []
    names = []
    for user in users:
        if not isinstance(user, dict):
            continue
        name = user.get("username")
        if name and name not in IGNORED_USERNAMES:
            names.append(name)
    return names


def is_transcode(session: Dict[str, Any]) -> bool:
    return (
        session.get("stream_container_decision") == "transcode"
        or session.get("transcode_decision") == "transcode"
    )


def session_bandwidth(session: Dict[str, Any]) -> int:
    bandwidth = to_int(session.get("bandwidth"))
    if bandwidth >= MAX_SESSION_BANDWIDTH:
        return 0
    return bandwidth


def normalize_session(session: Dict[str, Any], server_id: int, server_name: str) -> ActiveSession:
    """把上游会话转换为统一格式（坐标缺失时由调用方补全）"""
    return ActiveSession(
        session_id=f"{server_id}-{session.get('session_id')}",
        title=opt_str(session.get("full_title") or session.get("title")),
        user=opt_str(session.get("user") or session.get("username")),
        player=opt_str(session.get("player")),
        status=opt_str(session.get("state")),
        ip_address=opt_str(session.get("ip_address_public") or session.get("ip_address")),
        latitude=to_float(session.get("latitude")),
        longitude=to_float(session.get("longitude")),
        stream_container_decision=opt_str(session.get("stream_container_decision")),
        quality_profile=opt_str(session.get("quality_profile")),
        bandwidth=session_bandwidth(session),
        server_name=server_name,
        server_id=server_id,
        thumb=opt_str(session.get("thumb")),
        grandparent_thumb=opt_str(session.get("grandparent_thumb")),
        art=opt_str(session.get("art")),
        grandparent_title=opt_str(session.get("grandparent_title")),
        parent_media_index=opt_str(session.get("parent_media_index")),
        media_index=opt_str(session.get("media_index")),
        year=opt_str(session.get("year")),
        duration=to_int(session.get("duration")),
        view_offset=to_int(session.get("view_offset")),
        progress_percent=to_int(session.get("progress_percent")),
        media_type=opt_str(session.get("media_type"))
    )


def needs_geo(session: ActiveSession) -> bool:
    # 0 也视为缺失坐标
    return bool(session.ip_address) and not (session.latitude and session.longitude)


def _activity_sessions(activity: Any) -> List[Dict[str, Any]]:
    if not isinstance(activity, dict):
        return []
    sessions = activity.get("sessions")
    if not isinstance(sessions, list):
        return []
    return [s for s in sessions if isinstance(s, dict)]


def merge_active_sessions(results: Sequence[PerServerResult]) -> SessionsResponse:
    """合并 get_activity 结果（payload 为 activity data）"""
    response = SessionsResponse()
    for result in successful(results):
        activity = result.payload
        if not isinstance(activity, dict):
            continue
        response.total_stream_count += to_int(activity.get("stream_count"))
        for session in _activity_sessions(activity):
            normalized = normalize_session(session, result.server_id, result.server_name)
            response.total_bandwidth += normalized.bandwidth
            response.active_sessions.append(normalized)
    return response


def merge_network_status(results: Sequence[PerServerResult]) -> NetworkStatus:
    """
    合并完整网络状态

    payload 形如 {"activity": ..., "home_stats": ..., "users": ...}。
    用户总数按用户名跨服务器去重。
    """
    status = NetworkStatus()
    unique_users: Dict[str, None] = {}

    for result in successful(results):
        payload = result.payload
        if not isinstance(payload, dict):
            continue
        activity = payload.get("activity")
        if isinstance(activity, dict):
            status.total_stream_count += to_int(activity.get("stream_count"))
        status.total_plays_24h += extract_plays_24h(payload.get("home_stats"))
        for name in extract_usernames(payload.get("users")):
            unique_users[name] = None

        for session in _activity_sessions(activity):
            if is_transcode(session):
                status.total_transcodes += 1
            normalized = normalize_session(session, result.server_id, result.server_name)
            status.total_bandwidth += normalized.bandwidth
            status.active_sessions.append(normalized)

    status.total_users = len(unique_users)
    return status


# =============================================================================
# 用户
# =============================================================================

def merge_users_table(results: Sequence[PerServerResult]) -> List[UserTableItem]:
    """
    按 user_id 跨服务器合并用户表

    播放次数 / 时长求和；last_seen 最新的那一行提供最近活动信息。
    """
    users: Dict[int, UserTableItem] = {}

    for result in successful(results):
        rows = result.payload
        if not isinstance(rows, list):
            continue
        for row in rows:
            if not isinstance(row, dict):
                continue
            user_id = to_int(row.get("user_id"))
            if not user_id:
                continue

            last_seen = to_int(row.get("last_seen"))
            plays = to_int(row.get("plays"))
            duration = to_int(row.get("duration"))
            last_played = opt_str(row.get("last_played") or row.get("title")) or ""

            existing = users.get(user_id)
            if existing is None:
                users[user_id] = UserTableItem(
                    user_id=user_id,
                    username=opt_str(row.get("user")),
                    friendly_name=opt_str(row.get("friendly_name") or row.get("user")),
                    thumb=opt_str(row.get("thumb")),
                    email=opt_str(row.get("email")),
                    last_seen=last_seen,
                    ip_address=opt_str(row.get("ip_address")),
                    platform=opt_str(row.get("platform")),
                    player=opt_str(row.get("player")),
                    last_played=last_played,
                    total_plays=plays,
                    total_duration=duration,
                    server_name=result.server_name,
                    server_id=result.server_id
                )
                continue

            existing.total_plays += plays
            existing.total_duration += duration
            if last_seen > existing.last_seen:
                existing.last_seen = last_seen
                existing.ip_address = opt_str(row.get("ip_address"))
                existing.platform = opt_str(row.get("platform"))
                existing.player = opt_str(row.get("player"))
                existing.last_played = last_played
                existing.server_name = result.server_name
                existing.server_id = result.server_id
                existing.friendly_name = opt_str(row.get("friendly_name")) or existing.friendly_name
                existing.thumb = opt_str(row.get("thumb")) or existing.thumb

    return sorted(users.values(), key=lambda u: u.last_seen, reverse=True)


def _counts_desc(counts: Dict[str, int]) -> List[NamedCount]:
    ordered = sorted(counts.items(), key=lambda kv: kv[1], reverse=True)
    return [NamedCount(name=name, count=count) for name, count in ordered]


def merge_user_history(
    username: str,
    results: Sequence[PerServerResult],
    days: int = 30,
    now: Optional[float] = None
) -> UserDetailResponse:
    """
    合并单个用户在各服务器上的播放历史

    first_seen / last_seen 统计全部返回的记录；其余指标只统计时间窗口内的记录
    （days <= 0 表示不限制）。
    """
    if now is None:
        now = datetime.now().timestamp()
    cutoff = now - days * 86400 if days > 0 else None

    detail = UserDetailResponse(username=username)
    platforms: Dict[str, int] = {}
    players: Dict[str, int] = {}
    ips: Dict[str, None] = {}
    recent: List[Tuple[Dict[str, Any], PerServerResult]] = []

    for result in successful(results):
        history = result.payload
        if not isinstance(history, list):
            history = []

        server_plays = 0
        server_duration = 0
        for play in history:
            if not isinstance(play, dict):
                continue
            date = to_int(play.get("date"))

            if detail.first_seen is None or date < detail.first_seen:
                detail.first_seen = date
            if detail.last_seen is None or date > detail.last_seen:
                detail.last_seen = date

            if cutoff is not None and date < cutoff:
                continue

            server_plays += 1
            server_duration += to_int(play.get("duration"))

            platform = opt_str(play.get("platform")) or "Unknown"
            player = opt_str(play.get("player")) or "Unknown"
            platforms[platform] = platforms.get(platform, 0) + 1
            players[player] = players.get(player, 0) + 1

            if play.get("ip_address"):
                ips[str(play["ip_address"])] = None

            try:
                hour = datetime.fromtimestamp(date).hour
            except (OverflowError, OSError, ValueError):
                continue
            detail.activity_heatmap[hour] += 1

        recent.extend((play, result) for play in history[:5] if isinstance(play, dict))

        detail.server_breakdown.append(ServerBreakdownItem(
            server_name=result.server_name,
            server_id=result.server_id,
            plays=server_plays,
            duration=server_duration
        ))
        detail.total_plays += server_plays
        detail.total_duration += server_duration

    recent.sort(key=lambda item: to_int(item[0].get("date")), reverse=True)

    detail.formatted_total_duration = format_duration(detail.total_duration)
    detail.platforms = _counts_desc(platforms)
    detail.players = _counts_desc(players)[:5]
    detail.known_ips = list(ips)[:10]
    detail.last_watched = [
        LastWatchedItem(
            title=opt_str(play.get("full_title") or play.get("title")),
            type=opt_str(play.get("media_type")),
            date=to_int(play.get("date")),
            thumb=opt_str(play.get("thumb")),
            server_name=result.server_name,
            server_id=result.server_id
        )
        for play, result in recent[:5]
    ]
    return detail


# =============================================================================
# 分析图表
# =============================================================================

def parse_hourly(data: Any) -> Dict[int, int]:
    """get_plays_by_hourofday -> {hour: plays}"""
    counts: Dict[int, int] = {}
    if not isinstance(data, dict):
        return counts
    categories = data.get("categories") or []
    for serie in data.get("series") or []:
        if not isinstance(serie, dict):
            continue
        for index, count in enumerate(serie.get("data") or []):
            hour = to_int(categories[index], index) if index < len(categories) else index
            counts[hour] = counts.get(hour, 0) + to_int(count)
    return counts


def parse_platform_counts(data: Any) -> Dict[str, int]:
    """get_plays_by_top_10_platforms -> {platform: plays}"""
    counts: Dict[str, int] = {}
    if not isinstance(data, dict):
        return counts
    series = [s for s in data.get("series") or [] if isinstance(s, dict)]
    for index, platform in enumerate(data.get("categories") or []):
        total = 0
        for serie in series:
            values = serie.get("data") or []
            if index < len(values):
                total += to_int(values[index])
        counts[str(platform)] = counts.get(str(platform), 0) + total
    return counts


def parse_stream_types(data: Any) -> Dict[str, int]:
    """get_stream_type_by_top_10_platforms -> {Direct Play / Direct Stream / Transcode: plays}"""
    totals = {name: 0 for name in PLAYBACK_COLORS}
    if not isinstance(data, dict):
        return totals
    for serie in data.get("series") or []:
        if not isinstance(serie, dict):
            continue
        name = serie.get("name")
        if name in totals:
            totals[name] += sum(to_int(v) for v in serie.get("data") or [])
    return totals


def classify_resolution(row: Dict[str, Any]) -> str:
    resolution = str(row.get("video_resolution") or "").lower()
    if resolution in ("4k", "2160", "uhd"):
        return "4K"
    if resolution in ("1080", "fhd"):
        return "1080p"
    if resolution in ("720", "hd"):
        return "720p"
    if row.get("media_type") == "show" and resolution == "":
        return "1080p"
    return "SD"


def count_resolutions(rows: Any) -> Dict[str, int]:
    counts = {bucket: 0 for bucket in QUALITY_BUCKETS}
    if not isinstance(rows, list):
        return counts
    for row in rows:
        if isinstance(row, dict):
            counts[classify_resolution(row)] += 1
    return counts


def device_share(counts: Dict[str, int], top: int = DEVICE_TOP_N) -> List[DevicePreferenceItem]:
    """
    设备占比：前 top 个 + Others

    每项独立四舍五入，总和不强制为 100。
    """
    total = sum(counts.values())
    ordered = sorted(counts.items(), key=lambda kv: kv[1], reverse=True)
    items = [DevicePreferenceItem(name=name, value=percent(count, total)) for name, count in ordered[:top]]
    others = sum(count for _, count in ordered[top:])
    if others > 0:
        items.append(DevicePreferenceItem(name="Others", value=percent(others, total)))
    return items


def genre_popularity(counts: Dict[str, int], top: int = GENRE_TOP_N) -> List[GenrePopularityItem]:
    ordered = sorted(counts.items(), key=lambda kv: kv[1], reverse=True)[:top]
    full_mark = ordered[0][1] if ordered else 100
    return [GenrePopularityItem(subject=name, A=count, fullMark=full_mark) for name, count in ordered]


def _add_counts(target: Dict[Any, int], source: Any):
    if not isinstance(source, dict):
        return
    for key, value in source.items():
        target[key] = target.get(key, 0) + to_int(value)


def merge_analytics(results: Sequence[PerServerResult]) -> AnalyticsResponse:
    """
    合并各服务器的分析数据

    payload 为单台服务器的部分结果：
    {"hourly": {hour: n}, "platforms": {name: n}, "stream_types": {name: n},
     "genres": {genre: n}, "library_quality": {category: {bucket: n}}}
    """
    hourly: Dict[int, int] = {}
    devices: Dict[str, int] = {}
    stream_types: Dict[str, int] = {name: 0 for name in PLAYBACK_COLORS}
    genres: Dict[str, int] = {}
    quality: Dict[str, Dict[str, int]] = {}

    for result in successful(results):
        payload = result.payload
        if not isinstance(payload, dict):
            continue
        _add_counts(hourly, payload.get("hourly"))
        _add_counts(devices, payload.get("platforms"))
        _add_counts(stream_types, payload.get("stream_types"))
        _add_counts(genres, payload.get("genres"))
        for category, buckets in (payload.get("library_quality") or {}).items():
            current = quality.setdefault(category, {bucket: 0 for bucket in QUALITY_BUCKETS})
            _add_counts(current, buckets)

    return AnalyticsResponse(
        hourly_activity=[HourlyActivityItem(hour=h, plays=hourly.get(h, 0)) for h in range(24)],
        device_preferences=device_share(devices),
        playback_health=[
            PlaybackHealthItem(name=name, value=stream_types.get(name, 0), color=color)
            for name, color in PLAYBACK_COLORS.items()
        ],
        library_quality=[
            LibraryQualityItem(name=category, **buckets)
            for category, buckets in quality.items()
        ],
        genre_popularity=genre_popularity(genres)
    )
