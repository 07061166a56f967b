"""
单元测试：跨服务器合并与统计

测试覆盖：
- 失败服务器贡献为 0，不影响整体
- 影片按 (标题, 年份) 去重，剧集只按标题去重
- 用户 / 媒体库不跨服务器合并，平台跨服务器合并
- Top-N 截断与稳定排序
- 并发峰值按服务器列出，不求和
- 格式化（H:MM:SS、点号千位分隔）
- 用户表、用户历史、分析图表、网络状态
"""

from datetime import datetime

import pytest

from tautulli_aggregator.models import ActiveSession, PerServerResult
from tautulli_aggregator.reducer import (
    StatCategory,
    classify_resolution,
    device_share,
    format_duration,
    format_number,
    genre_popularity,
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
    percent,
    round_half_up,
    to_float,
    to_int,
)


def ok(server_id, payload, name=None):
    return PerServerResult(server_id=server_id, server_name=name or f"srv-{server_id}", payload=payload, ok=True)


def failed(server_id, name=None):
    return PerServerResult(server_id=server_id, server_name=name or f"srv-{server_id}", ok=False)


def stat(stat_id, rows):
    return {"stat_id": stat_id, "rows": rows}


class TestFormatting:
    """格式化工具测试"""

    def test_format_duration(self):
        assert format_duration(0) == "0:00:00"
        assert format_duration(59) == "0:00:59"
        assert format_duration(3661) == "1:01:01"
        # 不进位到天
        assert format_duration(90000) == "25:00:00"

    def test_format_number_uses_dot_separator(self):
        assert format_number(999) == "999"
        assert format_number(1234) == "1.234"
        assert format_number(1234567) == "1.234.567"
        assert format_number("42") == "42"

    def test_round_half_up(self):
        assert round_half_up(2.5) == 3
        assert round_half_up(0.5) == 1
        assert round_half_up(33.333) == 33

    def test_percent(self):
        assert percent(1, 3) == 33
        assert percent(5, 0) == 0

    def test_stat_category_from_unknown_id(self):
        assert StatCategory.from_stat_id("top_movies") is StatCategory.TOP_MOVIES
        assert StatCategory.from_stat_id("latest_statistics") is None

    def test_non_finite_numbers_fall_back(self):
        """测试：inf / nan / 超大指数按无效值处理"""
        assert to_int("1e999") == 0
        assert to_int(float("inf"), default=7) == 7
        assert to_int("NaN") == 0
        assert to_int(float("-inf")) == 0
        assert to_int("12.9") == 12
        assert to_float("Infinity") is None
        assert to_float(float("nan")) is None
        assert to_float("1.5") == 1.5


class TestMergeHomeStats:
    """观看统计合并测试"""

    def test_all_servers_failed_gives_empty_lists(self):
        """测试：全部失败时返回空结果而不是异常"""
        result = merge_home_stats([failed(1), failed(2)])

        assert result.most_watched_movies == []
        assert result.most_active_users == []
        assert result.most_concurrent_streams == []

    def test_failed_server_contributes_nothing(self):
        """测试：失败服务器不参与排名"""
        results = [
            ok(1, [stat("top_movies", [{"title": "Alien", "year": 1979, "total_plays": 5}])]),
            failed(2),
        ]
        movies = merge_home_stats(results).most_watched_movies

        assert len(movies) == 1
        assert movies[0].value == 5
        assert movies[0].server_name == "srv-1"

    def test_bad_number_from_one_server_does_not_break_merge(self):
        """测试：某台服务器返回无穷大的播放数时，其余服务器的结果照常排名"""
        results = [
            ok(1, [stat("top_movies", [{"title": "Alien", "year": 1979, "total_plays": 5}])]),
            ok(2, [stat("top_movies", [{"title": "Heat", "year": 1995, "total_plays": "1e999"}])]),
        ]
        movies = merge_home_stats(results).most_watched_movies

        assert movies[0].title == "Alien"
        assert movies[0].value == 5

    def test_movies_dedupe_by_title_and_year(self):
        """测试：同名不同年份的电影是两条，同名同年份合并"""
        results = [
            ok(1, [stat("top_movies", [
                {"title": "Dune", "year": 1984, "total_plays": 2},
                {"title": "Dune", "year": 2021, "total_plays": 10},
            ])]),
            ok(2, [stat("top_movies", [
                {"title": "Dune", "year": 2021, "total_plays": 5},
            ])]),
        ]
        movies = merge_home_stats(results).most_watched_movies

        assert [(m.title, m.year, m.value) for m in movies] == [
            ("Dune", "2021", 15),
            ("Dune", "1984", 2),
        ]
        assert movies[0].rank == 1
        assert movies[0].formatted_value == "15"

    def test_shows_dedupe_by_title_only(self):
        """测试：剧集忽略年份，不同季合并为一条"""
        results = [
            ok(1, [stat("top_tv", [{"title": "Severance", "year": 2022, "total_plays": 4}])]),
            ok(2, [stat("top_tv", [{"title": "Severance", "year": 2025, "total_plays": 6}])]),
        ]
        shows = merge_home_stats(results).most_watched_shows

        assert len(shows) == 1
        assert shows[0].value == 10
        # 展示信息来自首次出现的行
        assert shows[0].year == "2022"

    def test_three_servers_sum(self):
        """测试：三台服务器同一影片 33 + 33 + 33 = 99"""
        rows = [{"title": "Heat", "year": 1995, "total_plays": 33}]
        results = [ok(i, [stat("top_movies", rows)]) for i in (1, 2, 3)]

        movies = merge_home_stats(results).most_watched_movies
        assert movies[0].value == 99

    def test_top_ten_truncation(self):
        """测试：结果数量为 min(10, 去重后数量)"""
        rows = [{"title": f"Movie {i}", "year": 2000, "total_plays": i} for i in range(1, 16)]
        results = [ok(1, [stat("top_movies", rows[:8])]), ok(2, [stat("top_movies", rows[8:])])]

        movies = merge_home_stats(results).most_watched_movies

        assert len(movies) == 10
        assert movies[0].title == "Movie 15"
        assert [m.rank for m in movies] == list(range(1, 11))

    def test_ties_keep_input_order(self):
        """测试：值相同时保持输入服务器顺序"""
        results = [
            ok(1, [stat("top_movies", [{"title": "B", "year": 1, "total_plays": 3}])]),
            ok(2, [stat("top_movies", [{"title": "A", "year": 1, "total_plays": 3}])]),
        ]
        movies = merge_home_stats(results).most_watched_movies
        assert [m.title for m in movies] == ["B", "A"]

    def test_users_not_merged_across_servers(self):
        """测试：同一用户名在不同服务器上是两行"""
        results = [
            ok(1, [stat("top_users", [{"user": "anna", "total_plays": 7}])]),
            ok(2, [stat("top_users", [{"user": "anna", "total_plays": 3}])]),
        ]
        users = merge_home_stats(results).most_active_users

        assert [(u.user, u.server_id, u.value) for u in users] == [("anna", 1, 7), ("anna", 2, 3)]

    def test_libraries_not_merged_across_servers(self):
        """测试：同名媒体库按服务器分开"""
        results = [
            ok(1, [stat("top_libraries", [{"section_name": "Movies", "total_plays": 1}])]),
            ok(2, [stat("top_libraries", [{"section_name": "Movies", "total_plays": 2}])]),
        ]
        libraries = merge_home_stats(results).most_active_libraries

        assert [(l.library_name, l.server_id) for l in libraries] == [("Movies", 2), ("Movies", 1)]

    def test_platforms_merged_across_servers(self):
        """测试：平台跨服务器合并，缺失平台名归为 Unknown"""
        results = [
            ok(1, [stat("top_platforms", [{"platform": "Roku", "total_plays": 4}, {"total_plays": 1}])]),
            ok(2, [stat("top_platforms", [{"platform": "Roku", "total_plays": 6}])]),
        ]
        platforms = merge_home_stats(results).most_active_platforms

        assert [(p.platform, p.value) for p in platforms] == [("Roku", 10), ("Unknown", 1)]

    def test_popular_sums_users_watched(self):
        """测试：热门榜按 users_watched 求和"""
        results = [
            ok(1, [stat("popular_movies", [{"title": "Up", "year": 2009, "users_watched": 2}])]),
            ok(2, [stat("popular_movies", [{"title": "Up", "year": 2009, "users_watched": 3}])]),
        ]
        popular = merge_home_stats(results).most_popular_movies

        assert popular[0].value == 5
        assert popular[0].users_watched == 5

    def test_duration_mode_formats_as_time(self):
        """测试：时长模式使用 total_duration 并格式化为 H:MM:SS"""
        results = [ok(1, [stat("top_users", [{"user": "anna", "total_duration": 3725, "total_plays": 1}])])]
        users = merge_home_stats(results, stat_type="duration").most_active_users

        assert users[0].value == 3725
        assert users[0].formatted_value == "1:02:05"

    def test_concurrent_peaks_not_summed(self):
        """测试：并发峰值每台服务器一行，按峰值降序（8 在 5 之前）"""
        results = [
            ok(1, [stat("most_concurrent", [
                {"title": "Concurrent Streams", "count": 5},
                {"title": "Concurrent Transcodes", "count": 0, "transcode_count": 2},
            ])], name="small"),
            ok(2, [stat("most_concurrent", [{"count": 8, "direct_play_count": 6}])], name="big"),
            ok(3, [stat("most_concurrent", [{"count": 0}])], name="idle"),
        ]
        peaks = merge_home_stats(results).most_concurrent_streams

        assert [(p.server_name, p.concurrent_streams) for p in peaks] == [("big", 8), ("small", 5)]
        assert peaks[1].concurrent_transcodes == 2
        assert peaks[0].concurrent_direct_plays == 6

    def test_recently_watched_newest_first(self):
        """测试：最近观看按 stopped 降序，不去重"""
        results = [
            ok(1, [stat("last_watched", [{"title": "Old", "stopped": 100}])]),
            ok(2, [stat("last_watched", [{"full_title": "New - S1E1", "title": "New", "stopped": 200}])]),
        ]
        recent = merge_home_stats(results).recently_watched

        assert [r.title for r in recent] == ["New - S1E1", "Old"]
        assert recent[0].formatted_value == datetime.fromtimestamp(200).strftime("%Y-%m-%d %H:%M:%S")

    def test_unknown_stat_ids_ignored(self):
        """测试：未知类别被忽略"""
        results = [ok(1, [stat("latest_statistics", [{"count": 9}]), {"stat_id": None}, "garbage"])]
        result = merge_home_stats(results)
        assert result.most_watched_movies == []


class TestNetwork:
    """网络状态合并测试"""

    def _payload(self, sessions, stream_count, plays_24h=0, users=()):
        return {
            "activity": {"stream_count": str(stream_count), "sessions": sessions},
            "home_stats": [stat("latest_statistics", [
                {"is_total": True, "range": "week", "count": 999},
                {"is_total": True, "range": "day", "count": str(plays_24h)},
            ])],
            "users": [{"username": u} for u in users],
        }

    def test_network_status_totals(self):
        """测试：带宽、流数、转码、用户数、24h 播放数"""
        results = [
            ok(1, self._payload(
                [
                    {"session_id": "a", "bandwidth": "4000", "transcode_decision": "transcode"},
                    {"session_id": "b", "bandwidth": "20000000"},
                ],
                stream_count=2, plays_24h=10, users=("anna", "Local", "ben"),
            )),
            ok(2, self._payload(
                [{"session_id": "c", "bandwidth": 1000, "stream_container_decision": "transcode"}],
                stream_count=1, plays_24h=5, users=("anna", "None", "cara"),
            )),
            failed(3),
        ]
        status = merge_network_status(results)

        assert status.total_bandwidth == 5000
        assert status.total_stream_count == 3
        assert status.total_transcodes == 2
        assert status.total_users == 3
        assert status.total_plays_24h == 15
        assert [s.session_id for s in status.active_sessions] == ["1-a", "1-b", "2-c"]
        assert status.active_sessions[1].bandwidth == 0

    def test_all_failed_is_zero(self):
        status = merge_network_status([failed(1)])
        assert status.total_bandwidth == 0
        assert status.active_sessions == []

    def test_active_sessions_normalization(self):
        """测试：会话字段规范化"""
        activity = {
            "stream_count": "1",
            "sessions": [{
                "session_id": "xyz",
                "title": "Pilot",
                "full_title": "Show - Pilot",
                "username": "dan",
                "ip_address": "10.0.0.2",
                "ip_address_public": "8.8.8.8",
                "bandwidth": "2500",
                "duration": "3600000",
                "progress_percent": "42",
                "latitude": "",
            }],
        }
        response = merge_active_sessions([ok(4, activity, name="den")])
        session = response.active_sessions[0]

        assert response.total_stream_count == 1
        assert response.total_bandwidth == 2500
        assert session.session_id == "4-xyz"
        assert session.title == "Show - Pilot"
        assert session.user == "dan"
        assert session.ip_address == "8.8.8.8"
        assert session.duration == 3600000
        assert session.progress_percent == 42
        assert session.latitude is None
        assert session.server_name == "den"
        assert needs_geo(session)

    def test_needs_geo(self):
        base = {"session_id": "1-a", "server_name": "s", "server_id": 1}
        assert not needs_geo(ActiveSession(**base))
        assert not needs_geo(ActiveSession(ip_address="1.2.3.4", latitude=1.0, longitude=2.0, **base))
        assert needs_geo(ActiveSession(ip_address="1.2.3.4", latitude=0.0, longitude=0.0, **base))


class TestUsers:
    """用户表和用户历史测试"""

    def test_users_table_merges_by_user_id(self):
        """测试：按 user_id 合并，播放数求和，最近活跃的服务器提供详情"""
        results = [
            ok(1, [
                {"user_id": 7, "user": "anna", "friendly_name": "Anna", "plays": 3, "duration": 100,
                 "last_seen": 1000, "platform": "Roku", "last_played": "Alien"},
                {"user_id": None, "user": "ghost", "plays": 99},
            ], name="home"),
            ok(2, [
                {"user_id": 7, "user": "anna", "plays": 2, "duration": 50,
                 "last_seen": 2000, "platform": "iOS", "last_played": "Heat"},
                {"user_id": 8, "user": "ben", "plays": 1, "last_seen": 1500},
            ], name="cabin"),
        ]
        users = merge_users_table(results)

        assert [u.user_id for u in users] == [7, 8]
        anna = users[0]
        assert anna.total_plays == 5
        assert anna.total_duration == 150
        assert anna.last_seen == 2000
        assert anna.platform == "iOS"
        assert anna.last_played == "Heat"
        assert anna.server_name == "cabin"
        assert anna.friendly_name == "Anna"

    def test_user_history(self):
        """测试：窗口内统计、首次 / 最近观看、服务器分布"""
        now = datetime(2026, 3, 1, 12, 0, 0).timestamp()
        recent = int(now) - 3600
        old = int(now) - 90 * 86400
        results = [
            ok(1, [
                {"date": recent, "duration": 600, "platform": "Roku", "player": "TV", "ip_address": "1.1.1.1",
                 "title": "A", "media_type": "movie"},
                {"date": old, "duration": 900, "platform": "Roku", "player": "TV", "title": "Old"},
            ], name="home"),
            failed(2, name="down"),
            ok(3, [
                {"date": recent - 60, "duration": 300, "platform": "iOS", "player": "Phone",
                 "ip_address": "2.2.2.2", "full_title": "Show - B"},
            ], name="cabin"),
        ]
        detail = merge_user_history("anna", results, days=30, now=now)

        assert detail.total_plays == 2
        assert detail.total_duration == 900
        assert detail.formatted_total_duration == "0:15:00"
        assert detail.first_seen == old
        assert detail.last_seen == recent
        assert [(p.name, p.count) for p in detail.platforms] == [("Roku", 1), ("iOS", 1)]
        assert detail.known_ips == ["1.1.1.1", "2.2.2.2"]
        assert sum(detail.activity_heatmap) == 2
        assert len(detail.activity_heatmap) == 24
        assert [(b.server_name, b.plays) for b in detail.server_breakdown] == [("home", 1), ("cabin", 1)]
        assert [w.title for w in detail.last_watched] == ["A", "Show - B", "Old"]

    def test_user_history_unbounded_window(self):
        """测试：days <= 0 时统计全部记录"""
        now = datetime(2026, 3, 1).timestamp()
        results = [ok(1, [{"date": 1, "duration": 10}, {"date": int(now), "duration": 20}])]
        detail = merge_user_history("anna", results, days=0, now=now)
        assert detail.total_plays == 2


class TestAnalytics:
    """分析图表测试"""

    def test_parse_hourly_uses_category_labels(self):
        data = {"categories": ["0", "1", "2"], "series": [{"data": [1, 2, 3]}, {"data": [1, 1, 1]}]}
        assert parse_hourly(data) == {0: 2, 1: 3, 2: 4}

    def test_parse_platform_counts(self):
        data = {"categories": ["Roku", "iOS"], "series": [{"data": [3, 1]}, {"data": [2]}]}
        assert parse_platform_counts(data) == {"Roku": 5, "iOS": 1}

    def test_parse_stream_types(self):
        data = {"series": [
            {"name": "Direct Play", "data": [1, 2]},
            {"name": "Transcode", "data": [4]},
            {"name": "Other", "data": [9]},
        ]}
        assert parse_stream_types(data) == {"Direct Play": 3, "Direct Stream": 0, "Transcode": 4}

    def test_classify_resolution(self):
        assert classify_resolution({"video_resolution": "4k"}) == "4K"
        assert classify_resolution({"video_resolution": "1080"}) == "1080p"
        assert classify_resolution({"video_resolution": "720"}) == "720p"
        assert classify_resolution({"video_resolution": "sd"}) == "SD"
        assert classify_resolution({"media_type": "show"}) == "1080p"

    def test_device_share_top_four_plus_others(self):
        """测试：前 4 + Others，百分比不归一化"""
        counts = {"a": 1, "b": 1, "c": 1, "d": 1, "e": 1, "f": 1}
        items = device_share(counts)

        assert [i.name for i in items] == ["a", "b", "c", "d", "Others"]
        assert [i.value for i in items] == [17, 17, 17, 17, 33]
        assert sum(i.value for i in items) == 101

    def test_device_share_thirds(self):
        """测试：1/3 各自舍入为 33，总和 99"""
        items = device_share({"a": 1, "b": 1, "c": 1})
        assert [i.value for i in items] == [33, 33, 33]

    def test_genre_popularity(self):
        items = genre_popularity({f"g{i}": i for i in range(1, 11)})
        assert len(items) == 8
        assert items[0].subject == "g10"
        assert all(i.fullMark == 10 for i in items)
        assert genre_popularity({}) == []

    def test_merge_analytics(self):
        """测试：多台服务器的部分结果求和"""
        results = [
            ok(1, {
                "hourly": {0: 2, 23: 1},
                "platforms": {"Roku": 3},
                "stream_types": {"Direct Play": 2, "Transcode": 1},
                "genres": {"Drama": 4},
                "library_quality": {"Movies": {"4K": 1, "SD": 2}},
            }),
            failed(2),
            ok(3, {
                "hourly": {0: 1},
                "platforms": {"Roku": 1},
                "stream_types": {"Direct Play": 1},
                "genres": {"Drama": 1, "Comedy": 2},
                "library_quality": {"Movies": {"1080p": 5}},
            }),
        ]
        response = merge_analytics(results)

        assert len(response.hourly_activity) == 24
        assert response.hourly_activity[0].plays == 3
        assert response.hourly_activity[23].plays == 1
        assert [(d.name, d.value) for d in response.device_preferences] == [("Roku", 100)]
        assert [(p.name, p.value) for p in response.playback_health] == [
            ("Direct Play", 3), ("Direct Stream", 0), ("Transcode", 1)
        ]
        quality = response.library_quality[0].model_dump(by_alias=True)
        assert quality == {"name": "Movies", "4K": 1, "1080p": 5, "720p": 0, "SD": 2}
        assert [(g.subject, g.A) for g in response.genre_popularity] == [("Drama", 5), ("Comedy", 2)]

    def test_merge_analytics_all_failed(self):
        response = merge_analytics([failed(1)])
        assert sum(h.plays for h in response.hourly_activity) == 0
        assert response.device_preferences == []
        assert response.library_quality == []


@pytest.mark.parametrize("count,total,expected", [(1, 8, 13), (1, 6, 17), (0, 5, 0)])
def test_percent_rounding(count, total, expected):
    """测试：百分比四舍五入（0.5 进位）"""
    assert percent(count, total) == expected
