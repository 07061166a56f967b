"""
观看统计 API
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ...models import StatType, UserDetailResponse, WatchStatsResponse
from ...services import AggregationService, NoServersConfigured
from ..dependencies import get_service

router = APIRouter(prefix="/api/stats", tags=["stats"])


@router.get("", response_model=WatchStatsResponse)
async def get_watch_stats(
    days: int = Query(30, ge=1, description="统计窗口（天）"),
    stat_type: StatType = Query("plays", description="plays 或 duration"),
    server_id: Optional[str] = Query(None, description="服务器 ID，all 或不传表示全部"),
    service: AggregationService = Depends(get_service)
):
    """
    跨服务器合并的排行榜

    影片按 (标题, 年份) 合并，剧集只按标题合并；用户和媒体库不跨服务器合并。
    """
    try:
        return await service.watch_stats(days=days, stat_type=stat_type, server_filter=server_id)
    except NoServersConfigured as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.get("/user/{username}", response_model=UserDetailResponse)
async def get_user_detail(
    username: str,
    days: int = Query(30, description="统计窗口（天），<= 0 表示不限"),
    service: AggregationService = Depends(get_service)
):
    """单个用户在所有服务器上的播放详情"""
    try:
        return await service.user_detail(username, days=days)
    except NoServersConfigured as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
