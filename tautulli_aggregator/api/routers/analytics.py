"""
分析图表 API
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ...models import AnalyticsResponse
from ...services import AggregationService, NoServersConfigured
from ..dependencies import get_service

router = APIRouter(prefix="/api/analytics", tags=["analytics"])


@router.get("", response_model=AnalyticsResponse, response_model_by_alias=True)
async def get_analytics(
    days: int = Query(30, ge=1, description="统计窗口（天）"),
    server_id: Optional[str] = Query(None, description="服务器 ID，all 或不传表示全部"),
    service: AggregationService = Depends(get_service)
):
    """
    分析数据

    - 24 小时播放分布
    - 设备占比（前 4 + Others）
    - 直放 / 直串 / 转码比例
    - 电影库清晰度分布
    - 类型雷达图（前 8）
    """
    try:
        return await service.analytics(days=days, server_filter=server_id)
    except NoServersConfigured as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
