"""
网络状态 API

两个独立的轮询入口：完整状态（低频）和仅活跃会话（高频）。
没有配置服务器时返回全零结果而不是 404。
"""

from fastapi import APIRouter, Depends

from ...models import NetworkStatus, SessionsResponse
from ...services import AggregationService
from ..dependencies import get_service

router = APIRouter(prefix="/api/network", tags=["network"])


@router.get("/status", response_model=NetworkStatus)
async def get_network_status(service: AggregationService = Depends(get_service)):
    """完整网络状态：带宽、流数、转码数、用户数、24h 播放数和会话列表"""
    return await service.network_status()


@router.get("/sessions", response_model=SessionsResponse)
async def get_active_sessions(service: AggregationService = Depends(get_service)):
    """仅活跃会话"""
    return await service.active_sessions()
