"""
用户表 API
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from ...models import UserTableItem
from ...services import AggregationService
from ..dependencies import get_service

router = APIRouter(prefix="/api/users", tags=["users"])


@router.get("", response_model=List[UserTableItem])
async def get_users(
    server_id: Optional[str] = Query(None, description="服务器 ID，all 或不传表示全部"),
    service: AggregationService = Depends(get_service)
):
    """按 user_id 跨服务器合并的用户列表（最近活跃在前）"""
    return await service.users_table(server_filter=server_id)
