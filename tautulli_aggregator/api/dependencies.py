"""
依赖注入模块

提供 FastAPI 依赖项。进程级对象（配置、数据库、HTTP 客户端、元数据缓存、图片缓存、GeoIP 读取器）
挂在 app.state 上，由 create_app 创建。
"""

from typing import Optional

import httpx
from fastapi import Depends, Header, HTTPException, Request, status

from ..config import AppConfig
from ..database import Database
from ..geo import GeoResolver
from ..image_cache import ImageCacheProxy
from ..models import MetadataCache
from ..services import AggregationService


def get_database(request: Request) -> Database:
    """获取数据库实例（create_app 按传入配置创建）"""
    return request.app.state.db


def get_app_config(request: Request) -> AppConfig:
    return request.app.state.config


def get_metadata_cache(request: Request) -> MetadataCache:
    return request.app.state.metadata_cache


def get_http_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.http_client


def get_geo_resolver(request: Request, db: Database = Depends(get_database)) -> GeoResolver:
    """地理解析器（共享离线库读取器，缓存表走当前数据库）"""
    return GeoResolver(db, request.app.state.geo_reader)


def get_service(
    db: Database = Depends(get_database),
    client: httpx.AsyncClient = Depends(get_http_client),
    metadata_cache: MetadataCache = Depends(get_metadata_cache),
    geo: GeoResolver = Depends(get_geo_resolver),
    config: AppConfig = Depends(get_app_config)
) -> AggregationService:
    return AggregationService(db, client, metadata_cache, geo, config)


def get_image_cache(request: Request) -> ImageCacheProxy:
    return request.app.state.image_cache


async def verify_admin_token(
    x_admin_token: Optional[str] = Header(None),
    config: AppConfig = Depends(get_app_config)
):
    """
    验证管理员 Token

    用于保护 POST/PUT/DELETE 操作。
    """
    expected_token = config.api.admin_token

    # 如果配置为默认值，跳过验证（开发环境）
    if expected_token == "CHANGE_ME_IN_PRODUCTION":
        return

    if x_admin_token != expected_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin token"
        )
