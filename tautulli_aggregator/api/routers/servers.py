"""
服务器管理 API

提供上游 Tautulli 服务器的 CRUD 操作。
添加 / 编辑前先测试连接；任何变更都会清空元数据缓存。
"""

import logging
from typing import List

import httpx
from fastapi import APIRouter, Depends, HTTPException, status

from ...config import AppConfig
from ...database import Database
from ...models import MetadataCache, ServerCreate, ServerResponse
from ...upstream import check_connection, clean_base_url
from ..dependencies import (
    get_app_config,
    get_database,
    get_http_client,
    get_metadata_cache,
    verify_admin_token,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/servers", tags=["servers"])


async def _validated_url(data: ServerCreate, client: httpx.AsyncClient, config: AppConfig) -> str:
    """规范化 URL 并测试连接，失败时返回 400"""
    url = clean_base_url(data.tautulli_url)
    if not await check_connection(client, url, data.api_key, timeout=config.upstream.standard_timeout):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Could not connect to Tautulli instance"
        )
    return url


@router.get("", response_model=List[ServerResponse])
async def list_servers(db: Database = Depends(get_database)):
    """获取所有服务器"""
    return [ServerResponse(**server) for server in db.get_all_servers()]


@router.get("/{server_id}", response_model=ServerResponse)
async def get_server(server_id: int, db: Database = Depends(get_database)):
    """获取单个服务器详情"""
    server = db.get_server_by_id(server_id)
    if not server:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Server {server_id} not found"
        )
    return ServerResponse(**server)


@router.post("", response_model=dict, dependencies=[Depends(verify_admin_token)])
async def create_server(
    data: ServerCreate,
    db: Database = Depends(get_database),
    client: httpx.AsyncClient = Depends(get_http_client),
    metadata_cache: MetadataCache = Depends(get_metadata_cache),
    config: AppConfig = Depends(get_app_config)
):
    """
    添加服务器

    URL 会去掉末尾的 / 并补全 http://，连接测试通过后才入库。
    """
    url = await _validated_url(data, client, config)

    server_id = db.create_server(name=data.name, tautulli_url=url, api_key=data.api_key)
    metadata_cache.clear()

    logger.info(f"Created server: {data.name} (id={server_id}), metadata cache cleared")

    return {"success": True, "message": "Server added successfully", "id": server_id}


@router.put("/{server_id}", dependencies=[Depends(verify_admin_token)])
async def update_server(
    server_id: int,
    data: ServerCreate,
    db: Database = Depends(get_database),
    client: httpx.AsyncClient = Depends(get_http_client),
    metadata_cache: MetadataCache = Depends(get_metadata_cache),
    config: AppConfig = Depends(get_app_config)
):
    """更新服务器配置"""
    server = db.get_server_by_id(server_id)
    if not server:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Server {server_id} not found"
        )

    url = await _validated_url(data, client, config)

    success = db.update_server(server_id=server_id, name=data.name, tautulli_url=url, api_key=data.api_key)
    metadata_cache.clear()

    if success:
        logger.info(f"Updated server {server_id}, metadata cache cleared")

    return {"success": success, "message": "Server updated successfully"}


@router.delete("/{server_id}", dependencies=[Depends(verify_admin_token)])
async def delete_server(
    server_id: int,
    db: Database = Depends(get_database),
    metadata_cache: MetadataCache = Depends(get_metadata_cache)
):
    """删除服务器"""
    server = db.get_server_by_id(server_id)
    if not server:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Server {server_id} not found"
        )

    success = db.delete_server(server_id)
    metadata_cache.clear()

    if success:
        logger.info(f"Deleted server {server_id}, metadata cache cleared")

    return {"success": success, "message": "Server deleted successfully"}
