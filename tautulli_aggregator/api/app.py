"""
FastAPI 应用配置

配置 CORS、路由注册，以及进程级共享对象。
"""

import logging
from typing import Optional

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from ..config import AppConfig, get_config
from ..database import Database
from ..geo import open_geo_reader
from ..image_cache import ImageCacheProxy
from ..models import MetadataCache
from ..upstream import create_http_client
from .routers import analytics, network, proxy, servers, stats, users

logger = logging.getLogger(__name__)


def create_app(
    config: Optional[AppConfig] = None,
    db: Optional[Database] = None,
    http_client: Optional[httpx.AsyncClient] = None
) -> FastAPI:
    """
    创建 FastAPI 应用实例

    配置：
    - CORS 中间件
    - API 路由
    - app.state：配置、数据库、共享 HTTP 客户端、元数据缓存、图片缓存、GeoIP 读取器

    Args:
        config: 应用配置，不指定则使用全局配置
        db: 数据库实例，不指定则按 config.database 创建
        http_client: 上游 HTTP 客户端，不指定则新建
    """
    if config is None:
        config = get_config()
    if db is None:
        db = Database(config.database.path, config.database.timeout)
        db.init_schema()

    app = FastAPI(
        title="Tautulli Aggregator",
        description="多 Tautulli 服务器遥测聚合和 API 服务",
        version=__version__,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json"
    )

    app.state.config = config
    app.state.metadata_cache = MetadataCache()
    app.state.db = db
    app.state.http_client = http_client or create_http_client(config.upstream.user_agent)
    app.state.image_cache = ImageCacheProxy(
        config.cache.image_dir,
        db,
        app.state.http_client,
        timeout=config.upstream.image_timeout,
        max_age_seconds=config.cache.image_max_age_seconds,
        default_width=config.cache.image_default_width,
        default_height=config.cache.image_default_height
    )
    app.state.geo_reader = open_geo_reader(config.geo.database_path)

    # CORS 中间件
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Cache-Status"],
    )

    # 注册路由
    app.include_router(network.router)
    app.include_router(stats.router)
    app.include_router(users.router)
    app.include_router(analytics.router)
    app.include_router(proxy.router)
    app.include_router(servers.router)

    @app.get("/api/health", tags=["system"])
    async def health():
        return {"status": "ok", "version": __version__}

    @app.on_event("startup")
    async def startup_event():
        logger.info("Tautulli Aggregator starting up...")

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("Tautulli Aggregator shutting down...")
        await app.state.http_client.aclose()
        if app.state.geo_reader is not None:
            app.state.geo_reader.close()

    return app
