"""
主程序入口

启动并发任务：
1. REST API 服务
2. 地理位置缓存清理（仅在配置了 geo.cache_max_age_days 时）
"""

import asyncio
import logging
import sys
from pathlib import Path

import uvicorn

from . import __version__
from .config import get_config
from .database import get_db
from .geo import GeoResolver, open_geo_reader, run_geo_cleanup


def setup_logging():
    """配置日志"""
    config = get_config()

    # 日志格式
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    # 获取日志级别
    level = getattr(logging, config.logging.level.upper(), logging.INFO)

    # 配置根日志
    logging.basicConfig(
        level=level,
        format=log_format,
        handlers=[logging.StreamHandler(sys.stdout)]
    )

    # 如果配置了文件日志
    if config.logging.file:
        log_path = Path(config.logging.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(str(log_path), encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(log_format))
        logging.getLogger().addHandler(file_handler)

    # 降低第三方库日志级别
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


async def run_api_server():
    """运行 API 服务器"""
    from .api.app import create_app

    config = get_config()
    app = create_app(config, get_db())

    server_config = uvicorn.Config(
        app=app,
        host=config.api.host,
        port=config.api.port,
        log_level="info",
        access_log=False  # 我们用自己的日志
    )
    server = uvicorn.Server(server_config)
    await server.serve()


async def main():
    """主函数：启动所有任务"""
    logger = logging.getLogger(__name__)

    # 设置日志
    setup_logging()
    logger.info("=" * 60)
    logger.info(f"Tautulli Aggregator v{__version__}")
    logger.info("=" * 60)

    # 加载配置
    config = get_config()
    logger.info(f"Config loaded: API={config.api.host}:{config.api.port}")
    logger.info(f"Database: {config.database.path}")
    logger.info(f"Image cache: {config.cache.image_dir}")

    # 初始化数据库
    db = get_db()
    logger.info(f"Database initialized: {db.db_path}")

    tasks = [run_api_server()]

    cleanup_resolver = None
    if config.geo.cache_max_age_days:
        cleanup_resolver = GeoResolver(db, open_geo_reader(config.geo.database_path))
        tasks.append(run_geo_cleanup(
            cleanup_resolver,
            config.geo.cache_max_age_days,
            config.geo.cleanup_interval_hours
        ))
    else:
        logger.info("Geo cache expiry disabled (entries never expire)")

    logger.info("Starting concurrent tasks...")

    try:
        await asyncio.gather(*tasks)
    except asyncio.CancelledError:
        logger.info("Tasks cancelled, shutting down...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        raise
    finally:
        if cleanup_resolver is not None:
            cleanup_resolver.close()


def cli():
    """命令行入口"""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nShutdown requested, exiting...")
        sys.exit(0)


if __name__ == "__main__":
    cli()
