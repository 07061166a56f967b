"""
配置加载模块

从 config.yaml 加载配置，支持 Pydantic 验证和环境变量覆盖。
"""

import os
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseConfig(BaseModel):
    """数据库配置"""
    path: str = "data/aggregator.db"
    timeout: int = 30


class APIConfig(BaseModel):
    """API 服务配置"""
    host: str = "0.0.0.0"
    port: int = 8282
    cors_origins: List[str] = ["http://localhost:8282", "http://127.0.0.1:8282"]
    admin_token: str = "CHANGE_ME_IN_PRODUCTION"


class UpstreamConfig(BaseModel):
    """上游 Tautulli 调用配置（超时单位：秒）"""
    health_timeout: float = 1.5
    standard_timeout: float = 5.0
    stats_timeout: float = 10.0
    history_timeout: float = 20.0
    users_timeout: float = 30.0
    library_media_timeout: float = 10.0
    image_timeout: float = 15.0
    user_agent: str = "TautulliAggregator/1.0"
    history_length: int = 5000
    users_table_length: int = 1000
    genre_metadata_limit: int = 20


class CacheConfig(BaseModel):
    """缓存配置"""
    metadata_ttl_seconds: int = 120
    image_dir: str = "cache/images"
    image_default_width: int = 500
    image_default_height: int = 500
    image_max_age_seconds: int = 604800


class GeoConfig(BaseModel):
    """IP 地理位置配置"""
    database_path: str = "data/GeoLite2-City.mmdb"
    # None 表示缓存条目永不过期
    cache_max_age_days: Optional[int] = None
    cleanup_interval_hours: int = 24


class LoggingConfig(BaseModel):
    """日志配置"""
    level: str = "INFO"
    file: Optional[str] = None


class AppConfig(BaseSettings):
    """应用配置（完整配置）"""

    model_config = SettingsConfigDict(
        env_prefix="TAUTULLI_AGGREGATOR_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    api: APIConfig = Field(default_factory=APIConfig)
    upstream: UpstreamConfig = Field(default_factory=UpstreamConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    geo: GeoConfig = Field(default_factory=GeoConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(config_path: Optional[str] = None) -> AppConfig:
    """
    加载配置文件
    
    优先级：
    1. 参数指定的路径
    2. 环境变量 TAUTULLI_AGGREGATOR_CONFIG
    3. 默认路径 config.yaml
    """
    if config_path is None:
        config_path = os.environ.get("TAUTULLI_AGGREGATOR_CONFIG", "config.yaml")
    
    config_file = Path(config_path)
    
    if config_file.exists():
        with open(config_file, "r", encoding="utf-8") as f:
            raw_config = yaml.safe_load(f)
            if raw_config:
                # Paths inside config.yaml are relative to the config file directory.
                base_dir = config_file.resolve().parent

                def _resolve_path(value: Optional[str]) -> Optional[str]:
                    if not value:
                        return value
                    path = Path(value)
                    if path.is_absolute():
                        return str(path)
                    return str((base_dir / path).resolve())

                for section, key in (
                    ("database", "path"),
                    ("cache", "image_dir"),
                    ("geo", "database_path"),
                    ("logging", "file"),
                ):
                    if isinstance(raw_config.get(section), dict) and key in raw_config[section]:
                        raw_config[section][key] = _resolve_path(raw_config[section][key])

                return AppConfig(**raw_config)
    
    # 配置文件不存在时使用默认配置（仍然读取环境变量）
    return AppConfig()


# 全局配置实例（延迟加载）
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """获取全局配置实例（单例模式）"""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config():
    """重置配置（主要用于测试）"""
    global _config
    _config = None
