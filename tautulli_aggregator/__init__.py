"""
Tautulli Aggregator - 多 Tautulli 服务器聚合服务

负责：
- 并发拉取所有上游服务器的播放遥测数据
- 容忍单台服务器失败并合并结果
- 跨服务器去重、排名统计
- 元数据短期缓存、IP 地理位置持久缓存、图片磁盘缓存
- 提供 REST API 给前端
"""

__version__ = "1.0.0"
