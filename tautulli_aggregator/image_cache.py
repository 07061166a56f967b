"""
图片缓存代理

按 (server_id, img, width, height) 的 MD5 作为文件名缓存上游图片：
- 命中：直接从磁盘流式返回，X-Cache-Status: HIT
- 未命中：从上游 /pms_image_proxy 流式拉取，同时写给客户端和缓存文件
- 写缓存失败只记录日志，不影响正在返回的响应
- 不做淘汰，缓存目录大小由运维自行管理
"""

import asyncio
import hashlib
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, BinaryIO, Dict, Optional
from uuid import uuid4

import httpx

from .database import Database
from .models import UpstreamServer
from .upstream import UpstreamAuthError, describe_error

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


class ServerNotFoundError(LookupError):
    """图片请求指向不存在的服务器"""


class ImageFetchError(Exception):
    """上游图片拉取失败（对外为 502）"""


def image_cache_key(server_id: int, img: str, width: int, height: int) -> str:
    """缓存 key：只要求文件名分布均匀，不要求抗碰撞"""
    raw = f"{server_id}-{img}-{width}-{height}"
    return hashlib.md5(raw.encode("utf-8")).hexdigest()


@dataclass
class ImageStream:
    """图片响应：缓存状态 + 响应头 + 字节流"""
    cache_status: str
    media_type: str
    body: AsyncIterator[bytes]
    headers: Dict[str, str] = field(default_factory=dict)


class ImageCacheProxy:
    """内容寻址的磁盘图片缓存"""

    def __init__(
        self,
        cache_dir: str,
        db: Database,
        client: httpx.AsyncClient,
        timeout: float = 15.0,
        max_age_seconds: int = 604800,
        default_width: int = 500,
        default_height: int = 500
    ):
        self.cache_dir = Path(cache_dir)
        self.db = db
        self.client = client
        self.timeout = timeout
        self.cache_control = f"public, max-age={max_age_seconds}, immutable"
        self.default_width = default_width
        self.default_height = default_height

        if not self.cache_dir.exists():
            logger.info(f"Creating image cache directory: {self.cache_dir}")
            self.cache_dir.mkdir(parents=True, exist_ok=True)

    def cache_path(self, key: str) -> Path:
        # 绝大多数 Plex 海报都是 JPEG
        return self.cache_dir / f"{key}.jpg"

    async def fetch(
        self,
        server_id: int,
        img: str,
        width: Optional[int] = None,
        height: Optional[int] = None
    ) -> ImageStream:
        """
        获取图片字节流

        Raises:
            ServerNotFoundError: 服务器不存在（404）
            UpstreamAuthError: 上游 401（502，避免前端误认为自身登录失效）
            ImageFetchError: 其他上游失败（502）
        """
        width = width or self.default_width
        height = height or self.default_height
        path = self.cache_path(image_cache_key(server_id, img, width, height))

        if path.exists():
            headers = {"Cache-Control": self.cache_control, "X-Cache-Status": "HIT"}
            try:
                headers["Content-Length"] = str(path.stat().st_size)
            except OSError:
                pass
            return ImageStream(cache_status="HIT", media_type="image/jpeg", body=self._read_file(path), headers=headers)

        row = self.db.get_server_by_id(server_id)
        if row is None:
            logger.error(f"Image proxy: server not found: {server_id}")
            raise ServerNotFoundError(f"Server {server_id} not found")
        server = UpstreamServer.from_row(row)

        request = self.client.build_request(
            "GET",
            f"{server.base_url.rstrip('/')}/pms_image_proxy",
            params={
                "img": img,
                "width": width,
                "height": height,
                "apikey": server.credential,
                "fallback": "poster",
            },
            timeout=self.timeout
        )

        try:
            response = await asyncio.wait_for(self.client.send(request, stream=True), timeout=self.timeout)
        except (asyncio.TimeoutError, httpx.HTTPError) as e:
            logger.error(f"Image proxy: failed to fetch from {server.name}: {describe_error(e)}")
            raise ImageFetchError(describe_error(e)) from e

        if not response.is_success:
            await response.aclose()
            logger.error(f"Image proxy: {server.name} returned HTTP {response.status_code}")
            if response.status_code == 401:
                raise UpstreamAuthError("Upstream Authentication Failed")
            raise ImageFetchError(f"upstream returned HTTP {response.status_code}")

        headers = {"Cache-Control": self.cache_control, "X-Cache-Status": "MISS"}
        # aiter_bytes 会解压，此时上游长度不再准确
        if "content-length" in response.headers and "content-encoding" not in response.headers:
            headers["Content-Length"] = response.headers["content-length"]
        media_type = response.headers.get("content-type", "image/jpeg")
        return ImageStream(cache_status="MISS", media_type=media_type, body=self._tee(response, path), headers=headers)

    async def _read_file(self, path: Path) -> AsyncIterator[bytes]:
        loop = asyncio.get_running_loop()
        with open(path, "rb") as f:
            while True:
                chunk = await loop.run_in_executor(None, f.read, CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk

    async def _tee(self, response: httpx.Response, path: Path) -> AsyncIterator[bytes]:
        """
        把上游字节同时写给客户端和缓存文件

        先写临时文件，完整读完后原子替换，避免半截文件被当成缓存命中。
        """
        tmp_path = path.with_name(f"{path.name}.{uuid4().hex}.tmp")
        writer: Optional[BinaryIO] = None
        try:
            writer = open(tmp_path, "wb")
        except OSError as e:
            logger.error(f"Image cache write error ({path.name}): {e}")

        loop = asyncio.get_running_loop()
        completed = False
        try:
            async for chunk in response.aiter_bytes(CHUNK_SIZE):
                if writer is not None:
                    try:
                        await loop.run_in_executor(None, writer.write, chunk)
                    except OSError as e:
                        logger.error(f"Image cache write error ({path.name}): {e}")
                        self._discard(writer, tmp_path)
                        writer = None
                yield chunk
            completed = True
        finally:
            await response.aclose()
            if writer is not None:
                if completed:
                    self._commit(writer, tmp_path, path)
                else:
                    self._discard(writer, tmp_path)

    def _commit(self, writer: BinaryIO, tmp_path: Path, path: Path):
        try:
            writer.close()
            os.replace(tmp_path, path)
        except OSError as e:
            logger.error(f"Image cache write error ({path.name}): {e}")
            self._discard(writer, tmp_path)

    def _discard(self, writer: BinaryIO, tmp_path: Path):
        try:
            writer.close()
        except OSError:
            pass
        try:
            tmp_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Failed to remove partial cache file {tmp_path.name}: {e}")
