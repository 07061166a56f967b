"""
上游 Tautulli API 调用

协议：GET {base_url}/api/v2?apikey=...&cmd=...
响应信封：{"response": {"result": "success", "data": ...}}
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

from .models import UpstreamServer

logger = logging.getLogger(__name__)


class UpstreamError(Exception):
    """上游调用失败基类"""


class UpstreamResponseError(UpstreamError):
    """信封 result != success，或响应不是合法 JSON 信封"""


class UpstreamAuthError(UpstreamError):
    """上游返回 401（与本服务自身的认证失败区分开）"""


def create_http_client(user_agent: str = "TautulliAggregator/1.0") -> httpx.AsyncClient:
    """创建共享的 HTTP 客户端（超时由每次调用单独指定，跟随重定向）"""
    return httpx.AsyncClient(headers={"User-Agent": user_agent}, follow_redirects=True)


def clean_base_url(url: str) -> str:
    """去掉末尾的 /，缺少协议时补 http://"""
    cleaned = url.strip().rstrip("/")
    if not cleaned.startswith("http"):
        cleaned = f"http://{cleaned}"
    return cleaned


def api_url(base_url: str) -> str:
    return f"{base_url.rstrip('/')}/api/v2"


def describe_error(error: BaseException) -> str:
    """超时等异常的 str() 为空，退回到类名"""
    return str(error) or type(error).__name__


def unwrap_envelope(body: Any, cmd: str) -> Any:
    """
    解析 Tautulli 响应信封

    Returns:
        response.data

    Raises:
        UpstreamResponseError: 信封缺失或 result 不是 success
    """
    envelope = body.get("response") if isinstance(body, dict) else None
    if not isinstance(envelope, dict):
        raise UpstreamResponseError(f"{cmd}: malformed response envelope")
    if envelope.get("result") != "success":
        raise UpstreamResponseError(f"{cmd}: result={envelope.get('result')} message={envelope.get('message')}")
    return envelope.get("data")


async def fetch_command(
    client: httpx.AsyncClient,
    server: UpstreamServer,
    cmd: str,
    params: Optional[Dict[str, Any]] = None,
    timeout: float = 5.0
) -> Any:
    """
    对单台服务器执行一条 Tautulli 命令（单次尝试，不重试）

    Args:
        client: 共享 HTTP 客户端
        server: 上游服务器
        cmd: 命令名（get_activity, get_home_stats ...）
        params: 额外查询参数
        timeout: 本次调用的总超时（秒）

    Returns:
        信封中的 data 字段

    Raises:
        asyncio.TimeoutError, httpx.HTTPError, UpstreamError
    """
    query: Dict[str, Any] = {"apikey": server.credential, "cmd": cmd}
    if params:
        query.update(params)

    response = await asyncio.wait_for(
        client.get(api_url(server.base_url), params=query, timeout=timeout),
        timeout=timeout
    )
    if response.status_code == 401:
        raise UpstreamAuthError(f"{cmd}: upstream rejected credentials")
    response.raise_for_status()

    try:
        body = response.json()
    except ValueError as e:
        raise UpstreamResponseError(f"{cmd}: invalid JSON ({e})") from e

    return unwrap_envelope(body, cmd)


async def check_connection(
    client: httpx.AsyncClient,
    base_url: str,
    api_key: str,
    timeout: float = 5.0
) -> bool:
    """测试连接（添加 / 编辑服务器时调用 get_activity 验证）"""
    probe = UpstreamServer(id=0, name=base_url, base_url=base_url, credential=api_key)
    try:
        await fetch_command(client, probe, "get_activity", timeout=timeout)
        return True
    except (asyncio.TimeoutError, httpx.HTTPError, UpstreamError) as e:
        logger.warning(f"Connection test failed for {base_url}: {describe_error(e)}")
        return False
