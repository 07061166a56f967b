"""
扇出聚合

对所有上游服务器并发发起同一查询，等待全部结束（settle-all）：
- 每台服务器一个协程，单台失败不会取消其他服务器
- 失败 / 超时记为 ok=False，只记录日志，不向调用方抛出
- 结果顺序与输入服务器列表一致（不是网络完成顺序）
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Sequence

import httpx
from pydantic import BaseModel, Field

from .models import PerServerResult, UpstreamServer
from .upstream import describe_error, fetch_command

logger = logging.getLogger(__name__)


ServerWorker = Callable[[UpstreamServer], Awaitable[Any]]


class FanoutQuery(BaseModel):
    """查询描述：命令名 + 参数 + 单次调用超时"""
    command: str
    params: Dict[str, Any] = Field(default_factory=dict)
    timeout: float = 5.0


async def settle_all(
    servers: Sequence[UpstreamServer],
    worker: ServerWorker,
    label: str = "data"
) -> List[PerServerResult]:
    """
    对每台服务器运行 worker，等待全部完成

    Args:
        servers: 上游服务器列表（决定结果顺序）
        worker: 单台服务器的协程函数，返回值作为 payload
        label: 日志中的查询名称

    Returns:
        与 servers 一一对应的 PerServerResult 列表
    """
    async def _run(server: UpstreamServer) -> PerServerResult:
        try:
            payload = await worker(server)
        except Exception as e:
            logger.warning(f"Failed to fetch {label} from {server.name}: {describe_error(e)}")
            return PerServerResult(server_id=server.id, server_name=server.name, ok=False)
        return PerServerResult(server_id=server.id, server_name=server.name, payload=payload, ok=True)

    results = await asyncio.gather(*(_run(server) for server in servers))

    ok_count = sum(1 for r in results if r.ok)
    logger.debug(f"Fan-out {label}: {ok_count}/{len(results)} servers succeeded")
    if results and ok_count == 0:
        logger.warning(f"Fan-out {label}: all {len(results)} servers failed")

    return list(results)


async def fan_out(
    client: httpx.AsyncClient,
    servers: Sequence[UpstreamServer],
    query: FanoutQuery
) -> List[PerServerResult]:
    """对所有服务器执行同一条 Tautulli 命令"""
    async def _worker(server: UpstreamServer) -> Any:
        return await fetch_command(client, server, query.command, query.params, query.timeout)

    return await settle_all(servers, _worker, label=query.command)


def successful(results: Sequence[PerServerResult]) -> Iterator[PerServerResult]:
    """按输入顺序遍历成功的结果"""
    for result in results:
        if result.ok:
            yield result
