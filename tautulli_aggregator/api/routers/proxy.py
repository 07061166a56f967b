"""
图片代理 API

GET /api/proxy/image?serverId=1&img=/library/metadata/...&width=300
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse

from ...image_cache import ImageCacheProxy, ImageFetchError, ServerNotFoundError
from ...upstream import UpstreamAuthError
from ..dependencies import get_image_cache

router = APIRouter(prefix="/api/proxy", tags=["proxy"])


@router.get("/image")
async def proxy_image(
    server_id: Optional[int] = Query(None, alias="serverId"),
    img: Optional[str] = Query(None),
    width: Optional[int] = Query(None, ge=1),
    height: Optional[int] = Query(None, ge=1),
    image_cache: ImageCacheProxy = Depends(get_image_cache)
):
    """
    带磁盘缓存的图片代理

    响应头 X-Cache-Status 标记 HIT / MISS。
    上游 401 返回 502，避免前端误判为自身登录失效。
    """
    if server_id is None or not img:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing required parameters: serverId, img"
        )

    try:
        stream = await image_cache.fetch(server_id, img, width, height)
    except ServerNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Server not found")
    except UpstreamAuthError:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Upstream Authentication Failed")
    except ImageFetchError:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to fetch image")

    return StreamingResponse(stream.body, media_type=stream.media_type, headers=stream.headers)
