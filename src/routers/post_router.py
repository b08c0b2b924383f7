# src/routers/post_router.py
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from sqlmodel.ext.asyncio.session import AsyncSession

from src.dependencies.auth import get_current_user
from src.dependencies.db import get_session_dep
from src.dependencies.services import get_renderer
from src.exceptions import RenderError
from src.models.enums import Theme
from src.models.post import SourcePost
from src.services.renderer import Renderer, default_theme
from src.utils import utcnow

router = APIRouter(prefix="/posts", tags=["posts"])


@router.get("/{post_id}/preview", response_class=Response)
async def preview_post(
    post_id: uuid.UUID,
    theme: Optional[Theme] = None,
    session: AsyncSession = Depends(get_session_dep),
    renderer: Renderer = Depends(get_renderer),
    current_user=Depends(get_current_user),
):
    post = await session.get(SourcePost, post_id)
    if post is None or post.user_id != current_user.id:
        raise HTTPException(status_code=404, detail="Post not found")

    try:
        result = await renderer.render_post(post, theme or default_theme(utcnow()))
    except RenderError as exc:
        raise HTTPException(status_code=500, detail=str(exc))
    return Response(content=result.data, media_type=result.content_type, headers={"Cache-Control": "no-store"})
