# src/services/renderer.py
"""Render a social post as a square card over a themed gradient."""
import asyncio
import io
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

import httpx
import structlog
from PIL import Image, ImageChops, ImageDraw, ImageFont, ImageOps

from src.exceptions import RenderError
from src.models.enums import Theme
from src.models.post import SourcePost

logger = structlog.get_logger(__name__)

# Square output for Instagram
OUTPUT_SIZE = 1080

RENDER_FONT_PATH = os.getenv("RENDER_FONT_PATH", "")
RENDER_FONT_BOLD_PATH = os.getenv("RENDER_FONT_BOLD_PATH", "")

_REGULAR_FONTS = (
    "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
    "/usr/share/fonts/dejavu/DejaVuSans.ttf",
    "arial.ttf",
)
_BOLD_FONTS = (
    "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf",
    "/usr/share/fonts/dejavu/DejaVuSans-Bold.ttf",
    "arialbd.ttf",
)

# 135deg gradients, stops evenly spaced from top-left to bottom-right
THEME_GRADIENTS: Dict[Theme, Tuple[str, ...]] = {
    Theme.SHINY_PURPLE: ("#667eea", "#764ba2"),
    Theme.MANGO_JUICE: ("#f093fb", "#f5576c", "#f9a825"),
    Theme.OCEAN_BREEZE: ("#667eea", "#64b5f6", "#4dd0e1"),
    Theme.FOREST_GLOW: ("#134e5e", "#71b280"),
    Theme.SUNSET_VIBES: ("#fc4a1a", "#f7b733"),
}

TEXT_COLOR = (15, 20, 25)
MUTED_COLOR = (83, 100, 113)
AVATAR_COLOR = (29, 161, 242)


def default_theme(when: datetime) -> Theme:
    """Sundays get MANGO_JUICE, every other day SHINY_PURPLE."""
    return Theme.MANGO_JUICE if when.weekday() == 6 else Theme.SHINY_PURPLE


@dataclass(frozen=True)
class RenderRequest:
    text: str
    author_name: str
    author_username: str
    theme: Theme
    avatar: Optional[bytes] = None
    created_at: Optional[datetime] = None


@dataclass
class RenderResult:
    data: bytes
    width: int
    height: int
    content_type: str = "image/png"


def _hex_to_rgb(value: str) -> Tuple[int, int, int]:
    value = value.lstrip("#")
    return int(value[0:2], 16), int(value[2:4], 16), int(value[4:6], 16)


def _gradient_lut(stops: Sequence[str]) -> List[Tuple[int, int, int]]:
    colors = [_hex_to_rgb(s) for s in stops]
    segments = len(colors) - 1
    lut = []
    for i in range(256):
        t = i / 255 * segments
        idx = min(int(t), segments - 1)
        frac = t - idx
        a, b = colors[idx], colors[idx + 1]
        lut.append(tuple(round(a[c] + (b[c] - a[c]) * frac) for c in range(3)))
    return lut


def gradient_background(theme: Theme, size: int = OUTPUT_SIZE) -> Image.Image:
    vertical = Image.linear_gradient("L")
    horizontal = vertical.rotate(90)
    # (x + y) / 2: 0 at top-left, 255 at bottom-right
    diagonal = ImageChops.add(vertical, horizontal, scale=2.0).resize((size, size), Image.Resampling.BILINEAR)
    lut = _gradient_lut(THEME_GRADIENTS[theme])
    channels = [diagonal.point([color[c] for color in lut]) for c in range(3)]
    return Image.merge("RGB", channels)


def _load_font(size: int, bold: bool = False) -> ImageFont.FreeTypeFont:
    configured = RENDER_FONT_BOLD_PATH if bold else RENDER_FONT_PATH
    candidates = ((configured,) if configured else ()) + (_BOLD_FONTS if bold else _REGULAR_FONTS)
    for path in candidates:
        try:
            return ImageFont.truetype(path, size)
        except OSError:
            continue
    return ImageFont.load_default(size=size)


def wrap_text(draw: ImageDraw.ImageDraw, text: str, font, max_width: int) -> List[str]:
    lines: List[str] = []
    for paragraph in text.split("\n"):
        words = paragraph.split()
        if not words:
            lines.append("")
            continue
        current = ""
        for word in words:
            candidate = f"{current} {word}" if current else word
            if draw.textlength(candidate, font=font) <= max_width:
                current = candidate
                continue
            if current:
                lines.append(current)
            # break words that are wider than the card on their own
            while draw.textlength(word, font=font) > max_width and len(word) > 1:
                cut = len(word)
                while cut > 1 and draw.textlength(word[:cut], font=font) > max_width:
                    cut -= 1
                lines.append(word[:cut])
                word = word[cut:]
            current = word
        lines.append(current)
    return lines


class Renderer:
    """
    Draws the post card with Pillow.

    Output is a deterministic PNG: the same request always yields the same bytes.
    Network access (avatar download) happens only in :meth:`render_post`.
    """

    MARGIN = 80
    PADDING = 56
    AVATAR_SIZE = 96
    TEXT_FONT_MAX = 44
    TEXT_FONT_MIN = 24

    def __init__(
        self,
        size: int = OUTPUT_SIZE,
        http_timeout: int = 10,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.size = size
        self.http_timeout = http_timeout
        self._transport = transport

    def render(self, request: RenderRequest) -> RenderResult:
        try:
            theme = Theme(request.theme)
            image = self._compose(request, theme)
            buf = io.BytesIO()
            image.save(buf, format="PNG")
        except RenderError:
            raise
        except Exception as exc:
            raise RenderError(f"Failed to render post image: {exc}") from exc
        return RenderResult(data=buf.getvalue(), width=image.width, height=image.height)

    async def render_post(self, post: SourcePost, theme: Theme) -> RenderResult:
        avatar = await self._fetch_avatar(post.author_image) if post.author_image else None
        request = RenderRequest(
            text=post.text,
            author_name=post.author_name,
            author_username=post.author_username,
            theme=theme,
            avatar=avatar,
            created_at=post.posted_at,
        )
        return await asyncio.to_thread(self.render, request)

    async def _fetch_avatar(self, url: str) -> Optional[bytes]:
        try:
            async with httpx.AsyncClient(timeout=self.http_timeout, transport=self._transport, follow_redirects=True) as client:
                response = await client.get(url)
                response.raise_for_status()
                return response.content
        except httpx.HTTPError as exc:
            logger.warning("avatar_fetch_failed", url=url, error=str(exc))
            return None

    # --- layout ---

    def _compose(self, request: RenderRequest, theme: Theme) -> Image.Image:
        canvas = gradient_background(theme, self.size)
        draw = ImageDraw.Draw(canvas)

        card_width = self.size - 2 * self.MARGIN
        inner_width = card_width - 2 * self.PADDING
        name_font = _load_font(34, bold=True)
        handle_font = _load_font(28)
        date_font = _load_font(24)

        date_text = ""
        if request.created_at is not None:
            d = request.created_at
            date_text = f"{d:%b} {d.day}, {d.year}"

        header_height = self.AVATAR_SIZE
        date_block = 24 + 28 if date_text else 0
        max_text_height = self.size - 2 * self.MARGIN - 2 * self.PADDING - header_height - 32 - date_block

        text_font, lines, line_height = self._fit_text(draw, request.text, inner_width, max_text_height)
        text_height = line_height * len(lines)
        card_height = 2 * self.PADDING + header_height + 32 + text_height + date_block

        left = self.MARGIN
        top = (self.size - card_height) // 2
        draw.rounded_rectangle(
            (left, top, left + card_width, top + card_height), radius=36, fill=(255, 255, 255)
        )

        x = left + self.PADDING
        y = top + self.PADDING
        canvas.paste(self._avatar(request), (x, y), self._circle_mask())

        text_x = x + self.AVATAR_SIZE + 24
        draw.text((text_x, y + 10), request.author_name, font=name_font, fill=TEXT_COLOR)
        draw.text((text_x, y + 54), f"@{request.author_username}", font=handle_font, fill=MUTED_COLOR)

        y += header_height + 32
        for line in lines:
            draw.text((x, y), line, font=text_font, fill=TEXT_COLOR)
            y += line_height

        if date_text:
            draw.text((x, y + 24), date_text, font=date_font, fill=MUTED_COLOR)
        return canvas

    def _fit_text(self, draw, text: str, max_width: int, max_height: int):
        size = self.TEXT_FONT_MAX
        while True:
            font = _load_font(size)
            line_height = int(size * 1.5)
            lines = wrap_text(draw, text, font, max_width)
            if line_height * len(lines) <= max_height or size <= self.TEXT_FONT_MIN:
                break
            size -= 2
        max_lines = max(1, max_height // line_height)
        if len(lines) > max_lines:
            lines = lines[:max_lines]
            lines[-1] = lines[-1].rstrip() + "…"
        return font, lines, line_height

    def _circle_mask(self) -> Image.Image:
        mask = Image.new("L", (self.AVATAR_SIZE, self.AVATAR_SIZE), 0)
        ImageDraw.Draw(mask).ellipse((0, 0, self.AVATAR_SIZE - 1, self.AVATAR_SIZE - 1), fill=255)
        return mask

    def _avatar(self, request: RenderRequest) -> Image.Image:
        if request.avatar:
            try:
                with Image.open(io.BytesIO(request.avatar)) as src:
                    return ImageOps.fit(src.convert("RGB"), (self.AVATAR_SIZE, self.AVATAR_SIZE))
            except (OSError, ValueError) as exc:
                logger.warning("avatar_decode_failed", error=str(exc))
        return self._placeholder_avatar(request.author_name)

    def _placeholder_avatar(self, author_name: str) -> Image.Image:
        glyph = (author_name.strip()[:1] or "?").upper()
        avatar = Image.new("RGB", (self.AVATAR_SIZE, self.AVATAR_SIZE), AVATAR_COLOR)
        draw = ImageDraw.Draw(avatar)
        draw.text(
            (self.AVATAR_SIZE // 2, self.AVATAR_SIZE // 2),
            glyph,
            font=_load_font(44, bold=True),
            fill=(255, 255, 255),
            anchor="mm",
        )
        return avatar
