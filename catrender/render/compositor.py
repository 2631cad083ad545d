"""
Image Compositor - renders one product card for one catalogue.

Card layout (sizes are base pixels, multiplied by `scale`):

    +-----------------------------+
    |  product image              |  height = width / crop_aspect_ratio
    |                   [BADGE]   |  optional watermark, nine positions
    +-----------------------------+
    |           Title             |  details bg = lighten(bg_color, 40)
    |        (subtitle)           |
    |   Colour    :  Red          |
    |   Package   :  6 pcs / set  |
    +-----------------------------+
    |  Price   :   ₹250 / piece   |  price bar in bg_color, only with a price
    +-----------------------------+

The card is encoded as PNG and written through the artifact store, so each
(product, catalogue) pair lands at one deterministic path via whole-file
replace. Identical inputs produce identical bytes.
"""

import base64
import binascii
import io
import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import List, Optional, Tuple

from PIL import Image, ImageColor, ImageDraw, ImageFont, UnidentifiedImageError

from catrender.catalogue.fields import (
    DEFAULT_FIELD_UNIT,
    DEFAULT_FIELDS,
    MAX_FIELDS,
    FieldDefinition,
    field_keys,
)
from catrender.catalogue.schema import Catalogue, EffectiveFields, Product
from catrender.errors import (
    RenderError,
    RenderErrorReason,
    StorageError,
    StorageQuotaExceeded,
)
from catrender.render.currency import DEFAULT_CURRENCY, currency_symbol
from catrender.storage.artifacts import ArtifactStore
from catrender.storage.filesystem import FileSystemBridge, Namespace

logger = logging.getLogger(__name__)

RGB = Tuple[int, int, int]

DEFAULT_BG_COLOR = "#add8e6"
DEFAULT_IMAGE_BG_COLOR = "#ffffff"
DEFAULT_FONT_COLOR = "#ffffff"

# ── Layout constants (base px) ──────────────────────────
TITLE_SIZE = 27
SUBTITLE_SIZE = 17
FIELD_SIZE = 16
FIELD_LINE_HEIGHT = FIELD_SIZE * 1.4
PRICE_SIZE = 18
PRICE_BAR_HEIGHT = 28
BADGE_SIZE = 13
WATERMARK_SIZE = 10

DETAILS_PADDING = 4
TITLE_TOP_SPACING = 10
SPACING_AFTER_TITLE = 12
SPACING_AFTER_SUBTITLE = 10
SPACING_BEFORE_FIELDS = 12
SPACING_AFTER_FIELDS = 12
FIELD_ROW_GAP = 2
FIELDS_LEFT = 24
SHADOW_HEIGHT = 25

WATERMARK_POSITIONS = (
    "top-left", "top-center", "top-right",
    "middle-left", "middle-center", "middle-right",
    "bottom-left", "bottom-center", "bottom-right",
)


# ── Colour helpers ──────────────────────────────────────

def parse_color(value: Optional[str], fallback: str) -> RGB:
    """CSS colour string to RGB; unparseable values use fallback."""
    if value:
        try:
            return ImageColor.getrgb(value)[:3]
        except ValueError:
            logger.debug(f"Unparseable colour '{value}', using {fallback}")
    return ImageColor.getrgb(fallback)[:3]


def is_light(rgb: RGB) -> bool:
    r, g, b = rgb
    return (r * 299 + g * 587 + b * 114) / 1000 > 128


def lighten(rgb: RGB, amount: int) -> RGB:
    return tuple(min(255, c + amount) for c in rgb)


def normalize_position(value: Optional[str]) -> str:
    """'bottom_right', 'bottomRight' and '"bottom-right"' all mean bottom-right."""
    text = str(value or "bottom-center").strip()
    if len(text) >= 2 and text[0] == text[-1] == '"':
        text = text[1:-1]
    text = re.sub(r"([a-z])([A-Z])", r"\1-\2", text.replace("_", "-")).lower()
    return text if text in WATERMARK_POSITIONS else "bottom-center"


@lru_cache(maxsize=64)
def load_font(path: str, size: int):
    try:
        return ImageFont.truetype(path, size)
    except OSError:
        logger.debug(f"Font '{path}' unavailable, using Pillow default")
        return ImageFont.load_default(size=size)


def decode_image_data(value: str) -> bytes:
    """Bytes of a base64 string or a base64 data URL."""
    payload = value
    if value.startswith("data:"):
        header, _, payload = value.partition(",")
        if ";base64" not in header:
            raise ValueError("only base64 data URLs are supported")
    return base64.b64decode(re.sub(r"\s+", "", payload), validate=True)


# ── Options / results ───────────────────────────────────

@dataclass
class WatermarkConfig:
    enabled: bool = False
    text: str = ""
    position: str = "bottom-center"


@dataclass
class LayoutOptions:
    width: int = 330
    scale: int = 3
    bg_color: str = DEFAULT_BG_COLOR
    image_bg_color: str = DEFAULT_IMAGE_BG_COLOR
    font_color: str = DEFAULT_FONT_COLOR
    currency: str = DEFAULT_CURRENCY
    font_path: str = "DejaVuSans.ttf"
    watermark: WatermarkConfig = field(default_factory=WatermarkConfig)
    fields: List[FieldDefinition] = field(default_factory=lambda: list(DEFAULT_FIELDS))

    @classmethod
    def from_config(cls, config=None,
                    fields: Optional[List[FieldDefinition]] = None) -> "LayoutOptions":
        if config is None:
            from catrender.utils.config import get_config
            config = get_config()
        wm = config.section("watermark")
        keys = set(field_keys(config.get("fields.count", MAX_FIELDS)))
        fields = fields if fields is not None else list(DEFAULT_FIELDS)
        return cls(
            width=int(config.get("render.width", 330)),
            scale=int(config.get("render.scale", 3)),
            bg_color=config.get("render.bg_color", DEFAULT_BG_COLOR),
            image_bg_color=config.get("render.image_bg_color", DEFAULT_IMAGE_BG_COLOR),
            font_color=config.get("render.font_color", DEFAULT_FONT_COLOR),
            currency=config.get("render.currency", DEFAULT_CURRENCY),
            font_path=config.get("render.font_path", "DejaVuSans.ttf"),
            watermark=WatermarkConfig(
                enabled=bool(wm.get("enabled", False)),
                text=str(wm.get("text") or ""),
                position=str(wm.get("position") or "bottom-center"),
            ),
            fields=[f for f in fields if f.key in keys],
        )


@dataclass
class ArtifactRef:
    product_id: str
    catalogue_id: str
    path: str
    size_bytes: int


# ── Compositor ──────────────────────────────────────────

class ImageCompositor:
    """Draws product cards with Pillow and persists them as PNG artifacts.

    Not safe for concurrent use; the batch controller renders sequentially.
    """

    def __init__(self, fs: FileSystemBridge, artifacts: ArtifactStore,
                 layout: Optional[LayoutOptions] = None):
        self.fs = fs
        self.artifacts = artifacts
        self.layout = layout or LayoutOptions()

    def render(self, product: Product, catalogue: Catalogue,
               effective: EffectiveFields,
               layout: Optional[LayoutOptions] = None) -> ArtifactRef:
        """Render and save one card.

        Raises:
            RenderError: NO_IMAGE_SOURCE, ENCODE_FAILURE or STORAGE_WRITE_FAILURE.
            StorageQuotaExceeded: the artifact store is out of space.
        """
        layout = layout or self.layout
        source = self.load_source_image(product, catalogue.id)

        try:
            card = self.compose(source, product, effective, layout)
            png = encode_png(card)
        except (OSError, ValueError) as e:
            raise RenderError(RenderErrorReason.ENCODE_FAILURE, f"Failed to encode card: {e}",
                              product_id=product.id, catalogue_id=catalogue.id) from e

        try:
            path = self.artifacts.save(catalogue, product.id, png)
        except StorageQuotaExceeded:
            raise
        except StorageError as e:
            raise RenderError(RenderErrorReason.STORAGE_WRITE_FAILURE, str(e),
                              product_id=product.id, catalogue_id=catalogue.id) from e

        logger.debug(f"[RENDER] {product.id}/{catalogue.id} -> {path} ({len(png)} bytes)")
        return ArtifactRef(product.id, catalogue.id, path, len(png))

    def get_rendered(self, product_id: str, catalogue: Catalogue) -> Optional[bytes]:
        return self.artifacts.read(catalogue, product_id)

    # ── source image ────────────────────────────────────

    def load_source_image(self, product: Product, catalogue_id: str = "") -> Image.Image:
        def fail(reason, message, cause=None):
            err = RenderError(reason, message, product_id=product.id, catalogue_id=catalogue_id)
            if cause is not None:
                raise err from cause
            raise err

        if product.image:
            try:
                data = decode_image_data(product.image)
            except (binascii.Error, ValueError) as e:
                fail(RenderErrorReason.ENCODE_FAILURE, f"Embedded image is not valid base64: {e}", e)
        elif product.image_path:
            try:
                data = self.fs.read_file(product.image_path, Namespace.DATA)
            except StorageError as e:
                fail(RenderErrorReason.NO_IMAGE_SOURCE, f"Cannot read {product.image_path}: {e}", e)
            if data is None:
                fail(RenderErrorReason.NO_IMAGE_SOURCE, f"Image file missing: {product.image_path}")
        else:
            fail(RenderErrorReason.NO_IMAGE_SOURCE, "Product has no image")

        try:
            img = Image.open(io.BytesIO(data))
            img.load()
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
            fail(RenderErrorReason.ENCODE_FAILURE, f"Unreadable image data: {e}", e)

        if img.mode != "RGBA":
            img = img.convert("RGBA")
        return img

    # ── drawing ─────────────────────────────────────────

    def compose(self, source: Image.Image, product: Product,
                effective: EffectiveFields, layout: LayoutOptions) -> Image.Image:
        s = layout.scale
        width = layout.width * s
        ratio = product.crop_aspect_ratio if product.crop_aspect_ratio > 0 else 1.0
        image_h = round(layout.width / ratio * s)

        bg = parse_color(product.bg_color or layout.bg_color, DEFAULT_BG_COLOR)
        image_bg = parse_color(product.image_bg_color or layout.image_bg_color,
                               DEFAULT_IMAGE_BG_COLOR)
        font_color = parse_color(product.font_color or layout.font_color, DEFAULT_FONT_COLOR)

        rows = field_rows(product, effective, layout.fields)
        has_price = effective.price.strip() != ""

        details_h = DETAILS_PADDING + TITLE_TOP_SPACING + TITLE_SIZE + SPACING_AFTER_TITLE
        if effective.subtitle:
            details_h += SUBTITLE_SIZE + SPACING_AFTER_SUBTITLE
        details_h += SPACING_BEFORE_FIELDS
        details_h += len(rows) * (FIELD_LINE_HEIGHT + FIELD_ROW_GAP)
        details_h += SPACING_AFTER_FIELDS
        if has_price:
            details_h += PRICE_BAR_HEIGHT
        details_h += DETAILS_PADDING
        height = image_h + round(details_h * s)

        card = Image.new("RGB", (width, height), bg)
        draw = ImageDraw.Draw(card, "RGBA")

        # Image section
        draw.rectangle([0, 0, width, image_h], fill=image_bg)
        self._draw_source(card, source, width, image_h)
        if effective.badge:
            self._draw_badge(draw, effective.badge, image_bg, width, image_h, layout)

        # Details section
        y = image_h
        draw.rectangle([0, y, width, height], fill=lighten(bg, 40))
        shadow_h = SHADOW_HEIGHT * s
        for i in range(shadow_h):
            alpha = round(64 * (1 - i / shadow_h) ** 2)
            draw.line([(0, y + i), (width, y + i)], fill=(0, 0, 0, alpha))

        y += TITLE_TOP_SPACING * s
        name = one_line(effective.name)
        title_font = load_font(layout.font_path, TITLE_SIZE * s)
        draw.text((width / 2 + 3 * s, y + 3 * s), name, font=title_font,
                  fill=(0, 0, 0, 51), anchor="mt")
        draw.text((width / 2, y), name, font=title_font, fill=font_color, anchor="mt")
        y += TITLE_SIZE * s + SPACING_AFTER_TITLE * s

        if effective.subtitle:
            sub_font = load_font(layout.font_path, SUBTITLE_SIZE * s)
            draw.text((width / 2, y), f"({one_line(effective.subtitle)})", font=sub_font,
                      fill=font_color, anchor="mt")
            y += SUBTITLE_SIZE * s + SPACING_AFTER_SUBTITLE * s

        y += SPACING_BEFORE_FIELDS * s
        if rows:
            field_font = load_font(layout.font_path, FIELD_SIZE * s)
            left = FIELDS_LEFT * s
            label_w = max(draw.textlength(label, font=field_font) for label, _ in rows)
            colon_x = left + label_w + 6 * s
            value_x = colon_x + 16 * s
            for label, text in rows:
                draw.text((left, y), label, font=field_font, fill=font_color, anchor="lt")
                draw.text((colon_x, y), ":", font=field_font, fill=font_color, anchor="lt")
                draw.text((value_x, y), text, font=field_font, fill=font_color, anchor="lt")
                y += FIELD_LINE_HEIGHT * s + FIELD_ROW_GAP * s
        y += SPACING_AFTER_FIELDS * s

        if has_price:
            draw.rectangle([0, y, width, height], fill=bg)
            price_font = load_font(layout.font_path, PRICE_SIZE * s)
            draw.text((width / 2, (y + height) / 2), price_text(effective, layout.currency),
                      font=price_font, fill=font_color, anchor="mm")

        wm = layout.watermark
        if wm.enabled and wm.text:
            self._draw_watermark(draw, wm, image_bg, width, image_h, layout)

        return card

    @staticmethod
    def _draw_source(card: Image.Image, source: Image.Image, width: int, image_h: int):
        scaled_h = round(source.height / source.width * width)
        if scaled_h >= image_h:
            fitted = source.resize((width, image_h), Image.Resampling.LANCZOS)
            card.paste(fitted, (0, 0), fitted)
        else:
            fitted = source.resize((width, scaled_h), Image.Resampling.LANCZOS)
            card.paste(fitted, (0, (image_h - scaled_h) // 2), fitted)

    @staticmethod
    def _draw_badge(draw: ImageDraw.ImageDraw, badge: str, image_bg: RGB,
                    width: int, image_h: int, layout: LayoutOptions):
        s = layout.scale
        light = is_light(image_bg)
        pill = (255, 255, 255, 242) if light else (0, 0, 0, 242)
        text_color = (0, 0, 0) if light else (255, 255, 255)
        border = (0, 0, 0, 77) if light else (255, 255, 255, 77)

        text = one_line(badge).upper()
        font = load_font(layout.font_path, BADGE_SIZE * s)
        badge_w = draw.textlength(text, font=font) + 2 * 10 * s
        badge_h = BADGE_SIZE * s + 2 * 7 * s
        x = width - badge_w - 12 * s
        y = image_h - badge_h - 12 * s
        draw.rounded_rectangle([x, y, x + badge_w, y + badge_h], radius=badge_h / 2,
                               fill=pill, outline=border, width=s)
        draw.text((x + badge_w / 2, y + badge_h / 2 + s), text, font=font,
                  fill=text_color, anchor="mm")

    @staticmethod
    def _draw_watermark(draw: ImageDraw.ImageDraw, wm: WatermarkConfig, image_bg: RGB,
                        width: int, image_h: int, layout: LayoutOptions):
        s = layout.scale
        pad = 10 * s
        color = (0, 0, 0, 64) if is_light(image_bg) else (255, 255, 255, 102)
        vertical, horizontal = normalize_position(wm.position).split("-")
        x = {"left": pad, "center": width / 2, "right": width - pad}[horizontal]
        y = {"top": pad, "middle": image_h / 2, "bottom": image_h - pad}[vertical]
        anchor = {"left": "l", "center": "m", "right": "r"}[horizontal] + \
            {"top": "t", "middle": "m", "bottom": "b"}[vertical]
        draw.text((x, y), one_line(wm.text), font=load_font(layout.font_path, WATERMARK_SIZE * s),
                  fill=color, anchor=anchor)


def one_line(text: str) -> str:
    """Collapse line breaks and runs of whitespace; anchored text must be one line."""
    return " ".join(str(text).split())


def field_rows(product: Product, effective: EffectiveFields,
               fields: List[FieldDefinition]) -> List[Tuple[str, str]]:
    """(label, 'value unit') for enabled, visible, non-empty fields."""
    rows = []
    for f in fields:
        if not (f.enabled and f.visible):
            continue
        if product.legacy_value(f"{f.key}Visible") is False:
            continue
        value = effective.fields.get(f.key, "")
        if not value:
            continue
        unit = effective.field_units.get(f.key, DEFAULT_FIELD_UNIT)
        text = f"{value} {unit}" if unit and unit != DEFAULT_FIELD_UNIT else value
        rows.append((one_line(f.label), one_line(text)))
    return rows


def price_text(effective: EffectiveFields, currency: str) -> str:
    text = f"Price   :   {currency_symbol(currency)}{one_line(effective.price)}"
    unit = one_line(effective.price_unit)
    if unit and unit != DEFAULT_FIELD_UNIT:
        text += f" {unit}"
    return text


def encode_png(card: Image.Image) -> bytes:
    buffer = io.BytesIO()
    card.save(buffer, format="PNG")
    return buffer.getvalue()
