import base64
import io

import pytest
import yaml
from PIL import Image

from catrender.app import build_services
from catrender.catalogue.schema import Catalogue, Product
from catrender.utils.config import AppConfig, reset_config


@pytest.fixture
def config(tmp_path):
    settings = tmp_path / "user-settings.yaml"
    settings.write_text(yaml.safe_dump({
        "storage": {"data_dir": str(tmp_path / "data")},
        "render": {"width": 60, "scale": 1, "inter_unit_delay_ms": 0},
    }), encoding="utf-8")
    cfg = AppConfig(user_settings_path=settings)
    reset_config(cfg)
    yield cfg
    reset_config()


@pytest.fixture
def services(config, tmp_path):
    s = build_services(config, data_dir=tmp_path / "data", delay_ms=0)
    yield s
    s.close()


def png_bytes(color=(200, 30, 30), size=(8, 8)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


def png_data_url(color=(200, 30, 30), size=(8, 8)) -> str:
    return "data:image/png;base64," + base64.b64encode(png_bytes(color, size)).decode("ascii")


def make_product(pid, image=True, **kwargs) -> Product:
    if isinstance(image, str):
        kwargs["image"] = image
    elif image:
        kwargs.setdefault("image", png_data_url())
    kwargs.setdefault("name", f"Product {pid}")
    return Product(id=pid, **kwargs)


def master() -> Catalogue:
    return Catalogue(id="cat1", label="Master", price_field="price1",
                     price_unit_field="price1Unit", stock_field="wholesaleStock",
                     folder="Master", is_default=True)


def custom(cid="cat99", n=3) -> Catalogue:
    return Catalogue(id=cid, label="Retail", price_field=f"price{n}",
                     price_unit_field=f"price{n}Unit", stock_field=f"price{n}Stock",
                     folder=f"Catalogue{n}")
