# File: tests/test_engine.py
import pytest

from wp_vrt.config import VRTConfig
from wp_vrt.engine import Engine
from wp_vrt.errors import ConfigError


@pytest.fixture()
def engine(vrt_config) -> Engine:
    data = vrt_config.model_dump()
    data["sites"] = [
        {"id": "blog", "url": "http://blog.example.com"},
        {"id": "shop", "url": "http://shop.example.com"},
        {"id": "docs", "url": "http://docs.example.com"},
    ]
    return Engine(VRTConfig(**data))


@pytest.mark.parametrize("selection", ["all", None])
def test_select_all_keeps_config_order(engine, selection):
    assert [s.id for s in engine.select_sites(selection)] == ["blog", "shop", "docs"]


def test_select_list_keeps_caller_order_and_dedupes(engine):
    assert [s.id for s in engine.select_sites(["docs", "blog", "docs"])] == ["docs", "blog"]
    assert [s.id for s in engine.select_sites("shop")] == ["shop"]


def test_select_unknown_raises(engine):
    with pytest.raises(ConfigError, match="nope"):
        engine.select_sites(["blog", "nope"])


def test_load_config_from_file(tmp_path):
    path = tmp_path / "sites.yaml"
    path.write_text("sites:\n  - id: blog\n    url: http://blog.example.com\n", encoding="utf-8")
    cfg = Engine.load_config(str(path))
    assert cfg.site("blog").id == "blog"


def test_load_config_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        Engine.load_config(str(tmp_path / "absent.yaml"))
