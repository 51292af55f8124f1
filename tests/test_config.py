import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest
from vertex_reco.config import VertexConfig, load_config


def test_defaults():
    cfg = VertexConfig()
    assert cfg.max_dist_to_track == 4.0
    assert cfg.min_dist_to_node == 2.0
    assert cfg.seg_min_length == 0.5
    assert cfg.max_mse_to_track == 16.0
    assert cfg.merge_max_dist == 10.0
    assert cfg.weight_floor == 0.3


def test_from_mapping_and_validation():
    cfg = VertexConfig.from_mapping({"max_dist_to_track": 3, "weight_power": 10.0})
    assert cfg.max_dist_to_track == 3.0
    assert cfg.weight_power == 10 and isinstance(cfg.weight_power, int)
    assert cfg.replace(seg_min_length=1.0).seg_min_length == 1.0
    assert cfg.to_dict()["max_dist_to_track"] == 3.0

    with pytest.raises(ValueError):
        VertexConfig.from_mapping({"no_such_key": 1})
    with pytest.raises(ValueError):
        VertexConfig(max_dist_to_track=0.0)
    with pytest.raises(ValueError):
        VertexConfig(weight_floor=1.5)


def test_load_config(tmp_path):
    p = tmp_path / "cfg.json"
    p.write_text('{"vertex_config": {"min_dist_to_node": 1.5}, "other": {"x": 1}}')
    assert load_config(p).min_dist_to_node == 1.5

    flat = tmp_path / "flat.json"
    flat.write_text('{"merge_max_dist": 7}')
    assert load_config(str(flat)).merge_max_dist == 7.0

    bad = tmp_path / "bad.json"
    bad.write_text("{not json")
    with pytest.raises(ValueError):
        load_config(bad)
    with pytest.raises(ValueError):
        load_config(tmp_path / "missing.json")

    arr = tmp_path / "arr.json"
    arr.write_text("[1, 2]")
    with pytest.raises(ValueError):
        load_config(arr)
