import json
import math

import pytest

from peakdecon.config import PRESETS, DecompositionConfig, preset
from peakdecon.errors import InvalidConfiguration
from peakdecon.fitting.parameter_optimizer import LevenbergMarquardtConfig, SimulatedAnnealingConfig


def test_defaults_are_valid():
    config = DecompositionConfig().validate()
    assert config.peak_detection_threshold == 0.1
    assert config.min_rsquared == 0.8
    assert config.max_retries == 1
    assert math.isinf(config.max_standard_error)
    assert isinstance(config.optimizer, LevenbergMarquardtConfig)
    assert not config.parallel


def test_validate_lists_every_problem():
    config = DecompositionConfig(peak_detection_threshold=1.5, fit_window_size=0.0, max_retries=-1,
                                 sharpen_cwt={"kernel_size": 4})
    with pytest.raises(InvalidConfiguration) as info:
        config.validate()
    assert len(info.value.problems) == 4


def test_validate_rejects_unknown_shape_and_strategy():
    with pytest.raises(InvalidConfiguration):
        DecompositionConfig(default_shape="triangle").validate()
    with pytest.raises(InvalidConfiguration):
        DecompositionConfig(forced_strategy="magic").validate()


def test_from_dict_merges_nested_options():
    config = DecompositionConfig.from_dict({
        "min_rsquared": 0.95,
        "optimizer": {"max_iterations": 300},
        "emg_nlls": {"regularization": 0.1},
    })
    assert config.min_rsquared == 0.95
    assert isinstance(config.optimizer, LevenbergMarquardtConfig)
    assert config.optimizer.max_iterations == 300
    assert config.optimizer.damping_factor == LevenbergMarquardtConfig().damping_factor
    assert config.strategy_options("emg_nlls") == {"regularization": 0.1}


def test_from_dict_switches_optimizer_type():
    config = DecompositionConfig.from_dict({"optimizer": {"type": "simulated_annealing", "seed": 3}})
    assert isinstance(config.optimizer, SimulatedAnnealingConfig)
    assert config.optimizer.seed == 3


def test_from_dict_rejects_unknown_keys():
    with pytest.raises(InvalidConfiguration) as info:
        DecompositionConfig.from_dict({"min_rsquared": 0.9, "colour": "blue"})
    assert info.value.problems == ["colour"]


def test_json_round_trip(tmp_path):
    path = tmp_path / "config.json"
    original = DecompositionConfig(min_rsquared=0.9, max_workers=2, fbf={"max_iterations": 50})
    original.save_json(path)

    with open(path, encoding="utf-8") as f:
        assert json.load(f)["max_standard_error"] == "inf"

    loaded = DecompositionConfig.from_json(path)
    assert loaded == original


@pytest.mark.parametrize("name", sorted(PRESETS))
def test_presets_build_valid_configs(name):
    config = preset(name)
    assert config.peak_detection_threshold == PRESETS[name]["peak_detection_threshold"]


def test_preset_strategy_overrides():
    assert preset("complex_peaks").forced_strategy == "extreme_overlap"
    assert isinstance(preset("complex_peaks").optimizer, SimulatedAnnealingConfig)
    assert preset("high_precision").strategy_options("sharpen_cwt")["noise_threshold"] == 0.05
    with pytest.raises(InvalidConfiguration):
        preset("everything")
