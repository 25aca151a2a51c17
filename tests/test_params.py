import math

import numpy as np
import pytest

from boundcma.core.errors import ConfigurationError
from boundcma.optim.cma.params import (
    DEFAULT_INV_SIGMA,
    LOG_1E_16,
    CmaConfig,
    CmaParams,
    default_population,
)


@pytest.mark.parametrize("dim", [1, 2, 5, 10, 40])
def test_auto_weights_are_normalised_and_decreasing(dim):
    params = CmaParams.auto(dim)
    assert params.lambda_ == default_population(dim)
    assert params.mu == params.lambda_ // 2
    assert np.sum(params.weights) == pytest.approx(1.0)
    assert np.all(np.diff(params.weights) < 0)
    assert params.mu_eff == pytest.approx(1.0 / np.sum(params.weights**2))
    assert 0 < params.c_s < 1
    assert 0 <= params.c1 <= 1 - params.c_mu


def test_default_population():
    assert default_population(1) == 4
    assert default_population(2) == 4 + int(3 * math.log(2))
    assert default_population(10) == 10


def test_population_of_one_keeps_one_parent():
    params = CmaParams.auto(3, population=1)
    assert params.mu == 1
    assert params.weights == pytest.approx([1.0])


def test_auto_rejects_bad_input():
    with pytest.raises(ConfigurationError):
        CmaParams.auto(0)
    with pytest.raises(ConfigurationError):
        CmaParams.auto(3, population=-1)


def test_config_defaults():
    cfg = CmaConfig()
    assert cfg.inv_sigma0 == pytest.approx(DEFAULT_INV_SIGMA)
    assert CmaConfig(init_step_size=0.5).inv_sigma0 == pytest.approx(2.0)
    assert LOG_1E_16 == pytest.approx(math.log(1e-16))


@pytest.mark.parametrize(
    "kwargs",
    [
        {"init_step_size": -1.0},
        {"population": -3},
        {"max_contractions": 0},
        {"xmin": [2.0], "xmax": [1.0]},
    ],
)
def test_config_rejects_invalid_values(kwargs):
    with pytest.raises(ConfigurationError):
        CmaConfig(**kwargs)


def test_config_normalises_bounds_to_tuples():
    cfg = CmaConfig(xmin=[0, 1], xmax=np.array([5.0]))
    assert cfg.xmin == (0.0, 1.0)
    assert cfg.xmax == (5.0,)


def test_config_from_dict_rejects_unknown_keys():
    with pytest.raises(ConfigurationError):
        CmaConfig.from_dict({"sigma": 0.3})


def test_config_from_dict_accepts_nan_string():
    cfg = CmaConfig.from_dict({"stop_log_det": "nan"})
    assert math.isnan(cfg.stop_log_det)


def test_config_from_yaml(tmp_path):
    path = tmp_path / "cfg.yaml"
    path.write_text(
        "cma:\n"
        "  init_step_size: 0.25\n"
        "  population: 8\n"
        "  xmin: [-1.0, -1.0]\n"
        "  seed: 7\n"
    )
    cfg = CmaConfig.from_yaml(path)
    assert cfg.init_step_size == 0.25
    assert cfg.population == 8
    assert cfg.xmin == (-1.0, -1.0)
    assert cfg.xmax is None
    assert cfg.seed == 7


@pytest.mark.parametrize("dim, population", [(1, 40), (2, 66), (2, 100), (3, 102), (3, 399)])
def test_large_populations_saturate_c_mu(dim, population):
    params = CmaParams.auto(dim, population)
    assert params.c_mu == 1.0 - params.c1
    assert 1.0 - params.c1 - params.c_mu == 0.0
