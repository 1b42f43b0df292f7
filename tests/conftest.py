import numpy as np
import pytest

from fedridge.blocks.aux import RegressionConfig
from fedridge.blocks.messages import FinalStatistics, LocalStatistics
from fedridge.features import SiteInputs


def array_site(x, y, **kwargs) -> SiteInputs:
    """Site fed with plain numeric arrays; the response is simply called 'y'."""
    X = np.asarray(x, dtype=float)
    if X.ndim == 1:
        X = X[:, None]
    return SiteInputs(features=["y"], covariates=X, response=y, valid_fields=None, **kwargs)


def local_statistics(num_features=2, local_count=10, local_mean_y=0.0, beta=None):
    k = num_features
    return LocalStatistics(
        num_features=k,
        local_count=local_count,
        local_mean_y=local_mean_y,
        beta_vector=np.ones(k) if beta is None else beta,
        r_squared=0.5,
        t_values=np.full(k, 2.0),
        p_values=np.full(k, 0.05),
        degrees_of_freedom=local_count - k,
    )


def final_statistics(num_features=2, local_count=10, sse=1.0, sst=2.0, var_x=None):
    k = num_features
    return FinalStatistics(
        num_features=k,
        local_count=local_count,
        sse=sse,
        sst=sst,
        var_x=np.ones(k) if var_x is None else var_x,
        r_squared=1.0 - sse / sst,
        t_values=np.full(k, 3.0),
        p_values=np.full(k, 0.01),
        degrees_of_freedom=local_count - k,
        original=local_statistics(k, local_count),
    )


@pytest.fixture
def line_data():
    """y = x + 10 exactly, x = 1..5."""
    x = np.arange(1.0, 6.0)
    return x, x + 10.0


@pytest.fixture
def line_site(line_data):
    x, y = line_data
    return array_site(x, y)


@pytest.fixture
def two_sites():
    a = array_site([1, 2, 3, 4, 5], [12.1, 13.9, 16.2, 17.8, 20.1])
    b = array_site([1.5, 2.5, 3.5, 4.5], [13.2, 14.8, 17.1, 18.9])
    return {"siteA": a, "siteB": b}


@pytest.fixture
def deterministic_config():
    return RegressionConfig(initial_w=[0.1, 0.1])
