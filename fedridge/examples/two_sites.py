import logging

import numpy as np
from fedridge.blocks.aux import RegressionConfig
from fedridge.features import SiteInputs
from fedridge.simulator import FederatedRidge

logging.basicConfig(level=logging.INFO)

# Two sites sampling the same line y = 2x + 10 with noise
rng = np.random.default_rng(0)
sites = {}
for name, n in (("siteA", 40), ("siteB", 25)):
    x = rng.uniform(0.0, 5.0, size=(n, 1))
    y = 2.0 * x[:, 0] + 10.0 + 0.3 * rng.normal(size=n)
    sites[name] = SiteInputs(features=["y"], covariates=x, response=y, valid_fields=None)

with FederatedRidge(RegressionConfig(max_iterations=1000, seed=1),
                    parallel_mode="threading", verbose=False) as fr:
    result = fr.fit(sites)

print("halt:", result.halt_reason.value, "after", result.iterations, "rounds")
print("W =", result.global_.beta_vector, " R² =", round(result.global_.r_squared, 4))
print("t =", result.global_.t_values, " p =", result.global_.p_values)
for site, r in result.per_site.items():
    print(site, "own fit:", r.beta_vector, " dof:", r.degrees_of_freedom)
