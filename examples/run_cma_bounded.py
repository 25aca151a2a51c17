import numpy as np

from boundcma.model.driver import Settings, minimize
from boundcma.optim.cma.params import CmaConfig

# Unconstrained minimum at (-1, 4); the box pins x[0] to its lower bound 0.
target = np.array([-1.0, 4.0])
cfg = CmaConfig(init_step_size=0.5, xmin=[0.0, 0.0], xmax=[5.0, 5.0], seed=3)
res = minimize(
    lambda x: float(np.sum((x - target) ** 2)),
    [2.0, 2.0],
    cfg,
    Settings(max_generations=200, concurrency=2),
)
print("Best x:", res.x, "f:", res.f, "Expected:", [0.0, 4.0], 1.0)
