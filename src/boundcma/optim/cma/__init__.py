from .params import CmaConfig, CmaParams
from .protocol import CmaEsCholB, Phase

__all__ = ["CmaConfig", "CmaParams", "CmaEsCholB", "Phase"]
