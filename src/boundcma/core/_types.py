"""
Common NumPy typing aliases used throughout *boundcma*.

Import with::

    from boundcma.core._types import Float64Array
"""

from typing import TypeAlias

import numpy as np
from numpy.typing import NDArray

Float64Array: TypeAlias = NDArray[np.float64]
"""Shorthand for an ndarray of float64."""

IntArray: TypeAlias = NDArray[np.int64]
"""Shorthand for an ndarray of int64."""
