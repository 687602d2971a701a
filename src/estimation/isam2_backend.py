"""
Incremental optimizer backend built on GTSAM's iSAM2.

The estimator only relies on three capabilities: add factors and variables
while removing earlier factors by index, report the indices assigned to the
new factors, and recompute the best estimate of every variable.
"""

import logging
from typing import Iterable, Optional

try:
    import gtsam
except ImportError:
    raise ImportError(
        "GTSAM is required for the iSAM2 backend. "
        "Install it with: pip install gtsam"
    )

from src.common.data_structures import BackendUpdateResult
from src.common.errors import InvariantViolation
from src.estimation.gtsam_base import factor_indices, make_isam2_params

logger = logging.getLogger(__name__)


class Isam2Backend:
    """Thin wrapper around gtsam.ISAM2 exposing index-based factor removal."""

    def __init__(self, relinearize_skip: int = 1, relinearize_threshold: float = 0.001):
        """
        Initialize the iSAM2 solver.

        Args:
            relinearize_skip: Only check for relinearization every N updates
            relinearize_threshold: Relinearize variables whose delta exceeds this
        """
        self.isam = gtsam.ISAM2(make_isam2_params(relinearize_skip, relinearize_threshold))
        self.num_updates = 0
        logger.info(
            f"Initialized iSAM2 backend (relinearize skip={relinearize_skip}, "
            f"threshold={relinearize_threshold})"
        )

    def update(
        self,
        factors: Optional[gtsam.NonlinearFactorGraph] = None,
        values: Optional[gtsam.Values] = None,
        remove_indices: Optional[Iterable[int]] = None
    ) -> BackendUpdateResult:
        """
        Run one iSAM2 update step.

        Args:
            factors: New factors (empty graph if None)
            values: Initial values of new variables (empty if None)
            remove_indices: Indices of previously added factors to remove

        Returns:
            Indices assigned to the new factors and the removed indices

        Raises:
            InvariantViolation: If a removal index does not refer to a live factor
        """
        factors = factors if factors is not None else gtsam.NonlinearFactorGraph()
        values = values if values is not None else gtsam.Values()
        remove = [int(i) for i in (remove_indices or [])]

        for index in remove:
            if not self.factor_exists(index):
                raise InvariantViolation(f"Cannot remove factor {index}: no such live factor")

        if remove:
            result = self.isam.update(factors, values, factor_indices(remove))
        else:
            result = self.isam.update(factors, values)
        self.num_updates += 1

        new_indices = [int(i) for i in result.getNewFactorsIndices()]
        if new_indices or remove:
            logger.debug(f"iSAM2 update #{self.num_updates}: added {new_indices}, removed {remove}")
        return BackendUpdateResult(new_factor_indices=new_indices, removed_factor_indices=remove)

    def calculate_estimate(self) -> gtsam.Values:
        """Current best estimate for all variables."""
        return self.isam.calculateEstimate()

    def num_factors(self) -> int:
        """Number of factors currently in the problem (removed ones excluded)."""
        return int(self.isam.getFactorsUnsafe().nrFactors())

    def factor_exists(self, index: int) -> bool:
        """Whether `index` refers to a factor that has been added and not removed."""
        graph = self.isam.getFactorsUnsafe()
        return 0 <= index < graph.size() and graph.exists(index)
