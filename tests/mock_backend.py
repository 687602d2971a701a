"""
Recording optimizer backend for estimator tests.

Hands out sequential factor indices, remembers which factors are live, and
returns the initial values it was given as the estimate.
"""

from dataclasses import dataclass, field
from typing import List, Optional

import gtsam

from src.common.data_structures import BackendUpdateResult
from src.estimation.gtsam_base import gtsam_to_matrix


@dataclass
class UpdateCall:
    """One recorded update() invocation."""
    num_factors: int
    keys: List[int] = field(default_factory=list)
    remove_indices: List[int] = field(default_factory=list)
    new_indices: List[int] = field(default_factory=list)
    factor_keys: List[List[int]] = field(default_factory=list)
    # 4x4 measurement of each between factor (None for other factors)
    measured: list = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return self.num_factors == 0 and not self.keys and not self.remove_indices


class MockBackend:
    """In-memory stand-in for Isam2Backend."""

    def __init__(self, forced_new_indices: Optional[List[int]] = None):
        """
        Args:
            forced_new_indices: If set, every update carrying factors reports
                these indices instead of the sequential ones
        """
        self.forced_new_indices = forced_new_indices
        self.calls: List[UpdateCall] = []
        self.live_factors = set()
        self.values = gtsam.Values()
        self._next_index = 0

    def update(self, factors=None, values=None, remove_indices=None):
        n = factors.size() if factors is not None else 0
        call = UpdateCall(
            num_factors=n,
            keys=[int(k) for k in values.keys()] if values is not None else [],
            remove_indices=[int(i) for i in (remove_indices or [])]
        )
        for i in range(n):
            factor = factors.at(i)
            call.factor_keys.append([int(k) for k in factor.keys()])
            if isinstance(factor, gtsam.BetweenFactorPose3):
                call.measured.append(gtsam_to_matrix(factor.measured()))
            else:
                call.measured.append(None)

        if self.forced_new_indices is not None and n > 0:
            call.new_indices = list(self.forced_new_indices)
        else:
            call.new_indices = list(range(self._next_index, self._next_index + n))
            self._next_index += n
        self.calls.append(call)

        self.live_factors.update(call.new_indices)
        for index in call.remove_indices:
            self.live_factors.discard(index)
        if values is not None:
            self.values.insert(values)
        return BackendUpdateResult(
            new_factor_indices=list(call.new_indices),
            removed_factor_indices=list(call.remove_indices)
        )

    def calculate_estimate(self):
        return gtsam.Values(self.values)

    def num_factors(self) -> int:
        return len(self.live_factors)

    @property
    def substantive_calls(self) -> List[UpdateCall]:
        """Recorded calls that carried factors, values or removals."""
        return [call for call in self.calls if not call.is_empty]
