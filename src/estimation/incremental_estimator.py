"""
Incremental pose-graph estimator shared by several mapping workers.

One iSAM2 problem holds the trajectories of N workers. Workers call into the
estimator concurrently from their own threads; every public operation takes
a single re-entrant lock once and then runs private, unsynchronized routines,
so optimizer updates are applied strictly in lock-acquisition order.

Loop closures between tracks are validated against the tracks' time bounds,
optionally refined by aligning local sub-maps, and submitted together with
the removal of the prior held in the replaceable-prior slot. The slot is
filled by the anchor worker through register_prior: once that worker's track
is tied to the others by a loop closure, its convergence prior is dropped
instead of accumulating next to the re-derived one.

The slot is a single scalar shared by all workers. Only one prior
replacement relationship (the anchor worker's) is supported.
"""

import logging
import threading
import time
from typing import Callable, Optional, Tuple

try:
    import gtsam
except ImportError:
    raise ImportError(
        "GTSAM is required for the incremental estimator. "
        "Install it with: pip install gtsam"
    )

from src.common.config import EstimatorParams, LaserTrackConfig
from src.common.data_structures import RelativePose
from src.common.errors import InvariantViolation, RecoverableConfigError
from src.estimation.gtsam_base import make_loop_closure_noise_model, pose_to_gtsam
from src.estimation.isam2_backend import Isam2Backend
from src.estimation.laser_track import LaserTrack
from src.estimation.scan_matcher import IcpScanMatcher

logger = logging.getLogger(__name__)


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000.0


class IncrementalEstimator:
    """
    Serialized access to the global estimate of N worker trajectories.

    Attributes:
        params: Estimator parameters
        loop_closure_noise_model: Noise model applied to every loop closure
    """

    def __init__(
        self,
        params: EstimatorParams,
        n_laser_slam_workers: int,
        backend=None,
        scan_matcher=None,
        track_factory: Optional[Callable[[LaserTrackConfig, int], LaserTrack]] = None
    ):
        """
        Initialize the estimator.

        Args:
            params: Estimator parameters
            n_laser_slam_workers: Number of workers, one track is created per worker
            backend: Optimizer backend (iSAM2 with the configured relinearization if None)
            scan_matcher: Loop closure scan matcher (ICP if None)
            track_factory: Callable building the track of a worker id (LaserTrack if None)
        """
        if n_laser_slam_workers < 1:
            raise ValueError(f"At least one worker is required, got {n_laser_slam_workers}")

        self.params = params
        self._n_workers = int(n_laser_slam_workers)
        self._lock = threading.RLock()

        self._backend = backend if backend is not None else Isam2Backend(
            relinearize_skip=params.relinearize_skip,
            relinearize_threshold=params.relinearize_threshold
        )

        factory = track_factory or LaserTrack
        self._laser_tracks = [factory(params.laser_track, i) for i in range(self._n_workers)]

        self.loop_closure_noise_model = make_loop_closure_noise_model(params)

        self._scan_matcher = scan_matcher if scan_matcher is not None else IcpScanMatcher()
        self._load_scan_matcher_configuration()

        # Replaceable-prior slot: unset until the anchor worker registers a prior
        self._replaceable_prior_index: Optional[int] = None
        self._replaceable_prior_removed = False

        logger.info(f"Initialized IncrementalEstimator with {self._n_workers} laser tracks")

    def _load_scan_matcher_configuration(self) -> None:
        path = self.params.icp_configuration_file
        if path:
            try:
                self._scan_matcher.configure(path)
                return
            except RecoverableConfigError as e:
                logger.warning(f"Could not open ICP configuration file. Using default configuration. ({e})")
        else:
            logger.warning("No ICP configuration file given. Using default configuration.")
        self._scan_matcher.configure_default()

    # ------------------------------------------------------------------
    # Public operations (each takes the lock exactly once)
    # ------------------------------------------------------------------

    def process_loop_closure(self, loop_closure: RelativePose) -> gtsam.Values:
        """
        Validate, optionally refine, and submit a loop closure.

        The new constraint replaces the prior held in the replaceable-prior
        slot, and the resulting estimate is pushed into every track.

        Args:
            loop_closure: Candidate between pose a (earlier) and pose b (later)

        Returns:
            Global estimate after the update

        Raises:
            InvariantViolation: If ids or times are invalid (backend untouched)
            ScanMatchingError: If refinement is enabled and alignment fails
        """
        with self._lock:
            self._check_loop_closure(loop_closure)

            updated_loop_closure = loop_closure
            if self.params.do_icp_step_on_loop_closures:
                updated_loop_closure = self._refine_loop_closure(loop_closure)

            logger.info("Creating loop closure factor.")
            new_factors = gtsam.NonlinearFactorGraph()
            new_factors.add(self._make_loop_closure_factor(updated_loop_closure))

            logger.info("Estimating the trajectories.")
            result = self._estimate_and_remove(new_factors, gtsam.Values())

            logger.info("Updating the trajectories after LC.")
            self._update_tracks(result)
            return result

    def estimate(self, new_factors: gtsam.NonlinearFactorGraph, new_values: gtsam.Values) -> gtsam.Values:
        """
        Submit factors and variables without removing anything.

        Returns:
            Global estimate after the update
        """
        with self._lock:
            result = self._estimate(new_factors, new_values)
            self._update_tracks(result)
            return result

    def estimate_and_remove(self, new_factors: gtsam.NonlinearFactorGraph, new_values: gtsam.Values) -> gtsam.Values:
        """
        Submit factors and variables, removing the prior held in the replaceable-prior slot.

        Returns:
            Global estimate after the update
        """
        with self._lock:
            result = self._estimate_and_remove(new_factors, new_values)
            self._update_tracks(result)
            return result

    def register_prior(
        self,
        new_factors: gtsam.NonlinearFactorGraph,
        new_values: gtsam.Values,
        worker_id: int
    ) -> gtsam.Values:
        """
        Submit a worker's convergence prior.

        When `worker_id` is the anchor worker, the index assigned to the prior
        is recorded in the replaceable-prior slot (overwriting earlier ones).

        Args:
            new_factors: Graph holding exactly one prior factor
            new_values: Initial values of the variables it introduces
            worker_id: Id of the submitting worker

        Returns:
            Global estimate after the update

        Raises:
            InvariantViolation: If the graph does not hold exactly one factor
                (backend untouched), or the backend does not assign exactly one
                new index (slot untouched)
        """
        with self._lock:
            if new_factors.size() != 1:
                raise InvariantViolation(
                    f"A prior registration must hold exactly one factor, got {new_factors.size()}"
                )

            update_result = self._backend.update(new_factors, new_values)

            n_new = len(update_result.new_factor_indices)
            if n_new != 1:
                raise InvariantViolation(
                    f"Backend assigned {n_new} indices to a single prior factor"
                )
            if worker_id == self.params.anchor_worker_id:
                self._replaceable_prior_index = update_result.new_factor_indices[0]
                self._replaceable_prior_removed = False
                logger.info(
                    f"Worker {worker_id} prior registered as replaceable (factor {self._replaceable_prior_index})"
                )

            result = self._settle_and_estimate()
            self._update_tracks(result)
            return result

    def get_laser_track(self, laser_track_id: int) -> LaserTrack:
        """Shared handle to the track of a worker."""
        with self._lock:
            self._check_track_id(laser_track_id)
            return self._laser_tracks[laser_track_id]

    def get_estimate(self) -> gtsam.Values:
        """Current global estimate, without submitting anything."""
        with self._lock:
            return self._backend.calculate_estimate()

    @property
    def n_workers(self) -> int:
        return self._n_workers

    @property
    def laser_tracks(self) -> Tuple[LaserTrack, ...]:
        with self._lock:
            return tuple(self._laser_tracks)

    @property
    def replaceable_prior_index(self) -> Optional[int]:
        """Factor index in the replaceable-prior slot, None while unset."""
        with self._lock:
            return self._replaceable_prior_index

    @property
    def backend(self):
        return self._backend

    # ------------------------------------------------------------------
    # Unsynchronized core routines (callers hold the lock)
    # ------------------------------------------------------------------

    def _check_track_id(self, track_id: int) -> None:
        if not 0 <= track_id < self._n_workers:
            raise InvariantViolation(f"Laser track id {track_id} outside [0, {self._n_workers})")

    def _check_loop_closure(self, loop_closure: RelativePose) -> None:
        self._check_track_id(loop_closure.track_id_a)
        self._check_track_id(loop_closure.track_id_b)

        if not loop_closure.time_a_ns < loop_closure.time_b_ns:
            raise InvariantViolation(
                f"Loop closure has invalid time: time_a {loop_closure.time_a_ns} "
                f"is not before time_b {loop_closure.time_b_ns}"
            )

        for label, track_id, time_ns in (
            ("a", loop_closure.track_id_a, loop_closure.time_a_ns),
            ("b", loop_closure.track_id_b, loop_closure.time_b_ns),
        ):
            track = self._laser_tracks[track_id]
            min_time, max_time = track.get_min_time(), track.get_max_time()
            if not min_time <= time_ns <= max_time:
                raise InvariantViolation(
                    f"Loop closure has invalid time: time_{label} {time_ns} outside "
                    f"[{min_time}, {max_time}] of track {track_id}"
                )

    def _refine_loop_closure(self, loop_closure: RelativePose) -> RelativePose:
        """Replace the loop closure transform with the ICP alignment of the two sub-maps."""
        radius = self.params.loop_closures_sub_maps_radius
        track_a = self._laser_tracks[loop_closure.track_id_a]
        track_b = self._laser_tracks[loop_closure.track_id_b]

        logger.info("Creating the submaps for loop closure ICP.")
        start = time.perf_counter()
        sub_map_a = track_a.build_sub_map_around_time(loop_closure.time_a_ns, radius)
        sub_map_b = track_b.build_sub_map_around_time(loop_closure.time_b_ns, radius)
        logger.info(f"Took {_elapsed_ms(start):.1f} ms to create loop closures sub maps.")

        logger.info("Creating loop closure ICP.")
        start = time.perf_counter()
        T_a_b = self._scan_matcher.align(sub_map_b, sub_map_a, loop_closure.T_a_b)
        logger.info(f"Took {_elapsed_ms(start):.1f} ms to compute the icp_solution for the loop closure.")

        return loop_closure.with_transform(T_a_b)

    def _make_loop_closure_factor(self, loop_closure: RelativePose) -> gtsam.BetweenFactorPose3:
        # Error of the factor is measured T_a_b against inverse(T_w_a) * T_w_b
        key_a = self._laser_tracks[loop_closure.track_id_a].get_pose_key(loop_closure.time_a_ns)
        key_b = self._laser_tracks[loop_closure.track_id_b].get_pose_key(loop_closure.time_b_ns)
        if key_a == key_b:
            raise InvariantViolation(
                f"Loop closure times {loop_closure.time_a_ns} and {loop_closure.time_b_ns} "
                f"resolve to the same pose of track {loop_closure.track_id_a}"
            )
        return gtsam.BetweenFactorPose3(
            key_a, key_b, pose_to_gtsam(loop_closure.T_a_b), self.loop_closure_noise_model
        )

    def _settle_and_estimate(self) -> gtsam.Values:
        # TODO: find out why iSAM2 needs two empty updates before the estimate
        # reflects the latest relinearization
        self._backend.update()
        self._backend.update()
        return self._backend.calculate_estimate()

    def _estimate(self, new_factors: gtsam.NonlinearFactorGraph, new_values: gtsam.Values) -> gtsam.Values:
        start = time.perf_counter()
        self._backend.update(new_factors, new_values)
        result = self._settle_and_estimate()
        logger.info(f"Took {_elapsed_ms(start):.1f} ms to estimate the trajectory.")
        return result

    def _estimate_and_remove(self, new_factors: gtsam.NonlinearFactorGraph, new_values: gtsam.Values) -> gtsam.Values:
        start = time.perf_counter()
        remove_indices = []
        if self._replaceable_prior_index is None:
            logger.warning("No replaceable prior registered yet, submitting without removal.")
        elif self._replaceable_prior_removed:
            logger.debug(
                f"Replaceable prior {self._replaceable_prior_index} was already removed, "
                f"submitting without removal."
            )
        else:
            remove_indices.append(self._replaceable_prior_index)

        self._backend.update(new_factors, new_values, remove_indices)
        if remove_indices:
            self._replaceable_prior_removed = True
            logger.info(f"Removed replaceable prior {self._replaceable_prior_index}.")

        result = self._settle_and_estimate()
        logger.info(f"Took {_elapsed_ms(start):.1f} ms to estimate the trajectory.")
        return result

    def _update_tracks(self, result: gtsam.Values) -> None:
        for track in self._laser_tracks:
            track.update_from_values(result)
