"""
Exception types shared by the estimation core.

Two failure classes exist: invariant violations, which abort the current
operation and are never handled inside the package, and recoverable
configuration errors, which are caught at construction time and replaced by
built-in defaults.
"""


class InvariantViolation(RuntimeError):
    """Raised when caller input or backend state breaks an estimator invariant.

    Examples are loop closures with inverted or out-of-range timestamps,
    out-of-range track ids, or an optimizer reporting an unexpected number of
    new constraint indices. The optimizer state must be considered
    untrustworthy by the caller after a post-submission violation.
    """
    pass


class RecoverableConfigError(Exception):
    """Raised when an optional configuration source cannot be used."""
    pass


class ScanMatchingError(RuntimeError):
    """Raised when two point clouds cannot be aligned."""
    pass
