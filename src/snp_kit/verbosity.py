import logging
from typing import Optional

logger = logging.getLogger(__name__)

# 0 silent, 1 begin/end, 2 progress log, 3 progress and summary, 5 full report
DEFAULT_VERBOSITY = 2
MIN_VERBOSITY = 0
MAX_VERBOSITY = 5

_verbosity = DEFAULT_VERBOSITY


def set_verbosity(value: int = DEFAULT_VERBOSITY) -> int:
    """
    Set the package-wide default verbosity.

    Args:
        value: Verbosity level between 0 and 5

    Returns:
        The verbosity now in effect
    """
    global _verbosity
    _verbosity = check_verbosity(value)
    return _verbosity


def check_verbosity(verbose: Optional[int] = None) -> int:
    """Resolve a per-call verbosity against the package default."""
    if verbose is None:
        return _verbosity
    if verbose < MIN_VERBOSITY or verbose > MAX_VERBOSITY:
        logger.warning(f"Parameter 'verbose' must be an integer between {MIN_VERBOSITY} [silent] "
                       f"and {MAX_VERBOSITY} [full report], set to {DEFAULT_VERBOSITY}")
        return DEFAULT_VERBOSITY
    return int(verbose)


def flag_start(funname: str, verbose: int) -> None:
    if verbose >= 1:
        logger.info(f"Starting {funname}")


def flag_end(funname: str, verbose: int) -> None:
    if verbose >= 1:
        logger.info(f"Completed: {funname}")
