"""Open-file limits for the compute node.

The node keeps many peer connections open; on Unix the soft ``NOFILE``
limit is raised before it is spawned so the child inherits it.
"""

from __future__ import annotations

import sys

from dkn_launcher.logging import get_logger

log = get_logger("dkn_launcher.process.rlimit")

# used when getrlimit fails
if sys.platform == "darwin":
    DEFAULT_HARD_LIMIT = 40 * 1024 * 1024
    DEFAULT_SOFT_LIMIT = 1024 * 1024 - 1
else:
    DEFAULT_HARD_LIMIT = 1024 * 1024
    DEFAULT_SOFT_LIMIT = 1024


def configure_rlimit() -> tuple[int, int] | None:
    """Raise the soft ``NOFILE`` limit when it is below 10% of the hard limit.

    Returns the ``(soft, hard)`` limits in effect afterwards, or None on
    platforms without ``resource``.  Failures are logged, never raised.
    """
    try:
        import resource
    except ImportError:
        return None

    try:
        soft, hard = resource.getrlimit(resource.RLIMIT_NOFILE)
    except (OSError, ValueError):
        soft, hard = DEFAULT_SOFT_LIMIT, DEFAULT_HARD_LIMIT

    if hard == resource.RLIM_INFINITY:
        hard_target = DEFAULT_HARD_LIMIT
    else:
        hard_target = hard
    target_soft = hard_target // 10

    if soft != resource.RLIM_INFINITY and soft < target_soft:
        try:
            resource.setrlimit(resource.RLIMIT_NOFILE, (target_soft, hard))
        except (OSError, ValueError) as exc:
            log.error(
                "rlimit_update_failed",
                error=str(exc),
                hint="you may need to run as administrator",
            )
            return soft, hard
        log.warning("rlimit_updated", soft=target_soft, hard=hard, previous_soft=soft)
        return target_soft, hard

    log.info("rlimit_unchanged", soft=soft, hard=hard)
    return soft, hard
