"""Resource cleanup utilities for race attempts.

Defensive cleanup operations that log errors but don't fail.  Teardown runs
on every attempt exit path, including after an error, and must never replace
the attempt's own exception with a cleanup one.
"""

from __future__ import annotations

import errno
import os
from typing import TYPE_CHECKING

from cloexec_race._logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Iterable

    from cloexec_race.container import ContainerController, ContainerHandle

logger = get_logger(__name__)


def close_descriptors(fds: Iterable[int], context_id: str) -> int:
    """Close each descriptor once.

    EBADF is logged at error level: it means something else already closed
    the descriptor, and the slot may since have been reused.

    Args:
        fds: Descriptors to close
        context_id: Context for logging (e.g., attempt id)

    Returns:
        Number of descriptors closed successfully
    """
    closed = 0
    for fd in fds:
        try:
            os.close(fd)
            closed += 1
        except OSError as e:
            if e.errno == errno.EBADF:
                logger.error(
                    "Descriptor already closed",
                    extra={"context_id": context_id, "fd": fd},
                )
            else:
                logger.warning(
                    "Descriptor close error",
                    extra={"context_id": context_id, "fd": fd, "error": str(e)},
                )
    return closed


async def stop_container_quietly(
    controller: ContainerController,
    handle: ContainerHandle,
    context_id: str,
) -> bool:
    """Stop a container, logging instead of raising.

    Args:
        controller: Container collaborator
        handle: Container to stop
        context_id: Context for logging

    Returns:
        True if the container stopped cleanly, False if issues occurred
    """
    try:
        await controller.stop(handle)
        logger.debug(
            "Container stopped",
            extra={"context_id": context_id, "container": controller.name(handle)},
        )
        return True
    except Exception as e:
        # Never raise - log and return failure
        logger.error(
            "Container stop error",
            extra={
                "context_id": context_id,
                "container": controller.name(handle),
                "error": str(e),
                "error_type": type(e).__name__,
            },
            exc_info=True,
        )
        return False
