"""GPU selection for the accelerated compute backend."""

import logging

import torch

logger = logging.getLogger(__name__)


def get_free_gpu_idx() -> int:
    """Index of the CUDA device with the most free memory.

    Free memory is queried with :func:`torch.cuda.mem_get_info`; devices
    whose memory cannot be queried are ranked by the memory this process
    has allocated on them instead.

    Returns
    -------
    int
        Device index, 0 when no CUDA device is visible

    Example
    -------
    >>> import omifa
    >>> opts = omifa.TrainingOptions(compute_backend="accelerated", gpu_index=omifa.get_free_gpu_idx())
    """
    if not torch.cuda.is_available() or torch.cuda.device_count() == 0:
        logger.debug("No CUDA devices available, returning 0")
        return 0

    free = []
    for i in range(torch.cuda.device_count()):
        try:
            free.append(torch.cuda.mem_get_info(i)[0])
        except RuntimeError as e:
            logger.debug("Could not query free memory of cuda:%d: %s", i, e)
            free.append(-torch.cuda.memory_allocated(i))

    best_gpu = max(range(len(free)), key=free.__getitem__)
    logger.debug("Selected cuda:%d (%d bytes free)", best_gpu, free[best_gpu])
    return best_gpu
