import logging

logger = logging.getLogger("transformgampoi_py")


def log_progress(verbose, msg, *args):
    """Log at INFO when the caller asked for verbose output, else at DEBUG."""
    logger.log(logging.INFO if verbose else logging.DEBUG, msg, *args)
