import logging

logger = logging.getLogger("dmarcworker")
logger.addHandler(logging.NullHandler())
