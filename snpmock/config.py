"""snpmock Configuration"""

import logging
import os

# AMD Key Distribution Service
KDS_BASE_URL = os.environ.get("SNPMOCK_KDS_URL", "https://kdsintf.amd.com")
HTTP_TIMEOUT = float(os.environ.get("SNPMOCK_HTTP_TIMEOUT", "10"))

# Fake guest device
DEVICE_PATH = os.environ.get("SNPMOCK_DEVICE_PATH", "/dev/sev-guest")

# Logging
LOG_LEVEL = os.environ.get("SNPMOCK_LOG_LEVEL", "WARNING").upper()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(level: str = LOG_LEVEL) -> None:
    """Install a basic handler on the snpmock logger"""
    logger = logging.getLogger("snpmock")
    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
