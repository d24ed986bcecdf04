"""
Logging configuration shared by the runner and the engine
"""

import logging
from pathlib import Path
from typing import Union

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
PURCHASE_LOGGER = 'purchases'


def setup_logging(log_dir: Union[str, Path] = "logs", level: Union[str, int] = "INFO"):
    """Configure root logging (monitor.log + console) and the separate purchases log"""
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[
            logging.FileHandler(log_dir / 'monitor.log'),
            logging.StreamHandler()
        ]
    )

    # Purchase logger (separate file)
    purchase_logger = logging.getLogger(PURCHASE_LOGGER)
    if not any(isinstance(h, logging.FileHandler) for h in purchase_logger.handlers):
        purchase_handler = logging.FileHandler(log_dir / 'purchases.log')
        purchase_handler.setFormatter(
            logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')
        )
        purchase_logger.addHandler(purchase_handler)
    purchase_logger.setLevel(logging.INFO)

    return logging.getLogger('ticketscout')


class ProfileLogger(logging.LoggerAdapter):
    """Prefixes every message with the profile id"""

    def __init__(self, logger: logging.Logger, profile_id: str):
        super().__init__(logger, {'profile_id': profile_id})

    def process(self, msg, kwargs):
        return f"[{self.extra['profile_id']}] {msg}", kwargs


def get_profile_logger(name: str, profile_id: str) -> ProfileLogger:
    return ProfileLogger(logging.getLogger(name), profile_id)
