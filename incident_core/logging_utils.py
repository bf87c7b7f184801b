import logging
import os
from datetime import datetime
from typing import Optional


def setup_logger(name: str, log_dir: Optional[str] = None, level: int = logging.INFO) -> logging.Logger:
    """
    Console logging for the service, plus a dated file under `log_dir` when given.

    Parameters
    name (str) : Name of the logger
    log_dir (str) : Directory for the daily log file, or None for console only

    Returns:
    logging.Logger : Configured Logger Instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if logger.handlers:
        return logger

    console_format = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(console_format)
    logger.addHandler(console_handler)

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_format = logging.Formatter(
            '%(levelname)s : %(name)s : %(funcName)s : %(lineno)d : %(message)s'
        )
        log_file = os.path.join(log_dir, f'incident_service_{datetime.now().strftime("%m%d%Y")}.log')
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(file_format)
        logger.addHandler(file_handler)

    return logger
