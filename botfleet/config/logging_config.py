import logging
import logging.handlers
from pathlib import Path
from typing import Union


def setup_logging(log_file: str = "botfleet.log", log_level: Union[int, str] = logging.INFO, log_dir: str = "logs"):

    Path(log_dir).mkdir(parents=True, exist_ok=True)
    log_path = Path(log_dir) / log_file

    if isinstance(log_level, str):
        log_level = logging.getLevelName(log_level.upper())

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    file_handler = logging.handlers.RotatingFileHandler(
        log_path,
        maxBytes=5*1024*1024,  # 5MB
        backupCount=3
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    # the docker SDK logs every API round trip at DEBUG
    logging.getLogger("docker").setLevel(max(log_level, logging.INFO))
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    return root_logger
