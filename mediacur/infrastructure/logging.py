import logging
from pathlib import Path
from typing import Optional

LOG_FILENAME = "mediacur.log"

def setup_logging(log_dir: Path, debug: bool = False, log_path: Optional[Path] = None) -> logging.Logger:
    """
    Setup logging configuration for mediacur.

    Creates the log directory and mediacur.log file.
    Returns configured logger instance.

    Args:
        log_dir: Directory where the log file is written (usually the projects dir)
        debug: If True, enable DEBUG level logging including full command lines
        log_path: Optional path to log file (overrides log_dir)
    """
    log_dir.mkdir(parents=True, exist_ok=True)

    log_file = Path(log_path) if log_path else (log_dir / LOG_FILENAME)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    level = logging.DEBUG if debug else logging.INFO

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(threadName)s - %(message)s',
        handlers=[logging.FileHandler(log_file)],
        force=True  # Override any existing configuration
    )

    logger = logging.getLogger(__name__)
    logger.info(f"Logging initialized: {log_file} (debug={'ON' if debug else 'OFF'})")

    return logger
