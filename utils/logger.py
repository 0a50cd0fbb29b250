"""
╔══════════════════════════════════════════╗
║     MAILBRIDGE — Utilities: Logger       ║
╚══════════════════════════════════════════╝

Console (stderr) + rotating file output. stdout is
reserved for the MCP stdio channel, so nothing here
may write to it.
"""

import logging
import logging.handlers
import os
import sys


def setup_logger(config, base_dir, name="mailbridge"):
    """Set up the mailbridge logger with console and rotating file handlers."""
    log_cfg = config.get("logging", {})
    log_level = getattr(logging, str(log_cfg.get("level", "INFO")).upper(), logging.INFO)

    logger = logging.getLogger(name)
    if logger.handlers:
        return logger  # Already configured — avoid duplicate handlers
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(log_level)
    console.setFormatter(logging.Formatter("  [%(name)s] %(message)s"))
    logger.addHandler(console)

    # Rotating file handler — 5MB max, keep 3 backups
    log_file = log_cfg.get("file")
    if log_file:
        log_path = log_file if os.path.isabs(log_file) else os.path.join(base_dir, log_file)
        os.makedirs(os.path.dirname(log_path), exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_path, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8"
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
        logger.addHandler(file_handler)

    return logger
