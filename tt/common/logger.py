import logging
import os
from pathlib import Path
from logging.handlers import RotatingFileHandler
from tt.common.setup import PATHS
from datetime import datetime

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s:%(filename)s:%(lineno)d] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

def get_logger(
        name = "treetimer",
        level = logging.INFO,
        log_dir: Path | None = None,
        max_bytes = 5 * 1024 * 1024,
        backup_count = 5,
        persistent = True,
        console = False,
        historical_debugs: int = 10,
        reset = False
) -> logging.Logger:
    logger = logging.getLogger(name)

    # With reset, every existing handler is dropped first so the rest of this rebuilds them against the current
    # PATHS.logs. Needed after the data directory moves (--data-dir), since file handlers keep the path they opened.
    if reset:
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()

    logger.propagate = False
    logger.setLevel(level)

    log_dir = log_dir or PATHS.logs
    log_dir.mkdir(parents=True,exist_ok=True)
    log_file_path = log_dir / f"{name}.log"

    fmt = logging.Formatter(LOG_FORMAT,LOG_DATE_FORMAT)

    # Setup persistent handler
    persistent_handler_name = f"{name}:persistent"
    if persistent and not any(h.get_name() == persistent_handler_name for h in logger.handlers):
        persistent_handler = RotatingFileHandler(
            filename=log_file_path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
            delay=True,
        )
        persistent_handler.setLevel(level)
        persistent_handler.setFormatter(fmt)
        persistent_handler.set_name(persistent_handler_name)
        logger.addHandler(persistent_handler)

    # Setup latest-only handler (always overwritten each run)
    latest_handler_name = f"{name}:latest"
    if not any(h.get_name() == latest_handler_name for h in logger.handlers):
        latest_handler = logging.FileHandler(
            filename=log_dir / "latest.log",
            mode="w",
            encoding="utf-8",
            delay=True
        )
        latest_handler.setLevel(level)
        latest_handler.setFormatter(fmt)
        latest_handler.set_name(latest_handler_name)
        logger.addHandler(latest_handler)

    # Setup historical debug handler, one file per run, keeping only the newest `historical_debugs` of them.
    historical_debug_handler_name = f"{name}:historical_debug"
    if historical_debugs > 0 and not any(h.get_name() == historical_debug_handler_name for h in logger.handlers):
        historical_debug_path = log_dir / "debug"
        historical_debug_path.mkdir(parents=True,exist_ok=True)
        this_run_path = historical_debug_path / f"{name}_{datetime.now():%Y-%m-%d_%H-%M-%S}_{os.getpid()}.log"

        historical_debug_handler = logging.FileHandler(
            filename=this_run_path,
            encoding="utf-8",
            delay=True
        )
        historical_debug_handler.setLevel(logging.DEBUG)
        historical_debug_handler.setFormatter(fmt)
        historical_debug_handler.set_name(historical_debug_handler_name)
        logger.addHandler(historical_debug_handler)

        # Prune oldest runs
        runs = sorted(historical_debug_path.glob(f"{name}_*.log"),key=lambda p: p.stat().st_mtime,reverse=True)
        for run in runs[historical_debugs:]:
            try: run.unlink()
            except OSError: pass

    # Setup console handler
    console_handler_name = f"{name}:console"
    if console and not any(h.get_name() == console_handler_name for h in logger.handlers):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(fmt)
        console_handler.set_name(console_handler_name)
        logger.addHandler(console_handler)

    return logger

log = get_logger(level=logging.DEBUG,console=False,historical_debugs=10)
log.info("=== INITIALIZED NEW SESSION ===")
