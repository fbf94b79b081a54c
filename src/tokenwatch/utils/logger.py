import io
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from datetime import datetime

class DotMsFormatter(logging.Formatter):
    def formatTime(self, record, datefmt=None):
        ct = datetime.fromtimestamp(record.created)
        if datefmt:
            # %f must become milliseconds before strftime expands it to micros
            s = ct.strftime(datefmt.replace('%f', f'{int(record.msecs):03d}'))
        else:
            s = ct.strftime("%Y-%m-%d %H:%M:%S")
            s += f".{int(record.msecs):03d}"
        return s

def setup_logger(
    name: str,
    log_path: str | Path,
    level: int = logging.INFO,
    console: bool = True,
) -> logging.Logger:
    log_path = Path(log_path)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(name)
    logger.setLevel(level)
    # Called again on restart within the same process: drop old handlers
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
        # Detach our UTF-8 wrapper so collecting it does not close stderr
        if getattr(handler, "wraps_stderr", False):
            handler.stream.flush()
            handler.stream.detach()

    formatter = DotMsFormatter(
        '[%(asctime)s] %(levelname)s %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S.%f'
    )

    # Console handler is off while the live table owns the terminal.
    # Forced to UTF-8 so non-ASCII symbol names don't raise on cp1252 consoles.
    if console:
        wraps_stderr = hasattr(sys.stderr, "buffer")
        if wraps_stderr:
            utf8_stream = io.TextIOWrapper(sys.stderr.buffer, encoding="utf-8", errors="replace")
        else:
            utf8_stream = sys.stderr
        ch = logging.StreamHandler(utf8_stream)
        ch.wraps_stderr = wraps_stderr
        ch.setFormatter(formatter)
        logger.addHandler(ch)

    # Rotating file handler
    fh = RotatingFileHandler(log_path, maxBytes=5_000_000, backupCount=5, encoding="utf-8")
    fh.setFormatter(formatter)
    logger.addHandler(fh)

    return logger
