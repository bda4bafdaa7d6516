import logging
import sys
from pathlib import Path

RESET = "\033[0m"
DIM = "\033[2m"
BOLD = "\033[1m"
RED = "\033[31m"
GREEN = "\033[32m"
YELLOW = "\033[33m"
CYAN = "\033[36m"
MAGENTA = "\033[35m"

LEVEL_COLORS = {
    logging.DEBUG: DIM,
    logging.INFO: GREEN,
    logging.WARNING: YELLOW,
    logging.ERROR: RED,
    logging.CRITICAL: RED + BOLD,
}

NOISY_LOGGERS = ("websockets", "httpcore", "httpx")
FILE_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class ColoredFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        color = LEVEL_COLORS.get(record.levelno, "")
        level = record.levelname
        time = self.formatTime(record, self.datefmt)
        name = record.name.split(".")[-1]
        msg = record.getMessage()

        if "State:" in msg and "->" in msg:
            msg = f"{BOLD}{CYAN}{msg}{RESET}"
        elif "Final transcript:" in msg:
            msg = f"{BOLD}{GREEN}{msg}{RESET}"
        elif "Transcript:" in msg:
            msg = f"{CYAN}{msg}{RESET}"
        elif "Status:" in msg:
            msg = f"{MAGENTA}{msg}{RESET}"
        elif record.levelno == logging.DEBUG:
            msg = f"{DIM}{msg}{RESET}"
        elif record.levelno >= logging.WARNING:
            msg = f"{color}{msg}{RESET}"

        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        line = f"{DIM}{time}{RESET} {color}{level:<5}{RESET} {DIM}{name:<20}{RESET} {msg}"
        if record.exc_text:
            line = f"{line}\n{record.exc_text}"
        return line


def setup_logging(verbose: bool = False, log_file: str | None = None) -> None:
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(ColoredFormatter(datefmt="%H:%M:%S"))
    root.addHandler(console)

    if log_file:
        try:
            path = Path(log_file).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(path, encoding="utf-8")
        except OSError as exc:
            logging.getLogger(__name__).warning("Cannot write error log %s: %s", log_file, exc)
        else:
            file_handler.setLevel(logging.ERROR)
            file_handler.setFormatter(logging.Formatter(FILE_LOG_FORMAT))
            root.addHandler(file_handler)

    if verbose:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.INFO)
