import logging
import copy
from .colors import Colors


class ColoredFormatter(logging.Formatter):
    """
    Console formatter that colours log levels and highlights sync milestones.
    File handlers keep the plain formatter so log files stay free of ANSI codes.
    """

    LEVEL_COLORS = {
        logging.DEBUG: Colors.GREY,
        logging.INFO: Colors.BLUE,
        logging.WARNING: Colors.YELLOW,
        logging.ERROR: Colors.RED,
        logging.CRITICAL: Colors.BOLD + Colors.RED
    }

    def format(self, record):
        # Work on a copy so other handlers see the untouched record
        record = copy.copy(record)

        color = self.LEVEL_COLORS.get(record.levelno, Colors.RESET)
        record.levelname = f"{color}{record.levelname}{Colors.RESET}"

        if isinstance(record.msg, str):
            if "Sync Cycle" in record.msg:
                record.msg = f"{Colors.MAGENTA}{Colors.BOLD}{record.msg}{Colors.RESET}"
            elif "Waiting" in record.msg and "until next cycle" in record.msg:
                record.msg = f"{Colors.GREY}{record.msg}{Colors.RESET}"
            elif "Sync complete" in record.msg:
                record.msg = f"{Colors.GREEN}{record.msg}{Colors.RESET}"

        return super().format(record)
