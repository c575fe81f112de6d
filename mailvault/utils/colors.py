"""
ANSI Color codes for console output formatting
"""


class Colors:
    """ANSI color codes and helper methods"""
    RESET = "\033[0m"
    BOLD = "\033[1m"

    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    MAGENTA = "\033[35m"
    CYAN = "\033[36m"
    GREY = "\033[90m"

    @classmethod
    def colorize(cls, text: str, color: str) -> str:
        """Wrap text in color codes"""
        return f"{color}{text}{cls.RESET}"

    @classmethod
    def for_account_state(cls, sync_enabled: bool, error_count: int) -> str:
        """Pick a status colour for an account line in the status table"""
        if not sync_enabled:
            return cls.RED
        if error_count:
            return cls.YELLOW
        return cls.GREEN
