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
    WHITE = "\033[37m"
    GREY = "\033[90m"

    @classmethod
    def colorize(cls, text: str, color: str) -> str:
        """Wrap text in color codes"""
        return f"{color}{text}{cls.RESET}"

    @classmethod
    def get_status_color(cls, status: str) -> str:
        """Color for a connection status value"""
        return {
            "ready": cls.GREEN,
            "connecting": cls.CYAN,
            "reconnecting": cls.YELLOW,
            "error": cls.RED,
            "permanently_failed": cls.BOLD + cls.RED,
        }.get(str(status).lower(), cls.WHITE)
