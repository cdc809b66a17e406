import asyncio
import os
import shutil
import sys
from pathlib import Path
from typing import List, NoReturn, Optional

from .modules.errors import IndexerError
from .utils.colors import Colors
from .utils.config import Config, ConfigurationError
from .utils.validators import check_default_credentials


class AppRunner:
    """Encapsulates the startup, configuration verification, and execution logic of the indexing pipeline."""

    def __init__(self, args: Optional[List[str]] = None) -> None:
        """
        Initialize the runner with CLI arguments.

        Args:
            args: Command line arguments (defaults to sys.argv)
        """
        self.args = args if args is not None else sys.argv
        self.config_file = self.args[1] if len(self.args) > 1 else ".env"

    def run(self) -> None:
        """Execute the main application flow."""
        self.print_banner()
        self.ensure_config_exists()
        self.validate_config()
        self.start_pipeline()

    def print_banner(self) -> None:
        """Print the application startup banner."""
        print(Colors.colorize("=" * 80, Colors.CYAN))
        print(Colors.colorize("Mailbox Indexing Pipeline", Colors.BOLD + Colors.CYAN))
        print(Colors.colorize("Live IMAP ingestion into a searchable email index", Colors.GREY))
        print(Colors.colorize("=" * 80, Colors.CYAN))
        print()

    def ensure_config_exists(self) -> None:
        """Check if the configuration file exists, and offer to create it if not."""
        if Path(self.config_file).exists():
            return

        if Path(".env.example").exists() and sys.stdin.isatty():
            self._handle_missing_config_interactive()
        else:
            self._handle_missing_config_non_interactive()

    def _handle_missing_config_interactive(self) -> None:
        """Offer to copy .env.example into place."""
        print(f"Configuration file '{self.config_file}' not found.")
        try:
            response = input(f"Create '{self.config_file}' from template? [Y/n] ").strip().lower()
        except EOFError:
            self._handle_missing_config_non_interactive()

        if response not in ('', 'y', 'yes'):
            print("Please create a .env file based on .env.example")
            sys.exit(1)

        try:
            shutil.copy(".env.example", self.config_file)
            # Holds mailbox passwords
            os.chmod(self.config_file, 0o600)
        except OSError as e:
            print(f"Error creating file: {e}")
            sys.exit(1)

        print(f"Created '{self.config_file}' from '.env.example'.")
        print("IMPORTANT: Please edit .env with your actual credentials before proceeding.")
        sys.exit(0)

    def _handle_missing_config_non_interactive(self) -> NoReturn:
        """Handle missing configuration when non-interactive or template is missing."""
        print(f"Error: Configuration file '{self.config_file}' not found")
        print("Please create a .env file based on .env.example")
        print("You can run: cp .env.example .env")
        sys.exit(1)

    def validate_config(self) -> None:
        """Reject incomplete configuration and example credentials."""
        try:
            config = Config(self.config_file)
            config.validate()
        except ConfigurationError as e:
            print(f"\n{Colors.RED}❌ Configuration Error: {e}{Colors.RESET}")
            sys.exit(1)

        errors = check_default_credentials(config)
        if errors:
            print(f"\n{Colors.RED}❌ Configuration Error: Default credentials detected{Colors.RESET}")
            print(f"{Colors.GREY}The following issues must be resolved in your .env file before starting:{Colors.RESET}\n")

            for error in errors:
                print(f"  • {Colors.YELLOW}{error}{Colors.RESET}")

            print(f"\nPlease edit {Colors.BOLD}{self.config_file}{Colors.RESET} with your actual credentials.")
            sys.exit(1)

    def start_pipeline(self) -> None:
        """Instantiate the pipeline and run it until interrupted."""
        from .main import MailIndexingPipeline

        print(f"{Colors.GREEN}🚀 Starting pipeline...{Colors.RESET}")
        pipeline = MailIndexingPipeline(self.config_file)
        try:
            asyncio.run(pipeline.run())
        except KeyboardInterrupt:
            print("\nReceived shutdown signal, stopping...")
        except IndexerError as e:
            print(f"{Colors.RED}Fatal error: {e}{Colors.RESET}")
            sys.exit(1)
