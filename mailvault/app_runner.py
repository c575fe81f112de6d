import argparse
import json
import os
import shutil
import signal
import sys
from pathlib import Path
from typing import List, NoReturn, Optional

from .modules.models import SyncMode
from .utils.colors import Colors
from .utils.config import Config


class AppRunner:
    """Startup, configuration checks and command dispatch for the mailvault CLI."""

    def __init__(self, args: Optional[List[str]] = None) -> None:
        """
        Initialize the runner with CLI arguments.

        Args:
            args: Command line arguments without the program name
                (defaults to sys.argv[1:])
        """
        self.options = self.build_parser().parse_args(
            args if args is not None else sys.argv[1:]
        )
        self.config_file = self.options.env

    @staticmethod
    def build_parser() -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            prog="mailvault",
            description="Incremental IMAP mailbox mirror",
        )
        parser.add_argument("--env", default=".env", help="Path to the environment file")
        commands = parser.add_subparsers(dest="command")

        commands.add_parser("run", help="Run the scheduler until interrupted")

        sync = commands.add_parser("sync", help="Sync one account now")
        sync.add_argument("account", help="Account id from MAIL_ACCOUNTS")
        sync.add_argument("--full", action="store_true", help="Ignore the cursor and scan every folder")

        commands.add_parser("status", help="Show per-account sync state")
        return parser

    def run(self) -> None:
        """Execute the main application flow."""
        command = self.options.command or "run"
        self.setup_signal_handlers()
        self.print_banner()
        self.ensure_config_exists()
        self.validate_config()

        if command == "sync":
            self.run_sync(self.options.account, full=self.options.full)
        elif command == "status":
            self.show_status()
        else:
            self.start_service()

    def setup_signal_handlers(self) -> None:
        """Register handlers for graceful shutdown."""
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    @staticmethod
    def _signal_handler(signum, frame) -> NoReturn:
        """Handle shutdown signals."""
        print("\nReceived shutdown signal, stopping gracefully...")
        raise KeyboardInterrupt

    def print_banner(self) -> None:
        """Print the application startup banner."""
        print(Colors.colorize("=" * 80, Colors.CYAN))
        print(Colors.colorize("MailVault", Colors.BOLD + Colors.CYAN))
        print(Colors.colorize("Incremental IMAP mailbox mirror", Colors.GREY))
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
        """Offer to copy the template when running in a terminal."""
        print(f"Configuration file '{self.config_file}' not found.")
        try:
            response = input(f"Create '{self.config_file}' from template? [Y/n] ").strip().lower()
        except EOFError:
            self._handle_missing_config_non_interactive()
            return

        if response not in ('', 'y', 'yes'):
            print("Please create a .env file based on .env.example")
            sys.exit(1)

        try:
            shutil.copy(".env.example", self.config_file)
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
        """Validate the configuration to ensure default credentials aren't used."""
        from .utils.validators import check_default_credentials

        try:
            errors = check_default_credentials(Config(self.config_file))
        except ValueError as e:
            print(f"{Colors.RED}Configuration Error: {e}{Colors.RESET}")
            sys.exit(1)

        if errors:
            print(f"\n{Colors.RED}Configuration Error: Default credentials detected{Colors.RESET}")
            print(f"{Colors.GREY}The following issues must be resolved in your .env file before starting:{Colors.RESET}\n")

            for error in errors:
                print(f"  • {Colors.YELLOW}{error}{Colors.RESET}")

            print(f"\nPlease edit {Colors.BOLD}{self.config_file}{Colors.RESET} with your actual credentials.")
            sys.exit(1)

    def start_service(self) -> None:
        """Instantiate and start the sync service."""
        from .main import MailVaultService
        print(f"{Colors.GREEN}Starting sync service...{Colors.RESET}")
        service = MailVaultService(self.config_file)
        service.start()

    def run_sync(self, account_id: str, full: bool = False) -> None:
        """Run one manual sync and print its result."""
        from .main import MailVaultService
        service = MailVaultService(self.config_file)
        mode = SyncMode.FULL if full else SyncMode.INCREMENTAL

        try:
            result = service.sync_once(account_id, mode)
        except KeyError:
            print(f"{Colors.RED}Unknown account: {account_id}{Colors.RESET}")
            sys.exit(1)

        if result is None:
            print(f"{Colors.YELLOW}Account {account_id} is already syncing{Colors.RESET}")
            sys.exit(1)

        print(json.dumps(result.to_dict(), indent=2))
        if not result.succeeded:
            sys.exit(1)

    def show_status(self) -> None:
        """Print one line per account, coloured by sync state."""
        from .main import MailVaultService
        status = MailVaultService(self.config_file).status()

        print(f"{Colors.BOLD}Sync interval:{Colors.RESET} {status['syncIntervalMinutes']} minutes")
        for account in status["accounts"]:
            color = Colors.for_account_state(account["syncEnabled"], account["errorCount"])
            state = "enabled" if account["syncEnabled"] else "disabled"
            print(
                f"  {Colors.colorize(account['id'], color + Colors.BOLD)} "
                f"{account['email']} [{state}] "
                f"errors={account['errorCount']} last={account['lastSyncAt'] or 'never'} "
                f"next={account['nextSyncAt'] or 'on next cycle'}"
            )
            if account["errorMessage"]:
                print(f"    {Colors.colorize(account['errorMessage'], Colors.GREY)}")
