import argparse
import logging
import sys
import traceback
from pathlib import Path
from typing import Callable, Optional

import requests

from story_node import __version__
from story_node.errors import InstallerError
from story_node.installer import NodeInstaller
from story_node.log import setup_logging
from story_node.logs import show_logs
from story_node.runner import ShellRunner
from story_node.services import ServiceController, ServiceRegistrar
from story_node.settings import NodeSettings, load_settings
from story_node.snapshot import ArchiveFetcher, SnapshotInstaller, mirror_table
from story_node.sync import monitor_for

logger = logging.getLogger(__name__)

MENU_OPTIONS = [
    "Install Story node",
    "Download snapshot",
    "Check sync status",
    "Check logs",
    "Exit",
]


class NodeApp:
    """Wires the components together for one settings object"""

    def __init__(
        self,
        settings: NodeSettings,
        runner: Optional[ShellRunner] = None,
        session: Optional[requests.Session] = None,
        prompt: Callable[[str], str] = input,
    ):
        self.settings = settings
        self.runner = runner or ShellRunner(use_sudo=settings.use_sudo)
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": f"story-node-cli/{__version__}"})
        self.prompt = prompt
        self.controller = ServiceController(self.runner)
        self.registrar = ServiceRegistrar(self.runner, self.controller, settings.unit_dir, use_sudo=settings.use_sudo)

    def install(self, moniker: Optional[str] = None, port: Optional[str] = None):
        installer = NodeInstaller(
            self.settings,
            self.runner,
            self.registrar,
            snapshot=self.download_snapshot,
            session=self.session,
            prompt=self.prompt,
        )
        installer.run(moniker=moniker, port=port)
        logger.info("Node installation completed successfully!")

    def download_snapshot(self, choice: Optional[str] = None):
        if choice is None:
            print("Select the source to download Story and Story-Geth data:")
            print(mirror_table(self.settings))
            keys = " or ".join(self.settings.mirrors)
            choice = self.prompt(f"Enter your choice ({keys}): ")
        fetcher = ArchiveFetcher(self.runner, session=self.session, timeout=self.settings.http_timeout)
        SnapshotInstaller(self.settings, self.controller, fetcher).run(choice)

    def check_sync(self, interval: Optional[float] = None):
        monitor = monitor_for(self.settings, session=self.session)
        if interval is not None:
            monitor.interval = interval
        monitor.run()

    def view_logs(self):
        logger.info("Showing service logs... Press CTRL+C to return to the main menu.")
        show_logs(self.settings, self.controller, prompt=self.prompt)


class Menu:
    """Numbered menu looping until Exit; unknown input just re-prompts"""

    def __init__(self, app: NodeApp, prompt: Callable[[str], str] = input):
        self.app = app
        self.prompt = prompt
        self.actions = {
            "1": self.app.install,
            "2": self.app.download_snapshot,
            "3": self.app.check_sync,
            "4": self.app.view_logs,
        }

    def show(self):
        print("")
        logger.info("Which action do you want to perform?")
        for i, option in enumerate(MENU_OPTIONS, start=1):
            print(f"{i}. {option}")

    def loop(self):
        logger.info("Story node automatic installation tool")
        while True:
            self.show()
            try:
                choice = self.prompt("Your choice: ").strip()
            except EOFError:
                choice = "5"
            print("")
            if choice == "5":
                logger.info("Exiting the script")
                return
            action = self.actions.get(choice)
            if action is None:
                logger.info("Invalid choice. Please try again.")
                continue
            action()


class ArgParser:
    """CLI argument interface dispatching to NodeApp"""

    def build_parser(self) -> argparse.ArgumentParser:
        parent = argparse.ArgumentParser(add_help=False)
        parent.add_argument("-c", "--config", metavar="FILE", type=Path, default=argparse.SUPPRESS,
                            help="YAML file overriding the built-in settings")
        parent.add_argument("--home", metavar="DIR", default=argparse.SUPPRESS,
                            help="Home directory holding ~/.story and ~/go (default: current user's)")
        parent.add_argument("-v", "--verbose", action="store_true", default=argparse.SUPPRESS,
                            help="Show executed commands and full error tracebacks")

        parser = argparse.ArgumentParser(
            prog="story-node",
            description="An interactive tool to install, snapshot and monitor a Story node",
            parents=[parent],
        )
        parser.add_argument("-V", "--version", action="version", version=f"%(prog)s {__version__}")

        subparsers = parser.add_subparsers(dest="command", help="subcommands (no command opens the menu)")

        subparsers.add_parser("menu", parents=[parent], help="Interactive menu (default)")

        install_parser = subparsers.add_parser("install", parents=[parent], aliases=["i"],
                                               help="Install and configure the node")
        install_parser.add_argument("--moniker", help="Node moniker")
        install_parser.add_argument("--port", help="Port prefix, e.g. 17 (default 26)")

        snapshot_parser = subparsers.add_parser("snapshot", parents=[parent], aliases=["s"],
                                                help="Replace chain data with a snapshot")
        snapshot_parser.add_argument("--mirror", help="Mirror number (prompted when omitted)")

        sync_parser = subparsers.add_parser("sync", parents=[parent], help="Poll until the node is synchronized")
        sync_parser.add_argument("--interval", type=float, help="Seconds between samples (default 5)")

        subparsers.add_parser("logs", parents=[parent], help="Follow the service journals")
        return parser

    def dispatch(self, app: NodeApp, args: argparse.Namespace):
        command = getattr(args, "command", None) or "menu"
        if command == "menu":
            Menu(app, prompt=app.prompt).loop()
        elif command in ("install", "i"):
            app.install(moniker=args.moniker, port=args.port)
        elif command in ("snapshot", "s"):
            app.download_snapshot(args.mirror)
        elif command == "sync":
            app.check_sync(args.interval)
        elif command == "logs":
            app.view_logs()

    def parser_main(self, argv=None, prompt: Callable[[str], str] = input) -> int:
        parser = self.build_parser()
        args = parser.parse_args(argv)
        verbose = getattr(args, "verbose", False)
        setup_logging(verbose)

        try:
            settings = load_settings(getattr(args, "config", None), home=getattr(args, "home", None))
            app = NodeApp(settings, prompt=prompt)
            self.dispatch(app, args)
        except InstallerError as e:
            if verbose:
                traceback.print_exc()
            print(f"Error: {e}", file=sys.stderr)
            return 1
        except EOFError:
            print("Error: input closed while waiting for an answer", file=sys.stderr)
            return 1
        except KeyboardInterrupt:
            print("\nInterrupted.", file=sys.stderr)
            return 130
        return 0


def main(argv=None) -> int:
    return ArgParser().parser_main(argv)
