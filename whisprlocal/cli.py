"""
whisprlocal CLI

Entry point for the whisprlocal command.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from whisprlocal import __version__, catalog
from whisprlocal.client import EXIT_SUCCESS, EXIT_USAGE, client_command
from whisprlocal.config import Config
from whisprlocal.ipc import ARGUMENT_FIELDS, COMMANDS
from whisprlocal.server import run_server
from whisprlocal.storage import ModelStorage

# models subcommands forwarded to the running server
REMOTE_MODEL_COMMANDS = {
    "download": "download",
    "activate": "activate",
    "delete": "delete",
    "cancel": "cancel-download",
}


def setup_logging(verbose: bool = False) -> None:
    """Configure logging"""
    level = logging.DEBUG if verbose else logging.INFO
    format_str = "%(asctime)s %(levelname)s %(name)s: %(message)s"

    logging.basicConfig(
        level=level,
        format=format_str,
        stream=sys.stdout,
    )

    # Reduce noise from third-party libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("pywhispercpp").setLevel(logging.WARNING)


def setup_client_logging() -> None:
    """Minimal logging for client commands"""
    logging.basicConfig(
        level=logging.ERROR,
        format="%(message)s",
        stream=sys.stderr,
    )


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser"""
    parser = argparse.ArgumentParser(
        prog="whisprlocal",
        description="Local push-to-talk speech-to-text service",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"whisprlocal {__version__}",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        help="Path to config file (default: config.yml in the project root)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve command
    serve_parser = subparsers.add_parser(
        "serve",
        help="Start the server daemon",
    )
    serve_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    # client command
    client_parser = subparsers.add_parser(
        "client",
        help="Send a command to the running server",
    )
    client_parser.add_argument(
        "client_command",
        choices=COMMANDS,
        help="Server command",
    )
    client_parser.add_argument(
        "argument",
        nargs="?",
        help="Argument: " + ", ".join(f"{c} <{f}>" for c, f in ARGUMENT_FIELDS.items()),
    )

    # models command
    models_parser = subparsers.add_parser(
        "models",
        help="Manage installed models",
    )
    models_subparsers = models_parser.add_subparsers(
        dest="models_command",
        help="Model subcommands",
    )
    models_subparsers.add_parser("list", help="List installed models")
    models_subparsers.add_parser("catalog", help="List downloadable models")

    download_parser = models_subparsers.add_parser("download", help="Download a catalog model")
    download_parser.add_argument("model", help="Catalog name, filename or short name (e.g. base.en)")

    activate_parser = models_subparsers.add_parser("activate", help="Load an installed model")
    activate_parser.add_argument("filename", help="Installed model filename")

    delete_parser = models_subparsers.add_parser("delete", help="Delete an installed model")
    delete_parser.add_argument("filename", help="Installed model filename")

    models_subparsers.add_parser("cancel", help="Cancel the running download")

    return parser


def list_installed(config: Config) -> int:
    """Print installed models; the last activated one is starred"""
    storage = ModelStorage(config.get_models_dir(), config.get_state_file())
    last = storage.read_pointer()
    installed = sorted(storage.scan(), key=lambda m: m.filename)

    if not installed:
        print(f"No models installed in {storage.models_dir}")
        return EXIT_SUCCESS

    for model in installed:
        marker = "*" if model.filename == last else " "
        sidecar = " (+coreml)" if model.sidecar_path else ""
        print(f"{marker} {model.filename}{sidecar}")
    return EXIT_SUCCESS


def list_catalog(config: Config) -> int:
    """Print the downloadable models, marking installed ones"""
    storage = ModelStorage(config.get_models_dir(), config.get_state_file())
    installed = {m.filename for m in storage.scan()}

    for descriptor in catalog.CATALOG:
        marker = "+" if descriptor.filename in installed else " "
        print(f"{marker} {descriptor.filename:<32} {descriptor.size_mb:>6} MB  {descriptor.name}")
    return EXIT_SUCCESS


def run_models_command(config: Config, parsed: argparse.Namespace) -> int:
    if parsed.models_command == "list":
        return list_installed(config)

    if parsed.models_command == "catalog":
        return list_catalog(config)

    command = REMOTE_MODEL_COMMANDS[parsed.models_command]
    field = ARGUMENT_FIELDS.get(command)
    argument = getattr(parsed, field) if field else None
    return client_command(config, command, argument)


def main(args: Optional[List[str]] = None) -> int:
    """Main entry point"""
    parser = create_parser()
    parsed = parser.parse_args(args)

    if not parsed.command:
        parser.print_help()
        return EXIT_USAGE

    if parsed.command == "serve":
        setup_logging(verbose=parsed.verbose)
        config = Config.load(parsed.config)
        run_server(config, verbose=parsed.verbose)
        return EXIT_SUCCESS

    setup_client_logging()
    config = Config.load(parsed.config)

    if parsed.command == "client":
        return client_command(config, parsed.client_command, parsed.argument)

    elif parsed.command == "models":
        if not parsed.models_command:
            parser.parse_args(["models", "--help"])
            return EXIT_USAGE
        return run_models_command(config, parsed)

    else:
        print(f"Unknown command: {parsed.command}", file=sys.stderr)
        return EXIT_USAGE


if __name__ == "__main__":
    sys.exit(main())
