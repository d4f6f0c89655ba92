"""
NeuroDesk main entry point.

This module provides the CLI interface for running one request through the
orchestrator.
"""

import sys
import os
import argparse
import logging
from typing import Optional


def configure_logging(level: str) -> None:
    """Send package logs to stderr at *level*."""
    level_map = {
        "debug": logging.DEBUG,
        "info": logging.INFO,
        "warning": logging.WARNING,
        "error": logging.ERROR,
    }
    logger = logging.getLogger("neurodesk")
    logger.setLevel(level_map.get(level, logging.WARNING))
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
        ))
        logger.addHandler(handler)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="neurodesk",
        description="NeuroDesk - natural language to shell commands",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  neurodesk "what time is it?"
  neurodesk "install htop and jq"
  neurodesk --install-system-wide wget
  neurodesk --chat "explain what launchd does"
  neurodesk --scan 192.168.1.10
        """
    )

    parser.add_argument(
        "--version", "-v",
        action="store_true",
        help="Show version information"
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode (show technical details)"
    )

    parser.add_argument(
        "--timeout",
        type=float,
        help="Timeout in seconds for synthesized commands"
    )

    parser.add_argument(
        "--chat",
        action="store_true",
        help="Send the text as a plain chat message"
    )

    parser.add_argument(
        "--install-system-wide",
        metavar="PACKAGE",
        help="Install a package for all users and verify it"
    )

    parser.add_argument(
        "--scan",
        metavar="HOST",
        help="Run an nmap service scan of HOST"
    )

    parser.add_argument(
        "request",
        nargs="*",
        help="The request to run"
    )

    return parser


def print_turns(console, messages) -> None:
    """Print conversation turns, skipping the system prompt."""
    from rich.panel import Panel
    from rich.text import Text

    for message in messages:
        if message.role == "system":
            continue
        if message.role == "user":
            console.print(message.content, style="bold cyan", markup=False)
        else:
            console.print(Panel(Text(message.content), border_style="green"))


def run(args: argparse.Namespace, orchestrator=None, console=None) -> int:
    """Run the parsed request. Returns the process exit status."""
    from rich.console import Console
    from .orchestrator import Orchestrator
    from .ui.prompts import ConfirmationPrompt, TerminalConsentBoundary

    console = console or Console()
    if orchestrator is None:
        boundary = TerminalConsentBoundary(ConfirmationPrompt(console))
        orchestrator = Orchestrator()
        orchestrator.gate.attach(boundary)

    listener = lambda message: print_turns(console, [message])
    orchestrator.conversation.add_listener(listener)
    text = " ".join(args.request).strip()

    try:
        if args.install_system_wide:
            ok = orchestrator.install_system_wide(args.install_system_wide)
        elif args.scan:
            ok = orchestrator.scan(args.scan)
        elif args.chat:
            ok = orchestrator.send_chat(text) is not None
        else:
            ok = orchestrator.handle_request(text, timeout=args.timeout)
    finally:
        orchestrator.conversation.remove_listener(listener)
        orchestrator.gate.close()

    return 0 if ok else 1


def main(argv: Optional[list] = None) -> int:
    """Main entry point for NeuroDesk."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        from . import __version__
        print(f"NeuroDesk version {__version__}")
        return 0

    if args.debug:
        os.environ["NEURODESK_DEBUG"] = "1"

    from .config import get_config, reset_config
    reset_config()
    configure_logging(get_config().logging.level)

    if not (args.request or args.install_system_wide or args.scan):
        parser.print_usage()
        return 2

    return run(args)


if __name__ == "__main__":
    sys.exit(main())
