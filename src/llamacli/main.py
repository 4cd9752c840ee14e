"""
main.py — llamacli Entry Point

Usage:
    llamacli                                 # new session, default settings
    llamacli --session <id>                  # reopen a saved session
    llamacli --provider openai --model gpt-4o-mini
    llamacli --log-level DEBUG
    llamacli --config path/to/config.yaml
    llamacli --check                         # verify the model endpoint and exit
    llamacli -p "explain main.py" --format json -o reply.json
    cat notes.txt | llamacli --no-tools     # piped input runs one turn and exits
    llamacli get "what does HTTP 418 mean"   # quick query, tools off
    llamacli -p "clean the build dir" --yolo # approve flagged shell commands
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional, TextIO

from dotenv import load_dotenv


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="llamacli",
        description="llamacli — interactive terminal assistant for local and hosted LLMs",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: $LLAMACLI_CONFIG or config/config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override log level from config",
    )
    parser.add_argument(
        "--session",
        default=None,
        help="Resume a saved session by id",
    )
    parser.add_argument(
        "--provider",
        default=None,
        help="Override llm.provider (openai, anthropic, gemini, ollama, openrouter, vllm, openai-compatible)",
    )
    parser.add_argument("--model", default=None, help="Override llm.model")
    parser.add_argument(
        "--check",
        action="store_true",
        default=False,
        help="Run an LLM health check and exit",
    )

    # -- Non-interactive mode -------------------------------------------------
    parser.add_argument("-p", "--prompt", default=None, help="Answer one prompt and exit")
    parser.add_argument(
        "--format",
        choices=["text", "json", "markdown"],
        default=None,
        help="Output format for non-interactive mode (default: text)",
    )
    parser.add_argument("-o", "--output", default=None, help="Write the reply to a file instead of stdout")
    parser.add_argument("--file", default=None, help="Attach a file's contents to the prompt")
    parser.add_argument("-d", "--directory", default=None, help="Working directory for the session's shell")
    parser.add_argument("--no-tools", action="store_true", default=False, help="Run without any tools")
    parser.add_argument(
        "--yolo",
        action="store_true",
        default=False,
        help="Approve every shell confirmation request without asking",
    )
    parser.add_argument("-q", "--quiet", action="store_true", default=False, help="Suppress status messages")
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        default=False,
        help="Include model and usage metadata in json/markdown output",
    )

    subcommands = parser.add_subparsers(dest="command")
    get = subcommands.add_parser("get", help="Quick query without tools or a REPL")
    get.add_argument("query", nargs="+", help="The question to ask")
    get.add_argument("--file", default=argparse.SUPPRESS, help="Attach a file's contents to the query")
    return parser.parse_args(argv)


def wants_headless(args: argparse.Namespace, stdin_is_tty: bool) -> bool:
    """Non-interactive when given a prompt, the get command, output flags, or piped input."""
    return (
        args.prompt is not None
        or args.command == "get"
        or args.format is not None
        or args.output is not None
        or not stdin_is_tty
    )


def headless_options(args: argparse.Namespace, stdin: Optional[TextIO] = None):
    """Build HeadlessOptions from parsed flags; reads the prompt from stdin when none is given."""
    from llamacli.interfaces.headless import HeadlessOptions

    if args.command == "get":
        prompt = " ".join(args.query)
    elif args.prompt is not None:
        prompt = args.prompt
    else:
        stdin = stdin or sys.stdin
        prompt = "" if stdin.isatty() else stdin.read().strip()

    return HeadlessOptions(
        prompt=prompt,
        output_format=args.format or "text",
        output_path=Path(args.output) if args.output else None,
        file_path=Path(args.file) if args.file else None,
        no_tools=args.no_tools or args.command == "get",
        yolo=args.yolo,
        quiet=args.quiet,
        verbose=args.verbose,
        session_id=args.session,
        working_directory=args.directory,
    )


def bootstrap(args: argparse.Namespace):
    """
    Load config, validate it fully, and set up logging.
    Returns (settings, log) ready for use.

    Exits with code 1 (after printing a clear message) if:
      - config.yaml has invalid values (Pydantic ValidationError)
      - cross-field problems are found (ConfigError from validate_all())
    """
    from pydantic import ValidationError

    from llamacli.config.settings import ConfigError, load_settings
    from llamacli.observability.logger import get_logger, setup_logging

    llm_overrides = {k: v for k, v in (("provider", args.provider), ("model", args.model)) if v}

    # -- Load and parse -------------------------------------------------------
    try:
        settings = load_settings(args.config, llm=llm_overrides)
    except ValidationError as exc:
        problems = "\n".join(
            f"  • {'.'.join(str(p) for p in e['loc']) or '?'}: {e['msg']}"
            for e in exc.errors()
        )
        print(
            f"\n❌  Config validation failed:\n\n{problems}\n\n"
            f"    Fix config/config.yaml or your .env file and restart.\n",
            file=sys.stderr,
        )
        sys.exit(1)
    except (OSError, ValueError, TypeError) as exc:
        print(f"\n❌  Failed to load config: {type(exc).__name__}: {exc}\n", file=sys.stderr)
        sys.exit(1)

    # -- Cross-field validation -----------------------------------------------
    try:
        settings.validate_all()
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(1)

    # -- Logging --------------------------------------------------------------
    setup_logging(
        level=args.log_level or settings.log_level,
        log_dir=settings.log_dir,
        json_format=settings.logging.json_format,
        console_output=settings.logging.console_output,
    )
    return settings, get_logger("llamacli.main")


async def main(argv: Optional[list[str]] = None) -> int:
    load_dotenv()
    args = parse_args(argv)
    settings, log = bootstrap(args)

    from llamacli import __version__
    from llamacli.brain.llm_client import LLMClientFactory
    from llamacli.exceptions import LLMError, SessionError

    log.info(
        "llamacli.starting",
        version=__version__,
        llm_provider=settings.llm.provider,
        llm_model=settings.llm.model,
    )

    if args.check:
        client = LLMClientFactory.from_settings(settings)
        healthy = await client.health_check()
        log.info("llamacli.health_check", healthy=healthy)
        print(f"{settings.llm.provider}/{settings.llm.model}: {'OK' if healthy else 'UNREACHABLE'}")
        return 0 if healthy else 1

    try:
        if wants_headless(args, sys.stdin.isatty()):
            from llamacli.interfaces.headless import run_headless

            code = await run_headless(settings, headless_options(args))
            log.info("llamacli.stopped", exit_code=code)
            return code

        from llamacli.interfaces.cli import run_cli

        await run_cli(settings, session_id=args.session)
    except SessionError as e:
        log.error("llamacli.session_error", error=str(e))
        print(f"\n❌  {e}\n", file=sys.stderr)
        return 1
    except LLMError as e:
        log.error("llamacli.llm_init_failed", error=str(e))
        print(f"\n❌  Failed to initialise LLM provider '{settings.llm.provider}': {e}\n", file=sys.stderr)
        return 1

    log.info("llamacli.stopped")
    return 0


def run() -> None:
    """Console-script entry point."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
