#!/usr/bin/env python3
"""
chainvec CLI

Extract conformance test vectors from a chain node and replay them against
an execution engine.

Usage:
    chainvec <command> [subcommand] [options]

Commands:
    extract     Extract a tipset (or a range of tipsets) into vectors
    exec        Execute vectors from a file, a directory or stdin
    inspect     Audit the archive embedded in a vector
    config      Configuration management

Exit codes: 0 success, 1 failed vectors or runtime errors, 2 bad input or
configuration.
"""

from __future__ import annotations

import argparse
import json
import pathlib
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional

from chainvec import __version__
from chainvec.errors import ConfigError, HarnessError, InputError

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2


class OutputFormat(Enum):
    """Output format options."""
    JSON = "json"
    YAML = "yaml"
    TEXT = "text"


class CLIError(Exception):
    """CLI error with exit code."""
    def __init__(self, message: str, exit_code: int = EXIT_FAILED):
        super().__init__(message)
        self.exit_code = exit_code


@dataclass
class CommandResult:
    """Handler output plus the exit code it implies."""
    data: Any
    exit_code: int = EXIT_OK


def format_output(data: Any, fmt: OutputFormat = OutputFormat.JSON) -> str:
    """Format data for output."""
    if fmt == OutputFormat.JSON:
        return json.dumps(data, indent=2, default=str)
    elif fmt == OutputFormat.YAML:
        import yaml
        return yaml.dump(data, default_flow_style=False)
    elif isinstance(data, dict):
        return "\n".join(f"{k}: {v}" for k, v in data.items())
    return str(data)


class ChainvecCLI:
    """Main CLI application.

    ``client_factory`` builds the chain client from the loaded configuration;
    it defaults to the JSON-RPC node client.
    """

    def __init__(self, client_factory: Optional[Callable[[Any], Any]] = None):
        self._client_factory = client_factory
        self.parser = argparse.ArgumentParser(
            prog="chainvec",
            description="Conformance test vector extraction and replay",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"chainvec {__version__}",
        )
        self.parser.add_argument(
            "--format", "-f",
            choices=["json", "yaml", "text"],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument(
            "--quiet", "-q",
            action="store_true",
            help="Suppress non-essential output",
        )
        self.parser.add_argument("--config", "-c", default="", help="YAML configuration file")
        self.parser.add_argument("--engine", default="", help="Engine factory as 'package.module:callable'")
        self.parser.add_argument("--log-level", dest="log_level", default="", help="Override the log level")
        self.parser.add_argument("--log-format", dest="log_format", choices=["json", "text"], default="")

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_commands()

    def _register_commands(self) -> None:
        """Register all command groups."""
        self._register_extract_command()
        self._register_exec_command()
        self._register_inspect_command()
        self._register_config_commands()

    def _register_extract_command(self) -> None:
        extract = self.subparsers.add_parser(
            "extract",
            help="Extract tipsets into test vectors",
            description="Reference forms: '@<height>', '@head', '{cid,cid}', or '<ref>..<ref>' for a range.",
        )
        extract.add_argument("--tsk", required=True, help="Tipset reference or 'left..right' range")
        extract.add_argument("--file", required=True, help="Output file (single) or directory (range)")
        extract.add_argument("--retain", default="", help="State retention strategy (default: accessed-cids)")
        extract.add_argument("--codename-schedule", dest="codename_schedule", default="",
                             help="YAML file overriding the protocol codename schedule")

    def _register_exec_command(self) -> None:
        exec_ = self.subparsers.add_parser("exec", help="Execute test vectors")
        exec_.add_argument("--file", default="",
                           help="Vector file or directory; vectors are read from stdin when omitted")
        exec_.add_argument("--out", default="", help="Report directory, required when --file is a directory")
        exec_.add_argument("--fallback-blockstore", dest="fallback_blockstore", action="store_true",
                           help="Fetch objects missing from the archive from the node")
        exec_.add_argument("--workers", type=int, default=0, help="Concurrent vectors in directory mode")
        exec_.add_argument("--no-validate", dest="no_validate", action="store_true",
                           help="Skip JSON Schema validation of vectors")

    def _register_inspect_command(self) -> None:
        inspect = self.subparsers.add_parser("inspect", help="Audit the archive embedded in a vector")
        inspect.add_argument("path", help="Vector file")

    def _register_config_commands(self) -> None:
        config = self.subparsers.add_parser("config", help="Configuration management")
        config_sub = config.add_subparsers(dest="subcommand")

        # config show
        config_sub.add_parser("show", help="Show current configuration")

        # config validate
        config_sub.add_parser("validate", help="Validate configuration")

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return EXIT_OK

        try:
            fmt = OutputFormat(parsed.format)
            self._setup(parsed)
            result = self._dispatch(parsed)

            exit_code = EXIT_OK
            if isinstance(result, CommandResult):
                exit_code = result.exit_code
                result = result.data
            if result is not None:
                print(format_output(result, fmt))

            return exit_code

        except CLIError as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return e.exit_code

        except (InputError, ConfigError) as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return EXIT_USAGE

        except HarnessError as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return EXIT_FAILED

    def _setup(self, args: argparse.Namespace) -> None:
        """Load configuration and install logging."""
        from chainvec.config import get_config_manager
        from chainvec.observability import configure_logging

        mgr = get_config_manager()
        if args.config:
            mgr.load_from_file(args.config)
        else:
            mgr.load_defaults()
        if args.engine:
            mgr.set("engine.factory", args.engine)
        if args.log_level:
            mgr.set("observability.log_level", args.log_level)
        if args.log_format:
            mgr.set("observability.log_format", args.log_format)

        obs = mgr.config.observability
        configure_logging(obs.log_level.get(), obs.log_format.get())

    def _dispatch(self, args: argparse.Namespace) -> Any:
        """Dispatch command to handler."""
        cmd = args.command
        subcmd = getattr(args, "subcommand", None)

        handler_name = f"_handle_{cmd}_{subcmd}" if subcmd else f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)

        if handler is None:
            raise CLIError(f"Unknown command: {cmd} {subcmd or ''}", EXIT_USAGE)

        return handler(args)

    # Collaborators
    def _client(self) -> Any:
        from chainvec.config import get_config
        from chainvec.node import NodeClient

        cfg = get_config()
        if self._client_factory is not None:
            return self._client_factory(cfg)
        return NodeClient.from_config(cfg.node)

    def _driver(self, disable_flush: bool) -> Any:
        from chainvec.config import get_config
        from chainvec.engine import Driver, DriverOptions, load_engine

        factory = get_config().engine.factory.get()
        if not factory:
            raise ConfigError("no execution engine configured; pass --engine or set engine.factory")
        return Driver(load_engine(factory), DriverOptions(disable_flush=disable_flush))

    # Extract handler
    def _handle_extract(self, args: argparse.Namespace) -> Any:
        from chainvec.codenames import load_schedule
        from chainvec.config import get_config
        from chainvec.extract import ExtractOptions, run_extract, validate_options

        cfg = get_config()
        retain = args.retain or cfg.extract.retain.get()
        schedule_path = args.codename_schedule or cfg.extract.codename_schedule.get()
        schedule = load_schedule(pathlib.Path(schedule_path)) if schedule_path else None

        opts = ExtractOptions(tsk=args.tsk, file=args.file, retain=retain, schedule=schedule)
        validate_options(opts)
        outcome = run_extract(self._client(), self._driver(disable_flush=True), opts)
        return outcome.to_dict()

    # Exec handler
    def _handle_exec(self, args: argparse.Namespace) -> Any:
        from chainvec.config import get_config
        from chainvec.replay import ReplayOptions, exec_vector_dir, exec_vector_file, exec_vectors_stream

        cfg = get_config()
        fallback = None
        if args.fallback_blockstore or cfg.replay.fallback_blockstore.get():
            fallback = self._client().chain_read_obj

        opts = ReplayOptions(
            fallback=fallback,
            workers=args.workers or cfg.replay.workers.get(),
            validate_schema=cfg.replay.validate_schema.get() and not args.no_validate,
        )
        driver = self._driver(disable_flush=False)

        if not args.file:
            batch = exec_vectors_stream(sys.stdin, driver, opts)
            return CommandResult(batch.to_dict(), EXIT_OK if batch.ok else EXIT_FAILED)

        path = pathlib.Path(args.file)
        if not path.exists():
            raise InputError(f"no such file or directory: {path}")
        if path.is_dir():
            if not args.out:
                raise InputError("no output directory provided")
            batch = exec_vector_dir(path, pathlib.Path(args.out), driver, opts)
            return CommandResult(batch.to_dict(), EXIT_OK if batch.ok else EXIT_FAILED)

        outcome = exec_vector_file(path, driver, opts)
        return CommandResult(outcome.to_dict(), EXIT_OK if outcome.passed else EXIT_FAILED)

    # Inspect handler
    def _handle_inspect(self, args: argparse.Namespace) -> Any:
        from chainvec.audit import audit_vector_archive
        from chainvec.schema import load_vector_file

        vector = load_vector_file(pathlib.Path(args.path))
        result = audit_vector_archive(vector)
        data = {
            "id": vector.meta.id,
            "class": vector.class_,
            "variants": [v.to_dict() for v in vector.preconditions.variants],
            "randomness": len(vector.randomness),
            "audit": result.to_dict(),
        }
        return CommandResult(data, EXIT_OK if result.passed else EXIT_FAILED)

    # Config handlers
    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        from chainvec.config import get_config_manager
        mgr = get_config_manager()
        return mgr.config.to_dict()

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        from chainvec.config import get_config_manager
        mgr = get_config_manager()
        errors = mgr.validate()
        return CommandResult({"valid": len(errors) == 0, "errors": errors}, EXIT_OK if not errors else EXIT_USAGE)


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    cli = ChainvecCLI()
    return cli.run(argv)


if __name__ == "__main__":
    sys.exit(main())
