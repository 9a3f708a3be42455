#!/usr/bin/env python3
"""
procvm command-line interface

Usage:
    procvm [--format FMT] [--config FILE] <command> [subcommand] [options]

Commands:
    validate      Run the validation pipeline over a code image
    run           Validate and execute a code image
    procedures    List the procedure table of a code image
    disassemble   Disassemble a code image
    assemble      Assemble a YAML listing into bytecode
    config        Configuration management

Bytecode arguments accept ``0x``-prefixed or bare hex, a ``.hex`` file
holding hex text, or any other file holding raw bytes.

Exit codes: 0 success, 1 usage or I/O error, 2 validation failure,
3 execution ended unsuccessfully.

Copyright (c) 2026 procvm contributors. All rights reserved.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from enum import Enum
from typing import Any, List, Optional, Tuple

import yaml

from procvm import __version__
from procvm.hardening import ValidationFailure
from procvm.observability import generate_correlation_id, set_correlation_id

EXIT_VALIDATION_FAILED = 2
EXIT_EXECUTION_FAILED = 3


class OutputFormat(Enum):
    """Output format options."""
    JSON = "json"
    YAML = "yaml"
    TABLE = "table"
    TEXT = "text"


class CLIError(Exception):
    """CLI error with exit code."""
    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code


def format_output(data: Any, fmt: OutputFormat = OutputFormat.JSON) -> str:
    """Format data for output."""
    if fmt == OutputFormat.JSON:
        return json.dumps(data, indent=2, default=str)
    elif fmt == OutputFormat.YAML:
        return yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
    elif fmt == OutputFormat.TABLE:
        return _format_table(data)
    else:
        return str(data)


def _format_table(data: Any) -> str:
    """Format data as ASCII table."""
    if isinstance(data, list) and data and isinstance(data[0], dict):
        headers = list(data[0].keys())
        rows = [[str(row.get(h, ""))[:40] for h in headers] for row in data]
        widths = [max(len(h), max(len(r[i]) for r in rows)) for i, h in enumerate(headers)]

        lines = []
        lines.append(" | ".join(h.ljust(widths[i]) for i, h in enumerate(headers)))
        lines.append("-+-".join("-" * w for w in widths))
        for row in rows:
            lines.append(" | ".join(c.ljust(widths[i]) for i, c in enumerate(row)))
        return "\n".join(lines)
    elif isinstance(data, dict):
        return "\n".join(f"{k}: {v}" for k, v in data.items())
    return str(data)


def load_bytecode(value: str) -> bytes:
    """Read bytecode from a hex literal or a file."""
    if os.path.isfile(value):
        if value.endswith(".hex"):
            with open(value) as f:
                value = f.read().strip()
        else:
            with open(value, "rb") as f:
                return f.read()
    if value.startswith("0x"):
        value = value[2:]
    try:
        return bytes.fromhex(value)
    except ValueError as e:
        raise CLIError(f"Invalid bytecode: {e}")


def parse_jumpdests(value: Optional[str]) -> Optional[List[int]]:
    if value is None:
        return None
    try:
        return [int(part, 0) for part in value.split(",") if part.strip()]
    except ValueError as e:
        raise CLIError(f"Invalid jump destination list: {e}")


def load_listing(path: str) -> List[Tuple[Any, ...]]:
    """
    Load a YAML assembly listing.

    Each entry is either a bare mnemonic (``STOP``) or a list of mnemonic
    and operands (``[ENTERPROC, add2, 2, 1, 0]``).
    """
    with open(path) as f:
        listing = yaml.safe_load(f)
    if not isinstance(listing, list):
        raise CLIError(f"{path}: listing must be a YAML sequence")

    instructions = []
    for entry in listing:
        if isinstance(entry, str):
            instructions.append((entry,))
        elif isinstance(entry, list) and entry and isinstance(entry[0], str):
            instructions.append(tuple(entry))
        else:
            raise CLIError(f"{path}: invalid listing entry {entry!r}")
    return instructions


class ProcVMCLI:
    """Main CLI application."""

    def __init__(self):
        self.exit_code = 0
        self.parser = argparse.ArgumentParser(
            prog="procvm",
            description="Validator and executor for procedure bytecode",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"procvm {__version__}",
        )
        self.parser.add_argument(
            "--format", "-f",
            choices=["json", "yaml", "table", "text"],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument(
            "--config", "-c",
            help="YAML configuration file",
        )
        self.parser.add_argument(
            "--quiet", "-q",
            action="store_true",
            help="Suppress non-essential output",
        )

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_commands()

    def _register_commands(self) -> None:
        """Register all commands."""
        self._register_program_commands()
        self._register_config_commands()

    def _register_program_commands(self) -> None:
        """Register bytecode commands."""
        validate = self.subparsers.add_parser("validate", help="Validate bytecode")
        validate.add_argument("--bytecode", "-b", required=True, help="Hex bytecode or file path")
        validate.add_argument("--jumpdests", "-j", help="Comma-separated jump destination offsets")

        run = self.subparsers.add_parser("run", help="Validate and execute bytecode")
        run.add_argument("--bytecode", "-b", required=True, help="Hex bytecode or file path")
        run.add_argument("--jumpdests", "-j", help="Comma-separated jump destination offsets")
        run.add_argument("--gas-limit", "-g", type=int, help="Gas limit for memory expansion")
        run.add_argument("--step-limit", type=int, help="Maximum instructions executed")

        procedures = self.subparsers.add_parser("procedures", help="List procedures")
        procedures.add_argument("--bytecode", "-b", required=True, help="Hex bytecode or file path")

        disassemble = self.subparsers.add_parser("disassemble", help="Disassemble bytecode")
        disassemble.add_argument("--bytecode", "-b", required=True, help="Hex bytecode or file path")

        assemble = self.subparsers.add_parser("assemble", help="Assemble a YAML listing")
        assemble.add_argument("--input", "-i", required=True, help="Assembly listing (YAML)")
        assemble.add_argument("--output", "-o", help="Write hex bytecode to this file")

    def _register_config_commands(self) -> None:
        """Register config subcommands."""
        config = self.subparsers.add_parser("config", help="Configuration management")
        config_sub = config.add_subparsers(dest="subcommand")

        # config get
        get = config_sub.add_parser("get", help="Get configuration value")
        get.add_argument("path", help="Config path (e.g., vm.stack_limit)")

        # config set
        set_cmd = config_sub.add_parser("set", help="Set configuration value")
        set_cmd.add_argument("path", help="Config path")
        set_cmd.add_argument("value", help="Value to set")

        # config show
        config_sub.add_parser("show", help="Show all configuration")

        # config validate
        config_sub.add_parser("validate", help="Validate configuration")

        # config schema
        config_sub.add_parser("schema", help="Export configuration schema")

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 0

        self.exit_code = 0
        fmt = OutputFormat(parsed.format)
        set_correlation_id(generate_correlation_id())
        try:
            from procvm.config import get_config_manager
            if parsed.config:
                get_config_manager().load_from_file(parsed.config)
            else:
                get_config_manager().load_defaults()

            result = self._dispatch(parsed)

            if result is not None:
                print(format_output(result, fmt))

            return self.exit_code

        except ValidationFailure as e:
            print(format_output({"valid": False, "error": e.to_dict()}, fmt))
            return EXIT_VALIDATION_FAILED

        except CLIError as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return e.exit_code

        except Exception as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return 1

    def _dispatch(self, args: argparse.Namespace) -> Any:
        """Dispatch command to handler."""
        cmd = args.command
        subcmd = getattr(args, "subcommand", None)

        handler_name = f"_handle_{cmd}_{subcmd}" if subcmd else f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)

        if handler is None:
            raise CLIError(f"Unknown command: {cmd} {subcmd or ''}")

        return handler(args)

    # Bytecode handlers
    def _handle_validate(self, args: argparse.Namespace) -> Any:
        from procvm.validator import ProgramValidator

        code = load_bytecode(args.bytecode)
        result = ProgramValidator().validate(code, parse_jumpdests(args.jumpdests))
        if not result.is_valid:
            self.exit_code = EXIT_VALIDATION_FAILED
        return result.to_dict()

    def _handle_run(self, args: argparse.Namespace) -> Any:
        from procvm.validator import ProgramValidator
        from procvm.vm import ExecutionContext, ProcedureVM

        code = load_bytecode(args.bytecode)
        validation = ProgramValidator().validate(code, parse_jumpdests(args.jumpdests))
        if not validation.is_valid:
            self.exit_code = EXIT_VALIDATION_FAILED
            return validation.to_dict()

        ctx = ExecutionContext(gas_limit=args.gas_limit, step_limit=args.step_limit)
        result = ProcedureVM().execute(validation.program, ctx)
        if not result.success:
            self.exit_code = EXIT_EXECUTION_FAILED
        return result.to_dict()

    def _handle_procedures(self, args: argparse.Namespace) -> Any:
        from procvm.procedures import ProcedureTable

        table = ProcedureTable.build(load_bytecode(args.bytecode))
        return [sig.to_dict() for sig in table]

    def _handle_disassemble(self, args: argparse.Namespace) -> Any:
        from procvm.vm import Assembler

        instructions = Assembler.disassemble(load_bytecode(args.bytecode))
        return [
            {
                "offset": offset,
                "opcode": mnemonic,
                "operand": list(operand) if isinstance(operand, tuple) else operand,
            }
            for offset, mnemonic, operand in instructions
        ]

    def _handle_assemble(self, args: argparse.Namespace) -> Any:
        from procvm.vm import Assembler

        try:
            bytecode = Assembler.assemble(load_listing(args.input))
        except (KeyError, ValueError, TypeError) as e:
            raise CLIError(f"Assembly failed: {e}")

        if args.output:
            with open(args.output, "w") as f:
                f.write(bytecode.hex() + "\n")
        return {"bytecode": "0x" + bytecode.hex(), "size": len(bytecode), "output": args.output}

    # Config handlers
    def _handle_config_get(self, args: argparse.Namespace) -> Any:
        from procvm.config import get_config_manager
        mgr = get_config_manager()
        return {"path": args.path, "value": mgr.get(args.path)}

    def _handle_config_set(self, args: argparse.Namespace) -> Any:
        from procvm.config import get_config_manager
        mgr = get_config_manager()
        mgr.set(args.path, args.value)
        return {"path": args.path, "value": mgr.get(args.path), "status": "updated"}

    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        from procvm.config import get_config_manager
        mgr = get_config_manager()
        return mgr.config.to_dict()

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        from procvm.config import get_config_manager
        mgr = get_config_manager()
        errors = mgr.validate()
        return {"valid": len(errors) == 0, "errors": errors}

    def _handle_config_schema(self, args: argparse.Namespace) -> Any:
        from procvm.config import get_config_manager
        mgr = get_config_manager()
        return mgr.export_schema()


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    cli = ProcVMCLI()
    return cli.run(argv)


if __name__ == "__main__":
    sys.exit(main())
