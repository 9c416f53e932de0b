#!/usr/bin/env python3
"""bpfvlog/main.py: CLI entry-point for the verifier log analyzer.

Usage examples
--------------
    # Parse a log and print one record per line
    python -m bpfvlog parse verifier.log --format summary

    # Machine state after every line (or a single line), as S-expressions
    python -m bpfvlog states verifier.log --format sexp
    python -m bpfvlog states verifier.log --line 42

    # Which lines produced the value of r1 at line 42?
    python -m bpfvlog deps verifier.log --line 42 --slot r1

    # Source-code annotations and the log lines they cover
    python -m bpfvlog sources verifier.log

    # Package metadata
    python -m bpfvlog info

Exit codes
----------
    0   Success.
    1   Invalid query (line out of range, empty slot id).
    2   Infrastructure failure (missing file, bad configuration, etc.).

The module doubles as ``python -m bpfvlog`` via the companion
``bpfvlog/__main__.py`` which simply calls :func:`main`.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import textwrap
from pathlib import Path
from typing import Any, List, Optional, Sequence, TextIO

from bpfvlog import __version__, package_info
from bpfvlog.analysis import VerifierLogState, process_raw_lines
from bpfvlog.config import AnalysisConfig, load_config
from bpfvlog.errors import ConfigError, QueryError, VlogErrorCodes
from bpfvlog.export import dumps_lines, dumps_source_map, dumps_states
from bpfvlog.instructions import MEM_ID
from bpfvlog.line_parser import InstructionLine
from bpfvlog.state_exprs import normalize_key

_log = logging.getLogger("bpfvlog")
_cli_handler: Optional[logging.Handler] = None

# Exit codes ----------------------------------------------------------------

EXIT_OK: int = 0
EXIT_ERROR: int = 1
EXIT_INFRA: int = 2


# ===========================================================================
# Utility helpers
# ===========================================================================

def _configure_logging(verbosity: int) -> None:
    """Set up the ``bpfvlog`` logger.

    Parameters
    ----------
    verbosity:
        0 → WARNING, 1 → INFO, 2+ → DEBUG.
    """
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    global _cli_handler
    logger = logging.getLogger("bpfvlog")
    if _cli_handler is not None:
        # one CLI handler at a time
        logger.removeHandler(_cli_handler)
    _cli_handler = logging.StreamHandler(sys.stderr)
    _cli_handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s [%(levelname)-5.5s] %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        )
    )
    logger.setLevel(level)
    logger.addHandler(_cli_handler)


def _existing_file(raw: str, label: str) -> Path:
    path = Path(raw).expanduser().resolve()
    if not path.is_file():
        raise FileNotFoundError(f"{label} not found: {path}")
    return path


def _open_output(dest: Optional[str]) -> TextIO:
    """stdout for ``None`` and ``"-"``, else *dest* (parent dirs created)."""
    if dest in (None, "-"):
        return sys.stdout
    path = Path(dest).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    return path.open("w", encoding="utf-8")


def _read_log(raw: str) -> List[str]:
    """Lines of the log at *raw* (``"-"`` reads stdin)."""
    if raw == "-":
        return sys.stdin.read().splitlines()
    path = _existing_file(raw, "verifier log")
    return path.read_text(encoding="utf-8", errors="replace").splitlines()


def _build_config(args: argparse.Namespace) -> AnalysisConfig:
    config = load_config(_existing_file(args.config, "config")) if args.config else AnalysisConfig()
    if args.no_merge_bare_state:
        config.merge_bare_state_exprs = False
    if args.no_fold_global_funcs:
        config.fold_global_func_calls = False
    return config


def _analyze(args: argparse.Namespace) -> VerifierLogState:
    return process_raw_lines(_read_log(args.log), _build_config(args))


def _write(args: argparse.Namespace, text: str) -> None:
    out = _open_output(args.output)
    try:
        out.write(text)
        if not text.endswith("\n"):
            out.write("\n")
    finally:
        if out is not sys.stdout:
            out.close()


def _check_line(state: VerifierLogState, idx: int) -> None:
    if not 0 <= idx < len(state):
        raise QueryError(
            f"line {idx} out of range (log has {len(state)} lines)",
            code=VlogErrorCodes.LINE_OUT_OF_RANGE,
        )


# ===========================================================================
# Sub-commands
# ===========================================================================

def cmd_parse(args: argparse.Namespace) -> int:
    """Print the parsed line records."""
    state = _analyze(args)
    if args.format == "json":
        text = json.dumps([ln.to_dict() for ln in state.lines], indent=2)
    elif args.format == "sexp":
        text = dumps_lines(state.lines)
    else:
        rows = []
        for ln in state.lines:
            tag = ln.type.value
            if isinstance(ln, InstructionLine):
                ins = ln.ins
                tag = f"{tag}/{getattr(ins, 'jmp_kind', ins.kind).value}"
            rows.append(f"{ln.idx:>6}  {tag:<32} {ln.raw}")
        rows.append(json.dumps(state.summary()))
        text = "\n".join(rows)
    _write(args, text)
    return EXIT_OK


def cmd_states(args: argparse.Namespace) -> int:
    """Print the machine state after every line, or after ``--line``."""
    state = _analyze(args)
    if args.line is not None:
        _check_line(state, args.line)
        states = [state.states[args.line]]
    else:
        states = list(state.states)

    if args.format == "json":
        text = json.dumps([s.to_dict() for s in states], indent=2)
    elif args.format == "sexp":
        text = dumps_states(states)
    else:
        rows = []
        for s in states:
            touched = " ".join(
                f"{k}={s.values[k].value or '?'}({e.value})" for k, e in s.touched().items()
            )
            rows.append(f"{s.idx:>6}  pc={s.pc:<6} frame={s.frame}  {touched}")
        text = "\n".join(rows)
    _write(args, text)
    return EXIT_OK


def cmd_deps(args: argparse.Namespace) -> int:
    """Trace the producers of a storage location at a line."""
    slot = args.slot.strip()
    if slot != MEM_ID:
        slot = normalize_key(slot)
    if not slot:
        raise QueryError("empty storage-location id", code=VlogErrorCodes.EMPTY_SLOT_ID)
    state = _analyze(args)
    _check_line(state, args.line)

    if args.no_retarget:
        target = slot
        deps = state.dependencies(args.line, slot)
    else:
        target = state.retarget_slot(args.line, slot)
        deps = state.selection_dependencies(args.line, slot)
    ordered = sorted(deps, reverse=True)

    if args.format == "json":
        payload: Any = {
            "line": args.line,
            "slot": slot,
            "traced_slot": target,
            "dependencies": ordered,
        }
        text = json.dumps(payload, indent=2)
    elif args.format == "sexp":
        text = dumps_lines(state.lines[i] for i in ordered)
    else:
        rows = [f"{slot} at line {args.line} (traced as {target}): {len(ordered)} line(s)"]
        rows += [f"{i:>6}  {state.lines[i].raw}" for i in ordered]
        text = "\n".join(rows)
    _write(args, text)
    return EXIT_OK


def cmd_sources(args: argparse.Namespace) -> int:
    """Print the source-line map."""
    state = _analyze(args)
    smap = state.source_map
    if args.format == "json":
        text = json.dumps(smap.to_dict(), indent=2)
    elif args.format == "sexp":
        text = dumps_source_map(smap)
    else:
        rows = []
        for source_id, line in smap.source_lines.items():
            idxs = ",".join(str(i) for i in sorted(smap.log_lines_for(source_id)))
            rows.append(f"{source_id:<32} [{idxs}]  {line.content}")
        for file_name, (lo, hi) in smap.file_range.items():
            rows.append(f"{file_name}: lines {lo}-{hi}")
        text = "\n".join(rows)
    _write(args, text)
    return EXIT_OK


def cmd_info(args: argparse.Namespace) -> int:
    """Print package metadata."""
    _write(args, json.dumps(package_info(), indent=2))
    return EXIT_OK


# ===========================================================================
# Argument parser
# ===========================================================================

def _build_parser() -> argparse.ArgumentParser:
    """Construct the full CLI argument parser with subcommands."""

    parser = argparse.ArgumentParser(
        prog="bpfvlog",
        description=(
            "bpfvlog: BPF verifier log analyzer.\n\n"
            "Parses verifier logs, replays register and stack state line by\n"
            "line, and traces where a value came from."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            examples:
              bpfvlog parse   verifier.log -f summary
              bpfvlog states  verifier.log --line 42
              bpfvlog deps    verifier.log --line 42 --slot r1
              bpfvlog sources verifier.log -f json
        """),
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v info, -vv debug).",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        title="commands",
        metavar="<command>",
    )

    # Shared argument groups (reusable) ------------------------------------

    def _add_output_args(p: argparse.ArgumentParser, formats: Sequence[str]) -> None:
        p.add_argument(
            "-o", "--output",
            default=None,
            metavar="FILE",
            help='Output file ("-" or omit for stdout).',
        )
        p.add_argument(
            "-f", "--format",
            choices=list(formats),
            default=formats[0],
            help=f"Output format (default: {formats[0]}).",
        )

    def _add_log_args(p: argparse.ArgumentParser) -> None:
        p.add_argument("log", help='Verifier log file ("-" for stdin).')
        g = p.add_argument_group("analysis tuning")
        g.add_argument(
            "--config",
            default=None,
            metavar="FILE",
            help="JSON file with AnalysisConfig fields.",
        )
        g.add_argument(
            "--no-merge-bare-state",
            action="store_true",
            help="Keep bare '<pc>: R0=...' lines as messages instead of attaching them "
            "to the preceding instruction.",
        )
        g.add_argument(
            "--no-fold-global-funcs",
            action="store_true",
            help="Keep calls to global functions as subprogram calls.",
        )

    # --- parse -------------------------------------------------------------
    p_parse = subparsers.add_parser("parse", help="Print parsed line records.")
    _add_log_args(p_parse)
    _add_output_args(p_parse, ("summary", "json", "sexp"))
    p_parse.set_defaults(func=cmd_parse)

    # --- states ------------------------------------------------------------
    p_states = subparsers.add_parser("states", help="Print machine state per line.")
    _add_log_args(p_states)
    _add_output_args(p_states, ("summary", "json", "sexp"))
    p_states.add_argument(
        "--line",
        type=int,
        default=None,
        metavar="N",
        help="Only the state after line N (0-based).",
    )
    p_states.set_defaults(func=cmd_states)

    # --- deps --------------------------------------------------------------
    p_deps = subparsers.add_parser("deps", help="Trace the producers of a value.")
    _add_log_args(p_deps)
    _add_output_args(p_deps, ("summary", "json", "sexp"))
    p_deps.add_argument("--line", type=int, required=True, metavar="N", help="Line index (0-based).")
    p_deps.add_argument("--slot", required=True, metavar="ID", help="Storage location, e.g. r1 or fp-8.")
    p_deps.add_argument(
        "--no-retarget",
        action="store_true",
        help="Trace the slot as given, even if the line only writes it.",
    )
    p_deps.set_defaults(func=cmd_deps)

    # --- sources -----------------------------------------------------------
    p_sources = subparsers.add_parser("sources", help="Print the source-line map.")
    _add_log_args(p_sources)
    _add_output_args(p_sources, ("summary", "json", "sexp"))
    p_sources.set_defaults(func=cmd_sources)

    # --- info --------------------------------------------------------------
    p_info = subparsers.add_parser("info", help="Show package metadata.")
    p_info.add_argument("-o", "--output", default=None, metavar="FILE")
    p_info.set_defaults(func=cmd_info)

    return parser


# ===========================================================================
# Main entry point
# ===========================================================================

def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the bpfvlog CLI.

    Parameters
    ----------
    argv:
        Command-line arguments.  ``None`` → ``sys.argv[1:]``.

    Returns
    -------
    int
        Exit code (see module docstring for semantics).
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    _configure_logging(args.verbose)

    if not hasattr(args, "func"):
        parser.print_help(sys.stderr)
        return EXIT_INFRA

    try:
        return args.func(args)
    except QueryError as exc:
        _log.error("%s", exc)
        return EXIT_ERROR
    except (ConfigError, FileNotFoundError) as exc:
        _log.error("%s", exc)
        return EXIT_INFRA
    except KeyboardInterrupt:
        _log.info("Interrupted by user.")
        return 130
    except Exception as exc:
        _log.error("Unhandled exception: %s", exc, exc_info=True)
        return EXIT_INFRA


if __name__ == "__main__":
    raise SystemExit(main())
