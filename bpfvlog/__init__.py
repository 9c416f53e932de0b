"""
bpfvlog: BPF Verifier Log Analyzer
==================================

Turns the text log printed by the kernel BPF verifier into structured,
queryable data: one record per log line, the simulated register and stack
state at every line, a map back to the program source, and a backward
data-flow trace ("where did the value of r1 at line 42 come from?").

Core modules
------------
errors
    Error codes and the exception hierarchy.
instructions
    Opcode decoding, operands and the instruction variants.
state_exprs
    Parser for the ``R2_w=1 fp-24=...`` facts printed after instructions.
line_parser
    ``parse_line(raw, idx)``: classify and parse one log line.
source_map
    Source annotation ↔ log line association.
simulator
    Per-line machine state, including call frames.
dependencies
    Backward data-flow resolver over the simulated states.
config
    ``AnalysisConfig`` tuning switches.
analysis
    ``process_raw_lines``: the single-pass pipeline.

Addon modules
-------------
export
    S-expression rendering (requires ``sexpdata``).

Quick start
-----------
>>> from bpfvlog import process_raw_lines
>>> state = process_raw_lines([
...     "0: (bf) r1 = r10",
...     "1: (07) r1 += -8",
...     "2: (85) call bpf_map_lookup_elem#1",
... ])
>>> sorted(state.dependencies(2, "r1"))
[0, 1]

Package layout
--------------
::

    bpfvlog/
    ├── __init__.py            ← this file
    ├── __main__.py
    ├── main.py                ← CLI
    ├── errors.py
    ├── instructions.py
    ├── state_exprs.py
    ├── line_parser.py
    ├── source_map.py
    ├── simulator.py
    ├── dependencies.py
    ├── config.py
    ├── analysis.py
    └── export.py
"""

from __future__ import annotations

import importlib
import logging
import sys
import warnings
from typing import TYPE_CHECKING, List

# ---------------------------------------------------------------------------
# Package metadata
# ---------------------------------------------------------------------------

__version__ = "0.1.0"
__all__: List[str] = []          # populated incrementally below

_log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Internal registry: (module_name, list_of_names_to_import)
#
#   CORE  : always imported; failure is fatal
#   ADDON : imported eagerly but failure only warns (package still usable)
# ---------------------------------------------------------------------------

_CORE_MODULES = {
    "errors": [
        "VlogError",
        "LineParseError",
        "OperandParseError",
        "InstructionParseError",
        "ConfigError",
        "QueryError",
        "VlogErrorCodes",
    ],
    "instructions": [
        "Opcode",
        "BpfOperand",
        "OperandType",
        "BpfInstructionKind",
        "BpfJmpKind",
        "AluInstruction",
        "AddrSpaceCastInstruction",
        "ExitInstruction",
        "GotoInstruction",
        "ConditionalJmpInstruction",
        "HelperCallInstruction",
        "SubprogramCallInstruction",
    ],
    "state_exprs": [
        "StateExpr",
        "parse_state_exprs",
        "parse_bare_state_exprs",
    ],
    "line_parser": [
        "ParsedLineType",
        "UnrecognizedLine",
        "InstructionLine",
        "SourceLine",
        "KnownMessageLine",
        "GlobalFuncValidInfo",
        "StateExprsInfo",
        "parse_line",
    ],
    "source_map": [
        "SourceMap",
        "SourceMapBuilder",
    ],
    "simulator": [
        "Effect",
        "SlotValue",
        "MachineState",
        "StateSimulator",
        "initial_state",
    ],
    "dependencies": [
        "DependencyResolver",
    ],
    "config": [
        "AnalysisConfig",
        "load_config",
    ],
    "analysis": [
        "VerifierLogState",
        "process_raw_lines",
        "process_text",
    ],
}

_ADDON_MODULES = {
    "export": [
        "dumps_lines",
        "dumps_states",
        "dumps_source_map",
    ],
}

# ---------------------------------------------------------------------------
# Re-export
# ---------------------------------------------------------------------------

def _reexport(module_rel_name: str, names: List[str], *, required: bool) -> bool:
    """Bind *names* of ``bpfvlog.<module_rel_name>`` at package level.

    A required module that fails to import is an error; an addon only warns
    and leaves its names unbound.  Returns whether the module was loaded.
    """
    try:
        mod = importlib.import_module(f"{__name__}.{module_rel_name}")
    except ImportError as exc:
        if required:
            raise ImportError(
                f"bpfvlog.{module_rel_name} is required but failed to import: {exc}"
            ) from exc
        warnings.warn(
            f"bpfvlog.{module_rel_name} unavailable ({exc}); "
            f"{', '.join(names)} not exported",
            ImportWarning,
            stacklevel=2,
        )
        _log.debug("addon %s skipped: %s", module_rel_name, exc)
        return False

    package = sys.modules[__name__]
    missing = [n for n in names if not hasattr(mod, n)]
    if missing:
        raise AttributeError(f"bpfvlog.{module_rel_name} lacks {', '.join(missing)}")
    for name in names:
        setattr(package, name, getattr(mod, name))
    __all__.extend(names)
    setattr(package, module_rel_name, mod)
    __all__.append(module_rel_name)
    return True


_LOADED = [m for m, n in _CORE_MODULES.items() if _reexport(m, n, required=True)]
_LOADED += [m for m, n in _ADDON_MODULES.items() if _reexport(m, n, required=False)]

# ---------------------------------------------------------------------------
# Package-level utilities
# ---------------------------------------------------------------------------

def list_submodules() -> List[str]:
    """Core and addon module names, sorted."""
    return sorted([*_CORE_MODULES, *_ADDON_MODULES])


def package_info() -> dict:
    """Version, interpreter and which submodules made it in."""
    return {
        "package": __name__,
        "version": __version__,
        "python": sys.version,
        "loaded_submodules": sorted(_LOADED),
        "missing_submodules": sorted(set(list_submodules()) - set(_LOADED)),
        "all_exports": list(__all__),
    }


__all__ += ["list_submodules", "package_info", "__version__"]

if TYPE_CHECKING:
    from .analysis import (
        VerifierLogState as VerifierLogState,
        process_raw_lines as process_raw_lines,
        process_text as process_text,
    )
    from .config import AnalysisConfig as AnalysisConfig, load_config as load_config
    from .dependencies import DependencyResolver as DependencyResolver
    from .line_parser import parse_line as parse_line
    from .simulator import (
        Effect as Effect,
        MachineState as MachineState,
        StateSimulator as StateSimulator,
    )
