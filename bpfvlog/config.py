"""
bpfvlog/config.py
═════════════════

Tuning switches for one analysis pass.

    config = AnalysisConfig(merge_bare_state_exprs=False)
    state = process_raw_lines(raw_lines, config)

or, from a JSON file::

    {"fold_global_func_calls": true, "merge_bare_state_exprs": false}
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Union

from bpfvlog.errors import ConfigError, VlogErrorCodes

logger = logging.getLogger(__name__)


@dataclass
class AnalysisConfig:
    """Knobs for ``process_raw_lines``.

    Attributes
    ----------
    fold_global_func_calls : bool
        Rewrite ``call pc+N`` into a helper call when the next line says the
        callee is a global function assumed valid (the verifier does not
        descend into it, so no ``exit`` will follow).
    merge_bare_state_exprs : bool
        Attach ``<pc>: R0=...`` lines that carry no instruction to the
        closest preceding instruction line, so the simulator sees them
        (a helper call's result is usually printed this way).
    initial_context_value : str
        Value of ``r1`` at program entry.
    frame_base_value : str
        Value of ``r10`` in every fresh frame.
    """

    fold_global_func_calls: bool = True
    merge_bare_state_exprs: bool = True
    initial_context_value: str = "ctx()"
    frame_base_value: str = "fp-0"

    def validate(self) -> List[str]:
        """Return a list of validation warnings (empty if valid)."""
        warnings: List[str] = []
        if not self.initial_context_value:
            warnings.append("initial_context_value is empty; r1 will look unset")
        if not self.frame_base_value.startswith("fp"):
            warnings.append(
                f"frame_base_value {self.frame_base_value!r} does not name a stack slot"
            )
        return warnings

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "AnalysisConfig":
        known = {f.name: f for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            f = known.get(key)
            if f is None:
                raise ConfigError(
                    f"unknown configuration key {key!r}",
                    code=VlogErrorCodes.UNKNOWN_CONFIG_KEY,
                )
            expected = bool if f.type in ("bool", bool) else str
            if not isinstance(value, expected):
                raise ConfigError(
                    f"{key} must be {expected.__name__}, got {type(value).__name__}",
                    code=VlogErrorCodes.INVALID_CONFIG_VALUE,
                )
            kwargs[key] = value
        return cls(**kwargs)


def load_config(path: Union[str, Path]) -> AnalysisConfig:
    """Read an ``AnalysisConfig`` from a JSON object file."""
    p = Path(path)
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ConfigError(
            f"cannot read configuration {p}: {exc}",
            code=VlogErrorCodes.UNREADABLE_CONFIG,
            cause=exc,
        ) from exc
    if not isinstance(data, dict):
        raise ConfigError(
            f"configuration {p} must hold a JSON object",
            code=VlogErrorCodes.INVALID_CONFIG_VALUE,
        )
    config = AnalysisConfig.from_mapping(data)
    for warning in config.validate():
        logger.warning("config %s: %s", p, warning)
    return config


__all__ = ["AnalysisConfig", "load_config"]
