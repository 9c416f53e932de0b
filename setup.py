#!/usr/bin/env python3
# =============================================================================
#  bpfvlog setup.py
#
#      pip install -e ".[dev]"
#      python -m pytest
# =============================================================================

from __future__ import annotations

import re
from pathlib import Path

from setuptools import setup, find_packages

_ROOT = Path(__file__).resolve().parent


def _version() -> str:
    """``__version__`` from bpfvlog/__init__.py; the package is the only source."""
    text = (_ROOT / "bpfvlog" / "__init__.py").read_text(encoding="utf-8")
    m = re.search(r'^__version__\s*=\s*"([^"]+)"', text, re.MULTILINE)
    return m.group(1) if m else "0.0.0"


def _requirements() -> list[str]:
    path = _ROOT / "requirements.txt"
    if not path.exists():
        return []
    reqs = []
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.split("#", 1)[0].strip()
        if line:
            reqs.append(line)
    return reqs


setup(
    name="bpfvlog",
    version=_version(),
    description="Parser, state simulator and data-flow tracer for BPF verifier logs.",
    license="MIT",
    author="bpfvlog contributors",
    python_requires=">=3.10",
    packages=find_packages(include=["bpfvlog", "bpfvlog.*"]),
    package_data={"bpfvlog": ["py.typed"]},
    install_requires=_requirements(),
    extras_require={
        "dev": [
            "pytest>=7.0",
            "pytest-cov>=4.0",
            "ruff>=0.4",
            "mypy>=1.10",
            "black>=24.0",
            "isort>=5.13",
        ],
    },
    entry_points={"console_scripts": ["bpfvlog=bpfvlog.main:main"]},
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Environment :: Console",
        "Programming Language :: Python :: 3 :: Only",
        "Topic :: Software Development :: Debuggers",
        "Topic :: System :: Operating System Kernels :: Linux",
        "Typing :: Typed",
    ],
    keywords=["bpf", "ebpf", "verifier", "data-flow"],
    zip_safe=False,
)
