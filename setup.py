#!/usr/bin/env python3
# =============================================================================
#  jsr-subroutines — setup.py
#
#  Builds the jsr_subroutines distribution. The version and the long
#  description both come from jsr_subroutines/__init__.py, and the runtime
#  dependency pins come from requirements.txt, so each lives in one place.
#
#  For development:
#      pip install -e ".[dev]"
#      python -m pytest
# =============================================================================

from __future__ import annotations

import ast
import re
from pathlib import Path

from setuptools import setup, find_packages

_HERE = Path(__file__).resolve().parent
_PACKAGE_INIT = _HERE / "jsr_subroutines" / "__init__.py"


def _read_version() -> str:
    """Version string assigned to ``__version__`` in the package."""
    text = _PACKAGE_INIT.read_text(encoding="utf-8")
    match = re.search(r'^__version__\s*=\s*"([^"]+)"', text, re.MULTILINE)
    if match:
        return match.group(1)
    return "0.0.0"


def _read_long_description() -> str:
    """The package docstring, which doubles as the project overview."""
    module = ast.parse(_PACKAGE_INIT.read_text(encoding="utf-8"))
    return ast.get_docstring(module) or ""


def _read_requirements() -> list[str]:
    """Runtime pins from requirements.txt, without comments."""
    pins = []
    for line in (_HERE / "requirements.txt").read_text(encoding="utf-8").splitlines():
        pin = line.split("#", 1)[0].strip()
        if pin:
            pins.append(pin)
    return pins


setup(
    name="jsr-subroutines",
    version=_read_version(),
    description=(
        "JSR/RET subroutine partitioning and structural checks "
        "for JVM bytecode verification."
    ),
    long_description=_read_long_description(),
    long_description_content_type="text/x-rst",
    license="GPL-3.0-or-later",
    author="jsr-subroutines contributors",
    python_requires=">=3.10",
    packages=find_packages(
        include=[
            "jsr_subroutines",
            "jsr_subroutines.*",
        ],
        exclude=[
            "tests",
            "tests.*",
        ],
    ),
    install_requires=_read_requirements(),
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
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3.13",
        "Topic :: Software Development :: Compilers",
        "Topic :: Software Development :: Quality Assurance",
    ],
    keywords=[
        "jvm",
        "bytecode",
        "verifier",
        "jsr",
        "subroutines",
        "program-analysis",
    ],
    zip_safe=False,
)
