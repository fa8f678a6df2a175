"""StepJam version — single source of truth is pyproject.toml.

All version references (app, wire protocol, snapshot header) read from here.
"""

from __future__ import annotations


def _read_version() -> str:
    try:
        from importlib.metadata import version
        return version("stepjam-live")
    except Exception:
        pass
    try:
        from pathlib import Path
        import re
        pyproject = Path(__file__).resolve().parent.parent.parent / "pyproject.toml"
        match = re.search(r'^version\s*=\s*"([^"]+)"', pyproject.read_text(), re.MULTILINE)
        if match:
            return match.group(1)
    except Exception:
        pass
    return "0.0.0-unknown"


STEPJAM_VERSION: str = _read_version()

# Bumped independently of the package when the wire contract changes.
PROTOCOL_VERSION: int = 1


def is_compatible(client_protocol: int | str) -> bool:
    """Check if a client speaks the same wire protocol revision."""
    try:
        return int(client_protocol) == PROTOCOL_VERSION
    except (TypeError, ValueError):
        return False
