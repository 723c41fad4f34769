"""
Captain's Log transcription proxy.

A local FastAPI server that forwards audio uploads to an OpenAI-compatible
Whisper backend and enriches JSON transcriptions with SRT-derived segments.
"""

from pathlib import Path


def _get_version() -> str:
    """
    Get the package version from installed metadata or pyproject.toml.

    Returns:
        Version string (e.g., "0.4.0") or "dev" if unavailable
    """
    try:
        from importlib.metadata import PackageNotFoundError, version

        try:
            return version("captainslog")
        except PackageNotFoundError:
            pass
    except ImportError:
        pass

    # Fallback: read from pyproject.toml next to the source tree
    try:
        import tomllib

        current = Path(__file__).resolve()
        for parent in current.parents:
            potential_path = parent / "pyproject.toml"
            if potential_path.exists():
                with open(potential_path, "rb") as f:
                    data = tomllib.load(f)
                return data.get("project", {}).get("version", "dev")
    except (ImportError, OSError, ValueError):
        pass

    return "dev"


__version__ = _get_version()
