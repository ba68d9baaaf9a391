"""
Environment loading for provider keys and STORYREEL_* overrides.

The first ``.env`` found (working directory, then the checkout root) is read
once per process. Variables already exported in the shell are left alone.
"""

import os
from pathlib import Path
from typing import Iterable, List, Optional

from dotenv import load_dotenv

_loaded_from: Optional[Path] = None


def candidate_env_files() -> List[Path]:
    """Locations searched for ``.env``, in priority order."""
    package_root = Path(__file__).resolve().parent.parent.parent
    candidates = [Path.cwd() / ".env", package_root / ".env"]
    unique: List[Path] = []
    for path in candidates:
        if path not in unique:
            unique.append(path)
    return unique


def ensure_env_loaded(env_path: Optional[Path] = None) -> Optional[Path]:
    """
    Load a ``.env`` file into ``os.environ`` if none has been loaded yet.

    Returns:
        The file that was loaded by this call, or None
    """
    global _loaded_from

    if _loaded_from is not None:
        return None

    paths = [Path(env_path)] if env_path else candidate_env_files()
    for path in paths:
        if path.is_file():
            load_dotenv(path, override=False)
            _loaded_from = path
            return path
    return None


def get_env_key(key_name: str, fallback_keys: Optional[Iterable[str]] = None) -> Optional[str]:
    """First non-empty value among ``key_name`` and ``fallback_keys``."""
    ensure_env_loaded()
    for name in [key_name, *(fallback_keys or ())]:
        value = os.environ.get(name, "").strip()
        if value:
            return value
    return None
