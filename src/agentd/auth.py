"""
Per-agent credential injection.

Each agent kind takes its credential differently: Claude reads an OAuth
token from the environment, Codex reads ``auth.json`` from its home
directory, Gemini reads an API key.
"""

import os
from pathlib import Path
from typing import Dict, Optional

from .settings import get_paths


def write_codex_auth(token: str, codex_home: Path) -> Path:
    """Write the Codex credentials file with owner-only permissions.

    The directory is stable so Codex transcripts survive daemon restarts.
    """
    codex_home.mkdir(parents=True, exist_ok=True, mode=0o700)
    auth_path = codex_home / "auth.json"
    fd = os.open(auth_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(token)
    # mode above only applies on create
    os.chmod(auth_path, 0o600)
    return auth_path


def build_auth_environment(
    agent: str,
    token: Optional[str],
    codex_home: Optional[Path] = None,
) -> Dict[str, str]:
    """Build the auth layer of a spawned session's environment."""
    if not token:
        return {}
    if agent == "codex":
        home = codex_home or get_paths().codex_home_dir
        write_codex_auth(token, home)
        return {"CODEX_HOME": str(home)}
    if agent == "gemini":
        return {"GEMINI_API_KEY": token}
    return {"CLAUDE_CODE_OAUTH_TOKEN": token}
