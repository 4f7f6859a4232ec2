"""
Environment resolution for spawned agent sessions.

Three layers, later ones win on key collision:

1. profile: variables sent with the spawn request, or the locally
   configured active profile when the request sent none at all
2. auth: the credential derived from the request token
3. expansion: ``${VAR}`` references are substituted once from the
   daemon's own environment, so a profile can alias a secret the daemon
   was started with (ANTHROPIC_AUTH_TOKEN="${Z_AI_AUTH_TOKEN}")
"""

import re
from typing import Dict, List, Mapping, Optional

from .logging_config import get_logger

logger = get_logger("environment")

# ${VAR} or ${VAR:-default}
VAR_REFERENCE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")

# Variables that must be fully resolved before an agent can authenticate.
# Claude sessions may be proxied through other providers, so their keys count too.
AUTH_VARIABLES_BY_AGENT: Dict[str, List[str]] = {
    "claude": [
        "ANTHROPIC_AUTH_TOKEN",
        "CLAUDE_CODE_OAUTH_TOKEN",
        "OPENAI_API_KEY",
        "AZURE_OPENAI_API_KEY",
        "TOGETHER_API_KEY",
    ],
    "codex": [
        "CODEX_HOME",
        "OPENAI_API_KEY",
        "AZURE_OPENAI_API_KEY",
        "TOGETHER_API_KEY",
    ],
    "gemini": [
        "GEMINI_API_KEY",
        "GOOGLE_API_KEY",
    ],
}


def expand_environment_variables(
    env: Mapping[str, str],
    source_env: Mapping[str, str],
) -> Dict[str, str]:
    """Substitute ${VAR} references in values from source_env.

    Exactly one pass: substituted text is never scanned again. References
    to undefined variables without a default are left as-is so the
    pre-flight check can report them.
    """
    expanded: Dict[str, str] = {}
    for key, value in env.items():
        def substitute(match: re.Match) -> str:
            name, default = match.group(1), match.group(2)
            if name in source_env:
                return source_env[name]
            if default is not None:
                return default
            logger.warning(f"{key} references ${{{name}}} which is not set in the daemon environment")
            return match.group(0)

        expanded[key] = VAR_REFERENCE.sub(substitute, value)
    return expanded


def merge_environment(profile_env: Mapping[str, str], auth_env: Mapping[str, str]) -> Dict[str, str]:
    """Merge layers; auth always wins over a same-named profile value."""
    return {**profile_env, **auth_env}


def find_unexpanded_auth_variables(env: Mapping[str, str], agent: str) -> List[str]:
    """Describe auth variables that still contain a ${...} reference.

    Returns:
        One message per offending variable, empty when all are resolved
    """
    problems = []
    for name in AUTH_VARIABLES_BY_AGENT.get(agent, []):
        value = env.get(name)
        if not value or "${" not in value:
            continue
        match = VAR_REFERENCE.search(value)
        missing = match.group(1) if match else "unknown"
        problems.append(f"{name} references ${{{missing}}} which is not defined")
    return problems


def unexpanded_auth_error(problems: List[str], agent: str) -> str:
    return (
        "Authentication will fail - environment variables not found in daemon: "
        f"{'; '.join(problems)}. "
        "Ensure these variables are set in the daemon's environment (not just your shell) "
        f"before starting sessions. (agent: {agent})"
    )


def describe_keys(env: Optional[Mapping[str, str]]) -> str:
    """Variable names only, for logs; values may be secrets."""
    if not env:
        return "(none)"
    return ", ".join(sorted(env))
