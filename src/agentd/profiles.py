"""
Profile storage.

Profiles are named bundles of environment variables kept in
``<home>/settings.json``; the one named by ``activeProfileId`` is used
when a spawn request carries no environment of its own.

File format:
    {
      "activeProfileId": "zai",
      "profiles": [
        {
          "id": "zai",
          "name": "Z.ai",
          "environmentVariables": [
            {"name": "ANTHROPIC_AUTH_TOKEN", "value": "${Z_AI_AUTH_TOKEN}"}
          ],
          "compatibility": {"claude": true, "codex": false, "gemini": false}
        }
      ]
    }
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from .exceptions import ProfileError
from .logging_config import get_logger
from .settings import SUPPORTED_AGENTS, get_paths

logger = get_logger("profiles")


@dataclass
class Profile:
    id: str
    name: str = ""
    environment_variables: List[Dict[str, str]] = field(default_factory=list)
    compatibility: Dict[str, bool] = field(
        default_factory=lambda: {agent: True for agent in SUPPORTED_AGENTS}
    )

    @classmethod
    def from_dict(cls, data: dict) -> "Profile":
        env = []
        for entry in data.get("environmentVariables") or []:
            if isinstance(entry, dict) and entry.get("name"):
                env.append({"name": str(entry["name"]), "value": str(entry.get("value", ""))})
        compat = {agent: True for agent in SUPPORTED_AGENTS}
        raw_compat = data.get("compatibility")
        if isinstance(raw_compat, dict):
            for agent, enabled in raw_compat.items():
                compat[agent] = bool(enabled)
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", "")),
            environment_variables=env,
            compatibility=compat,
        )


@dataclass
class ProfileSettings:
    active_profile_id: Optional[str] = None
    profiles: List[Profile] = field(default_factory=list)

    def find(self, profile_id: str) -> Optional[Profile]:
        for profile in self.profiles:
            if profile.id == profile_id:
                return profile
        return None


def get_profile_environment_variables(profile: Profile) -> Dict[str, str]:
    """Flatten a profile's variable list into a dict (last one wins)."""
    return {entry["name"]: entry["value"] for entry in profile.environment_variables}


def validate_profile_for_agent(profile: Profile, agent: str) -> bool:
    return bool(profile.compatibility.get(agent, False))


class ProfileStore:
    """Reads profiles from settings.json."""

    def __init__(self, settings_file: Optional[Path] = None):
        self._settings_file = settings_file

    @property
    def settings_file(self) -> Path:
        return self._settings_file or get_paths().settings_file

    def read_settings(self) -> ProfileSettings:
        """Load settings. A missing file means no profiles.

        Raises:
            ProfileError: If the file exists but cannot be parsed
        """
        path = self.settings_file
        if not path.exists():
            return ProfileSettings()
        try:
            with open(path) as f:
                data = json.load(f)
            profiles = [
                Profile.from_dict(p)
                for p in data.get("profiles") or []
                if isinstance(p, dict) and p.get("id")
            ]
            return ProfileSettings(
                active_profile_id=data.get("activeProfileId"),
                profiles=profiles,
            )
        except (OSError, json.JSONDecodeError, AttributeError, KeyError) as e:
            raise ProfileError(f"Cannot read settings from {path}: {e}") from e

    def get_active_profile_environment(self, agent: str) -> Dict[str, str]:
        """Environment of the active profile, if compatible with agent.

        Any failure degrades to no profile variables.
        """
        try:
            settings = self.read_settings()
        except ProfileError as e:
            logger.debug(f"Failed to load local profile: {e}")
            return {}

        if not settings.active_profile_id:
            logger.debug("No local active profile set")
            return {}

        profile = settings.find(settings.active_profile_id)
        if profile is None:
            logger.debug(f"Profile {settings.active_profile_id} not found")
            return {}
        if not validate_profile_for_agent(profile, agent):
            logger.debug(f"Profile {profile.id} not compatible with agent {agent}")
            return {}

        env = get_profile_environment_variables(profile)
        logger.debug(f"Loaded {len(env)} environment variables from profile {profile.id} for agent {agent}")
        return env
