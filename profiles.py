"""Profile registry: named backend profiles and the active default."""
import logging
from typing import Optional

from errors import ConfigError, ProfileNotFound
from models import Profile

logger = logging.getLogger(__name__)


class ProfileRegistry:
    """Holds resolved profiles. Pure data, no network I/O.

    Profiles are immutable; `reload` and `set_default` replace state
    wholesale. The orchestrator reads the default once per turn, so a switch
    takes effect on the next turn and never interrupts a running stream.
    """

    def __init__(self, profiles: dict[str, Profile], default: str, system_prompt_file: Optional[str] = None):
        self._profiles: dict[str, Profile] = {}
        self._default = ""
        self.system_prompt_file = system_prompt_file
        self.reload(profiles, default)

    def get(self, name: str) -> Profile:
        """Get a profile by name.

        Raises:
            ProfileNotFound: If no profile has that name.
        """
        try:
            return self._profiles[name]
        except KeyError:
            raise ProfileNotFound(name) from None

    def get_default(self) -> Profile:
        return self._profiles[self._default]

    @property
    def default_name(self) -> str:
        return self._default

    def list(self) -> list[str]:
        """Profile names, sorted."""
        return sorted(self._profiles)

    def set_default(self, name: str) -> None:
        if name not in self._profiles:
            raise ProfileNotFound(name)
        logger.info("Default profile switched %s -> %s", self._default, name)
        self._default = name

    def reload(self, profiles: dict[str, Profile], default: str) -> None:
        """Replace every profile at once."""
        if not profiles:
            raise ConfigError("At least one profile is required")
        if default not in profiles:
            raise ConfigError(f"Default profile '{default}' is not defined")
        self._profiles = dict(profiles)
        self._default = default
