"""Per-run conversation settings that commands change between turns."""

from dataclasses import dataclass
from pathlib import Path

from .config import Cache, Config, Model, Profile, chats_dir
from .errors import ConfigError


def resolve_history_path(name: str | Path) -> Path:
    """Relative history names live in the chats directory."""
    path = Path(name).expanduser()
    if path.is_absolute():
        return path
    return chats_dir() / path


@dataclass
class SessionState:
    """Everything the prompt assembler needs besides the history itself.

    Passed explicitly to every turn; there is no module-level session.
    """

    profile: Profile
    model_type: str
    history_file: Path
    default_system_prompt: str
    system_prompt: str | None = None  # session override
    context_file: Path | None = None
    prompt_file: Path | None = None

    @classmethod
    def from_config(
        cls,
        config: Config,
        cache: Cache,
        history_file: Path,
        *,
        profile_name: str | None = None,
        model_type: str | None = None,
    ) -> "SessionState":
        """Pick the profile and model type from CLI flags, then the cache."""
        if profile_name is not None:
            profile = config.get_profile(profile_name)
            if profile is None:
                raise ConfigError(f"unknown profile {profile_name!r}")
        else:
            profile = (
                config.get_profile(cache.last_profile) if cache.last_profile else None
            ) or config.profiles[0]

        state = cls(
            profile=profile,
            model_type=_remembered_model_type(profile, cache),
            history_file=history_file,
            default_system_prompt=config.system_prompt,
        )
        if model_type is not None:
            state.switch_model(model_type)
        return state

    @property
    def model(self) -> Model:
        model = self.profile.get_model(self.model_type)
        # switch_model/switch_profile keep model_type valid for the profile
        assert model is not None
        return model

    def effective_system_prompt(self) -> str:
        if self.system_prompt:
            return self.system_prompt
        if self.profile.system_prompt:
            return self.profile.system_prompt
        return self.default_system_prompt

    def switch_profile(self, profile: Profile, cache: Cache | None = None) -> None:
        self.profile = profile
        self.model_type = (
            _remembered_model_type(profile, cache)
            if cache is not None
            else profile.models[0].model_type
        )

    def switch_model(self, model_type: str) -> None:
        if self.profile.get_model(model_type) is None:
            available = ", ".join(self.profile.model_types())
            raise ConfigError(
                f"profile {self.profile.name!r} has no {model_type!r} model "
                f"(available: {available})"
            )
        self.model_type = model_type

    def remember(self, cache: Cache) -> None:
        """Record this session's choices in the cache and save it."""
        cache.last_history_file = str(self.history_file)
        cache.last_profile = self.profile.name
        cache.profile_models[self.profile.name] = self.model_type
        cache.save()


def _remembered_model_type(profile: Profile, cache: Cache) -> str:
    remembered = cache.profile_models.get(profile.name)
    if remembered and profile.get_model(remembered) is not None:
        return remembered
    return profile.models[0].model_type
