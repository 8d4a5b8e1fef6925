"""Session profiles read from YAML and the :class:`SessionOptions` they produce."""

from __future__ import annotations

import sys
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Dict, Mapping

from ruamel.yaml import YAML


class ProfileError(RuntimeError):
    """Raised when the configuration file or requested profile is invalid."""


DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config.yaml"
DEFAULT_PROFILE = "default"

_yaml = YAML(typ="safe")


def load_profiles(path: Path | None = None) -> Dict[str, Mapping[str, object]]:
    """Read the ``profiles`` table of a session config file.

    *path* defaults to the ``config.yaml`` shipped inside the package. A
    profile written as an empty YAML key counts as a profile with no
    overrides.
    """

    config_path = path or DEFAULT_CONFIG_PATH
    try:
        text = config_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ProfileError(f"session config not found: {config_path}") from None
    document = _yaml.load(text) or {}
    profiles = document.get("profiles") if isinstance(document, dict) else None
    if not isinstance(profiles, dict):
        raise ProfileError(f"{config_path}: expected a top-level 'profiles' mapping")
    bad = sorted(str(name) for name, body in profiles.items() if not isinstance(body, (dict, type(None))))
    if bad:
        raise ProfileError(f"{config_path}: profiles must be mappings: {', '.join(bad)}")
    return {str(name): body or {} for name, body in profiles.items()}


def resolve_profile(name: str, profiles: Mapping[str, Mapping[str, object]]) -> Mapping[str, object]:
    """Return profile *name* from *profiles*."""

    if name not in profiles:
        available = ", ".join(sorted(profiles)) or "<none>"
        raise ProfileError(f"unknown profile '{name}'. available: {available}")
    return profiles[name]


def _presence_check(value: object) -> bool:
    if value == "auto":
        # Windows COM ports have no device file to stat.
        return not sys.platform.startswith("win")
    if isinstance(value, bool):
        return value
    raise ProfileError(f"check_port_presence must be true, false or 'auto', got {value!r}")


@dataclass(frozen=True)
class SessionOptions:
    """Everything a :class:`~msp_tool.fc.FlightController` needs to run."""

    port: str
    baudrate: int = 115200
    enable_debug_trace: bool = False
    check_port_presence: bool = True
    reconnect_interval: float = 0.05
    closed_settle_delay: float = 1.0
    port_disappear_timeout: float = 5.0
    reboot_settle_delay: float = 1.0
    rx_interval: float = 0.02
    key_timeout: float = 0.1
    reboot_character: str = "R"
    dfu_timeout: float = 30.0
    make_command: str = "make"
    dfu_util: str = "dfu-util"

    @classmethod
    def from_profile(cls, port: str, profile: Mapping[str, object]) -> "SessionOptions":
        known = {f.name for f in fields(cls)} - {"port"}
        unknown = sorted(set(profile) - known)
        if unknown:
            raise ProfileError(f"unknown profile keys: {', '.join(unknown)}")
        values: Dict[str, object] = dict(profile)
        if "check_port_presence" in values:
            values["check_port_presence"] = _presence_check(values["check_port_presence"])
        reboot_character = values.get("reboot_character", "R")
        if not isinstance(reboot_character, str) or len(reboot_character) != 1:
            raise ProfileError("reboot_character must be a single character")
        try:
            return cls(port=port, **values)  # type: ignore[arg-type]
        except TypeError as exc:
            raise ProfileError(str(exc)) from exc

    def with_overrides(self, **overrides: object) -> "SessionOptions":
        """Return a copy with every non-``None`` override applied."""

        changes = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **changes)


def load_options(
    port: str,
    profile: str = DEFAULT_PROFILE,
    path: Path | None = None,
) -> SessionOptions:
    return SessionOptions.from_profile(port, resolve_profile(profile, load_profiles(path)))
