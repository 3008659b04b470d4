import os
from typing import Any, Callable, Dict, Optional


def _parse_bool(value: str) -> bool:
    value = value.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"Cannot parse boolean flag value: {value!r}")


def _parse_str(value: str) -> Optional[str]:
    value = value.strip()
    return value if value else None


class _Flag:
    def __init__(self, env_var: str, default: Any, parse: Callable[[str], Any]):
        self.env_var = env_var
        self.default = default
        self.parse = parse


class Environment:
    """Typed flags read lazily from ``TAPEGRAD_*`` environment variables.

    A flag is evaluated the first time it is read; ``set_flag`` overrides it
    for the rest of the process (or until ``reset``).
    """

    _instance = None

    @classmethod
    def instance(cls):
        if cls._instance is None:
            cls._instance = Environment()
        return cls._instance

    def __init__(self):
        self._flags: Dict[str, _Flag] = {}
        self._values: Dict[str, Any] = {}

        self.register_flag("BACKEND", "TAPEGRAD_BACKEND", None, _parse_str)
        self.register_flag("DEBUG", "TAPEGRAD_DEBUG", False, _parse_bool)
        self.register_flag("LOG_LEVEL", "TAPEGRAD_LOG_LEVEL", "WARNING", _parse_str)
        self.register_flag("LOG_FILE", "TAPEGRAD_LOG_FILE", None, _parse_str)
        self.register_flag(
            "CHECK_COMPUTATION_FOR_ERRORS",
            "TAPEGRAD_CHECK_COMPUTATION_FOR_ERRORS",
            False,
            _parse_bool,
        )

    def register_flag(self, name, env_var, default, parse=_parse_str):
        if name in self._flags:
            raise RuntimeError(f"Flag {name} is already registered")
        self._flags[name] = _Flag(env_var, default, parse)

    def get(self, name):
        if name not in self._flags:
            raise KeyError(f"Unknown flag: {name}")
        if name not in self._values:
            flag = self._flags[name]
            raw = os.environ.get(flag.env_var)
            self._values[name] = flag.default if raw is None else flag.parse(raw)
        return self._values[name]

    def get_bool(self, name) -> bool:
        return bool(self.get(name))

    def set_flag(self, name, value):
        if name not in self._flags:
            raise KeyError(f"Unknown flag: {name}")
        self._values[name] = value

    def reset(self):
        self._values = {}

    def features(self) -> Dict[str, Any]:
        return {name: self.get(name) for name in self._flags}
