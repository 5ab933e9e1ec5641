from .environment import parse_env_bool, parse_env_int, parse_env_optional_int, parse_env_str
from .settings import EngineSettings, load_engine_settings

__all__ = [
    "EngineSettings",
    "load_engine_settings",
    "parse_env_bool",
    "parse_env_int",
    "parse_env_optional_int",
    "parse_env_str",
]
