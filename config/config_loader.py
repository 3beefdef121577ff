import os
import re
from pathlib import Path
from collections.abc import Mapping
from typing import Any, Dict, Iterator, Optional

import yaml
from dotenv import load_dotenv

from orchestration.errors import ConfigurationError

load_dotenv()

DEFAULT_CONFIG_PATH = Path(__file__).parent / 'config.yaml'
CONFIG_PATH_ENV = 'TRADER_CONFIG'

_PLACEHOLDER = re.compile(r'^\$\{([A-Za-z_][A-Za-z0-9_]*)\}$')


def expand_env(node: Any) -> Any:
    """Replace whole-value ``${NAME}`` strings with the environment value.

    Placeholders whose variable is unset are kept verbatim so that settings
    validation can report them as missing.
    """
    if isinstance(node, dict):
        return {key: expand_env(value) for key, value in node.items()}
    if isinstance(node, list):
        return [expand_env(item) for item in node]
    if isinstance(node, str):
        match = _PLACEHOLDER.match(node.strip())
        if match:
            return os.environ.get(match.group(1), node)
    return node


class Section(Mapping):
    """Read-only mapping over one config block with attribute access."""

    def __init__(self, data: Optional[Dict[str, Any]] = None):
        self._data = data or {}

    @staticmethod
    def _wrap(value: Any) -> Any:
        return Section(value) if isinstance(value, dict) else value

    def __getitem__(self, key: str) -> Any:
        return self._wrap(self._data[key])

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_'):
            raise AttributeError(name)
        if name not in self._data:
            raise AttributeError(f"Config key '{name}' not found")
        return self._wrap(self._data[name])

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: str, default: Any = None) -> Any:
        return self._wrap(self._data.get(key, default))

    def to_dict(self) -> Dict[str, Any]:
        return self._data


class Config(Section):
    """The bot's YAML configuration file, with ``${ENV}`` placeholders expanded.

    The path defaults to ``$TRADER_CONFIG`` and then to the ``config.yaml``
    shipped next to this module.
    """

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = Path(config_path or os.getenv(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)
        super().__init__(self._read())

    def _read(self) -> Dict[str, Any]:
        if not self.config_path.is_file():
            raise ConfigurationError(f"Configuration file not found at {self.config_path}")
        try:
            raw = yaml.safe_load(self.config_path.read_text()) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Invalid YAML in {self.config_path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigurationError(f"Top level of {self.config_path} must be a mapping")
        return expand_env(raw)

    def reload(self) -> None:
        self._data = self._read()


config = Config()
