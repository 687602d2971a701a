"""
YAML configuration loader with file inclusion support.

Estimator, session and ICP configuration files may pull shared blocks from
other files with the ``!include`` tag, e.g.::

    estimator: !include estimator.yaml

Included paths are looked up next to the including file first, then under
the loader's base path. File names given as values can be tagged ``!path``
to make them absolute against the declaring file::

    icp_configuration_file: !path icp.yaml
"""

import copy
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml


class CircularIncludeError(Exception):
    """Raised when a configuration file includes itself, directly or not."""
    pass


class ConfigLoader:
    """
    Loads YAML configuration trees.

    Parsed files are cached by path and modification time; every caller gets
    its own deep copy, so models built from one load never share lists with
    another.
    """

    def __init__(self, base_path: Optional[Union[str, Path]] = None):
        """
        Args:
            base_path: Fallback directory for relative paths (working directory if None)
        """
        self.base_path = Path(base_path) if base_path else Path.cwd()
        self.cache: Dict[Path, Tuple[float, Any]] = {}
        self._chain: List[Path] = []

        owner = self

        class IncludeLoader(yaml.SafeLoader):
            pass

        def include(loader, node):
            including_dir = loader.including_file.parent
            return owner._read(owner._locate(loader.construct_scalar(node), including_dir))

        def relative_path(loader, node):
            path = Path(loader.construct_scalar(node))
            if not path.is_absolute():
                path = loader.including_file.parent / path
            return str(path.resolve())

        IncludeLoader.add_constructor('!include', include)
        IncludeLoader.add_constructor('!path', relative_path)
        self._loader_class = IncludeLoader

    def load_config(self, config_path: Union[str, Path]) -> Dict[str, Any]:
        """
        Load a configuration file with includes resolved.

        Raises:
            FileNotFoundError: If the file or one of its includes is missing
            CircularIncludeError: If includes form a cycle
            yaml.YAMLError: If a file is not valid YAML or the top level is not a mapping
        """
        path = Path(config_path)
        if not path.is_absolute():
            path = self.base_path / path

        self._chain = []
        config = self._read(path.resolve())
        if not isinstance(config, dict):
            raise yaml.YAMLError(f"Expected a mapping at the top of {path}, got {type(config).__name__}")
        bad_keys = [key for key in config if not isinstance(key, str)]
        if bad_keys:
            raise yaml.YAMLError(f"Configuration keys must be strings in {path}, got {bad_keys}")
        return config

    def _read(self, path: Path) -> Any:
        if path in self._chain:
            cycle = ' -> '.join(str(p) for p in self._chain + [path])
            raise CircularIncludeError(f"Circular include detected: {cycle}")
        if not path.is_file():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        mtime = path.stat().st_mtime
        cached = self.cache.get(path)
        if cached is not None and cached[0] == mtime:
            return copy.deepcopy(cached[1])

        self._chain.append(path)
        try:
            loader = self._loader_class(path.read_text())
            loader.including_file = path
            try:
                data = loader.get_single_data()
            finally:
                loader.dispose()
        finally:
            self._chain.pop()

        # An empty file is an empty section
        if data is None:
            data = {}
        self.cache[path] = (mtime, data)
        return copy.deepcopy(data)

    def _locate(self, name: str, including_dir: Path) -> Path:
        path = Path(name)
        if path.is_absolute():
            return path.resolve()
        for root in (including_dir, self.base_path):
            candidate = (root / path).resolve()
            if candidate.is_file():
                return candidate
        # Reported relative to the including file
        return (including_dir / path).resolve()


def load_config(config_path: Union[str, Path], base_path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """Load a configuration file with a fresh loader."""
    return ConfigLoader(base_path).load_config(config_path)
