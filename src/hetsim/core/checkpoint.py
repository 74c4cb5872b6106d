"""
Named-struct parameter store for saving and restoring model state.
"""

import json
from pathlib import Path
from typing import Optional

import numpy as np

from ..exceptions import ConfigurationError, OutputError


class Checkpoint:
    """
    Dictionary of named structs, each mapping keys to parameter arrays.

    Arrays are kept as Python float lists, so a save/restore cycle
    (including a trip through a JSON file) returns identical values.

    Parameters
    ----------
    path : Path or str, optional
        Default file used by ``dump``
    """

    def __init__(self, path: Optional[Path | str] = None):
        self.path = Path(path) if path is not None else None
        self._structs: dict[str, dict[str, list]] = {}

    def save_struct(self, name: str, **arrays) -> None:
        """Store (or replace) a struct of named arrays."""
        self._structs[name] = {
            key: np.asarray(values, dtype=float).tolist()
            for key, values in arrays.items()
        }

    def has_struct(self, name: str) -> bool:
        return name in self._structs

    def load_struct(self, name: str, sizes: Optional[dict[str, int]] = None) -> dict[str, np.ndarray]:
        """
        Return the arrays of a struct.

        Parameters
        ----------
        name : str
            Struct name
        sizes : dict, optional
            Expected length of each array; a mismatch is an error
        """
        if name not in self._structs:
            raise ConfigurationError(f"Checkpoint has no struct {name!r}")
        struct = {key: np.array(values, dtype=float) for key, values in self._structs[name].items()}
        for key, size in (sizes or {}).items():
            if key not in struct:
                raise ConfigurationError(f"Checkpoint struct {name!r} has no array {key!r}")
            if struct[key].shape != (size,):
                raise ConfigurationError(
                    f"Checkpoint array {name}.{key} has length {struct[key].shape[0]}, expected {size}"
                )
        return struct

    def dump(self, path: Optional[Path | str] = None) -> Path:
        """Write all structs to a JSON file."""
        path = Path(path) if path is not None else self.path
        if path is None:
            raise ConfigurationError("No checkpoint file given")
        try:
            with open(path, 'w') as f:
                json.dump(self._structs, f, indent=2)
        except OSError as e:
            raise OutputError(path, str(e)) from e
        return path

    @classmethod
    def load(cls, path: Path | str) -> "Checkpoint":
        """Read a checkpoint written by ``dump``."""
        checkpoint = cls(path)
        with open(path) as f:
            checkpoint._structs = json.load(f)
        return checkpoint

    def __contains__(self, name: str) -> bool:
        return self.has_struct(name)

    def __repr__(self) -> str:
        return f"Checkpoint(structs={sorted(self._structs)})"
