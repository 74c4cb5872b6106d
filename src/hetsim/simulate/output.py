"""
Output formatting for simulated sequences.
"""

import gzip
import json
from pathlib import Path
from typing import Dict, Optional, TextIO

import numpy as np

from ..exceptions import OutputError
from ..io.sequences import decode


SUFFIXES = {'phylip': '.phy', 'fasta': '.fa'}


class AlignmentWriter:
    """
    Incremental PHYLIP/FASTA writer.

    Sequences are written one at a time as the simulation completes them,
    so the full alignment never has to be held in memory.

    Parameters
    ----------
    path : Path or str, optional
        Output file (ignored when ``stream`` is given)
    n_taxa : int
        Number of sequences that will be written (PHYLIP header)
    n_sites : int
        Sequence length (PHYLIP header)
    mapping : list[str]
        Output character for each state index
    fmt : str
        'phylip' or 'fasta'
    compress : bool
        Write gzip-compressed output
    name_width : int
        Width that PHYLIP names are padded to
    stream : TextIO, optional
        Write to an open text stream instead of a file
    """

    def __init__(
        self,
        path: Optional[Path | str],
        n_taxa: int,
        n_sites: int,
        mapping: list[str],
        fmt: str = 'phylip',
        compress: bool = False,
        name_width: int = 0,
        stream: Optional[TextIO] = None,
    ):
        if fmt not in SUFFIXES:
            raise ValueError(f"Unknown output format: {fmt}")
        self.path = Path(path) if path is not None else None
        self.n_taxa = n_taxa
        self.n_sites = n_sites
        self.mapping = mapping
        self.fmt = fmt
        self.compress = compress
        self.name_width = name_width
        self.n_written = 0
        self._stream = stream
        self._owns_stream = stream is None

    @staticmethod
    def output_path(base: Path | str, fmt: str = 'phylip') -> Path:
        """Add the format suffix (.phy or .fa) unless already present."""
        base = Path(base)
        suffix = SUFFIXES[fmt]
        return base if base.suffix == suffix else base.with_name(base.name + suffix)

    def _fail(self, error: OSError) -> OutputError:
        return OutputError(self.path if self.path is not None else '<stream>', str(error))

    def open(self) -> "AlignmentWriter":
        try:
            if self._stream is None:
                if self.compress:
                    self._stream = gzip.open(self.path, 'wt')
                else:
                    self._stream = open(self.path, 'w')
            if self.fmt == 'phylip':
                self._stream.write(f"{self.n_taxa} {self.n_sites}\n")
        except OSError as e:
            raise self._fail(e) from e
        return self

    def write(self, name: str, states: np.ndarray) -> None:
        """Append one sequence."""
        if self._stream is None:
            raise OutputError(self.path, "writer is not open")
        seq = decode(states, self.mapping)
        try:
            if self.fmt == 'phylip':
                self._stream.write(f"{name:<{self.name_width}} {seq}\n")
            else:
                self._stream.write(f">{name}\n{seq}\n")
        except OSError as e:
            raise self._fail(e) from e
        self.n_written += 1

    def close(self) -> None:
        if self._stream is None:
            return
        try:
            if self._owns_stream:
                self._stream.close()
            else:
                self._stream.flush()
        except OSError as e:
            raise self._fail(e) from e
        finally:
            self._stream = None

    def __enter__(self) -> "AlignmentWriter":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class SimulationOutput:
    """
    Handle output of simulation results.

    Provides methods to write:
    - Sequences in PHYLIP or FASTA format
    - Parameters in JSON format
    - Ancestral sequences
    - Site model/rate assignments
    """

    @staticmethod
    def write_alignment(
        sequences: Dict[str, np.ndarray],
        output_path: Path | str,
        mapping: list[str],
        fmt: str = 'phylip',
        compress: bool = False,
    ) -> Path:
        """
        Write complete sequences in one go.

        Parameters
        ----------
        sequences : dict
            Mapping from sequence name to state array
        output_path : Path
            Output file path (used as given)
        mapping : list[str]
            Output character for each state index
        fmt : str
            'phylip' or 'fasta'
        compress : bool
            gzip the output

        Returns
        -------
        Path
            The written file
        """
        n_sites = len(next(iter(sequences.values()))) if sequences else 0
        width = max((len(name) for name in sequences), default=0)
        with AlignmentWriter(output_path, len(sequences), n_sites, mapping,
                             fmt=fmt, compress=compress, name_width=width) as writer:
            for name, seq in sequences.items():
                writer.write(name, seq)
        return Path(output_path)

    @staticmethod
    def write_parameters(
        params: Dict,
        output_path: Path | str,
        indent: int = 2
    ):
        """
        Write simulation parameters to JSON file.

        Parameters
        ----------
        params : dict
            Simulation parameters
        output_path : Path
            Output file path
        indent : int
            JSON indentation level
        """
        output_path = Path(output_path)
        try:
            with open(output_path, 'w') as f:
                json.dump(params, f, indent=indent)
        except OSError as e:
            raise OutputError(output_path, str(e)) from e

    @staticmethod
    def write_site_annotation(annotation, output_path: Path | str):
        """
        Write the model component and rate of every site.

        Output Format
        -------------
        site_id  model  category  rate
        1        0      2         1.5324
        2        1      -1        0.0000   (invariant)
        """
        output_path = Path(output_path)
        try:
            with open(output_path, 'w') as f:
                f.write("# Site model and rate assignments\n")
                f.write("# category -1 marks invariant sites, -2 continuous gamma rates\n")
                f.write("site_id\tmodel\tcategory\trate\n")
                for site, (model, category, rate) in enumerate(
                    zip(annotation.model_index, annotation.rate_index, annotation.rates)
                ):
                    f.write(f"{site + 1}\t{model}\t{category}\t{rate:.4f}\n")
        except OSError as e:
            raise OutputError(output_path, str(e)) from e

    @staticmethod
    def write_ancestral_sequences(
        sequences: Dict[str, np.ndarray],
        output_path: Path | str,
        mapping: list[str],
    ) -> Path:
        """Write internal node sequences to FASTA."""
        return SimulationOutput.write_alignment(sequences, output_path, mapping, fmt='fasta')
