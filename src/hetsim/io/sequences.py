"""
Sequence file parsing and alignment handling.
"""

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import numpy as np


# State alphabets, in internal index order
ALPHABETS = {
    'dna': 'ACGT',
    'aa': 'ARNDCQEGHILKMFPSTWYV',
    'bin': '01',
}

UNKNOWN_CODE = -1  # Gap, ambiguity or unknown character

STATE_TO_INDEX = {
    seqtype: {char: i for i, char in enumerate(alphabet)}
    for seqtype, alphabet in ALPHABETS.items()
}
# U is read as T for RNA input
STATE_TO_INDEX['dna']['U'] = 3


def n_states_for(seqtype: str) -> int:
    """Number of states of a sequence type."""
    if seqtype not in ALPHABETS:
        raise ValueError(f"Unknown seqtype: {seqtype}")
    return len(ALPHABETS[seqtype])


def state_mapping(seqtype: str) -> list[str]:
    """
    Mapping from internal state index to output character.

    Returns
    -------
    list[str]
        ``mapping[state]`` is the character written for ``state``
    """
    if seqtype not in ALPHABETS:
        raise ValueError(f"Unknown seqtype: {seqtype}")
    return list(ALPHABETS[seqtype])


def decode(states: np.ndarray, mapping: list[str], unknown: str = '-') -> str:
    """Convert an array of state indices to a string."""
    return ''.join(mapping[s] if s >= 0 else unknown for s in states)


@dataclass
class Alignment:
    """
    Multiple sequence alignment.

    Attributes
    ----------
    names : list[str]
        Sequence names/labels
    sequences : ndarray, shape (n_species, n_sites)
        Encoded sequences (state indices, UNKNOWN_CODE for gaps/ambiguity)
    n_species : int
        Number of sequences
    n_sites : int
        Number of sites (alignment length)
    seqtype : str
        Sequence type ('dna', 'aa', 'bin')
    """

    names: list[str]
    sequences: np.ndarray
    n_species: int
    n_sites: int
    seqtype: str

    @property
    def n_states(self) -> int:
        return n_states_for(self.seqtype)

    @classmethod
    def from_strings(cls, records: dict[str, str], seqtype: str = "dna") -> "Alignment":
        """Build an alignment from a name -> sequence mapping."""
        names = list(records)
        raw = [re.sub(r'\s', '', records[name]).upper() for name in names]
        lengths = {len(seq) for seq in raw}
        if len(lengths) != 1:
            raise ValueError(f"Sequences have different lengths: {lengths}")
        encoded = cls._encode(raw, seqtype)
        return cls(
            names=names,
            sequences=encoded,
            n_species=len(names),
            n_sites=encoded.shape[1],
            seqtype=seqtype,
        )

    @classmethod
    def from_file(cls, filepath: Path | str, seqtype: str = "dna") -> "Alignment":
        """Read a FASTA or PHYLIP file, detected from its first character."""
        with open(filepath) as f:
            first = f.read(1)
        if first == '>':
            return cls.from_fasta(filepath, seqtype)
        return cls.from_phylip(filepath, seqtype)

    @classmethod
    def from_phylip(cls, filepath: Path | str, seqtype: str = "dna") -> "Alignment":
        """
        Parse PHYLIP format alignment file.

        Accepts both the relaxed one-line-per-taxon layout
        (``name  SEQUENCE``) and the sequential layout where the name sits on
        its own line followed by sequence lines.

        Parameters
        ----------
        filepath : Path or str
            Path to PHYLIP format file
        seqtype : str
            Sequence type: 'dna', 'aa' or 'bin'

        Returns
        -------
        Alignment
            Parsed alignment
        """
        filepath = Path(filepath)

        with open(filepath, 'r') as f:
            lines = [line.rstrip() for line in f.readlines()]

        header = lines[0].strip().split()
        n_species = int(header[0])
        n_chars = int(header[1])

        records = {}
        i = 1
        while i < len(lines) and len(records) < n_species:
            line = lines[i].strip()
            i += 1
            if not line:
                continue

            parts = line.split(None, 1)
            name = parts[0]
            seq_data = re.sub(r'\s', '', parts[1]) if len(parts) > 1 else ''

            # Sequential layout: keep reading until the sequence is complete
            while len(seq_data) < n_chars and i < len(lines):
                more = re.sub(r'\s', '', lines[i])
                i += 1
                seq_data += more

            records[name] = seq_data

        if len(records) != n_species:
            raise ValueError(f"Expected {n_species} sequences, found {len(records)}")

        for name, seq in records.items():
            if len(seq) != n_chars:
                raise ValueError(
                    f"Sequence {name} has length {len(seq)}, expected {n_chars}"
                )

        return cls.from_strings(records, seqtype)

    @classmethod
    def from_fasta(cls, filepath: Path | str, seqtype: str = "dna") -> "Alignment":
        """
        Parse FASTA format alignment file.

        Parameters
        ----------
        filepath : Path or str
            Path to FASTA format file
        seqtype : str
            Sequence type: 'dna', 'aa' or 'bin'

        Returns
        -------
        Alignment
            Parsed alignment
        """
        records = {}
        current_name = None
        current_seq = []

        with open(filepath, 'r') as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                if line.startswith('>'):
                    if current_name is not None:
                        records[current_name] = ''.join(current_seq)
                    current_name = line[1:].split()[0]
                    current_seq = []
                else:
                    current_seq.append(line)

        if current_name is not None:
            records[current_name] = ''.join(current_seq)

        if not records:
            raise ValueError("No sequences found in FASTA file")

        return cls.from_strings(records, seqtype)

    @staticmethod
    def _encode(sequences: list[str], seqtype: str) -> np.ndarray:
        """Encode sequences as integer arrays; unknown characters become -1."""
        if seqtype not in STATE_TO_INDEX:
            raise ValueError(f"Unknown seqtype: {seqtype}")
        lookup = STATE_TO_INDEX[seqtype]

        encoded = np.full((len(sequences), len(sequences[0])), UNKNOWN_CODE, dtype=np.int16)
        for i, seq in enumerate(sequences):
            for j, char in enumerate(seq):
                encoded[i, j] = lookup.get(char, UNKNOWN_CODE)
        return encoded

    def compress_patterns(self) -> tuple[np.ndarray, np.ndarray]:
        """
        Collapse identical alignment columns.

        Returns
        -------
        patterns : ndarray, shape (n_species, n_patterns)
            Distinct site patterns (columns), in order of first occurrence
        frequencies : ndarray, shape (n_patterns,)
            Number of sites showing each pattern
        """
        columns = self.sequences.T
        _, first, counts = np.unique(
            columns, axis=0, return_index=True, return_counts=True
        )
        order = np.argsort(first)
        patterns = columns[first[order]].T
        return patterns, counts[order].astype(float)

    def get_sequence(self, name: str) -> np.ndarray:
        """Encoded sequence of one taxon."""
        return self.sequences[self.names.index(name)]

    def to_strings(self, unknown: str = '-') -> dict[str, str]:
        """Decode the alignment back to a name -> string mapping."""
        mapping = state_mapping(self.seqtype)
        return {
            name: decode(seq, mapping, unknown)
            for name, seq in zip(self.names, self.sequences)
        }

    def __repr__(self) -> str:
        return (
            f"Alignment(n_species={self.n_species}, n_sites={self.n_sites}, "
            f"seqtype='{self.seqtype}')"
        )


def read_ancestral_sequence(filepath: Path | str, seqtype: str = "dna",
                            name: Optional[str] = None) -> np.ndarray:
    """
    Read a root sequence for simulation from an alignment file.

    Uses the named sequence, or the first one when no name is given.
    Unknown characters are not allowed in a root sequence.
    """
    aln = Alignment.from_file(filepath, seqtype)
    seq = aln.get_sequence(name) if name is not None else aln.sequences[0]
    if np.any(seq < 0):
        raise ValueError("Ancestral sequence contains gaps or ambiguous characters")
    return seq.copy()
