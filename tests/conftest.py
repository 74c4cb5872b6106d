"""
Pytest configuration and shared fixtures.
"""

import numpy as np
import pytest
from typer.testing import CliRunner

from hetsim.io.sequences import Alignment
from hetsim.io.trees import Tree


@pytest.fixture
def cli_runner():
    """CLI test runner for Typer apps."""
    return CliRunner()


@pytest.fixture
def four_taxon_newick():
    """Rooted four-taxon tree."""
    return "((A:0.1,B:0.2):0.15,(C:0.3,D:0.1):0.05);"


@pytest.fixture
def four_taxon_tree(four_taxon_newick):
    return Tree.from_newick(four_taxon_newick)


@pytest.fixture
def tree_file(tmp_path, four_taxon_newick):
    """Temporary Newick file with the four-taxon tree."""
    path = tmp_path / "tree.nwk"
    path.write_text(four_taxon_newick + "\n")
    return path


@pytest.fixture
def small_alignment():
    """Four-taxon DNA alignment with a mix of constant and variable sites."""
    return Alignment.from_strings({
        "A": "ACGTACGTAAACCCGGGTTTACGTAC",
        "B": "ACGTACGAAAACCCGGGTTTACTTAC",
        "C": "ACGAACGTAAACCTGGGTTCACGTGC",
        "D": "ACGAACTTAAACCTGGGTACACGTGA",
    })


@pytest.fixture
def alignment_file(tmp_path, small_alignment):
    """PHYLIP file with ``small_alignment``."""
    path = tmp_path / "aln.phy"
    records = small_alignment.to_strings()
    lines = [f"{len(records)} {small_alignment.n_sites}"]
    lines += [f"{name}  {seq}" for name, seq in records.items()]
    path.write_text("\n".join(lines) + "\n")
    return path


@pytest.fixture
def rng():
    return np.random.default_rng(12345)
