"""
Input/Output modules for sequence alignments and phylogenetic trees.

This module provides classes for reading and working with:

- **Sequence alignments**: FASTA and PHYLIP formats
- **Phylogenetic trees**: Newick format (with per-category branch lengths)
"""

from hetsim.io.sequences import Alignment
from hetsim.io.trees import Tree, TreeNode

__all__ = ["Alignment", "Tree", "TreeNode"]
