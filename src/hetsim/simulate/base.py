"""
Base class for sequence simulators.
"""

from abc import ABC, abstractmethod
from typing import Dict, Optional

import numpy as np

from ..exceptions import ConfigurationError
from ..io.trees import Tree, TreeNode
from .output import AlignmentWriter


def node_label(node: TreeNode) -> str:
    """Output name of a node (leaf name, or a generated one)."""
    if node.name:
        return node.name
    return str(node.id) if node.is_leaf else f"node_{node.id}"


class SequenceSimulator(ABC):
    """
    Abstract base class for sequence simulators.

    This class owns the traversal: the root sequence is generated, then
    every branch is simulated in pre-order (a child strictly after its
    parent, siblings in the tree's child order). Subclasses implement the
    root sequence and the per-branch evolution.

    Parameters
    ----------
    tree : Tree
        Phylogenetic tree with branch lengths (must be rooted)
    sequence_length : int
        Number of sites to simulate
    seed : int, optional
        Random seed for reproducibility

    Attributes
    ----------
    tree : Tree
        The phylogenetic tree
    sequence_length : int
        Sequence length
    rng : numpy.random.Generator
        Random number generator (seeded for reproducibility)
    keep_ancestral : bool
        Retain internal node sequences in ``ancestral_sequences``
    """

    def __init__(
        self,
        tree: Tree,
        sequence_length: int,
        seed: Optional[int] = None,
        keep_ancestral: bool = False,
    ):
        self.tree = tree
        self.sequence_length = sequence_length
        self.keep_ancestral = keep_ancestral
        self.ancestral_sequences: Dict[str, np.ndarray] = {}

        self.rng = np.random.default_rng(seed)

        self._validate_tree()

    def _validate_tree(self):
        """Ensure tree is suitable for simulation."""
        if self.tree.root is None:
            raise ConfigurationError("Tree must be rooted for simulation")

        for node in self.tree.preorder():
            if node.parent is not None and node.branch_length < 0:
                raise ConfigurationError(
                    f"Node {node_label(node)} has a negative branch length"
                )

        names = [node_label(leaf) for leaf in self.tree.leaves()]
        if len(set(names)) != len(names):
            raise ConfigurationError("Leaf names must be unique")

    @abstractmethod
    def _generate_ancestral_sequence(self) -> np.ndarray:
        """
        Generate sequence at root node.

        Returns
        -------
        np.ndarray
            Ancestral sequence (array of state indices)
        """
        pass

    @abstractmethod
    def _evolve_sequence(self, parent_seq: np.ndarray, node: TreeNode) -> np.ndarray:
        """
        Evolve sequence along the branch above ``node``.

        Parameters
        ----------
        parent_seq : np.ndarray
            Parent sequence (array of state indices)
        node : TreeNode
            Child node; its branch length(s) describe the branch

        Returns
        -------
        np.ndarray
            Child sequence (array of state indices)
        """
        pass

    def _finish_sequence(self, node: TreeNode, seq: np.ndarray) -> None:
        """Hook called once a node's sequence is final (default: nothing)."""

    def simulate(self, writer: Optional[AlignmentWriter] = None) -> Dict[str, np.ndarray]:
        """
        Simulate sequences on the tree.

        1. Generate ancestral sequence at root
        2. Traverse the tree in pre-order with an explicit stack
        3. Evolve each child sequence from its parent's
        4. Hand leaves to the writer (or collect them) as soon as they are
           complete, and drop an internal sequence once all its children
           have been simulated

        Parameters
        ----------
        writer : AlignmentWriter, optional
            Open writer receiving leaf sequences as they are completed

        Returns
        -------
        dict
            Leaf name -> sequence for leaves not streamed to ``writer``
        """
        root = self.tree.root
        sequences = {root.id: self._generate_ancestral_sequence()}
        pending = {node.id: len(node.children) for node in self.tree.preorder()}
        tips: Dict[str, np.ndarray] = {}
        self.ancestral_sequences = {}

        def complete(node: TreeNode) -> None:
            seq = sequences[node.id]
            if node.is_leaf:
                if writer is not None:
                    writer.write(node_label(node), seq)
                else:
                    tips[node_label(node)] = seq
                del sequences[node.id]
            elif self.keep_ancestral:
                self.ancestral_sequences[node_label(node)] = seq

        self._finish_sequence(root, sequences[root.id])
        complete(root)

        stack = list(reversed(root.children))
        while stack:
            node = stack.pop()
            parent = node.parent
            sequences[node.id] = self._evolve_sequence(sequences[parent.id], node)
            self._finish_sequence(node, sequences[node.id])
            complete(node)

            pending[parent.id] -= 1
            if pending[parent.id] == 0:
                del sequences[parent.id]
            stack.extend(reversed(node.children))

        return tips

    @abstractmethod
    def get_parameters(self) -> Dict:
        """
        Get simulation parameters for output metadata.

        Returns
        -------
        dict
            Dictionary of model parameters
        """
        pass
