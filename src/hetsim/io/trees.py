"""
Phylogenetic tree parsing and manipulation.
"""

import copy
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


@dataclass
class TreeNode:
    """
    Phylogenetic tree node.

    Attributes
    ----------
    id : int
        Node identifier (preorder position in the parsed string)
    name : Optional[str]
        Node name (for leaves)
    parent : Optional[TreeNode]
        Parent node
    children : list[TreeNode]
        Child nodes
    branch_length : float
        Branch length to parent
    category_lengths : Optional[list[float]]
        Per-rate-category branch lengths for heterotachy models, parsed
        from ``:0.1/0.3/0.2`` style lengths. None for ordinary branches.
    """

    id: int
    name: Optional[str] = None
    parent: Optional["TreeNode"] = None
    children: list["TreeNode"] = field(default_factory=list)
    branch_length: float = 0.0
    category_lengths: Optional[list[float]] = None

    @property
    def is_leaf(self) -> bool:
        """Check if node is a leaf."""
        return len(self.children) == 0

    def get_length(self, category: int = 0) -> float:
        """
        Branch length used by a rate category.

        Without per-category lengths every category shares ``branch_length``.
        """
        if self.category_lengths is None:
            return self.branch_length
        if category >= len(self.category_lengths):
            raise ValueError(
                f"Node {self.name or self.id} has {len(self.category_lengths)} "
                f"category branch lengths, category {category} requested"
            )
        return self.category_lengths[category]

    def __repr__(self) -> str:
        return f"TreeNode(id={self.id}, name={self.name!r}, branch_length={self.branch_length})"


@dataclass
class Tree:
    """
    Rooted phylogenetic tree.

    Attributes
    ----------
    root : TreeNode
        Root node of the tree
    n_nodes : int
        Total number of nodes
    n_leaves : int
        Number of leaf nodes
    leaf_names : list[str]
        Names of leaf nodes, in traversal order
    """

    root: TreeNode
    n_nodes: int
    n_leaves: int
    leaf_names: list[str]

    @classmethod
    def from_file(cls, filepath: Path | str) -> "Tree":
        """Read the first Newick tree from a file."""
        with open(filepath) as f:
            return cls.from_newick(f.read())

    @classmethod
    def from_newick(cls, newick_string: str) -> "Tree":
        """
        Parse Newick format tree string.

        Branch lengths may be a single number or a '/'-separated list of
        per-category lengths (heterotachy), e.g. ``(A:0.1/0.4,B:0.2/0.2);``.

        Parameters
        ----------
        newick_string : str
            Newick format tree

        Returns
        -------
        Tree
            Parsed tree
        """
        # Remove [...] comments and whitespace between tokens
        newick = re.sub(r'\[[^\]]*\]', '', newick_string).strip()

        if ';' not in newick:
            raise ValueError("Invalid Newick format: missing semicolon")

        tree_line = newick[:newick.index(';')]
        tree_line = tree_line.replace('\n', '').replace('\t', '').replace('\r', '')
        if not tree_line.strip():
            raise ValueError("Invalid Newick format: no tree found")

        node_id_counter = [0]

        def skip_whitespace(s: str, pos: int) -> int:
            while pos < len(s) and s[pos] == ' ':
                pos += 1
            return pos

        def parse_length(text: str) -> tuple[float, Optional[list[float]]]:
            try:
                values = [float(v) for v in text.split('/')]
            except ValueError:
                raise ValueError(f"Invalid branch length: {text}")
            if any(v < 0 for v in values):
                raise ValueError(f"Negative branch length: {text}")
            if len(values) == 1:
                return values[0], None
            return sum(values) / len(values), values

        def parse_node(s: str, start: int, parent: Optional[TreeNode] = None) -> tuple[TreeNode, int]:
            node = TreeNode(id=node_id_counter[0], parent=parent)
            node_id_counter[0] += 1
            pos = skip_whitespace(s, start)

            if pos < len(s) and s[pos] == '(':
                pos = skip_whitespace(s, pos + 1)
                while True:
                    child, pos = parse_node(s, pos, node)
                    node.children.append(child)
                    pos = skip_whitespace(s, pos)

                    if pos < len(s) and s[pos] == ',':
                        pos = skip_whitespace(s, pos + 1)
                        continue
                    elif pos < len(s) and s[pos] == ')':
                        pos = skip_whitespace(s, pos + 1)
                        break
                    else:
                        raise ValueError(f"Expected ',' or ')' at position {pos}")

            name_start = pos
            while pos < len(s) and s[pos] not in ',:(); ':
                pos += 1
            if pos > name_start:
                node.name = s[name_start:pos].strip("'\"")

            pos = skip_whitespace(s, pos)

            if pos < len(s) and s[pos] == ':':
                pos = skip_whitespace(s, pos + 1)
                length_start = pos
                while pos < len(s) and s[pos] not in ',(); ':
                    pos += 1
                node.branch_length, node.category_lengths = parse_length(s[length_start:pos])

            return node, pos

        root, pos = parse_node(tree_line, 0, None)
        if skip_whitespace(tree_line, pos) != len(tree_line):
            raise ValueError(f"Unexpected characters after tree at position {pos}")

        tree = cls(root=root, n_nodes=0, n_leaves=0, leaf_names=[])
        tree._recount()
        return tree

    def _recount(self) -> None:
        nodes = self.preorder()
        leaves = [node for node in nodes if node.is_leaf]
        self.n_nodes = len(nodes)
        self.n_leaves = len(leaves)
        self.leaf_names = [node.name if node.name else str(node.id) for node in leaves]

    def preorder(self) -> list[TreeNode]:
        """Return nodes in pre-order (root first, children in stored order)."""
        result = []
        stack = [self.root]
        while stack:
            node = stack.pop()
            result.append(node)
            stack.extend(reversed(node.children))
        return result

    def postorder(self) -> list[TreeNode]:
        """
        Return nodes in post-order traversal (leaves to root).

        Returns
        -------
        list[TreeNode]
            Nodes in post-order
        """
        result = []
        stack = [(self.root, False)]
        while stack:
            node, expanded = stack.pop()
            if expanded:
                result.append(node)
                continue
            stack.append((node, True))
            for child in reversed(node.children):
                stack.append((child, False))
        return result

    def leaves(self) -> list[TreeNode]:
        """Leaf nodes in traversal order."""
        return [node for node in self.preorder() if node.is_leaf]

    def get_branches(self) -> list[tuple[TreeNode, TreeNode]]:
        """
        Get all branches as (parent, child) pairs, in pre-order.

        Returns
        -------
        list[tuple[TreeNode, TreeNode]]
            List of (parent, child) tuples for each branch
        """
        return [(node.parent, node) for node in self.preorder() if node.parent is not None]

    @property
    def n_category_lengths(self) -> int:
        """Number of per-category branch lengths (0 if the tree has none)."""
        counts = {
            len(node.category_lengths)
            for node in self.preorder()
            if node.category_lengths is not None
        }
        if len(counts) > 1:
            raise ValueError(f"Inconsistent numbers of category branch lengths: {sorted(counts)}")
        return counts.pop() if counts else 0

    def total_length(self) -> float:
        """Sum of branch lengths."""
        return sum(node.branch_length for node in self.preorder() if node.parent is not None)

    def scale(self, factor: float) -> None:
        """Multiply every branch length (and category length) by factor."""
        for node in self.preorder():
            node.branch_length *= factor
            if node.category_lengths is not None:
                node.category_lengths = [length * factor for length in node.category_lengths]

    def copy(self) -> "Tree":
        """Deep copy of the tree."""
        return copy.deepcopy(self)

    def to_newick(self, precision: int = 6) -> str:
        """Write the tree in Newick format."""

        def fmt_length(node: TreeNode) -> str:
            if node.category_lengths is not None:
                return '/'.join(f"{v:.{precision}g}" for v in node.category_lengths)
            return f"{node.branch_length:.{precision}g}"

        def write(node: TreeNode) -> str:
            text = ''
            if node.children:
                text = '(' + ','.join(write(child) for child in node.children) + ')'
            if node.name:
                text += node.name
            if node.parent is not None:
                text += ':' + fmt_length(node)
            return text

        return write(self.root) + ';'
