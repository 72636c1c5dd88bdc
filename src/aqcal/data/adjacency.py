# src/aqcal/data/adjacency.py
from pathlib import Path
from typing import Dict, Hashable, Iterable, List, Mapping

import numpy as np
from scipy.sparse import csr_matrix
from scipy.sparse.csgraph import connected_components

from aqcal.model.errors import InvalidSpecification


class AdjacencyGraph:
    """
    Undirected neighbour relation over spatial units (countries).

    Symmetry and the absence of self loops are checked on construction.
    Node order is fixed at construction and defines the order of the BYM2
    latent levels.
    """

    def __init__(self, neighbors: Mapping[Hashable, Iterable[Hashable]]):
        nodes = list(neighbors.keys())
        if len(set(nodes)) != len(nodes):
            raise InvalidSpecification("duplicate node ids in adjacency mapping")

        adj: Dict[Hashable, frozenset] = {}
        for node in nodes:
            nbs = frozenset(neighbors[node])
            if node in nbs:
                raise InvalidSpecification(f"node {node!r} lists itself as a neighbour")
            unknown = [nb for nb in nbs if nb not in neighbors]
            if unknown:
                raise InvalidSpecification(f"node {node!r} has neighbours not in the graph: {unknown}")
            adj[node] = nbs

        for node, nbs in adj.items():
            for nb in nbs:
                if node not in adj[nb]:
                    raise InvalidSpecification(
                        f"adjacency is not symmetric: {node!r} -> {nb!r} but not {nb!r} -> {node!r}"
                    )

        self._nodes = tuple(nodes)
        self._index = {node: i for i, node in enumerate(nodes)}
        self._adj = adj
        self._basis = self._scaled_basis()

    @classmethod
    def from_neighbors(cls, mapping: Mapping[Hashable, Iterable[Hashable]]) -> "AdjacencyGraph":
        return cls(mapping)

    # ----------------------------
    # Relation
    # ----------------------------
    @property
    def nodes(self) -> tuple:
        return self._nodes

    @property
    def n_nodes(self) -> int:
        return len(self._nodes)

    def index(self, node: Hashable) -> int:
        return self._index[node]

    def neighbors(self, node: Hashable) -> frozenset:
        return self._adj[node]

    def n_neighbors(self, node: Hashable) -> int:
        return len(self._adj[node])

    def covers(self, levels: Iterable[Hashable]) -> List[Hashable]:
        """Return the levels that are NOT nodes of the graph (empty list when covered)."""
        return [lv for lv in levels if lv not in self._index]

    def to_dict(self) -> Dict[Hashable, List[Hashable]]:
        return {node: sorted(self._adj[node], key=str) for node in self._nodes}

    def adjacency_matrix(self) -> np.ndarray:
        n = self.n_nodes
        W = np.zeros((n, n))
        for node, nbs in self._adj.items():
            i = self._index[node]
            for nb in nbs:
                W[i, self._index[nb]] = 1.0
        return W

    def structure_matrix(self) -> np.ndarray:
        """ICAR structure matrix (graph Laplacian) D - W."""
        W = self.adjacency_matrix()
        return np.diag(W.sum(axis=1)) - W

    def components(self) -> List[np.ndarray]:
        """Node indices of each connected component."""
        n_comp, labels = connected_components(csr_matrix(self.adjacency_matrix()), directed=False)
        return [np.flatnonzero(labels == c) for c in range(n_comp)]

    # ----------------------------
    # BYM2 scaling
    # ----------------------------
    def bym2_basis(self):
        """Read-only (V, gamma) computed once at construction; see `_scaled_basis`."""
        return self._basis

    def _scaled_basis(self, tol: float = 1e-9):
        """
        Eigen-basis of the scaled generalised inverse of the structure matrix.

        Returns (V, gamma) with Q*^- = V diag(gamma) V^T. Each connected component
        is scaled so the geometric mean of its marginal variances is 1 and carries
        a zero eigenvalue along its constant vector (sum-to-zero). Isolated nodes
        get gamma = 1, so their structured part is an independent unit-variance
        effect.
        """
        n = self.n_nodes
        V = np.zeros((n, n))
        gamma = np.zeros(n)
        R = self.structure_matrix()
        col = 0
        for comp in self.components():
            k = comp.size
            if k == 1:
                V[comp[0], col] = 1.0
                gamma[col] = 1.0
                col += 1
                continue

            lam, vec = np.linalg.eigh(R[np.ix_(comp, comp)])
            inv = np.where(lam > tol * max(1.0, lam.max()), 1.0 / np.where(lam > 0, lam, 1.0), 0.0)
            marg_var = (vec ** 2) @ inv
            scale = float(np.exp(np.mean(np.log(marg_var))))
            V[comp, col:col + k] = vec
            gamma[col:col + k] = inv / scale
            col += k

        V.setflags(write=False)
        gamma.setflags(write=False)
        return V, gamma

    def __repr__(self) -> str:
        n_edges = sum(len(v) for v in self._adj.values()) // 2
        return f"AdjacencyGraph(n_nodes={self.n_nodes}, n_edges={n_edges})"


def read_graph_file(path) -> AdjacencyGraph:
    """
    Parse the plain-text neighbour-list graph format:

        <n>
        <id> <k> <nb_1> ... <nb_k>
        ...

    Ids are kept as strings.
    """
    lines = [ln.split() for ln in Path(path).read_text().splitlines() if ln.strip()]
    if not lines:
        raise InvalidSpecification(f"graph file {path} is empty")
    n = int(lines[0][0])
    body = lines[1:]
    if len(body) != n:
        raise InvalidSpecification(f"graph file declares {n} nodes but lists {len(body)}")

    mapping = {}
    for parts in body:
        node, k = parts[0], int(parts[1])
        nbs = parts[2:]
        if len(nbs) != k:
            raise InvalidSpecification(f"node {node} declares {k} neighbours but lists {len(nbs)}")
        mapping[node] = nbs
    return AdjacencyGraph(mapping)


def write_graph_file(graph: AdjacencyGraph, path) -> Path:
    path = Path(path)
    rows = [str(graph.n_nodes)]
    for node, nbs in graph.to_dict().items():
        rows.append(" ".join([str(node), str(len(nbs))] + [str(nb) for nb in nbs]))
    path.write_text("\n".join(rows) + "\n")
    return path
