"""
packing_core/spectral.py
────────────────────────
Spectral clustering primitives for the communication graph.

Three pieces, each a pure function over numpy arrays:

  laplacian(W)              L = D − W, D = diag(row sums of W)
  spectral_embedding(L, k)  the k eigenvectors of L with the smallest
                            eigenvalues, one row per workload
  kmeans(points, k)         deterministic Lloyd iterations over the rows

Why a real eigensolver
──────────────────────
The smallest eigenvectors of the graph Laplacian are the relaxed solution
of the normalized-cut problem: workloads connected by heavy edges get
nearby rows in the embedding, so k-means over the rows groups chatty
workloads together. L is real and symmetric, so numpy.linalg.eigh is the
right solver: it returns real eigenvalues in ascending order and an
orthonormal set of eigenvectors.

Determinism
───────────
Two runs over the same graph must give the same clusters.
  • Eigenvector signs are arbitrary. Each column is flipped so that its
    largest-magnitude entry is positive.
  • k-means is seeded without randomness: the first centroid is row 0,
    each further centroid is the row farthest from all chosen centroids
    (lowest index on ties).
  • Assignment ties go to the lowest cluster index (np.argmin).
  • A cluster that loses all its points keeps its previous centroid.

NumPy design choices
────────────────────
  • float64 throughout. Edge weights are products of logarithms and small
    differences matter when eigenvalues are close.
  • Distances via broadcasting: (n, 1, k) − (1, c, k) → (n, c, k).
"""

from __future__ import annotations

import numpy as np
from numpy.typing import NDArray

# ── k-means constants ─────────────────────────────────────────────────────────

KMEANS_MAX_ITERATIONS: int = 100
"""Upper bound on Lloyd iterations. Small graphs converge in a handful."""

KMEANS_TOLERANCE: float = 1e-9
"""Centroid movement below which k-means is considered converged."""


def laplacian(weights: NDArray[np.float64]) -> NDArray[np.float64]:
    """
    Unnormalized graph Laplacian of a symmetric weight matrix.

    Diagonal = weighted degree, off-diagonal = −weight. The diagonal of
    ``weights`` is ignored (self-loops carry no locality information).

    Raises:
        ValueError: if ``weights`` is not square.
    """
    w = np.asarray(weights, dtype=np.float64)
    if w.ndim != 2 or w.shape[0] != w.shape[1]:
        raise ValueError(f"Laplacian needs a square matrix, got shape {w.shape}")

    w = w.copy()
    np.fill_diagonal(w, 0.0)
    degree = w.sum(axis=1)
    return np.diag(degree) - w


def spectral_embedding(lap: NDArray[np.float64], k: int) -> NDArray[np.float64]:
    """
    Rows of the k eigenvectors with the smallest eigenvalues.

    Returns an (n, min(k, n)) array. An empty graph gives shape (0, 0).
    """
    n = lap.shape[0]
    k = max(0, min(k, n))
    if n == 0 or k == 0:
        return np.zeros((n, 0), dtype=np.float64)

    _, vectors = np.linalg.eigh(lap)
    embedding = vectors[:, :k].copy()

    # Sign convention: the largest-magnitude entry of each column is positive.
    pivots = np.argmax(np.abs(embedding), axis=0)
    signs = np.sign(embedding[pivots, np.arange(k)])
    signs[signs == 0] = 1.0
    embedding *= signs
    return embedding


def _seed_centroids(points: NDArray[np.float64], k: int) -> NDArray[np.float64]:
    chosen = [0]
    min_dist = np.sum((points - points[0]) ** 2, axis=1)
    while len(chosen) < k:
        candidate = int(np.argmax(min_dist))
        chosen.append(candidate)
        min_dist = np.minimum(min_dist, np.sum((points - points[candidate]) ** 2, axis=1))
    return points[chosen].copy()


def kmeans(points: NDArray[np.float64], k: int) -> NDArray[np.int64]:
    """
    Cluster label per row of ``points``, in [0, k).

    k is clamped to the number of rows. Labels are not renumbered, so some
    label values may be unused when rows coincide.
    """
    pts = np.asarray(points, dtype=np.float64)
    n = pts.shape[0]
    if n == 0:
        return np.zeros(0, dtype=np.int64)
    if pts.ndim == 1:
        pts = pts.reshape(n, 1)
    k = max(1, min(k, n))

    centroids = _seed_centroids(pts, k)
    labels = np.zeros(n, dtype=np.int64)

    for _ in range(KMEANS_MAX_ITERATIONS):
        distances = np.sum((pts[:, None, :] - centroids[None, :, :]) ** 2, axis=2)
        labels = np.argmin(distances, axis=1).astype(np.int64)

        updated = centroids.copy()
        for cluster in range(k):
            members = pts[labels == cluster]
            if len(members):
                updated[cluster] = members.mean(axis=0)

        shift = float(np.max(np.abs(updated - centroids))) if k else 0.0
        centroids = updated
        if shift <= KMEANS_TOLERANCE:
            break

    return labels
