"""
Similarity Primitives
Vector-space helpers shared by retrieval, diversity selection and tests
"""
from typing import List, Sequence

import numpy as np


def _as_array(vector: Sequence[float]) -> np.ndarray:
    return np.asarray(vector, dtype=np.float64)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity between two vectors

    Zero-length (all-zero) vectors have similarity 0.0 with everything.
    """
    va = _as_array(a)
    vb = _as_array(b)
    if va.shape != vb.shape:
        raise ValueError(f"dimension mismatch: {va.shape} vs {vb.shape}")

    norm = np.linalg.norm(va) * np.linalg.norm(vb)
    if norm == 0.0:
        return 0.0
    return float(np.dot(va, vb) / norm)


def cosine_similarity_matrix(vectors: Sequence[Sequence[float]]) -> np.ndarray:
    """Pairwise cosine similarity matrix (n x n) with zero rows mapped to 0"""
    if len(vectors) == 0:
        return np.zeros((0, 0))

    matrix = np.asarray(vectors, dtype=np.float64)
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    safe = np.where(norms == 0.0, 1.0, norms)
    normalized = matrix / safe
    normalized[norms[:, 0] == 0.0] = 0.0
    return normalized @ normalized.T


def cosine_similarities(query: Sequence[float], vectors: Sequence[Sequence[float]]) -> List[float]:
    """Cosine similarity of one query vector against many vectors"""
    if len(vectors) == 0:
        return []

    q = _as_array(query)
    matrix = np.asarray(vectors, dtype=np.float64)
    q_norm = np.linalg.norm(q)
    norms = np.linalg.norm(matrix, axis=1)
    denom = norms * q_norm
    dots = matrix @ q
    sims = np.divide(dots, denom, out=np.zeros_like(dots), where=denom != 0.0)
    return sims.tolist()


def mean(values: Sequence[float]) -> float:
    """Arithmetic mean; 0.0 for an empty sequence"""
    if len(values) == 0:
        return 0.0
    return float(np.mean(_as_array(values)))


def variance(values: Sequence[float]) -> float:
    """Population variance; 0.0 for an empty sequence"""
    if len(values) == 0:
        return 0.0
    return float(np.var(_as_array(values)))
