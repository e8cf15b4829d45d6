from __future__ import annotations

from typing import List, Optional, Protocol, Sequence

import numpy as np

from .config import MATCH_THRESHOLD
from .exceptions import DimensionMismatchError
from .types import BiometricTemplate, MatchResult


class IdentityIndex(Protocol):
    """Anything that can answer "who is closest to this embedding"."""

    def match(self, query: np.ndarray, threshold: float = MATCH_THRESHOLD) -> MatchResult:
        ...

    def __len__(self) -> int:
        ...


def euclidean_distances(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    if matrix.size == 0:
        return np.empty((0,), dtype=np.float64)
    diff = matrix - query[None, :]
    return np.sqrt(np.einsum("ij,ij->i", diff, diff))


class NearestIdentityMatcher:
    """Brute-force Euclidean nearest neighbour over an enrolled roster.

    Clinic rosters are a few hundred templates, so a dense matrix scan is
    fast enough; `IdentityIndex` is the seam for swapping in an ANN index.
    """

    def __init__(self, templates: Sequence[BiometricTemplate]):
        self.identity_ids: List[str] = [tpl.identity_id for tpl in templates]
        if templates:
            dims = {tpl.dimension for tpl in templates}
            if len(dims) != 1:
                raise DimensionMismatchError(f"Templates have mixed dimensions: {sorted(dims)}")
            self.matrix = np.vstack([np.asarray(tpl.embedding, dtype=np.float64) for tpl in templates])
        else:
            self.matrix = np.empty((0, 0), dtype=np.float64)

    def __len__(self) -> int:
        return len(self.identity_ids)

    @property
    def dimension(self) -> Optional[int]:
        if not self.identity_ids:
            return None
        return int(self.matrix.shape[1])

    def match(self, query: np.ndarray, threshold: float = MATCH_THRESHOLD) -> MatchResult:
        if not self.identity_ids:
            return MatchResult(identity_id=None, distance=float("inf"))

        vector = np.asarray(query, dtype=np.float64).ravel()
        if vector.shape[0] != self.matrix.shape[1]:
            raise DimensionMismatchError(
                f"Query has {vector.shape[0]} dimensions, registry uses {self.matrix.shape[1]}."
            )

        distances = euclidean_distances(vector, self.matrix)
        # argmin returns the first minimum, so ties go to the earliest template.
        idx = int(np.argmin(distances))
        best = float(distances[idx])
        if best < threshold:
            return MatchResult(identity_id=self.identity_ids[idx], distance=best)
        return MatchResult(identity_id=None, distance=best)


def match(
    query: np.ndarray,
    candidates: Sequence[BiometricTemplate],
    threshold: float = MATCH_THRESHOLD,
) -> Optional[str]:
    return NearestIdentityMatcher(candidates).match(query, threshold).identity_id
