"""
Preference scoring for quantized model files.

Every weights file found in a quantized repository gets an integer score,
the sum of independently weighted boolean features:

- the repository ships an importance matrix ("imatrix")  -> prefer_imatrix
- the repository owner equals the base model's owner     -> prefer_same_owner
- the file's quantization level equals the target        -> prefer_correct_precision

The best-scoring files form the tie set, resolved by the configured
tiebreak strategy.
"""

from __future__ import annotations

import random
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import List, Optional

from lazygate.models import QuantizationConfig, TiebreakStrategy


WEIGHTS_SUFFIX = ".gguf"
_SHARD_RE = re.compile(r"-\d{5}-of-\d{5}\.gguf$", re.IGNORECASE)


@dataclass(frozen=True)
class CandidateMetadata:
    """
    Everything the scorer needs to know about one weights file.
    """

    repo_id: str
    file_paths: Sequence[str]
    quant_level: str
    base_model: str


@dataclass(frozen=True)
class QuantCandidate:
    repo_id: str
    file_path: str
    preference_score: int
    quant_level: str
    file_size_bytes: int
    downloads: int = 0


def model_owner(model_id: str) -> str:
    """
    First path segment of a hub id: "TheBloke/Llama-2-GGUF" -> "TheBloke".
    """
    return model_id.split("/", 1)[0]


def has_imatrix(file_paths: Iterable[str]) -> bool:
    for path in file_paths:
        for segment in path.split("/"):
            if "imatrix" in segment.lower():
                return True
    return False


def is_weights_file(path: str) -> bool:
    """
    Single-file GGUF weights; split shards are not candidates.
    """
    return path.lower().endswith(WEIGHTS_SUFFIX) and not _SHARD_RE.search(path)


def repo_base_score(
    repo_id: str,
    file_paths: Sequence[str],
    base_model: str,
    config: QuantizationConfig,
) -> int:
    """
    Per-repository part of the score, shared by every file in the repository.
    """
    total = 0
    if has_imatrix(file_paths):
        total += config.prefer_imatrix
    if model_owner(repo_id) == model_owner(base_model):
        total += config.prefer_same_owner
    return total


def precision_score(quant_level: str, config: QuantizationConfig) -> int:
    return config.prefer_correct_precision if quant_level == config.precision else 0


def score(metadata: CandidateMetadata, config: QuantizationConfig) -> int:
    return repo_base_score(
        metadata.repo_id, metadata.file_paths, metadata.base_model, config
    ) + precision_score(metadata.quant_level, config)


def best_candidates(candidates: Iterable[QuantCandidate]) -> List[QuantCandidate]:
    """
    The subset achieving the maximum score, in (repo_id, file_path) order.
    """
    pool = list(candidates)
    if not pool:
        return []
    top = max(c.preference_score for c in pool)
    return sorted(
        (c for c in pool if c.preference_score == top),
        key=lambda c: (c.repo_id, c.file_path),
    )


def select_candidate(
    candidates: Iterable[QuantCandidate],
    strategy: TiebreakStrategy,
    rng: Optional[random.Random] = None,
) -> Optional[QuantCandidate]:
    """
    Pick the winning candidate, or None when there are no candidates.

    random  -> uniform choice among the maximal subset.
    popular -> highest repository download count; equal counts fall back
               to the first candidate in (repo_id, file_path) order.
    """
    best = best_candidates(candidates)
    if not best:
        return None
    if strategy is TiebreakStrategy.POPULAR:
        # max() keeps the first maximal element, and `best` is already sorted.
        return max(best, key=lambda c: c.downloads)
    return (rng or random).choice(best)


__all__ = [
    "CandidateMetadata",
    "QuantCandidate",
    "WEIGHTS_SUFFIX",
    "best_candidates",
    "has_imatrix",
    "is_weights_file",
    "model_owner",
    "precision_score",
    "repo_base_score",
    "score",
    "select_candidate",
]
