import random
from collections import Counter

from lazygate.models import QuantizationConfig, TiebreakStrategy
from lazygate.provider.scorer import (
    CandidateMetadata,
    QuantCandidate,
    has_imatrix,
    is_weights_file,
    score,
    select_candidate,
)


BASE = "Qwen/Qwen2.5-7B-Instruct"


def _meta(**overrides) -> CandidateMetadata:
    data = {
        "repo_id": "bartowski/Qwen2.5-7B-Instruct-GGUF",
        "file_paths": ["Qwen2.5-7B-Instruct-Q6_K.gguf", "README.md"],
        "quant_level": "Q6_K",
        "base_model": BASE,
    }
    data.update(overrides)
    return CandidateMetadata(**data)


def _candidate(repo_id: str, file_path: str, score_: int = 0, downloads: int = 0) -> QuantCandidate:
    return QuantCandidate(
        repo_id=repo_id,
        file_path=file_path,
        preference_score=score_,
        quant_level="Q4_K_M",
        file_size_bytes=1_000,
        downloads=downloads,
    )


def test_score_sums_weighted_features():
    config = QuantizationConfig(
        precision="Q6_K",
        prefer_correct_precision=100,
        prefer_imatrix=10,
        prefer_same_owner=1,
    )
    plain = _meta()
    assert score(plain, config) == 100

    with_imatrix = _meta(file_paths=["imatrix.dat", "model-Q6_K.gguf"])
    assert score(with_imatrix, config) == 110

    same_owner = _meta(repo_id="Qwen/Qwen2.5-7B-Instruct-GGUF", quant_level="Q4_K_M")
    assert score(same_owner, config) == 1


def test_precision_must_match_exactly():
    config = QuantizationConfig(precision="Q4_K_M")
    assert score(_meta(quant_level="Q4_K_S"), config) == 0
    assert score(_meta(quant_level="q4_k_m"), config) == 0
    assert score(_meta(quant_level="Q4_K_M"), config) == config.prefer_correct_precision


def test_adding_imatrix_never_decreases_score():
    config = QuantizationConfig()
    for paths in (["a.gguf"], ["sub/b.gguf", "README.md"], []):
        before = score(_meta(file_paths=paths), config)
        after = score(_meta(file_paths=[*paths, "calibration/model.imatrix"]), config)
        assert after >= before


def test_lower_imatrix_weight_never_increases_score():
    meta = _meta(file_paths=["imatrix_unsloth.dat", "model.gguf"])
    high = score(meta, QuantizationConfig(prefer_imatrix=100))
    low = score(meta, QuantizationConfig(prefer_imatrix=0))
    assert low <= high


def test_imatrix_matches_any_path_segment():
    assert has_imatrix(["imatrix/data.bin"])
    assert has_imatrix(["Model.IMatrix.dat"])
    assert not has_imatrix(["model-Q4_K_M.gguf", "README.md"])


def test_weights_files_exclude_split_shards():
    assert is_weights_file("Qwen2.5-7B-Instruct-Q4_K_M.gguf")
    assert is_weights_file("sub/dir/MODEL.GGUF")
    assert not is_weights_file("Qwen2.5-72B-Q4_K_M-00001-of-00002.gguf")
    assert not is_weights_file("README.md")


def test_select_candidate_empty_returns_none():
    assert select_candidate([], TiebreakStrategy.RANDOM) is None
    assert select_candidate([], TiebreakStrategy.POPULAR) is None


def test_select_candidate_only_considers_maximal_scores():
    winner = _candidate("a/repo", "high.gguf", score_=110)
    candidates = [_candidate("a/repo", "low.gguf", score_=10, downloads=10**9), winner]

    for strategy in TiebreakStrategy:
        assert select_candidate(candidates, strategy, random.Random(0)) == winner


def test_random_tiebreak_is_roughly_uniform():
    candidates = [_candidate(f"owner/repo{i}", "m.gguf", score_=5) for i in range(4)]
    rng = random.Random(1234)
    trials = 8000

    counts = Counter(
        select_candidate(candidates, TiebreakStrategy.RANDOM, rng).repo_id
        for _ in range(trials)
    )

    assert set(counts) == {c.repo_id for c in candidates}
    expected = trials / len(candidates)
    for count in counts.values():
        assert abs(count - expected) < expected * 0.1


def test_popular_tiebreak_prefers_downloads_and_is_deterministic():
    candidates = [
        _candidate("b/repo", "x.gguf", score_=5, downloads=500),
        _candidate("a/repo", "y.gguf", score_=5, downloads=900),
        _candidate("c/repo", "z.gguf", score_=5, downloads=900),
    ]

    picks = {
        select_candidate(list(order), TiebreakStrategy.POPULAR)
        for order in (candidates, candidates[::-1], candidates[1:] + candidates[:1])
    }

    # Equal download counts fall back to (repo_id, file_path) order.
    assert picks == {candidates[1]}
