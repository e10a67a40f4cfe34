"""
Local quantized discovery.

For a base model such as `Qwen/Qwen2.5-7B-Instruct`:

1. list hub repositories tagged `base_model:quantized:<base model>`,
   skipping formats the local runtime cannot load;
2. score every single-file GGUF in those repositories (see scorer.py),
   reading each file's embedded metadata for its quantization level;
3. pick the winner, admit it into the process pool (evicting LRU
   backends if memory is short), download it if missing and spawn the
   inference binary on a fresh port.

A trailing `:<QUANT>` on the requested name (`Qwen/Qwen2.5-7B-Instruct:Q4_K_M`)
overrides the provider's precision target for that request.
"""

from __future__ import annotations

import asyncio
import functools
import random
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, List, Optional, Tuple, Union

import httpx
from huggingface_hub.utils import HfHubHTTPError

from lazygate.logging_config import logger
from lazygate.models import LocalQuantizedProvider, ModelRoute, QuantizationConfig
from lazygate.process_pool import ProcessPoolManager, RunningBackend
from lazygate.provider.gguf import detect_quant_level
from lazygate.provider.hub import HubClient, HubFile, HubRepo
from lazygate.provider.scorer import (
    QuantCandidate,
    is_weights_file,
    precision_score,
    repo_base_score,
    select_candidate,
)
from lazygate.routing.result import DiscoveryOutcome, Matched, NoMatch, TransientFailure
from lazygate.storage.route_store import secure_path


# Quantized repositories in these formats cannot be loaded by llama.cpp.
EXCLUDED_REPO_MARKERS = ("mlx", "gptq")

SpawnFn = Callable[..., Awaitable[Any]]


def split_precision_override(model_name: str) -> Tuple[str, Optional[str]]:
    """
    "owner/repo:Q4_K_M" -> ("owner/repo", "Q4_K_M"); names without a tag pass through.
    """
    base, sep, tag = model_name.rpartition(":")
    if sep and base and tag and "/" not in tag:
        return base, tag.upper()
    return model_name, None


def is_supported_repo(repo_id: str) -> bool:
    lowered = repo_id.lower()
    return not any(marker in lowered for marker in EXCLUDED_REPO_MARKERS)


def local_weights_path(models_dir: Union[str, Path], file_path: str) -> Path:
    """
    Deterministic local path for a hub file, derived from its file name.
    """
    return Path(secure_path(models_dir, file_path.rsplit("/", 1)[-1]))


class LocalDiscovery:
    """
    Discovery strategy backed by the hub and the process pool.
    """

    def __init__(
        self,
        hub: HubClient,
        pool: ProcessPoolManager,
        *,
        models_dir: Union[str, Path],
        rng: Optional[random.Random] = None,
        spawn: SpawnFn = asyncio.create_subprocess_exec,
    ) -> None:
        self.hub = hub
        self.pool = pool
        self.models_dir = Path(models_dir)
        self._rng = rng
        self._spawn = spawn

    async def _quant_level(self, repo_id: str, file_path: str) -> str:
        header: Optional[bytes] = None
        try:
            header = await self.hub.read_header(repo_id, file_path)
        except httpx.HTTPError as exc:
            logger.warning(
                "discovery: metadata probe for %s/%s failed (%s); using file name",
                repo_id,
                file_path,
                exc,
            )
        return detect_quant_level(header, file_path)

    async def _repo_candidates(
        self, repo: HubRepo, base_model: str, config: QuantizationConfig
    ) -> List[QuantCandidate]:
        files: List[HubFile] = [f async for f in self.hub.list_files(repo.repo_id)]
        weights = [f for f in files if is_weights_file(f.path)]
        if not weights:
            return []

        base_score = repo_base_score(
            repo.repo_id, [f.path for f in files], base_model, config
        )
        levels = await asyncio.gather(
            *(self._quant_level(repo.repo_id, f.path) for f in weights)
        )
        return [
            QuantCandidate(
                repo_id=repo.repo_id,
                file_path=f.path,
                preference_score=base_score + precision_score(level, config),
                quant_level=level,
                file_size_bytes=f.size,
                downloads=repo.downloads,
            )
            for f, level in zip(weights, levels)
        ]

    async def collect_candidates(
        self, base_model: str, config: QuantizationConfig
    ) -> List[QuantCandidate]:
        candidates: List[QuantCandidate] = []
        async for repo in self.hub.list_quantized_repos(base_model):
            if not is_supported_repo(repo.repo_id):
                logger.debug("discovery: skipping unsupported repo %s", repo.repo_id)
                continue
            try:
                candidates.extend(await self._repo_candidates(repo, base_model, config))
            except (HfHubHTTPError, httpx.HTTPError, OSError) as exc:
                logger.warning(
                    "discovery: could not inspect repo %s: %s", repo.repo_id, exc
                )
        return candidates

    async def _launch(
        self,
        provider: LocalQuantizedProvider,
        repo_id: str,
        file_path: str,
        port: int,
    ) -> Any:
        weights = local_weights_path(self.models_dir, file_path)
        if not weights.is_file():
            await self.hub.download(repo_id, file_path, weights)
        args = [*provider.args, "--port", str(port), "--model", str(weights)]
        logger.info("discovery: spawning %s %s", provider.binary_path, " ".join(args))
        return await self._spawn(provider.binary_path, *args)

    async def ensure_running(
        self,
        model_name: str,
        provider: LocalQuantizedProvider,
        *,
        repo_id: str,
        file_path: str,
        file_size_bytes: int,
    ) -> Optional[RunningBackend]:
        """
        Return the backend serving `model_name`, admitting and spawning it
        from the given hub file when it is not running.
        """
        launcher = functools.partial(self._launch, provider, repo_id, file_path)
        return await self.pool.ensure_backend(model_name, file_size_bytes, launcher)

    async def discover(
        self,
        provider_name: str,
        provider: LocalQuantizedProvider,
        model_name: str,
    ) -> DiscoveryOutcome:
        base_model, precision = split_precision_override(model_name)
        config = provider.quantization
        if precision is not None:
            config = config.model_copy(update={"precision": precision})

        try:
            candidates = await self.collect_candidates(base_model, config)
        except (HfHubHTTPError, httpx.HTTPError, OSError) as exc:
            return TransientFailure(f"hub listing for {base_model!r} failed: {exc}")

        winner = select_candidate(candidates, config.tiebreak_strategy, self._rng)
        if winner is None:
            return NoMatch(f"no GGUF quantizations of {base_model!r} on the hub")

        logger.info(
            "discovery: %r -> %s/%s (%s, score=%d, %d bytes) out of %d candidates",
            model_name,
            winner.repo_id,
            winner.file_path,
            winner.quant_level or "unknown",
            winner.preference_score,
            winner.file_size_bytes,
            len(candidates),
        )

        try:
            backend = await self.ensure_running(
                model_name,
                provider,
                repo_id=winner.repo_id,
                file_path=winner.file_path,
                file_size_bytes=winner.file_size_bytes,
            )
        except (HfHubHTTPError, httpx.HTTPError, OSError) as exc:
            return TransientFailure(f"could not start backend for {model_name!r}: {exc}")

        if backend is None:
            return NoMatch(
                f"not enough memory for {winner.file_size_bytes} bytes even after eviction"
            )

        return Matched(
            ModelRoute(
                provider=provider_name,
                api_base=backend.api_base,
                repo_id=winner.repo_id,
                file_path=winner.file_path,
                file_size_bytes=winner.file_size_bytes,
            )
        )


__all__ = [
    "EXCLUDED_REPO_MARKERS",
    "LocalDiscovery",
    "is_supported_repo",
    "local_weights_path",
    "split_precision_override",
]
