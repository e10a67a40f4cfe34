import random
import struct
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import pytest

from lazygate.models import LocalQuantizedProvider
from lazygate.process_pool import ProcessPoolManager
from lazygate.provider.hub import HubFile, HubRepo
from lazygate.provider.local import (
    LocalDiscovery,
    is_supported_repo,
    local_weights_path,
    split_precision_override,
)
from lazygate.routing.result import Matched, NoMatch, TransientFailure


BASE = "Qwen/Qwen2.5-7B-Instruct"
GIB = 1024**3


class FakeProcess:
    _next_pid = 4000

    def __init__(self) -> None:
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.returncode: Optional[int] = None

    def kill(self) -> None:
        if self.returncode is not None:
            raise ProcessLookupError(self.pid)
        self.returncode = -9

    async def wait(self) -> int:
        return self.returncode


class FakeHub:
    """
    In-memory hub: repos -> files, with optional GGUF headers per file.
    """

    def __init__(
        self,
        repos: List[HubRepo],
        files: Dict[str, List[HubFile]],
        headers: Optional[Dict[str, bytes]] = None,
    ) -> None:
        self.repos = repos
        self.files = files
        self.headers = headers or {}
        self.downloads: List[tuple] = []
        self.listed: List[str] = []
        self.fail_listing = False

    async def list_quantized_repos(self, base_model: str):
        if self.fail_listing:
            raise httpx.ConnectError("hub unreachable")
        self.listed.append(base_model)
        for repo in self.repos:
            yield repo

    async def list_files(self, repo_id: str):
        for f in self.files.get(repo_id, []):
            yield f

    async def read_header(self, repo_id: str, file_path: str) -> bytes:
        header = self.headers.get(f"{repo_id}/{file_path}")
        if header is None:
            raise httpx.ReadTimeout("probe timed out")
        return header

    async def download(self, repo_id: str, file_path: str, dest: Path) -> Path:
        self.downloads.append((repo_id, file_path, dest))
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(b"GGUF")
        return dest


class FakeSpawner:
    def __init__(self) -> None:
        self.calls: List[tuple] = []

    async def __call__(self, binary: str, *args: str) -> FakeProcess:
        self.calls.append((binary, *args))
        return FakeProcess()


def _gguf_header(file_type: int) -> bytes:
    key = b"general.file_type"
    return (
        b"GGUF"
        + struct.pack("<IQQ", 3, 0, 1)
        + struct.pack("<Q", len(key))
        + key
        + struct.pack("<II", 4, file_type)
    )


def _provider(**quantization: Any) -> LocalQuantizedProvider:
    return LocalQuantizedProvider(
        discovery_type="local",
        binary_path="/opt/llama/llama-server",
        args=["--ctx-size", "4096"],
        quantization=quantization,
    )


def _standard_hub() -> FakeHub:
    repos = [
        HubRepo("mlx-community/Qwen2.5-7B-Instruct-4bit", downloads=10**6),
        HubRepo("bartowski/Qwen2.5-7B-Instruct-GGUF", downloads=5000),
        HubRepo("Qwen/Qwen2.5-7B-Instruct-GGUF", downloads=9000),
        HubRepo("someone/Qwen2.5-7B-Instruct-GPTQ-Int4", downloads=10**6),
    ]
    files = {
        "mlx-community/Qwen2.5-7B-Instruct-4bit": [HubFile("model.gguf", GIB)],
        "bartowski/Qwen2.5-7B-Instruct-GGUF": [
            HubFile("Qwen2.5-7B-Instruct.imatrix", 1000),
            HubFile("Qwen2.5-7B-Instruct-Q4_K_M.gguf", 4 * GIB),
            HubFile("Qwen2.5-7B-Instruct-Q6_K.gguf", 6 * GIB),
            HubFile("README.md", 10),
        ],
        "Qwen/Qwen2.5-7B-Instruct-GGUF": [
            HubFile("qwen2.5-7b-instruct-q4_k_m.gguf", 4 * GIB),
            HubFile("qwen2.5-7b-instruct-q6_k-00001-of-00002.gguf", 3 * GIB),
            HubFile("qwen2.5-7b-instruct-q6_k-00002-of-00002.gguf", 3 * GIB),
        ],
        "someone/Qwen2.5-7B-Instruct-GPTQ-Int4": [HubFile("model.gguf", GIB)],
    }
    headers = {
        # Metadata wins over the misleading file name.
        "bartowski/Qwen2.5-7B-Instruct-GGUF/Qwen2.5-7B-Instruct-Q4_K_M.gguf": _gguf_header(15),
        "bartowski/Qwen2.5-7B-Instruct-GGUF/Qwen2.5-7B-Instruct-Q6_K.gguf": _gguf_header(18),
    }
    return FakeHub(repos, files, headers)


def _discovery(
    tmp_path: Path, hub: FakeHub, available: int = 64 * GIB
) -> tuple[LocalDiscovery, ProcessPoolManager, FakeSpawner]:
    pool = ProcessPoolManager(memory_probe=lambda: available, port_start=9100)
    spawner = FakeSpawner()
    discovery = LocalDiscovery(
        hub, pool, models_dir=tmp_path / "models", rng=random.Random(7), spawn=spawner
    )
    return discovery, pool, spawner


def test_split_precision_override():
    assert split_precision_override(BASE) == (BASE, None)
    assert split_precision_override(f"{BASE}:q4_k_m") == (BASE, "Q4_K_M")
    assert split_precision_override("host:8080/model") == ("host:8080/model", None)


def test_excluded_repo_formats():
    assert not is_supported_repo("mlx-community/Qwen2.5-7B-Instruct-4bit")
    assert not is_supported_repo("someone/Qwen2.5-7B-Instruct-GPTQ-Int4")
    assert is_supported_repo("bartowski/Qwen2.5-7B-Instruct-GGUF")


def test_local_weights_path_is_derived_from_file_name(tmp_path: Path):
    assert local_weights_path(tmp_path, "sub/dir/model-Q4_K_M.gguf") == tmp_path / "model-Q4_K_M.gguf"
    assert local_weights_path(tmp_path, "../../model.gguf") == tmp_path / "model.gguf"


@pytest.mark.asyncio
async def test_collect_candidates_scores_supported_single_file_weights(tmp_path: Path):
    discovery, _, _ = _discovery(tmp_path, _standard_hub())
    provider = _provider(precision="Q6_K")

    candidates = await discovery.collect_candidates(BASE, provider.quantization)

    by_path = {c.file_path: c for c in candidates}
    assert set(by_path) == {
        "Qwen2.5-7B-Instruct-Q4_K_M.gguf",
        "Qwen2.5-7B-Instruct-Q6_K.gguf",
        "qwen2.5-7b-instruct-q4_k_m.gguf",
    }
    # imatrix (10) + precision (100)
    assert by_path["Qwen2.5-7B-Instruct-Q6_K.gguf"].preference_score == 110
    assert by_path["Qwen2.5-7B-Instruct-Q4_K_M.gguf"].quant_level == "Q4_K_M"
    assert by_path["Qwen2.5-7B-Instruct-Q4_K_M.gguf"].preference_score == 10
    # same owner (1); level read from the file name after a failed probe
    assert by_path["qwen2.5-7b-instruct-q4_k_m.gguf"].quant_level == "Q4_K_M"
    assert by_path["qwen2.5-7b-instruct-q4_k_m.gguf"].preference_score == 1
    assert by_path["qwen2.5-7b-instruct-q4_k_m.gguf"].downloads == 9000


@pytest.mark.asyncio
async def test_discover_downloads_spawns_and_returns_route(tmp_path: Path):
    hub = _standard_hub()
    discovery, pool, spawner = _discovery(tmp_path, hub)

    outcome = await discovery.discover("local", _provider(precision="Q6_K"), BASE)

    assert isinstance(outcome, Matched)
    route = outcome.route
    assert route.provider == "local"
    assert route.api_base == "http://127.0.0.1:9100/v1"
    assert route.repo_id == "bartowski/Qwen2.5-7B-Instruct-GGUF"
    assert route.file_path == "Qwen2.5-7B-Instruct-Q6_K.gguf"
    assert route.file_size_bytes == 6 * GIB
    assert route.body == {} and route.headers == {}

    weights = tmp_path / "models" / "Qwen2.5-7B-Instruct-Q6_K.gguf"
    assert hub.downloads == [(route.repo_id, route.file_path, weights)]
    assert spawner.calls == [
        (
            "/opt/llama/llama-server",
            "--ctx-size",
            "4096",
            "--port",
            "9100",
            "--model",
            str(weights),
        )
    ]
    backend = pool.get(BASE)
    assert backend is not None and backend.memory_bytes == 6 * GIB


@pytest.mark.asyncio
async def test_discover_skips_download_when_weights_present(tmp_path: Path):
    hub = _standard_hub()
    discovery, _, spawner = _discovery(tmp_path, hub)
    cached = tmp_path / "models" / "Qwen2.5-7B-Instruct-Q6_K.gguf"
    cached.parent.mkdir(parents=True)
    cached.write_bytes(b"GGUF")

    outcome = await discovery.discover("local", _provider(precision="Q6_K"), BASE)

    assert isinstance(outcome, Matched)
    assert hub.downloads == []
    assert len(spawner.calls) == 1


@pytest.mark.asyncio
async def test_precision_override_in_model_name(tmp_path: Path):
    hub = _standard_hub()
    discovery, pool, _ = _discovery(tmp_path, hub)

    outcome = await discovery.discover("local", _provider(precision="Q6_K"), f"{BASE}:Q4_K_M")

    assert isinstance(outcome, Matched)
    # bartowski: imatrix + precision beats Qwen: owner + precision.
    assert outcome.route.repo_id == "bartowski/Qwen2.5-7B-Instruct-GGUF"
    assert outcome.route.file_path == "Qwen2.5-7B-Instruct-Q4_K_M.gguf"
    assert hub.listed == [BASE]
    assert pool.get(f"{BASE}:Q4_K_M") is not None


@pytest.mark.asyncio
async def test_no_candidates_is_no_match(tmp_path: Path):
    hub = FakeHub([HubRepo("mlx-community/x-4bit")], {"mlx-community/x-4bit": [HubFile("m.gguf", 1)]})
    discovery, _, spawner = _discovery(tmp_path, hub)

    outcome = await discovery.discover("local", _provider(), BASE)

    assert isinstance(outcome, NoMatch)
    assert spawner.calls == []


@pytest.mark.asyncio
async def test_insufficient_memory_is_no_match(tmp_path: Path):
    hub = _standard_hub()
    discovery, pool, spawner = _discovery(tmp_path, hub, available=2 * GIB)

    outcome = await discovery.discover("local", _provider(precision="Q6_K"), BASE)

    assert isinstance(outcome, NoMatch)
    assert spawner.calls == []
    assert hub.downloads == []
    assert pool.snapshot() == []


@pytest.mark.asyncio
async def test_hub_listing_failure_is_transient(tmp_path: Path):
    hub = _standard_hub()
    hub.fail_listing = True
    discovery, _, _ = _discovery(tmp_path, hub)

    outcome = await discovery.discover("local", _provider(), BASE)

    assert isinstance(outcome, TransientFailure)


@pytest.mark.asyncio
async def test_spawn_failure_is_transient_and_not_registered(tmp_path: Path):
    hub = _standard_hub()
    pool = ProcessPoolManager(memory_probe=lambda: 64 * GIB)

    async def broken_spawn(binary: str, *args: str):
        raise FileNotFoundError(binary)

    discovery = LocalDiscovery(hub, pool, models_dir=tmp_path, spawn=broken_spawn)

    outcome = await discovery.discover("local", _provider(precision="Q6_K"), BASE)

    assert isinstance(outcome, TransientFailure)
    assert pool.get(BASE) is None
