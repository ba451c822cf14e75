"""Capability prober: discovers a GPU descriptor and a local inference server."""

from __future__ import annotations

import logging
import shutil
import subprocess

import httpx
import pynvml

from sparecompute.config import DEFAULT_LOCAL_CANDIDATES
from sparecompute.schemas import Capability
from sparecompute.store import CAPABILITY, CredentialStore

logger = logging.getLogger(__name__)

NVIDIA_SMI_TIMEOUT = 5  # seconds


def _query_nvml() -> tuple[str | None, str | None] | None:
    """Return (descriptor, memory) for the first GPU through NVML.

    Returns None when NVML cannot be initialised, so the caller can try
    nvidia-smi instead.
    """
    try:
        pynvml.nvmlInit()
    except pynvml.NVMLError as e:
        logger.debug(f"NVML unavailable: {e}")
        return None

    try:
        if pynvml.nvmlDeviceGetCount() < 1:
            return None, None
        handle = pynvml.nvmlDeviceGetHandleByIndex(0)
        name = pynvml.nvmlDeviceGetName(handle)
        if isinstance(name, bytes):
            name = name.decode("utf-8", errors="replace")
        memory = pynvml.nvmlDeviceGetMemoryInfo(handle)
        return name or None, f"{memory.total // (1024 * 1024)} MiB"
    except pynvml.NVMLError as e:
        logger.debug(f"NVML query failed: {e}")
        return None, None
    finally:
        try:
            pynvml.nvmlShutdown()
        except pynvml.NVMLError:
            pass


def _query_nvidia_smi(timeout: float = NVIDIA_SMI_TIMEOUT) -> tuple[str | None, str | None]:
    """Return (descriptor, memory) for the first GPU, or (None, None)."""
    binary = shutil.which("nvidia-smi")
    if binary is None:
        return None, None

    try:
        result = subprocess.run(
            [binary, "--query-gpu=name,memory.total", "--format=csv,noheader"],
            capture_output=True,
            text=True,
            check=True,
            timeout=timeout,
        )
    except (subprocess.SubprocessError, OSError) as e:
        logger.debug(f"nvidia-smi query failed: {e}")
        return None, None

    lines = result.stdout.strip().splitlines()
    if not lines or not lines[0].strip():
        return None, None

    parts = [p.strip() for p in lines[0].split(",")]
    descriptor = parts[0] or None
    memory = parts[1] if len(parts) > 1 and parts[1] else None
    return descriptor, memory


class CapabilityProber:
    """Detects what this machine can serve and caches the answer."""

    def __init__(
        self,
        store: CredentialStore,
        candidates: list[str] | None = None,
        timeout: float = 2.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.store = store
        self.candidates = list(candidates) if candidates is not None else list(DEFAULT_LOCAL_CANDIDATES)
        self.timeout = timeout
        self._transport = transport

    def detect(self, force: bool = False) -> Capability:
        """Return the local capability, probing only when needed.

        A persisted capability is reused unless ``force`` is set. Probe
        failures never raise; the corresponding field is left empty.
        """
        if not force:
            cached = self.load()
            if cached is not None:
                return cached

        descriptor, memory = self.probe_gpu()
        endpoint = self.probe_local_endpoint()
        capability = Capability(
            gpu_descriptor=descriptor,
            gpu_memory=memory,
            local_endpoint=endpoint,
        )

        self.save(capability)
        logger.info(f"Detected capabilities: gpu={descriptor!r}, local_endpoint={endpoint!r}")
        return capability

    def load(self) -> Capability | None:
        """Return the persisted capability, if any."""
        raw = self.store.get(CAPABILITY)
        if not isinstance(raw, dict):
            return None
        try:
            return Capability.model_validate(raw)
        except ValueError:
            logger.warning("Ignoring malformed persisted capability")
            return None

    def save(self, capability: Capability) -> None:
        self.store.set_many({CAPABILITY: capability.model_dump(by_alias=True)})

    def probe_gpu(self) -> tuple[str | None, str | None]:
        """Query NVML, falling back to nvidia-smi when NVML will not load."""
        try:
            result = _query_nvml()
            if result is not None:
                return result
            return _query_nvidia_smi()
        except Exception as e:
            logger.debug(f"GPU probe failed: {e}")
            return None, None

    def probe_local_endpoint(self) -> str | None:
        """Return the first candidate answering a model listing request."""
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                for base in self.candidates:
                    base = base.rstrip("/")
                    try:
                        response = client.get(f"{base}/models")
                    except httpx.HTTPError as e:
                        logger.debug(f"No inference server at {base}: {e}")
                        continue
                    if response.is_success:
                        return base
        except Exception as e:
            logger.debug(f"Local endpoint probe failed: {e}")
        return None
