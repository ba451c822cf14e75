"""Runtime configuration for the sparecompute agent."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

# Broker endpoints
DEFAULT_BROKER_URL = "http://localhost:3002/api"
DEFAULT_SOCKET_URL = "ws://localhost:3002"

# Local OpenAI-compatible servers probed in order (LM Studio, Ollama)
DEFAULT_LOCAL_CANDIDATES = [
    "http://localhost:1234/v1",
    "http://localhost:11434/v1",
]

# Models advertised to the broker at registration
DEFAULT_CAPABILITIES = ["llama-3-70b", "gpt-4", "gemini-pro", "mistral-7b"]

# Pricing
DEFAULT_BASE_RATE = 0.0001  # per token

DEFAULT_DB_PATH = Path.home() / ".sparecompute" / "agent.db"

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class AgentConfig:
    """Settings shared by every component of an agent session."""

    broker_url: str = DEFAULT_BROKER_URL
    socket_url: str = DEFAULT_SOCKET_URL
    db_path: Path = DEFAULT_DB_PATH
    base_rate: float = DEFAULT_BASE_RATE
    capabilities: list[str] = field(default_factory=lambda: list(DEFAULT_CAPABILITIES))
    local_candidates: list[str] = field(default_factory=lambda: list(DEFAULT_LOCAL_CANDIDATES))

    # Frame type prefix used until the broker's first frame shows its own
    frame_prefix: str = ""

    # Timeouts (seconds)
    probe_timeout: float = 2.0
    registration_timeout: float = 10.0
    inference_timeout: float = 60.0
    connect_timeout: float = 10.0
    heartbeat_timeout: float | None = 90.0

    # Local completion parameters
    max_tokens: int = 1000
    temperature: float = 0.7

    # Reconnect backoff
    reconnect_initial_delay: float = 1.0
    reconnect_max_delay: float = 60.0
    reconnect_jitter: float = 0.25

    def __post_init__(self) -> None:
        self.db_path = Path(self.db_path)
        if self.base_rate < 0:
            raise ValueError(f"base_rate must be non-negative, got {self.base_rate}")
        self.broker_url = self.broker_url.rstrip("/")
