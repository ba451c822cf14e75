"""AgentSession: the single object that owns one running agent."""

from __future__ import annotations

import asyncio
import logging

import httpx

from sparecompute.config import AgentConfig
from sparecompute.connection import ConnectionManager, Connector, TransportError
from sparecompute.dispatcher import InferenceDispatcher
from sparecompute.prober import CapabilityProber
from sparecompute.providers import LocalEndpointProvider, PlaceholderProvider
from sparecompute.registration import RegistrationClient, RegistrationError
from sparecompute.schemas import (
    AgentStatus,
    Capability,
    ConnectResult,
    EarningsResponse,
    PluginIdentity,
    SettingsResult,
    SettingsUpdate,
)
from sparecompute.state import ConnectionState
from sparecompute.store import CONNECTION_TOKEN, IDENTITY_KEYS, PLUGIN_ID, PRICING, CredentialStore

logger = logging.getLogger(__name__)


class AgentSession:
    """Wires prober, store, registration, dispatcher and connection together.

    Create one per process. Everything the UI collaborator may do goes
    through the public methods here.
    """

    def __init__(
        self,
        config: AgentConfig | None = None,
        *,
        store: CredentialStore | None = None,
        prober: CapabilityProber | None = None,
        registrar: RegistrationClient | None = None,
        connector: Connector | None = None,
        local_transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config or AgentConfig()
        self.store = store or CredentialStore(self.config.db_path)
        self.prober = prober or CapabilityProber(
            self.store,
            candidates=self.config.local_candidates,
            timeout=self.config.probe_timeout,
        )

        pricing = self.store.get(PRICING)
        self.pricing = float(pricing) if isinstance(pricing, (int, float)) and pricing >= 0 else self.config.base_rate

        self.registrar = registrar or RegistrationClient(
            broker_url=self.config.broker_url,
            pricing=self.pricing,
            capabilities=self.config.capabilities,
            timeout=self.config.registration_timeout,
        )

        self.capability = self.prober.load() or Capability()
        self.local_provider = LocalEndpointProvider(
            endpoint=self.capability.local_endpoint,
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
            timeout=self.config.inference_timeout,
            transport=local_transport,
        )
        self.dispatcher = InferenceDispatcher(
            [self.local_provider, PlaceholderProvider()],
            base_rate=self.pricing,
        )
        self.connection = ConnectionManager(
            self.config,
            self.dispatcher,
            self._ensure_identity,
            connector=connector,
        )

    # --- Lifecycle ---

    async def start(self) -> None:
        """Detect capabilities and reconnect if this agent registered before."""
        await self.detect_capability()
        if self.load_identity() is None:
            logger.info("No stored identity; waiting for an explicit connect")
            return
        try:
            await self.connection.connect()
        except (RegistrationError, TransportError) as e:
            logger.warning(f"Automatic connect failed: {e}")

    async def close(self) -> None:
        await self.connection.close()

    # --- Identity and capability ---

    def load_identity(self) -> PluginIdentity | None:
        """Return the stored identity, or None when not yet registered."""
        values = self.store.get_many(IDENTITY_KEYS)
        plugin_id = values.get(PLUGIN_ID)
        token = values.get(CONNECTION_TOKEN)
        if not isinstance(plugin_id, str) or not isinstance(token, str) or not plugin_id or not token:
            return None
        return PluginIdentity(plugin_id=plugin_id, connection_token=token)

    def reset_identity(self) -> None:
        """Forget the stored identity; the next connect registers again."""
        self.store.delete_identity()

    async def _ensure_identity(self) -> PluginIdentity:
        identity = self.load_identity()
        if identity is not None:
            return identity

        if self.prober.load() is None:
            await self.detect_capability()
        identity = await self.registrar.register(self.capability)
        self.store.set_many({
            PLUGIN_ID: identity.plugin_id,
            CONNECTION_TOKEN: identity.connection_token,
        })
        return identity

    async def detect_capability(self, force: bool = False) -> Capability:
        capability = await asyncio.to_thread(self.prober.detect, force)
        self._use_capability(capability)
        return capability

    def _use_capability(self, capability: Capability) -> None:
        self.capability = capability
        self.local_provider.endpoint = capability.local_endpoint

    def _use_pricing(self, pricing: float) -> None:
        self.pricing = pricing
        self.dispatcher.base_rate = pricing
        self.registrar.pricing = pricing

    # --- Status surface ---

    def get_status(self) -> AgentStatus:
        identity = self.load_identity()
        return AgentStatus(
            is_connected=self.connection.is_connected,
            state=self.connection.state.value,
            plugin_id=identity.plugin_id if identity else None,
            capability=self.capability,
        )

    @property
    def state(self) -> ConnectionState:
        return self.connection.state

    async def connect(self) -> ConnectResult:
        """Connect to the broker.

        Raises:
            RegistrationError: registration was rejected or failed.
            TransportError: the socket could not be established; a retry is scheduled.
        """
        return await self.connection.connect()

    async def disconnect(self) -> ConnectResult:
        return await self.connection.disconnect()

    async def update_settings(self, update: SettingsUpdate) -> SettingsResult:
        """Apply a partial settings update and persist it."""
        capability = await self.detect_capability(force=True) if update.redetect else self.capability

        changes = {}
        if update.gpu_descriptor is not None:
            changes["gpu_descriptor"] = update.gpu_descriptor or None
        if update.local_endpoint is not None:
            changes["local_endpoint"] = update.local_endpoint.rstrip("/") or None
        if changes:
            capability = capability.model_copy(update=changes)
            self.prober.save(capability)
        self._use_capability(capability)

        if update.pricing is not None:
            self.store.set_many({PRICING: update.pricing})
            self._use_pricing(update.pricing)

        logger.info(f"Settings updated: {sorted(changes) + (['pricing'] if update.pricing is not None else [])}")
        return SettingsResult(success=True, capability=self.capability, pricing=self.pricing)

    async def get_earnings(self) -> EarningsResponse:
        """Return earnings from the broker; zero on any failure."""
        identity = self.load_identity()
        if identity is None:
            return EarningsResponse(earnings=0.0)

        try:
            data = await self.registrar.fetch_earnings(identity.plugin_id)
            return EarningsResponse(earnings=float(data.get("earnings") or 0.0))
        except Exception as e:
            logger.warning(f"Could not fetch earnings: {e}")
            return EarningsResponse(earnings=0.0, error=str(e))
