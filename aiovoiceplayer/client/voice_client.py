"""Host-side factory and registry of voice players."""

from __future__ import annotations

import asyncio
import logging

from aiohttp import ClientSession, ClientTimeout

from aiovoiceplayer.models.config import VoiceOptions
from aiovoiceplayer.voice.decode import DecodePipeline
from aiovoiceplayer.voice.player import VoicePlayer
from aiovoiceplayer.voice.signaling import SignalingClient
from aiovoiceplayer.voice.transport import TransportFactory

logger = logging.getLogger(__name__)


class VoiceClient:
    """
    Creates voice players and tracks one active player per collection.

    All players share the aiohttp session, the signaling client and the
    decode pipeline of the VoiceClient that created them.
    """

    _options: VoiceOptions
    """Settings passed to every player."""
    _session: ClientSession
    """aiohttp session for signaling and URL sources."""
    _owns_session: bool
    """Whether this client created the session and must close it."""
    _signaling: SignalingClient
    """Signaling client shared by all players."""
    _decoder: DecodePipeline
    """Decode pipeline shared by all players."""
    _transport_factory: TransportFactory | None
    """Transport factory passed to every player; None selects LiveKit."""
    _players: dict[str, VoicePlayer]
    """Players registered by collection identifier."""

    def __init__(
        self,
        options: VoiceOptions,
        *,
        session: ClientSession | None = None,
        decoder: DecodePipeline | None = None,
        transport_factory: TransportFactory | None = None,
    ) -> None:
        """
        Create a voice client.

        Args:
            options: Signaling endpoint and player settings.
            session: Optional aiohttp ClientSession. If None, a session is
                created and closed by close().
            decoder: Decode pipeline to share. Defaults to PyAV with an ffmpeg
                fallback, probed once here.
            transport_factory: Creates the relay transport for each connection.
                Defaults to LiveKitTransport.
        """
        self._options = options
        if session is None:
            self._session = ClientSession(timeout=ClientTimeout(total=None))
            self._owns_session = True
        else:
            self._session = session
            self._owns_session = False
        self._signaling = SignalingClient(options, self._session)
        self._decoder = decoder or DecodePipeline.default(ffmpeg_path=options.ffmpeg_path)
        self._transport_factory = transport_factory
        self._players = {}
        if not self._decoder.available:
            logger.warning("No audio decoder available; install PyAV or ffmpeg to play audio")

    @property
    def decoder(self) -> DecodePipeline:
        """Return the shared decode pipeline."""
        return self._decoder

    @property
    def players(self) -> dict[str, VoicePlayer]:
        """Return registered players by collection identifier."""
        return dict(self._players)

    def create_player(self, channel_id: str, collection_id: str) -> VoicePlayer:
        """
        Create an unregistered player for a voice channel.

        The caller manages the player's lifecycle.
        """
        return VoicePlayer(
            channel_id,
            collection_id,
            options=self._options,
            signaling=self._signaling,
            decoder=self._decoder,
            transport_factory=self._transport_factory,
            session=self._session,
        )

    def get_player(self, collection_id: str) -> VoicePlayer | None:
        """Return the registered player for a collection, if any."""
        return self._players.get(collection_id)

    async def connect_to_channel(self, channel_id: str, collection_id: str) -> VoicePlayer:
        """
        Connect the collection's player to a channel, creating it if needed.

        An existing player connected elsewhere switches channels.
        """
        player = self._players.get(collection_id)
        if player is None:
            player = self.create_player(channel_id, collection_id)
            self._players[collection_id] = player
            logger.debug("Registered player for collection %s", collection_id)
        await player.connect(channel_id)
        return player

    async def disconnect_from_channel(self, collection_id: str) -> None:
        """Disconnect and unregister the collection's player."""
        player = self._players.pop(collection_id, None)
        if player is None:
            logger.debug("No player registered for collection %s", collection_id)
            return
        await player.disconnect()

    async def stop_player_in_channel(self, collection_id: str) -> None:
        """Stop playback of the collection's player."""
        if (player := self._players.get(collection_id)) is not None:
            await player.stop()

    async def close(self) -> None:
        """Disconnect every registered player and release shared resources."""
        players = list(self._players.items())
        self._players.clear()
        if players:
            results = await asyncio.gather(
                *(player.disconnect() for _, player in players), return_exceptions=True
            )
            for (collection_id, _), result in zip(players, results, strict=True):
                if isinstance(result, Exception):
                    logger.warning("Error disconnecting player %s: %s", collection_id, result)
        if self._owns_session and not self._session.closed:
            await self._session.close()
            logger.debug("Closed internal client session")
