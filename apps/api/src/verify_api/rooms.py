"""LiveKit room lifecycle.

Creates the room for a verification call, dispatches the voice agent into
it, and deletes the room once the call is finalized.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol

from livekit import api

from verify_api.config import LiveKitConfig
from verify_api.errors import RoomServiceError

logger = logging.getLogger("verify-api.rooms")


def room_name_for(call_id: str) -> str:
    return f"verify-{call_id}"


@dataclass
class DispatchResult:
    """Result of a room + dispatch operation."""

    success: bool
    room_name: str | None = None
    dispatch_id: str | None = None
    error: str | None = None


class RoomService(Protocol):
    """What the API needs from the media transport."""

    async def start_call_room(
        self,
        room_name: str,
        room_metadata: dict[str, Any],
        agent_metadata: dict[str, Any],
    ) -> DispatchResult: ...

    async def delete_room(self, room_name: str) -> None: ...


class LiveKitRoomService:
    """RoomService backed by the LiveKit server API."""

    def __init__(self, config: LiveKitConfig | None = None):
        """Initialize the service.

        Args:
            config: LiveKit configuration. If not provided, loads from environment.
        """
        self.config = config or LiveKitConfig.from_env()

    def _api(self) -> api.LiveKitAPI:
        return api.LiveKitAPI(
            self.config.http_url,
            self.config.api_key,
            self.config.api_secret,
        )

    async def start_call_room(
        self,
        room_name: str,
        room_metadata: dict[str, Any],
        agent_metadata: dict[str, Any],
    ) -> DispatchResult:
        """Create the call's room and dispatch the verification agent into it.

        The agent dials the contact itself after joining; the number and
        contact data travel in agent_metadata.

        Args:
            room_name: Name for the new room.
            room_metadata: Stored on the room; carries callId so webhook
                events can be traced back to their session.
            agent_metadata: Handed to the agent job.

        Returns:
            DispatchResult with dispatch_id on success
        """
        if not self.config.is_configured():
            return DispatchResult(
                success=False,
                error="LiveKit not configured. Check LIVEKIT_URL, LIVEKIT_API_KEY and LIVEKIT_API_SECRET",
            )

        lkapi = self._api()
        try:
            room_created = False
            try:
                await lkapi.room.create_room(
                    api.CreateRoomRequest(
                        name=room_name,
                        empty_timeout=self.config.empty_timeout,
                        max_participants=self.config.max_participants,
                        metadata=json.dumps(room_metadata),
                    )
                )
                room_created = True
                logger.info(f"Created room {room_name}")

                dispatch = await lkapi.agent_dispatch.create_dispatch(
                    api.CreateAgentDispatchRequest(
                        agent_name=self.config.agent_name,
                        room=room_name,
                        metadata=json.dumps(agent_metadata),
                    )
                )
                logger.info(f"Dispatched {self.config.agent_name} to {room_name}: {dispatch.id}")

                return DispatchResult(success=True, room_name=room_name, dispatch_id=dispatch.id)

            except api.TwirpError as e:
                error_msg = f"LiveKit API error: {e.message}"

            except Exception as e:
                error_msg = f"Dispatch error: {e!s}"

            logger.error(error_msg)
            if room_created:
                await self._discard_room(lkapi, room_name)
            return DispatchResult(success=False, room_name=room_name, error=error_msg)

        finally:
            await lkapi.aclose()

    async def _discard_room(self, lkapi: api.LiveKitAPI, room_name: str) -> None:
        """Best-effort removal of a room whose agent never got dispatched."""
        try:
            await lkapi.room.delete_room(api.DeleteRoomRequest(room=room_name))
            logger.info(f"Deleted room {room_name} after failed dispatch")
        except Exception as e:
            logger.warning(f"Could not delete room {room_name}: {e!s}")

    async def delete_room(self, room_name: str) -> None:
        """Delete a room, disconnecting anyone still in it.

        Raises:
            RoomServiceError: LiveKit is not configured or the request failed.
        """
        if not self.config.is_configured():
            raise RoomServiceError("LiveKit not configured", room_name=room_name)

        lkapi = self._api()
        try:
            await lkapi.room.delete_room(api.DeleteRoomRequest(room=room_name))
            logger.info(f"Deleted room {room_name}")
        except api.TwirpError as e:
            raise RoomServiceError(f"LiveKit API error: {e.message}", room_name=room_name) from e
        except Exception as e:
            raise RoomServiceError(f"Room delete error: {e!s}", room_name=room_name) from e
        finally:
            await lkapi.aclose()
