"""Contract every contact-data backend implements."""

from collections.abc import Mapping
from typing import Protocol, runtime_checkable

from verify_shared.schemas import CallLogEntry, ContactTarget

from verify_api.errors import SessionNotFoundError


@runtime_checkable
class BackendConnector(Protocol):
    """Writes normalized updates to one kind of contact record.

    Normalized updates use the field names in
    ``verify_shared.schemas.NORMALIZED_FIELDS``; the connector owns the
    mapping to its own column or property names.
    """

    name: str

    async def apply_update(
        self, target: ContactTarget, fields: Mapping[str, str]
    ) -> dict[str, str]:
        """Write fields to the target record.

        Returns:
            The subset of fields that were actually written.

        Raises:
            BackendError: The backend was unreachable or rejected the write.
        """
        ...

    async def log_call(self, target: ContactTarget, entry: CallLogEntry) -> bool:
        """Attach a call log to the target record, if the backend has one.

        Returns:
            True if a log entry was created.
        """
        ...


def connector_for(
    connectors: Mapping[str, BackendConnector], target: ContactTarget, call_id: str
) -> BackendConnector:
    """Pick the connector for a session's target kind."""
    connector = connectors.get(target.kind)
    if connector is None:
        raise SessionNotFoundError(
            call_id, f"No backend configured for {target.kind} targets (call {call_id})"
        )
    return connector
