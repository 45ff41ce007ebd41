"""Remote measurement stores: one CRUD interface over interchangeable backends."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from glycosync.core.storage.models import Measurement


@runtime_checkable
class RemoteMeasurementStore(Protocol):
    """Capability interface for remote measurement storage.

    The SyncCoordinator calls these methods without knowing whether the
    backend is a relational REST API or an encrypted document store.
    Every method requires an authenticated session and raises
    ``AuthenticationError`` before any network call when there is none.
    """

    async def get_measurements(self) -> list[Measurement]:
        """All of the user's measurements, newest first; malformed records skipped."""
        ...

    async def add_measurement(self, measurement: Measurement) -> Measurement:
        """Upsert by ``(id, user)``: re-adding the same id updates in place."""
        ...

    async def delete_measurement(self, measurement_id: str) -> None:
        """Delete by id; succeeds silently when the id is absent."""
        ...

    @property
    def backend_name(self) -> str:
        """Label for the backend: 'http' or 'document'."""
        ...
