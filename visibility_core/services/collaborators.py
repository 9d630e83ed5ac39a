"""Collaborator interfaces the orchestrator drives.

Each collaborator returns a plain payload shaped like one upstream record;
the orchestrator stamps it with its kind before parsing. Failures are raised
as CollaboratorError (retryable or not).
"""

import importlib
from abc import ABC, abstractmethod

from visibility_core.schemas.records import Claim, TrackedEntityRecord


class ExtractionCollaborator(ABC):
    """Gathers facts about the entity from its web source."""

    @abstractmethod
    async def extract(self, entity: TrackedEntityRecord, job_id: int) -> dict:
        """Run extraction. Returns an extraction-job-shaped payload.

        Expected keys: status, progress, pages_discovered, pages_processed,
        error_message.
        """
        ...


class AnalysisCollaborator(ABC):
    """Queries external models about the entity."""

    @abstractmethod
    async def analyze(self, entity: TrackedEntityRecord) -> dict:
        """Run a visibility analysis. Returns a visibility-analysis-shaped payload."""
        ...


class NotabilityCollaborator(ABC):
    @abstractmethod
    async def assess(self, entity: TrackedEntityRecord) -> dict:
        """Returns a notability-shaped payload (is_notable, confidence, references, ...)."""
        ...


class PublishCollaborator(ABC):
    """Builds and writes the structured public record."""

    @abstractmethod
    async def build_claims(self, entity: TrackedEntityRecord) -> list[Claim]:
        """Full candidate claim set, before tier filtering."""
        ...

    @abstractmethod
    async def publish(
        self,
        entity: TrackedEntityRecord,
        claims: list[Claim],
        existing_record_id: str | None = None,
    ) -> str:
        """Write the filtered claims. Returns the persisted public-record id.

        ``existing_record_id`` is the entity's previously published record;
        when set, update that record instead of creating a new one.
        """
        ...


def load_collaborator(path: str, base: type) -> object:
    """Instantiate a collaborator from a ``package.module:ClassName`` path."""
    if not path or ":" not in path:
        raise ValueError(f"Collaborator path must look like 'package.module:ClassName', got {path!r}")

    module_name, _, class_name = path.partition(":")
    cls = getattr(importlib.import_module(module_name), class_name)
    if not issubclass(cls, base):
        raise TypeError(f"{path} is not a {base.__name__}")
    return cls()
