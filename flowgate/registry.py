"""
Flowgate Workflow Registry

Storage and retrieval of workflow definitions and run snapshots.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import structlog

from flowgate.errors import DefinitionConflict, UnknownWorkflow
from flowgate.types import Criticality, RunContext, RunStatus, WorkflowDefinition
from flowgate.validation import validate, version_key

logger = structlog.get_logger(__name__)


class WorkflowRegistry:
    """
    Registry for workflow definitions and runs.

    Features:
    - Validated, immutable definitions keyed by (use_case_id, version)
    - Idempotent registration by content fingerprint
    - Latest-version resolution by semantic version ordering
    - Query, export and import
    - Run snapshot storage and queries
    - Optional JSON persistence of definitions
    """

    def __init__(
        self,
        catalogue: Optional[Callable[[], Iterable[Tuple[str, str, str]]]] = None,
        persistence_path: Optional[Path] = None,
        auto_persist: bool = True,
    ):
        self._catalogue = catalogue
        self.persistence_path = Path(persistence_path) if persistence_path else None
        self.auto_persist = auto_persist

        # Storage
        self._definitions: Dict[Tuple[str, str], WorkflowDefinition] = {}
        self._fingerprints: Dict[Tuple[str, str], str] = {}
        self._registered_at: Dict[Tuple[str, str], datetime] = {}
        self._runs: Dict[str, RunContext] = {}

        # Indices
        self._versions: Dict[str, List[str]] = {}  # use_case_id -> sorted versions
        self._by_tag: Dict[str, List[Tuple[str, str]]] = {}

        # Event callbacks
        self._on_definition_registered: List[Callable] = []

        self._initialized = False
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Initialize the registry."""
        if self._initialized:
            return

        if self.persistence_path and self.persistence_path.exists():
            await self._load_from_disk()

        self._initialized = True
        logger.info("workflow_registry_initialized", definition_count=len(self._definitions))

    async def shutdown(self) -> None:
        """Shutdown the registry."""
        if self.persistence_path and self.auto_persist:
            await self._save_to_disk()

        self._initialized = False

    # === Definition Operations ===

    async def register(self, definition: WorkflowDefinition) -> bool:
        """
        Validate and store a definition.

        Returns:
            True if stored, False if an identical definition already exists

        Raises:
            InvalidDefinition: if validation fails
            DefinitionConflict: if the key holds different content
        """
        catalogue = self._catalogue() if self._catalogue else None
        validate(definition, catalogue)

        key = definition.key
        fingerprint = definition.fingerprint()

        async with self._lock:
            existing = self._fingerprints.get(key)
            if existing is not None:
                if existing == fingerprint:
                    logger.debug(
                        "definition_unchanged",
                        use_case_id=definition.use_case_id,
                        version=definition.version,
                    )
                    return False

                logger.warning(
                    "definition_conflict",
                    use_case_id=definition.use_case_id,
                    version=definition.version,
                )
                raise DefinitionConflict(definition.use_case_id, definition.version)

            self._definitions[key] = definition
            self._fingerprints[key] = fingerprint
            self._registered_at[key] = datetime.now()
            self._update_indices(definition)

            if self.persistence_path and self.auto_persist:
                await self._save_to_disk()

        logger.info(
            "definition_registered",
            use_case_id=definition.use_case_id,
            version=definition.version,
            steps=len(definition.steps),
            triggers=len(definition.triggers),
        )

        await self._fire_callbacks(self._on_definition_registered, definition)
        return True

    async def register_dict(self, data: Dict[str, Any]) -> Tuple[WorkflowDefinition, bool]:
        """Parse and register a definition from its dictionary form."""
        definition = WorkflowDefinition.from_dict(data)
        created = await self.register(definition)
        return self._definitions[definition.key], created

    def find(self, use_case_id: str, version: Optional[str] = None) -> Optional[WorkflowDefinition]:
        """Get a definition, resolving the latest version when none is given."""
        if version is None:
            version = self.latest_version(use_case_id)
            if version is None:
                return None
        return self._definitions.get((use_case_id, version))

    def get(self, use_case_id: str, version: Optional[str] = None) -> WorkflowDefinition:
        """Get a definition or raise UnknownWorkflow."""
        definition = self.find(use_case_id, version)
        if definition is None:
            raise UnknownWorkflow(use_case_id, version)
        return definition

    def list_versions(self, use_case_id: str) -> List[str]:
        """Versions of a use case in ascending semantic order."""
        return list(self._versions.get(use_case_id, []))

    def latest_version(self, use_case_id: str) -> Optional[str]:
        versions = self._versions.get(use_case_id)
        return versions[-1] if versions else None

    def list(
        self,
        criticality: Optional[Criticality] = None,
        tag: Optional[str] = None,
        industry: Optional[str] = None,
        search: Optional[str] = None,
        latest_only: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> List[WorkflowDefinition]:
        """List definitions with filters."""
        definitions = list(self._definitions.values())

        if latest_only:
            definitions = [
                d for d in definitions if d.version == self.latest_version(d.use_case_id)
            ]

        if criticality:
            definitions = [d for d in definitions if d.metadata.criticality == criticality]

        if tag:
            keys = set(self._by_tag.get(tag, []))
            definitions = [d for d in definitions if d.key in keys]

        if industry:
            definitions = [d for d in definitions if d.metadata.industry == industry]

        if search:
            search_lower = search.lower()
            definitions = [
                d for d in definitions
                if search_lower in d.name.lower()
                or search_lower in d.description.lower()
                or search_lower in d.use_case_id.lower()
            ]

        definitions.sort(key=lambda d: (d.use_case_id, version_key(d.version)))

        return definitions[offset:offset + limit]

    def count(self) -> int:
        return len(self._definitions)

    # === Export / Import ===

    def export(self, use_case_id: Optional[str] = None) -> Dict[str, Any]:
        """Export definitions as a JSON-ready document."""
        definitions = [
            d for d in self.list(limit=len(self._definitions) or 1)
            if use_case_id is None or d.use_case_id == use_case_id
        ]
        return {
            "definitions": [d.to_dict() for d in definitions],
            "exported_at": datetime.now().isoformat(),
        }

    async def import_definitions(self, data: Dict[str, Any]) -> int:
        """
        Register every definition of an exported document.

        Identical definitions are skipped; conflicting or invalid ones raise.

        Returns:
            Number of newly stored definitions
        """
        created = 0
        for definition_data in data.get("definitions", []):
            _, is_new = await self.register_dict(definition_data)
            created += int(is_new)
        return created

    # === Run Operations ===

    async def save_run(self, run: RunContext) -> str:
        """Store a run."""
        self._runs[run.run_id] = run
        return run.run_id

    def get_run(self, run_id: str) -> Optional[RunContext]:
        return self._runs.get(run_id)

    def list_runs(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[RunStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[RunContext]:
        """List runs with filters, newest first."""
        runs = list(self._runs.values())

        if workflow_id:
            runs = [r for r in runs if r.workflow_id == workflow_id]

        if status:
            runs = [r for r in runs if r.status == status]

        runs.sort(key=lambda r: r.created_at, reverse=True)

        return runs[offset:offset + limit]

    def count_runs(self) -> int:
        return len(self._runs)

    def find_active_run(self, dedupe_key: str) -> Optional[RunContext]:
        """Non-terminal run holding a dedupe key, if any."""
        for run in self._runs.values():
            if run.dedupe_key == dedupe_key and not run.is_terminal():
                return run
        return None

    # === Indexing ===

    def _update_indices(self, definition: WorkflowDefinition) -> None:
        versions = self._versions.setdefault(definition.use_case_id, [])
        versions.append(definition.version)
        versions.sort(key=version_key)

        for tag in definition.metadata.tags:
            self._by_tag.setdefault(tag, []).append(definition.key)

    # === Event Callbacks ===

    def on_definition_registered(self, callback: Callable) -> None:
        """Register callback for newly stored definitions."""
        self._on_definition_registered.append(callback)

    async def _fire_callbacks(self, callbacks: List[Callable], *args) -> None:
        """Fire callbacks."""
        for callback in callbacks:
            try:
                result = callback(*args)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error("callback_error", error=str(e))

    # === Persistence ===

    async def _load_from_disk(self) -> None:
        """Load definitions from disk."""
        definitions_file = self.persistence_path / "definitions.json"
        if not definitions_file.exists():
            return

        try:
            with open(definitions_file, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error("definitions_load_error", path=str(definitions_file), error=str(e))
            return

        # Persisted definitions were validated when first registered
        for definition_data in data.get("definitions", []):
            definition = WorkflowDefinition.from_dict(definition_data)
            key = definition.key
            if key in self._definitions:
                continue
            self._definitions[key] = definition
            self._fingerprints[key] = definition.fingerprint()
            self._registered_at[key] = datetime.now()
            self._update_indices(definition)

        logger.info("definitions_loaded", count=len(self._definitions))

    async def _save_to_disk(self) -> None:
        """Save definitions to disk."""
        if not self.persistence_path:
            return

        try:
            self.persistence_path.mkdir(parents=True, exist_ok=True)

            definitions_file = self.persistence_path / "definitions.json"
            data = {
                "definitions": [d.to_dict() for d in self._definitions.values()],
                "saved_at": datetime.now().isoformat(),
            }

            with open(definitions_file, "w") as f:
                json.dump(data, f, indent=2, default=str)

        except OSError as e:
            logger.error("definitions_save_error", error=str(e))

    # === Statistics ===

    def get_stats(self) -> Dict[str, Any]:
        """Get registry statistics."""
        run_status_counts = {status.value: 0 for status in RunStatus}
        for run in self._runs.values():
            run_status_counts[run.status.value] += 1

        criticality_counts: Dict[str, int] = {}
        for definition in self._definitions.values():
            level = definition.metadata.criticality.value
            criticality_counts[level] = criticality_counts.get(level, 0) + 1

        return {
            "total_definitions": len(self._definitions),
            "total_use_cases": len(self._versions),
            "definitions_by_criticality": criticality_counts,
            "total_runs": len(self._runs),
            "runs_by_status": run_status_counts,
            "total_tags": len(self._by_tag),
        }
