"""
Workflow Store — persisted workflow state across restarts.
===========================================================

Stores the current WorkflowState as a single keyed JSON blob with atomic
writes (tmp + fsync + rename). Every save replaces the whole blob; nothing
is merged, so a reset leaves no trace of the previous run.

File layout:
    {"key": "<workflow_state_key>", "version": 1, "state": {...}}
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from repartilo.config import settings
from repartilo.models.workflow import WorkflowState

logger = logging.getLogger(__name__)

BLOB_VERSION = 1


class WorkflowStore:
    """WorkflowState persistence backed by a JSON file with atomic writes."""

    def __init__(self, path: Optional[str] = None, key: Optional[str] = None):
        self._path = Path(path) if path else settings.get_workflow_state_path()
        self._key = key or settings.workflow_state_key

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> WorkflowState:
        """Return the persisted state, or a fresh one if absent or unusable."""
        if not self._path.exists():
            logger.info("No workflow state at %s — starting at upload", self._path)
            return WorkflowState()
        try:
            raw = json.loads(self._path.read_text())
            if not isinstance(raw, dict):
                logger.error("Workflow state at %s is not a JSON object — starting at upload", self._path)
                return WorkflowState()
            if raw.get("key") != self._key:
                logger.warning(
                    "Workflow state key mismatch (%r != %r) — starting at upload",
                    raw.get("key"), self._key,
                )
                return WorkflowState()
            state = WorkflowState.model_validate(raw.get("state", {}))
        except (OSError, ValueError, PydanticValidationError) as e:
            logger.error("Failed to load workflow state: %s — starting at upload", e)
            return WorkflowState()

        problems = state.invariant_violations()
        if problems:
            logger.warning("Discarding inconsistent workflow state: %s", "; ".join(problems))
            return WorkflowState()

        logger.info("Loaded workflow state: step=%s origin=%s", state.step.value, state.origin.value)
        return state

    def save(self, state: WorkflowState) -> None:
        """Atomic write: tmp → fsync → rename."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        blob = {
            "key": self._key,
            "version": BLOB_VERSION,
            "state": state.model_dump(mode="json"),
        }
        fd, tmp_path = tempfile.mkstemp(dir=str(self._path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(blob, f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, str(self._path))
        except Exception:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
