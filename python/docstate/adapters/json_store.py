import os
from pathlib import Path
from typing import Union

import structlog

from docstate.errors import NotFoundError, PersistenceError
from docstate.models import PersistResult, PersistSnapshot, UploadResult
from docstate.utils.clock import now

logger = structlog.get_logger(__name__)


class JsonFileStore:
    """
    Persistence collaborator writing each snapshot to one JSON file.
    Writes go to a sibling temp file first and are moved into place.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def __call__(self, snapshot: PersistSnapshot) -> PersistResult:
        return self.persist(snapshot)

    def persist(self, snapshot: PersistSnapshot) -> PersistResult:
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(snapshot.model_dump_json(indent=2), encoding="utf-8")
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error(f"Could not write {self.path}: {e}")
            if tmp_path.exists():
                tmp_path.unlink()
            return PersistResult(success=False, error=str(e))

        logger.debug(f"Wrote version {snapshot.version} to {self.path}")
        return PersistResult(success=True, saved_at=now())

    def load(self) -> PersistSnapshot:
        if not self.path.exists():
            raise NotFoundError("snapshot file", str(self.path))
        try:
            return PersistSnapshot.model_validate_json(self.path.read_text(encoding="utf-8"))
        except ValueError as e:
            raise PersistenceError(f"Corrupt snapshot file {self.path}: {e}") from e

    def load_upload_result(self) -> UploadResult:
        """The stored document in the shape DocumentState.load accepts."""
        snapshot = self.load()
        return UploadResult(
            paragraphs=[p.model_dump(exclude={"index", "change_sequence"}) for p in snapshot.paragraphs],
            formatting=snapshot.formatting,
            structure=snapshot.structure,
            styles=snapshot.styles,
            metadata=snapshot.metadata,
        )
