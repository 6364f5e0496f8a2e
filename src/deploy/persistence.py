"""Persistence of the desired-state artifact.

The artifact lives at a fixed path under the engine root, never relative
to the working directory:

    <root>/generated/thinkdeploy.auto.tfvars.json   (0600, carries credentials)
    <root>/generated/thinkdeploy.plan               (saved plan)
    <root>/.thinkdeploy_last_tfvars                 (pointer, absolute path)

Writes go to a temp file in the same directory and are published with
os.replace() after the serialized form has been re-parsed and compared to
the in-memory document.
"""

import hashlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from desired_state import DesiredStateDocument, decode_tfvars, encode_tfvars
from errors import ConfigurationError

logger = logging.getLogger(__name__)

ARTIFACT_NAME = 'thinkdeploy.auto.tfvars.json'
PLAN_NAME = 'thinkdeploy.plan'
POINTER_NAME = '.thinkdeploy_last_tfvars'

ARTIFACT_MODE = 0o600
POINTER_MODE = 0o644


def atomic_write(path: Path, text: str, mode: int) -> None:
    """Write text to path via temp file + os.replace, with the given mode."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f'.{path.name}.', suffix='.tmp')
    try:
        os.fchmod(fd, mode)
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def file_digest(path: Path) -> str:
    """SHA-256 of a file's contents."""
    sha = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(65536), b''):
            sha.update(chunk)
    return sha.hexdigest()


class DesiredStateStore:
    """Reads and writes the desired-state artifact for one engine root."""

    def __init__(self, root: Path):
        self.root = Path(root).resolve()

    @property
    def generated_dir(self) -> Path:
        return self.root / 'generated'

    @property
    def artifact_path(self) -> Path:
        return self.generated_dir / ARTIFACT_NAME

    @property
    def plan_path(self) -> Path:
        return self.generated_dir / PLAN_NAME

    @property
    def pointer_path(self) -> Path:
        return self.root / POINTER_NAME

    def serialize(self, doc: DesiredStateDocument) -> str:
        """Serialize and verify the document survives a parse round trip.

        Raises:
            ConfigurationError: the serialized form does not decode back to doc
        """
        try:
            text = json.dumps(encode_tfvars(doc), indent=2, sort_keys=True) + '\n'
        except TypeError as e:
            raise ConfigurationError(f"Desired state is not JSON-serializable: {e}") from e
        decoded = decode_tfvars(json.loads(text))
        if decoded != doc:
            raise ConfigurationError(
                "Serialized desired state does not match the in-memory document",
                remedy="Check for attributes that cannot be represented in JSON",
            )
        return text

    def write(self, doc: DesiredStateDocument) -> Path:
        """Publish doc as the current artifact and update the pointer."""
        text = self.serialize(doc)
        atomic_write(self.artifact_path, text, ARTIFACT_MODE)
        atomic_write(self.pointer_path, f"{self.artifact_path}\n", POINTER_MODE)
        logger.info(f"Wrote desired state: {self.artifact_path}")
        return self.artifact_path

    def last_artifact(self) -> Optional[Path]:
        """Artifact recorded by the pointer file, if it still exists."""
        if not self.pointer_path.exists():
            return None
        target = Path(self.pointer_path.read_text(encoding='utf-8').strip())
        if not target.is_absolute() or not target.exists():
            logger.warning(f"Pointer {self.pointer_path} names a missing artifact: {target}")
            return None
        return target

    def read(self, path: Optional[Path] = None) -> DesiredStateDocument:
        """Load an artifact back into a document (default: the last one)."""
        path = path or self.last_artifact()
        if path is None:
            raise ConfigurationError(
                "No previous desired state artifact found",
                remedy="Run 'thinkdeploy deploy apply -D <file>' first",
            )
        try:
            with open(path, encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Corrupt artifact {path}: {e}") from e
        return decode_tfvars(data)
