"""Result persistence.

Results are written as indented, key-sorted JSON so successive result files
diff cleanly. Writes go through a temporary file in the target directory and
``os.replace``, so a result file is either complete or absent.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from rtbench.error import ExportError
from rtbench.types import AggregateResult, RunResult

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


def _umask() -> int:
    # os.umask can only be read by setting it.
    mask = os.umask(0)
    os.umask(mask)
    return mask


Result = AggregateResult | RunResult


def to_document(result: Result) -> dict[str, Any]:
    """The JSON document written for a result."""
    if isinstance(result, AggregateResult):
        kind = "aggregate"
    elif isinstance(result, RunResult):
        kind = "run"
    else:
        raise ExportError(f"cannot export {type(result).__name__}")
    return {"format": FORMAT_VERSION, "kind": kind, "result": result.to_json()}


def from_document(document: dict[str, Any]) -> Result:
    if not isinstance(document, dict):
        raise ExportError(f"result document must be an object, not {type(document).__name__}")
    kind = document.get("kind")
    body = document.get("result")
    if not isinstance(body, dict):
        raise ExportError("result document has no 'result' object")
    if kind == "aggregate":
        return AggregateResult.from_json(body)
    if kind == "run":
        return RunResult.from_json(body)
    raise ExportError(f"unknown result kind {kind!r}")


def write(path: Path | str, result: Result) -> Path:
    """Serialize a result to ``path``.

    Raises:
        ExportError: If the path cannot be written. Not retried.
    """
    path = Path(path)
    document = to_document(result)
    try:
        text = json.dumps(document, indent=2, sort_keys=True, allow_nan=False) + "\n"
    except ValueError as e:
        raise ExportError(f"result for {path} is not serializable: {e}") from e

    tmp_name: str | None = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
        os.chmod(tmp_name, 0o666 & ~_umask())
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
        os.replace(tmp_name, path)
        tmp_name = None
    except OSError as e:
        raise ExportError(f"cannot write result to {path}: {e}") from e
    finally:
        if tmp_name is not None:
            try:
                os.unlink(tmp_name)
            except OSError:
                logger.debug("Could not remove temporary file %s", tmp_name)

    logger.info("Wrote %s result to %s", document["kind"], path)
    return path


def load(path: Path | str) -> Result:
    """Reload a result written by ``write``.

    Raises:
        ExportError: If the file is missing or malformed
    """
    path = Path(path)
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ExportError(f"cannot read result from {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ExportError(f"malformed result file {path}: {e}") from e
    try:
        return from_document(document)
    except (KeyError, TypeError, ValueError) as e:
        raise ExportError(f"malformed result file {path}: {e}") from e
