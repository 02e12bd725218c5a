import logging
import os
from typing import Iterable, List

from pydantic import ValidationError

from .models import CallRecord

logger = logging.getLogger(__name__)


def load_history(path: str) -> List[CallRecord]:
    """Read a JSON-lines call history. Missing file -> empty history."""
    records: List[CallRecord] = []
    try:
        with open(path, "rb") as f:
            for lineno, raw in enumerate(f, start=1):
                try:
                    line = raw.decode("utf-8").strip()
                    if not line:
                        continue
                    records.append(CallRecord.model_validate_json(line))
                except (UnicodeDecodeError, ValidationError) as e:
                    logger.warning("Skipping corrupt history line %d in %s: %s", lineno, path, e)
    except FileNotFoundError:
        logger.info("History file not found at %s; starting with empty history", path)
        return []
    records.sort(key=lambda r: r.timestamp)
    return records


def save_history(path: str, records: Iterable[CallRecord]) -> int:
    """Write the history atomically (temp file + rename); returns the line count."""
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    tmp_path = f"{path}.tmp"
    count = 0
    with open(tmp_path, "w", encoding="utf-8") as f:
        for record in sorted(records, key=lambda r: r.timestamp):
            f.write(record.model_dump_json())
            f.write("\n")
            count += 1
    os.replace(tmp_path, path)
    logger.info("Saved %d history records to %s", count, path)
    return count
