"""
Transaction journal for crash recovery.

A single journal file, ``metadata/journal.json``, describes the transaction in
flight: the manifest versions it started from, the record changes it intends
to make and the last state it reached. A later run reads it to decide whether
to roll the interrupted transaction back or forward.
"""

import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import orjson

from workload_py.errors import InconsistentStateError
from workload_py.records import atomic_write_bytes

logger = logging.getLogger("workload.journal")


@dataclass
class JournalEntry:
    """Persistent description of one in-flight transaction."""

    operation: str
    generation: str
    state: str
    previous_manifests: Dict[str, Optional[int]] = field(default_factory=dict)
    add_workloads: List[str] = field(default_factory=list)
    remove_workloads: List[str] = field(default_factory=list)
    new_generation: bool = False

    @classmethod
    def from_dict(cls, data: Dict) -> "JournalEntry":
        return cls(
            operation=data["operation"],
            generation=data["generation"],
            state=data["state"],
            previous_manifests=dict(data.get("previous_manifests") or {}),
            add_workloads=list(data.get("add_workloads") or []),
            remove_workloads=list(data.get("remove_workloads") or []),
            new_generation=bool(data.get("new_generation", False)),
        )


class TransactionJournal:
    """Reads and writes the journal file of an installation root."""

    def __init__(self, root: Path):
        self.path = root / "metadata" / "journal.json"

    def write(self, entry: JournalEntry) -> None:
        atomic_write_bytes(self.path, orjson.dumps(asdict(entry)))
        logger.debug(f"Journal: {entry.operation} {entry.generation} -> {entry.state}")

    def read(self) -> Optional[JournalEntry]:
        if not self.path.is_file():
            return None
        try:
            return JournalEntry.from_dict(orjson.loads(self.path.read_bytes()))
        except (OSError, orjson.JSONDecodeError, KeyError, TypeError) as e:
            raise InconsistentStateError(
                f"Transaction journal {self.path} is unreadable", str(e)
            ) from e

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
