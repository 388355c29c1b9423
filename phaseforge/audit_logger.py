import json
from pathlib import Path

from pydantic import TypeAdapter

from phaseforge.events import Event, RunEvent

_EVENT_ADAPTER = TypeAdapter(Event)


class AuditLogger:
    """
    Writes every event of a run to an append-only JSONL file,
    one file per feature: `<state_dir>/logs/<slug>.jsonl`.
    """

    def __init__(self, file_path: Path, slug: str):
        self.file_path = Path(file_path)
        self.slug = slug
        self.file_path.parent.mkdir(parents=True, exist_ok=True)

    @classmethod
    def for_feature(cls, logs_dir: Path, slug: str) -> "AuditLogger":
        return cls(logs_dir / f"{slug}.jsonl", slug)

    def log_event(self, event: RunEvent) -> None:
        record = {"feature": self.slug, **event.model_dump(mode="json")}
        with open(self.file_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(record) + "\n")

    def read_events(self) -> list[RunEvent]:
        """Replay the log back into typed events."""
        if not self.file_path.exists():
            return []
        events = []
        with open(self.file_path, "r", encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue
                data = json.loads(line)
                data.pop("feature", None)
                events.append(_EVENT_ADAPTER.validate_python(data))
        return events
