from dataclasses import dataclass, asdict


@dataclass
class QueueStats:
    name: str
    waiting: int
    processing: int
    completed: int
    failed: int
    concurrency: int

    @property
    def total(self) -> int:
        return self.waiting + self.processing + self.completed + self.failed

    def to_dict(self) -> dict[str, int | str]:
        return asdict(self)
