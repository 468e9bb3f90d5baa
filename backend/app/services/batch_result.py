"""Aggregate outcome of a batch sweep where items fail independently."""

from dataclasses import dataclass, field
from typing import Any


@dataclass
class BatchFailure:
    subscription_id: str
    error: str


@dataclass
class BatchResult:
    operation: str
    processed: int = 0
    failed: int = 0
    failures: list[BatchFailure] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.processed + self.failed

    def record_success(self) -> None:
        self.processed += 1

    def record_failure(self, subscription_id: Any, error: str) -> None:
        self.failed += 1
        self.failures.append(BatchFailure(subscription_id=str(subscription_id), error=error))

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "total": self.total,
            "processed": self.processed,
            "failed": self.failed,
            "failures": [
                {"subscription_id": f.subscription_id, "error": f.error} for f in self.failures
            ],
        }
