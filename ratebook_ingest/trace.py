from __future__ import annotations

from dataclasses import asdict, dataclass, field
import time
from typing import Any


USAGE_KEYS: tuple[str, ...] = ("calls", "prompt_tokens", "completion_tokens", "total_tokens")


@dataclass
class TraceStep:
    title: str
    summary: str | None = None
    data: Any | None = None
    llm_usage: dict[str, Any] | None = None
    elapsed_ms: int = 0


@dataclass
class ImportTrace:
    """Ordered record of the states an import passed through."""

    steps: list[TraceStep] = field(default_factory=list)
    started_at: float = field(default_factory=time.monotonic, repr=False)

    def add(
        self,
        title: str,
        *,
        summary: str | None = None,
        data: Any | None = None,
        llm_usage: dict[str, Any] | None = None,
    ) -> None:
        elapsed_ms = int((time.monotonic() - self.started_at) * 1000)
        self.steps.append(
            TraceStep(title=title, summary=summary, data=data, llm_usage=llm_usage or None, elapsed_ms=elapsed_ms)
        )

    @property
    def titles(self) -> list[str]:
        return [s.title for s in self.steps]

    @property
    def mapping_usage(self) -> dict[str, Any]:
        """Column-suggestion token usage summed over the steps that called a model."""
        totals: dict[str, Any] = {key: 0 for key in USAGE_KEYS}
        models: list[str] = []
        for step in self.steps:
            if not step.llm_usage:
                continue
            for key in USAGE_KEYS:
                totals[key] += int(step.llm_usage.get(key) or 0)
            model = step.llm_usage.get("model")
            if model and model not in models:
                models.append(str(model))
        totals["models"] = models
        return totals

    def to_dict(self) -> dict[str, Any]:
        return {"steps": [asdict(s) for s in self.steps], "mapping_usage": self.mapping_usage}
