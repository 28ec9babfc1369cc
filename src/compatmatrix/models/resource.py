from datetime import datetime

from pydantic import BaseModel


class ResourceSnapshot(BaseModel):
    """One sample of host utilization.  Percentages are 0-100."""

    model_config = {"frozen": True}

    cpu_percent: float = 0.0
    memory_percent: float = 0.0
    load_avg: float = 0.0
    sampled_at: datetime

    @property
    def utilization(self) -> float:
        return max(self.cpu_percent, self.memory_percent)
