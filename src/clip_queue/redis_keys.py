from dataclasses import dataclass


@dataclass(frozen=True)
class QueueKeys:
    """
    Centralized Redis key names.

    This class is the single source of truth for all Redis structures.
    """

    prefix: str = "clipqueue"

    @property
    def pending(self) -> str:
        return f"{self.prefix}:jobs:queue"  # LIST → waiting job ids

    @property
    def processing(self) -> str:
        return f"{self.prefix}:jobs:processing"  # LIST → in-flight job ids

    def job(self, job_id: str) -> str:
        return f"{self.prefix}:job:{job_id}"  # STRING → job JSON

    def correlation(self, key: str) -> str:
        return f"{self.prefix}:key:{key}:job"  # STRING → current job id
