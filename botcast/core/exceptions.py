# botcast/core/exceptions.py
"""Engine error types. Provider failures live in services.chat_client.ChatApiError."""
from typing import Optional


class StructuralError(Exception):
    """Campaign, bot or configuration fact that a retry cannot change."""

    def __init__(self, reason: str, detail: Optional[str] = None):
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason}: {detail}" if detail else reason)


class JobStateError(Exception):
    """A queue state transition failed; the whole batch must roll back."""

    def __init__(self, job_id: Optional[int], message: str):
        self.job_id = job_id
        self.message = message
        super().__init__(f"job {job_id}: {message}")
