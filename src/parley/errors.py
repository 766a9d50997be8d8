from __future__ import annotations


class ParleyError(RuntimeError):
    pass


class DeliveryFailed(ParleyError):
    """The transport refused or failed to deliver an outbound message."""


class AgentUnavailable(ParleyError):
    """The agent runtime could not be reached."""


class AgentError(ParleyError):
    """The agent runtime reported a failure for a submitted message."""


class AttachmentRejected(ParleyError):
    pass


class AttachmentTooLarge(AttachmentRejected):
    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"attachment is {size} bytes, limit is {limit}")
        self.size = size
        self.limit = limit


class AttachmentDownloadFailed(AttachmentRejected):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason
