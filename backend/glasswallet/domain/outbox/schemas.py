from datetime import datetime

from glasswallet.shared.schemas import ApiResponseModel


class OutboxEventResponse(ApiResponseModel):
    event_id: str
    kind: str
    status: str
    attempts: int
    last_error: str | None
    next_attempt_at: datetime | None
    created_at: datetime
    dedupe_key: str


class OutboxReplayResponse(ApiResponseModel):
    event_id: str
    status: str
    next_attempt_at: datetime | None
    attempts: int
    last_error: str | None
