"""Request and response shapes shared by the proxy pipeline."""

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field


@dataclass(frozen=True)
class ProxyRequest:
    """One inbound ``/proxy`` call. Immutable; lives for the request only."""

    target_url: str
    request_id: str
    received_at: float  # event-loop clock, used for the overall deadline
    range_header: str | None = None
    user_agent: str | None = None

    @property
    def url_preview(self) -> str:
        url = self.target_url
        if len(url) > 60:
            return f"{url[:30]}...{url[-30:]}"
        return url


class ErrorDetails(BaseModel):
    type: str
    code: str | None = None
    timestamp: str
    message: str | None = None
    upstream_status: int | None = Field(default=None, serialization_alias="upstreamStatus")
    attempts: int | None = None


class ErrorEnvelope(BaseModel):
    """JSON body returned for every failure that happens before streaming."""

    error: str
    message: str | None = None
    details: ErrorDetails | None = None
    solution: str | None = None
    retry_after: int | None = Field(default=None, serialization_alias="retryAfter")

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True, by_alias=True)
