from __future__ import annotations

import uuid
from contextvars import ContextVar

from pydantic import Field

from common.ids import RequestId, UserId
from common.utils import ContextVarManager, JsonModel, use_context_var


def _new_request_id() -> RequestId:
    return RequestId(uuid.uuid4().hex)


class RequestContext(JsonModel):
    request_id: RequestId = Field(default_factory=_new_request_id)
    endpoint: str | None = None
    trigger: str | None = None

    user_id: UserId | None = None
    stripe_event_id: str | None = None

    @staticmethod
    def get() -> RequestContext:
        return _context_var.get()

    @staticmethod
    def get_or_none() -> RequestContext | None:
        return _context_var.get(None)

    @staticmethod
    def context(trigger: str | None = None) -> ContextVarManager[RequestContext]:
        return use_context_var(_context_var, RequestContext(trigger=trigger))


_context_var: ContextVar[RequestContext] = ContextVar("request_context")
