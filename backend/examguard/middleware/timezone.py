"""
Adds the service display timezone to every response, so clients can render
report timestamps consistently
"""
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from ..utils.timezone import get_timezone_info


class TimezoneMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        timezone_info = get_timezone_info()
        response.headers["X-Timezone"] = timezone_info["timezone"]
        response.headers["X-Timezone-Offset"] = timezone_info["offset"]
        response.headers["X-Current-Time"] = timezone_info["current_time"]

        return response
