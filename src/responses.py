import inspect
import logging
from typing import Callable, Optional

from fastapi.responses import StreamingResponse

logger = logging.getLogger(__name__)


class ClosingStreamingResponse(StreamingResponse):
    """
    StreamingResponse that always closes its body generator once the response
    ends, whether the body finished, the client disconnected, or sending
    failed. Cleanup in the generator's ``finally`` therefore runs on the
    request's own task instead of whenever the generator is collected.

    ``on_close`` (sync or async) runs afterwards on every exit path, including
    a disconnect that arrives before the generator ever started.
    """

    def __init__(self, content, *args, on_close: Optional[Callable] = None, **kwargs):
        super().__init__(content, *args, **kwargs)
        self.on_close = on_close

    async def __call__(self, scope, receive, send):
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.close()

    async def close(self):
        try:
            aclose = getattr(self.body_iterator, "aclose", None)
            if aclose is not None:
                await aclose()
        finally:
            if self.on_close is not None:
                result = self.on_close()
                if inspect.isawaitable(result):
                    await result
