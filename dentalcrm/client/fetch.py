# dentalcrm/client/fetch.py
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Union

from .services import ServiceResult, error_message

logger = logging.getLogger(__name__)


class DataFetch:
    """Loading / error / data tracking around one async call.

    Each ``refetch`` cancels the request still in flight, so the latest call
    always wins. ``close`` cancels outstanding work; a closed fetch ignores
    further refetches. There is no cache and no sharing between instances.
    """

    def __init__(
        self,
        func: Callable[..., Awaitable[Any]],
        *args,
        require_auth: bool = False,
        is_authenticated: Union[bool, Callable[[], bool]] = True,
        on_error: Optional[Callable[[str], None]] = None,
        initial_data: Any = None,
        **kwargs,
    ):
        self.func = func
        self.args = args
        self.kwargs = kwargs
        self.require_auth = require_auth
        self.is_authenticated = is_authenticated
        self.on_error = on_error
        self.initial_data = initial_data

        self.data = initial_data
        self.error: Optional[str] = None
        self.loading = False
        self.closed = False
        self._task: Optional[asyncio.Task] = None

    def _authenticated(self) -> bool:
        if callable(self.is_authenticated):
            return bool(self.is_authenticated())
        return bool(self.is_authenticated)

    async def _run(self) -> ServiceResult:
        try:
            result = await self.func(*self.args, **self.kwargs)
        except Exception as e:  # surfaced through `error`, like a ServiceResult
            logger.error(f"Fetch via {getattr(self.func, '__qualname__', self.func)} failed: {e}")
            result = ServiceResult(error=error_message(e))
        if not isinstance(result, ServiceResult):
            result = ServiceResult(data=result)
        return result

    async def refetch(self) -> Optional[ServiceResult]:
        """Run the call again. Returns None when the call was cancelled or skipped."""
        if self.closed:
            return None
        if self.require_auth and not self._authenticated():
            self.data = self.initial_data
            self.error = None
            self.loading = False
            return None

        if self._task is not None and not self._task.done():
            self._task.cancel()

        task = asyncio.get_running_loop().create_task(self._run())
        self._task = task
        self.loading = True
        try:
            result = await task
        except asyncio.CancelledError:
            # Superseded by a newer refetch or closed; that call owns the state
            if task is not self._task or self.closed:
                return None
            raise

        if task is self._task:
            self.loading = False
            if result.error is not None:
                self.error = result.error
                if self.on_error:
                    self.on_error(result.error)
            else:
                self.error = None
                self.data = result.data
        return result

    async def close(self) -> None:
        self.closed = True
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self.loading = False
