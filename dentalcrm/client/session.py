# dentalcrm/client/session.py
import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Set

from .gateway import SecureApiClient
from .services import REQUEST_ERRORS, ServiceResult, error_message

logger = logging.getLogger(__name__)

LOADING = "loading"
UNAUTHENTICATED = "unauthenticated"
AUTHENTICATED = "authenticated"

SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"
TOKEN_REFRESHED = "TOKEN_REFRESHED"


class AuthSession:
    """Client-side auth state: loading, then authenticated or unauthenticated.

    Listeners are called with the session after every state change. Profile
    loads run as background tasks so an auth change never waits on the network.
    """

    def __init__(self, api: SecureApiClient):
        self.api = api
        self.state = LOADING
        self.user: Optional[Dict[str, Any]] = None
        self.profile: Optional[Dict[str, Any]] = None
        self._listeners: List[Callable[["AuthSession"], None]] = []
        self._tasks: Set[asyncio.Task] = set()
        self._generation = 0

    @property
    def is_authenticated(self) -> bool:
        return self.state == AUTHENTICATED

    @property
    def loading(self) -> bool:
        return self.state == LOADING

    @property
    def role(self) -> Optional[str]:
        source = self.profile or self.user or {}
        return source.get("role")

    def subscribe(self, listener: Callable[["AuthSession"], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as e:  # a faulty listener must not break the others
                logger.error(f"Auth listener failed: {e}")

    def _set_state(self, state: str, user: Optional[Dict[str, Any]]) -> None:
        self.state = state
        self.user = user
        if user is None:
            self.profile = None
        self._notify()

    async def start(self) -> None:
        """Resolve the initial session from the stored token."""
        if not self.api.token_store.get():
            self._set_state(UNAUTHENTICATED, None)
            return
        try:
            user = await self.api.get("/auth/me")
        except REQUEST_ERRORS as e:
            logger.warning(f"Stored session is not valid: {error_message(e)}")
            self._set_state(UNAUTHENTICATED, None)
            return
        self.profile = user
        self._set_state(AUTHENTICATED, user)

    def handle_auth_change(self, event: str, session: Optional[Dict[str, Any]]) -> None:
        """Apply an auth event. State is updated before this returns; the profile loads afterwards."""
        self._generation += 1
        self._cancel_tasks()
        if event == SIGNED_OUT or not session:
            self.api.token_store.clear()
            self._set_state(UNAUTHENTICATED, None)
            return
        if session.get("access_token"):
            self.api.token_store.set(session["access_token"])
        self._set_state(AUTHENTICATED, session.get("user"))
        self._spawn(self._load_profile(self._generation))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _cancel_tasks(self) -> None:
        for task in list(self._tasks):
            task.cancel()

    async def _load_profile(self, generation: int) -> None:
        try:
            profile = await self.api.get("/auth/me")
        except REQUEST_ERRORS as e:
            logger.error(f"Failed to load user profile: {error_message(e)}")
            return
        if generation != self._generation:
            logger.info("Dropping profile from a previous session")
            return
        if self.is_authenticated:
            self.profile = profile
            self._notify()

    async def wait_for_profile(self) -> None:
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def sign_in(self, email: str, password: str) -> ServiceResult:
        try:
            response = await self.api.request("POST", "/auth/token", data={"username": email, "password": password})
            session = response.json()
        except REQUEST_ERRORS as e:
            return ServiceResult(error=error_message(e))
        return self._signed_in(session)

    async def sign_up(self, email: str, password: str, full_name: str = None, role: str = None) -> ServiceResult:
        payload = {"email": email, "password": password}
        if full_name:
            payload["full_name"] = full_name
        if role:
            payload["role"] = role
        try:
            session = await self.api.post("/auth/signup", json=payload)
        except REQUEST_ERRORS as e:
            return ServiceResult(error=error_message(e))
        return self._signed_in(session)

    def _signed_in(self, session: Any) -> ServiceResult:
        if not isinstance(session, dict) or not session.get("access_token"):
            logger.error("Auth response did not contain an access token")
            return ServiceResult(error="Invalid response from server: missing access token")
        self.handle_auth_change(SIGNED_IN, session)
        return ServiceResult(data=session)

    async def sign_out(self) -> ServiceResult:
        error = None
        if self.api.token_store.get():
            try:
                await self.api.post("/auth/logout")
            except REQUEST_ERRORS as e:
                # Sign out locally even when the server call fails
                error = error_message(e)
        self.handle_auth_change(SIGNED_OUT, None)
        return ServiceResult(data=error is None, error=error)

    async def aclose(self) -> None:
        self._cancel_tasks()
        await self.wait_for_profile()
