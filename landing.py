"""
Redirect landing pages

Single-purpose pages that send the visitor to a fixed path after a fixed
delay, optionally letting them cancel while the countdown runs.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, Tuple, Union

logger = logging.getLogger(__name__)

REDIRECTING_MESSAGE = "Hang on! We are redirecting you..."


@dataclass(frozen=True)
class LandingPage:
    name: str
    target: str
    delay_seconds: float = 0
    cancellable: bool = False
    message: Optional[str] = None


LANDING_PAGES: Dict[str, LandingPage] = {
    "home": LandingPage("home", "/register", 0),
    "anonigview": LandingPage("anonigview", "/anonigview", 3, message=REDIRECTING_MESSAGE),
    "music": LandingPage("music", "/music", 3, cancellable=True, message=REDIRECTING_MESSAGE),
}


class RedirectState(str, Enum):
    IDLE = "idle"
    COUNTDOWN = "countdown"
    CANCELLED = "cancelled"
    NAVIGATED = "navigated"


class RedirectStateError(Exception):
    pass


Navigate = Callable[[str], Union[None, Awaitable[None]]]


class CountdownRedirect:
    def __init__(self, page: LandingPage):
        self.page = page
        self.state = RedirectState.IDLE
        self._cancelled: Optional[asyncio.Event] = None

    def start(self):
        if self.state != RedirectState.IDLE:
            raise RedirectStateError(f"Cannot start countdown from {self.state.value}")
        self.state = RedirectState.COUNTDOWN
        self._cancelled = asyncio.Event()

    def cancel(self):
        if self.state != RedirectState.COUNTDOWN:
            raise RedirectStateError(f"Nothing to cancel in state {self.state.value}")
        if not self.page.cancellable:
            raise RedirectStateError(f"Landing page {self.page.name} cannot be cancelled")
        self.state = RedirectState.CANCELLED
        self._cancelled.set()

    async def run(self, navigate: Navigate) -> RedirectState:
        """Start (if idle), wait out the delay, then navigate unless cancelled."""
        if self.state == RedirectState.IDLE:
            self.start()
        if self.state != RedirectState.COUNTDOWN:
            raise RedirectStateError(f"Cannot run countdown from {self.state.value}")
        try:
            await asyncio.wait_for(self._cancelled.wait(), timeout=self.page.delay_seconds)
        except asyncio.TimeoutError:
            pass
        if self.state == RedirectState.CANCELLED:
            logger.debug(f"Redirect from {self.page.name} cancelled")
            return self.state
        result = navigate(self.page.target)
        if asyncio.iscoroutine(result):
            await result
        self.state = RedirectState.NAVIGATED
        return self.state


def get_landing_page(name: str) -> Optional[LandingPage]:
    return LANDING_PAGES.get(name)


def refresh_header(page: LandingPage) -> str:
    return f"{int(page.delay_seconds)}; url={page.target}"


class CountdownRegistry:
    """Countdowns started by visitors, addressable by id until they finish."""

    def __init__(self):
        self.redirects: Dict[str, CountdownRedirect] = {}
        self.tasks: Dict[str, asyncio.Task] = {}

    def _prune(self):
        for countdown_id in [k for k, t in self.tasks.items() if t.done()]:
            self.tasks.pop(countdown_id)
            self.redirects.pop(countdown_id, None)

    def start(self, page: LandingPage) -> Tuple[str, CountdownRedirect]:
        self._prune()
        countdown_id = uuid.uuid4().hex
        redirect = CountdownRedirect(page)
        redirect.start()

        def navigate(target: str):
            logger.info(f"Countdown {countdown_id} from {page.name} reached {target}")

        self.redirects[countdown_id] = redirect
        self.tasks[countdown_id] = asyncio.create_task(redirect.run(navigate))
        return countdown_id, redirect

    def get(self, countdown_id: str, page_name: Optional[str] = None) -> Optional[CountdownRedirect]:
        redirect = self.redirects.get(countdown_id)
        if redirect is None or (page_name and redirect.page.name != page_name):
            return None
        return redirect

    def cancel(self, countdown_id: str, page_name: Optional[str] = None) -> Optional[CountdownRedirect]:
        redirect = self.get(countdown_id, page_name)
        if redirect is not None:
            redirect.cancel()
        return redirect

    async def shutdown(self):
        for task in self.tasks.values():
            task.cancel()
        await asyncio.gather(*self.tasks.values(), return_exceptions=True)
        self.tasks.clear()
        self.redirects.clear()


countdowns = CountdownRegistry()


def describe(page: LandingPage, state: RedirectState, countdown_id: Optional[str] = None) -> dict:
    view = {
        "name": page.name,
        "state": state.value,
        "target": page.target,
        "delay_seconds": page.delay_seconds,
        "cancellable": page.cancellable,
        "message": page.message if state == RedirectState.COUNTDOWN else None,
    }
    if countdown_id:
        view["id"] = countdown_id
    return view
