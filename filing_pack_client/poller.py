import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol

from loguru import logger
from filing_pack_client.errors import (
    NO_WORKSPACE_MESSAGE,
    NoSubjectError,
    PlanUpgradeRequiredError,
    RequestError,
    TransientFetchError,
)
from filing_pack_client.models import (
    FilingPack,
    GenerateResponse,
    PollingConfig,
    PollPhase,
    Subject,
)


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """The subset of the asyncio event loop API the poller schedules with"""

    def time(self) -> float: ...

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle: ...


class JobStore(Protocol):
    async def get_status(self, subject: Subject) -> Optional[FilingPack]: ...

    async def generate(self, subject: Subject) -> GenerateResponse: ...

    async def regenerate(self, subject: Subject, pack_id: str) -> GenerateResponse: ...


@dataclass
class PollSession:
    """Bookkeeping for one active watch: its phase, tick count and timer handles"""

    subject: Subject
    started_at: float
    phase: PollPhase = PollPhase.fast
    ticks: int = 0
    active: bool = True
    tick_handle: Optional[TimerHandle] = None
    ceiling_handle: Optional[TimerHandle] = None
    poll_task: Optional[asyncio.Task] = None
    stopped: asyncio.Event = field(default_factory=asyncio.Event)


class FilingPackPoller:
    """Watches the filing pack of one subject at a time.

    Loading a pack that is still queued or generating, or requesting a new
    one, starts a poll session: the job store is polled every
    `fast_interval` seconds, then every `slow_interval` seconds once
    `fast_poll_limit` ticks have passed, until the pack is ready or failed
    or `ceiling` seconds have elapsed since the session started.
    """

    def __init__(
        self,
        store: JobStore,
        config: Optional[PollingConfig] = None,
        on_status_change: Optional[Callable[[FilingPack], Any]] = None,
        scheduler: Optional[Scheduler] = None,
    ):
        self.store = store
        self.config = config or PollingConfig()
        self.on_status_change = on_status_change
        self.logger = logger
        self._scheduler = scheduler

        self.subject: Optional[Subject] = None
        self.job: Optional[FilingPack] = None
        self.error: Optional[str] = None
        self.last_poll_error: Optional[TransientFetchError] = None
        self._loading = 0
        self._session: Optional[PollSession] = None
        self._poll_tasks: set[asyncio.Task] = set()

    async def __aenter__(self) -> "FilingPackPoller":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def is_loading(self) -> bool:
        return self._loading > 0

    @property
    def is_generating(self) -> bool:
        return self._session is not None and self._session.active

    @property
    def phase(self) -> Optional[PollPhase]:
        return self._session.phase if self.is_generating else None

    @property
    def session(self) -> Optional[PollSession]:
        return self._session

    def _get_scheduler(self) -> Scheduler:
        return self._scheduler or asyncio.get_running_loop()

    def _interval(self, phase: PollPhase) -> float:
        if phase == PollPhase.fast:
            return self.config.fast_interval
        return self.config.slow_interval

    def _switch_subject(self, subject: Optional[Subject]) -> None:
        if subject == self.subject:
            return
        if self._session is not None:
            self._stop_session(self._session, "subject changed")
        self.subject = subject
        self.job = None
        self.last_poll_error = None

    def _start_session(self, subject: Subject) -> PollSession:
        session = self._session
        if session is not None and session.active:
            if session.subject == subject:
                return session
            self._stop_session(session, "subject changed")

        scheduler = self._get_scheduler()
        session = PollSession(subject=subject, started_at=scheduler.time())
        session.tick_handle = scheduler.call_later(
            self._interval(session.phase), self._on_tick, session
        )
        session.ceiling_handle = scheduler.call_later(
            self.config.ceiling, self._on_ceiling, session
        )
        self._session = session
        self.logger.info(f"Started polling filing pack for {subject}")
        return session

    def _stop_session(self, session: PollSession, reason: str) -> None:
        if not session.active:
            return
        session.active = False
        for handle in (session.tick_handle, session.ceiling_handle):
            if handle is not None:
                handle.cancel()
        session.tick_handle = None
        session.ceiling_handle = None
        session.stopped.set()
        if self._session is session:
            self._session = None
        self.logger.info(
            f"Stopped polling filing pack for {session.subject} after {session.ticks} polls: {reason}"
        )

    def _is_current(self, session: PollSession) -> bool:
        return session.active and self._session is session

    def _on_tick(self, session: PollSession) -> None:
        if not self._is_current(session):
            return

        session.ticks += 1
        if session.phase == PollPhase.fast and session.ticks >= self.config.fast_poll_limit:
            session.phase = PollPhase.slow
            self.logger.debug(
                f"Slowing polling for {session.subject} to every {self.config.slow_interval}s"
            )
        session.tick_handle = self._get_scheduler().call_later(
            self._interval(session.phase), self._on_tick, session
        )

        if session.poll_task is not None and not session.poll_task.done():
            self.logger.debug(f"Previous poll for {session.subject} still in flight, skipping tick")
            return
        session.poll_task = asyncio.ensure_future(self._poll(session))
        self._poll_tasks.add(session.poll_task)
        session.poll_task.add_done_callback(self._poll_tasks.discard)

    def _on_ceiling(self, session: PollSession) -> None:
        if not self._is_current(session):
            return
        elapsed = self._get_scheduler().time() - session.started_at
        self.logger.info(
            f"Gave up watching filing pack for {session.subject} after {elapsed:.1f}s"
        )
        self._stop_session(session, "ceiling reached")

    async def _poll(self, session: PollSession) -> None:
        try:
            job = await self.store.get_status(session.subject)
        except (RequestError, asyncio.TimeoutError) as e:
            if self._is_current(session):
                self.last_poll_error = TransientFetchError(session.subject, e)
                self.logger.warning(f"Polling error: {self.last_poll_error}")
            return
        except Exception:
            self.logger.exception(f"Unexpected error polling filing pack for {session.subject}")
            return

        if not self._is_current(session):
            self.logger.debug(f"Discarding late status for stopped session {session.subject}")
            return

        self.last_poll_error = None
        if job is not None:
            await self._apply_job(job)

    async def _apply_job(self, job: FilingPack) -> None:
        """Caches an observed pack and stops polling once it is terminal"""
        previous = self.job
        self.job = job

        session = self._session
        if job.is_terminal and session is not None:
            self._stop_session(session, f"pack {job.status.value}")

        if previous is None or previous.status != job.status or previous.id != job.id:
            await self._handle_status_change(job)

    async def _handle_status_change(self, job: FilingPack) -> None:
        """Invoke the status change callback, logging anything it raises"""
        if self.on_status_change is None:
            return
        self.logger.debug(f"Filing pack {job.id} status changed to {job.status.value}")
        try:
            result = self.on_status_change(job)
            if inspect.isawaitable(result):
                await result
        except Exception:
            self.logger.exception("Filing pack status callback failed")

    async def load_status(self, subject: Optional[Subject]) -> Optional[FilingPack]:
        """Fetch the current pack for `subject`, polling while it is not terminal.

        Without a subject nothing is requested: the cached pack is cleared
        and `error` explains that no workspace is selected.
        """
        self._switch_subject(subject)
        if subject is None:
            self.job = None
            self.error = NO_WORKSPACE_MESSAGE
            return None

        self._loading += 1
        self.error = None
        try:
            job = await self.store.get_status(subject)
        except RequestError as e:
            if self.subject == subject:
                self.error = e.message or "Failed to load filing pack"
            raise
        finally:
            self._loading -= 1

        if self.subject != subject:
            return job

        if job is None:
            self.job = None
            return None

        if not job.is_terminal:
            self._start_session(subject)
        await self._apply_job(job)
        return job

    async def request_generation(self, subject: Optional[Subject]) -> Optional[FilingPack]:
        """Ask the job store to build a new pack for `subject` and watch it"""
        return await self._generate(subject, regenerate=False)

    async def request_regeneration(self, subject: Optional[Subject]) -> Optional[FilingPack]:
        """Ask the job store for a new version of the cached pack and watch it"""
        return await self._generate(subject, regenerate=True)

    async def _generate(self, subject: Optional[Subject], regenerate: bool) -> Optional[FilingPack]:
        if subject is None or not subject.business_id:
            self.error = NO_WORKSPACE_MESSAGE
            raise NoSubjectError()

        self._switch_subject(subject)
        if regenerate and self.job is None:
            self.error = "Filing pack not found"
            raise RequestError(404, self.error, "NOT_FOUND")

        self._loading += 1
        self.error = None
        session: Optional[PollSession] = None
        try:
            if regenerate:
                await self.store.regenerate(subject, self.job.id)
            else:
                await self.store.generate(subject)
            if self.subject != subject:
                self.logger.debug(f"Watched subject changed while generating {subject}, not polling it")
                return None
            session = self._start_session(subject)
            job = await self.store.get_status(subject)
        except RequestError as e:
            if session is not None:
                self._stop_session(session, "generation request failed")
            watched = self.subject == subject
            if e.requires_plan_upgrade:
                upgrade = PlanUpgradeRequiredError(e)
                if watched:
                    self.error = upgrade.message
                raise upgrade from e
            if watched:
                self.error = e.message or "Failed to generate filing pack"
            self.logger.error(f"Filing pack generation for {subject} failed: {e.message}")
            raise
        finally:
            self._loading -= 1

        if job is not None and self._is_current(session):
            await self._apply_job(job)
        return job

    def cancel(self, subject: Optional[Subject]) -> None:
        session = self._session
        if session is not None and session.subject == subject:
            self._stop_session(session, "cancelled")

    async def close(self) -> None:
        if self._session is not None:
            self._stop_session(self._session, "closed")

        tasks = [t for t in self._poll_tasks if t is not asyncio.current_task()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def wait_until_idle(self, timeout: Optional[float] = None) -> None:
        """Wait until the active poll session, if any, stops"""
        session = self._session
        if session is None:
            return
        await asyncio.wait_for(session.stopped.wait(), timeout)
