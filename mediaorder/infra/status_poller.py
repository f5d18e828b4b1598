"""
任务状态轮询器

对调用方提供的 fetch_status(job_id) 反复调用，直到任务进入终态、超时或被取消。
包括：
- 单任务轮询（start_polling）与批量轮询（poll_multiple）
- 状态机 pending -> processing -> completed / failed / cancelled（只前进，不回退）
- 超时处理（从 start_polling 起计时，不因重试重置）
- 可重试错误继续轮询，不可重试错误立即停止
- 每个轮询会话一个可取消的 asyncio.Task，外加一个事件队列供调用方消费
"""

import asyncio
import inspect
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, Mapping

from mediaorder.config import Settings, get_settings
from mediaorder.infra.gateway_errors import (
    ErrorClassifier,
    GatewayError,
    PollingTimeoutError,
    RateLimitError,
    ValidationError,
)

logger = logging.getLogger(__name__)


class PollingState(str, Enum):
    """轮询状态"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    PollingState.COMPLETED,
    PollingState.FAILED,
    PollingState.CANCELLED,
})

# 状态只能沿此顺序前进
_STATE_RANK = {
    PollingState.PENDING: 0,
    PollingState.PROCESSING: 1,
    PollingState.COMPLETED: 2,
    PollingState.FAILED: 2,
    PollingState.CANCELLED: 2,
}

DEFAULT_TERMINAL_STATUSES: dict[str, PollingState] = {
    "ready": PollingState.COMPLETED,
    "completed": PollingState.COMPLETED,
    "error": PollingState.FAILED,
    "failed": PollingState.FAILED,
    "cancelled": PollingState.CANCELLED,
    "canceled": PollingState.CANCELLED,
}

DEFAULT_PENDING_STATUSES = frozenset({"pending", "queued", "submitted"})


@dataclass(frozen=True)
class JobSnapshot:
    """一次状态查询的归一化结果"""
    job_id: str
    status: str
    progress: int | None = None
    files: tuple[str, ...] = ()
    message: str | None = None


FetchStatus = Callable[[str], Awaitable[JobSnapshot]]


class PollingEventType(str, Enum):
    """轮询事件类型"""
    STATUS_CHANGE = "status_change"
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ERROR = "error"
    TIMEOUT = "timeout"
    STOPPED = "stopped"


_TERMINAL_EVENTS = {
    PollingState.COMPLETED: PollingEventType.COMPLETED,
    PollingState.FAILED: PollingEventType.FAILED,
    PollingState.CANCELLED: PollingEventType.CANCELLED,
}


@dataclass(frozen=True)
class PollingEvent:
    """轮询事件"""
    type: PollingEventType
    job_id: str
    state: PollingState
    snapshot: JobSnapshot | None = None
    error: GatewayError | None = None


@dataclass
class PollingOptions:
    """
    轮询选项

    interval / max_polling_time 为 None 时使用配置中的默认值
    （单任务 poll_interval，批量 batch_poll_interval）。
    回调可以是普通函数或协程函数：
    - on_status_change(session): 派生状态变化时
    - on_progress(session): 进度变化时
    - on_completion(session): 进入 completed 时
    - on_error(session, error): 查询失败或轮询超时时
    """
    interval: float | None = None
    max_polling_time: float | None = None
    stop_on_error: bool = True
    stop_on_completion: bool = True
    terminal_statuses: Mapping[str, PollingState] = field(
        default_factory=lambda: dict(DEFAULT_TERMINAL_STATUSES)
    )
    pending_statuses: frozenset[str] = DEFAULT_PENDING_STATUSES
    status_intervals: Mapping[PollingState, float] | None = None
    fetch_timeout: float | None = None
    max_backoff: float | None = None
    on_status_change: Callable[..., Any] | None = None
    on_progress: Callable[..., Any] | None = None
    on_completion: Callable[..., Any] | None = None
    on_error: Callable[..., Any] | None = None


@dataclass
class PollingSession:
    """单个任务的轮询会话"""
    job_id: str
    started_at: float
    state: PollingState = PollingState.PENDING
    attempts: int = 0
    consecutive_errors: int = 0
    last_snapshot: JobSnapshot | None = None
    error: GatewayError | None = None
    timed_out: bool = False
    is_active: bool = True
    finished_at: float | None = None
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    @property
    def elapsed(self) -> float:
        end = self.finished_at if self.finished_at is not None else self.clock()
        return end - self.started_at

    @property
    def progress(self) -> int | None:
        return self.last_snapshot.progress if self.last_snapshot else None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def is_complete(self) -> bool:
        return self.state is PollingState.COMPLETED

    @property
    def is_failed(self) -> bool:
        return self.state is PollingState.FAILED

    @property
    def is_cancelled(self) -> bool:
        return self.state is PollingState.CANCELLED

    def finish(self) -> None:
        if self.is_active:
            self.is_active = False
            self.finished_at = self.clock()


class _Handle:
    """轮询句柄基类：停止信号、事件队列和后台任务"""

    def __init__(self, options: PollingOptions):
        self.options = options
        self._stop_event = asyncio.Event()
        self._events: asyncio.Queue[PollingEvent | None] = asyncio.Queue()
        self._events_closed = False
        self._task: asyncio.Task | None = None

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    @property
    def done(self) -> bool:
        return self._task is None or self._task.done()

    def stop(self) -> None:
        """停止轮询（幂等）。返回后不会再发起新的查询，进行中的查询结果会被丢弃。"""
        if self._stop_event.is_set():
            return
        self._stop_event.set()
        for session in self._sessions():
            session.finish()

    def _sessions(self) -> Iterable[PollingSession]:
        raise NotImplementedError

    def _emit(self, event: PollingEvent) -> None:
        if not self._events_closed:
            self._events.put_nowait(event)

    def _close_events(self) -> None:
        if not self._events_closed:
            self._events_closed = True
            self._events.put_nowait(None)

    async def events(self) -> AsyncIterator[PollingEvent]:
        """按发生顺序消费轮询事件，轮询结束后迭代终止"""
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event

    async def _join(self) -> None:
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            if not self._task.cancelled():
                raise


class PollingHandle(_Handle):
    """单任务轮询句柄"""

    def __init__(self, session: PollingSession, options: PollingOptions):
        super().__init__(options)
        self.session = session

    @property
    def job_id(self) -> str:
        return self.session.job_id

    @property
    def is_active(self) -> bool:
        return self.session.is_active

    def _sessions(self) -> Iterable[PollingSession]:
        return (self.session,)

    async def wait(self) -> PollingSession:
        """等待轮询结束并返回最终会话"""
        await self._join()
        return self.session


class BatchPollingHandle(_Handle):
    """批量轮询句柄"""

    def __init__(self, sessions: dict[str, PollingSession], options: PollingOptions):
        super().__init__(options)
        self.results = sessions

    @property
    def job_ids(self) -> list[str]:
        return list(self.results)

    @property
    def is_active(self) -> bool:
        return any(s.is_active for s in self.results.values())

    def _sessions(self) -> Iterable[PollingSession]:
        return self.results.values()

    async def wait(self) -> dict[str, PollingSession]:
        """等待批量轮询结束并返回 job_id -> 会话 映射"""
        await self._join()
        return self.results


class StatusPoller:
    """
    任务状态轮询器

    负责按间隔调用 fetch_status，维护每个任务的轮询会话，
    并在状态变化、进度更新、完成、失败、超时时触发回调和事件。
    """

    def __init__(
        self,
        fetch_status: FetchStatus,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        初始化轮询器

        Args:
            fetch_status: 查询任务状态的协程函数，通常由 GatewayClient 支撑
            settings: 配置，默认从环境读取
            clock: 单调时钟，测试时可注入
        """
        self._fetch_status = fetch_status
        self._settings = settings or get_settings()
        self._clock = clock
        self._active_polls: dict[str, PollingHandle] = {}
        self._batches: set[BatchPollingHandle] = set()
        self._retiring: set[PollingHandle] = set()
        self._terminal_sessions: OrderedDict[str, PollingSession] = OrderedDict()

    # ========== 公共接口 ==========

    async def start_polling(
        self,
        job_id: str,
        options: PollingOptions | None = None,
        rearm: bool = False,
    ) -> PollingHandle:
        """
        启动任务轮询

        - 同一任务已在轮询时返回现有句柄（同一任务最多一个进行中的查询）
        - 任务已处于终态时不再查询，直接重新报告缓存的终态快照；rearm=True 时重新轮询

        Args:
            job_id: 外部任务 ID
            options: 轮询选项
            rearm: 忽略缓存的终态并重新开始轮询

        Returns:
            PollingHandle: 轮询句柄
        """
        if not job_id or not str(job_id).strip():
            raise ValidationError("job_id is required", field="job_id")
        options = options or PollingOptions()

        existing = self._active_polls.get(job_id)
        if existing is not None and not existing.done and not existing.stopped:
            logger.warning(f"Job {job_id} is already being polled")
            return existing

        cached = self._terminal_sessions.get(job_id)
        if cached is not None and not rearm:
            logger.info(f"Job {job_id} already {cached.state.value}, reporting cached snapshot")
            handle = PollingHandle(cached, options)
            handle._emit(PollingEvent(
                _TERMINAL_EVENTS[cached.state], job_id, cached.state, cached.last_snapshot
            ))
            if cached.is_complete:
                await self._invoke(options.on_completion, cached)
            else:
                await self._invoke(options.on_status_change, cached)
            handle._close_events()
            return handle

        if rearm:
            self._terminal_sessions.pop(job_id, None)

        previous = None
        if existing is not None and not existing.done:
            self._retiring.add(existing)
            previous = existing._task

        session = PollingSession(job_id=job_id, started_at=self._clock(), clock=self._clock)
        handle = PollingHandle(session, options)
        self._active_polls[job_id] = handle
        logger.info(f"Starting polling for job {job_id}")
        handle._task = asyncio.create_task(self._poll_loop(handle, previous))
        return handle

    def stop_polling(self, handle: _Handle) -> None:
        """停止轮询（幂等）"""
        if not handle.stopped:
            job_ids = ", ".join(s.job_id for s in handle._sessions())
            logger.info(f"Stopping polling for {job_ids}")
        handle.stop()

    def stop_job(self, job_id: str) -> bool:
        """按任务 ID 停止单任务轮询，返回是否存在活跃轮询"""
        handle = self._active_polls.get(job_id)
        if handle is None:
            return False
        self.stop_polling(handle)
        return True

    async def poll_multiple(
        self,
        job_ids: Iterable[str],
        options: PollingOptions | None = None,
    ) -> BatchPollingHandle:
        """
        批量轮询多个任务

        每一轮并发查询所有未结束的任务，单个任务的失败不影响其他任务。

        Args:
            job_ids: 外部任务 ID 列表
            options: 轮询选项（interval 默认使用 batch_poll_interval）

        Returns:
            BatchPollingHandle: 批量轮询句柄，results 为 job_id -> 会话
        """
        ids = list(dict.fromkeys(str(j).strip() for j in job_ids))
        if not ids or any(not j for j in ids):
            raise ValidationError("job_ids must be non-empty", field="job_ids")
        options = options or PollingOptions()

        now = self._clock()
        sessions: dict[str, PollingSession] = {}
        for job_id in ids:
            cached = self._terminal_sessions.get(job_id)
            sessions[job_id] = cached or PollingSession(job_id=job_id, started_at=now, clock=self._clock)

        handle = BatchPollingHandle(sessions, options)
        self._batches.add(handle)
        logger.info(f"Starting batch polling for {len(ids)} jobs")
        handle._task = asyncio.create_task(self._batch_loop(handle))
        return handle

    def forget(self, job_id: str) -> None:
        """丢弃缓存的终态会话"""
        self._terminal_sessions.pop(job_id, None)

    def get_session(self, job_id: str) -> PollingSession | None:
        """获取任务当前（或最近一次终态）的轮询会话"""
        handle = self._active_polls.get(job_id)
        if handle is not None:
            return handle.session
        return self._terminal_sessions.get(job_id)

    def is_polling(self, job_id: str) -> bool:
        """检查任务是否正在轮询"""
        handle = self._active_polls.get(job_id)
        return handle is not None and handle.is_active and not handle.done

    def get_active_poll_count(self) -> int:
        """获取活跃轮询数量（批量轮询按任务计数）"""
        single = sum(1 for h in self._active_polls.values() if h.is_active and not h.done)
        batch = sum(
            1 for b in self._batches if not b.done for s in b.results.values() if s.is_active
        )
        return single + batch

    async def close(self) -> None:
        """取消所有活跃的轮询任务"""
        handles: list[_Handle] = [*self._active_polls.values(), *self._retiring, *self._batches]
        for handle in handles:
            handle.stop()
            if handle._task is not None and not handle._task.done():
                handle._task.cancel()
        for handle in handles:
            if handle._task is None:
                continue
            try:
                await handle._task
            except asyncio.CancelledError:
                pass
        self._active_polls.clear()
        self._retiring.clear()
        self._batches.clear()

    # ========== 轮询循环 ==========

    def _interval(self, options: PollingOptions, batch: bool = False) -> float:
        if options.interval is not None:
            return options.interval
        return self._settings.batch_poll_interval if batch else self._settings.poll_interval

    def _deadline(self, options: PollingOptions, started_at: float) -> float:
        limit = options.max_polling_time
        if limit is None:
            limit = self._settings.max_polling_time
        return started_at + limit

    async def _poll_loop(self, handle: PollingHandle, previous: asyncio.Task | None = None) -> None:
        """
        单任务轮询循环

        Args:
            handle: 轮询句柄
            previous: 同一任务已停止但查询仍在进行中的旧轮询
        """
        session = handle.session
        options = handle.options
        interval = self._interval(options)
        deadline = self._deadline(options, session.started_at)

        try:
            if previous is not None:
                # 旧轮询的查询结束后才发起新的查询
                await asyncio.wait({previous})

            while not handle.stopped:
                if self._clock() >= deadline:
                    await self._handle_timeout(handle, session)
                    return

                session.attempts += 1
                outcome = await self._fetch(session, options, deadline)

                if handle.stopped:
                    logger.debug(f"Discarding in-flight result for stopped job {session.job_id}")
                    return

                if isinstance(outcome, GatewayError):
                    if self._expired(outcome, deadline):
                        await self._handle_timeout(handle, session)
                        return
                    if await self._handle_fetch_error(handle, session, outcome):
                        return
                    delay = self._error_delay(options, session, outcome, interval)
                else:
                    await self._apply_snapshot(handle, session, outcome)
                    if session.is_terminal and options.stop_on_completion:
                        logger.info(f"Job {session.job_id} reached {session.state.value}, polling stopped")
                        return
                    delay = self._state_delay(options, session, interval)

                await self._wait(handle, min(delay, max(deadline - self._clock(), 0.0)))
        finally:
            self._finish(handle, (session,))
            self._retiring.discard(handle)
            if self._active_polls.get(session.job_id) is handle:
                self._active_polls.pop(session.job_id, None)

    async def _batch_loop(self, handle: BatchPollingHandle) -> None:
        """
        批量轮询循环

        Args:
            handle: 批量轮询句柄
        """
        options = handle.options
        interval = self._interval(options, batch=True)

        try:
            for session in handle.results.values():
                if session.is_terminal and not session.is_active:
                    handle._emit(PollingEvent(
                        _TERMINAL_EVENTS[session.state], session.job_id, session.state,
                        session.last_snapshot,
                    ))

            while not handle.stopped:
                pending = [s for s in handle.results.values() if s.is_active]
                if not pending:
                    return

                now = self._clock()
                expired = [s for s in pending if now >= self._deadline(options, s.started_at)]
                for session in expired:
                    await self._handle_timeout(handle, session)
                pending = [s for s in pending if s.is_active]
                if not pending:
                    return

                deadlines = {s.job_id: self._deadline(options, s.started_at) for s in pending}
                deadline = min(deadlines.values())
                for session in pending:
                    session.attempts += 1
                outcomes = await asyncio.gather(
                    *(self._fetch(s, options, deadlines[s.job_id]) for s in pending)
                )

                if handle.stopped:
                    logger.debug("Discarding in-flight batch results after stop")
                    return

                for session, outcome in zip(pending, outcomes):
                    if isinstance(outcome, GatewayError):
                        if self._expired(outcome, deadlines[session.job_id]):
                            await self._handle_timeout(handle, session)
                        elif await self._handle_fetch_error(handle, session, outcome):
                            session.finish()
                    else:
                        await self._apply_snapshot(handle, session, outcome)
                        if session.is_terminal and options.stop_on_completion:
                            session.finish()

                await self._wait(handle, min(interval, max(deadline - self._clock(), 0.0)))
        finally:
            self._finish(handle, handle.results.values())
            self._batches.discard(handle)

    async def _fetch(
        self,
        session: PollingSession,
        options: PollingOptions,
        deadline: float,
    ) -> JobSnapshot | GatewayError:
        """
        执行一次查询，错误以已分类的 GatewayError 返回

        查询因 max_polling_time 到期而被截断时返回 PollingTimeoutError。
        """
        timeout = max(deadline - self._clock(), 0.0)
        bounded_by_deadline = True
        if options.fetch_timeout is not None and options.fetch_timeout < timeout:
            timeout = options.fetch_timeout
            bounded_by_deadline = False
        try:
            return await asyncio.wait_for(self._fetch_status(session.job_id), timeout=timeout)
        except asyncio.TimeoutError as e:
            if bounded_by_deadline:
                return PollingTimeoutError(session.job_id, session.elapsed)
            return ErrorClassifier.classify(e)
        except Exception as e:
            return ErrorClassifier.classify(e)

    def _remember(self, session: PollingSession) -> None:
        """缓存终态会话，超过 terminal_cache_size 时淘汰最早的条目"""
        self._terminal_sessions[session.job_id] = session
        self._terminal_sessions.move_to_end(session.job_id)
        while len(self._terminal_sessions) > self._settings.terminal_cache_size:
            self._terminal_sessions.popitem(last=False)

    def _expired(self, outcome: JobSnapshot | GatewayError, deadline: float) -> bool:
        return isinstance(outcome, PollingTimeoutError) or self._clock() >= deadline

    def _finish(self, handle: _Handle, sessions: Iterable[PollingSession]) -> None:
        for session in sessions:
            session.finish()
            if session.is_terminal:
                self._remember(session)
        if handle.stopped:
            for session in sessions:
                handle._emit(PollingEvent(PollingEventType.STOPPED, session.job_id, session.state))
        handle._close_events()

    async def _wait(self, handle: _Handle, delay: float) -> None:
        """等待下一轮，stop() 会立即唤醒"""
        if delay <= 0 or handle.stopped:
            return
        try:
            await asyncio.wait_for(handle._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    def _state_delay(self, options: PollingOptions, session: PollingSession, interval: float) -> float:
        if options.status_intervals:
            return options.status_intervals.get(session.state, interval)
        return interval

    def _error_delay(
        self,
        options: PollingOptions,
        session: PollingSession,
        error: GatewayError,
        interval: float,
    ) -> float:
        if not isinstance(error, RateLimitError):
            return interval
        max_backoff = options.max_backoff
        if max_backoff is None:
            max_backoff = self._settings.poll_max_backoff
        if error.retry_after is not None:
            return min(max(error.retry_after, interval), max_backoff)
        return min(interval * (2 ** session.consecutive_errors), max_backoff)

    # ========== 状态处理 ==========

    def _derive_state(self, snapshot: JobSnapshot, options: PollingOptions) -> PollingState:
        status = (snapshot.status or "").strip().lower()
        if status in options.terminal_statuses:
            return options.terminal_statuses[status]
        if status in options.pending_statuses:
            return PollingState.PENDING
        return PollingState.PROCESSING

    @staticmethod
    def _advance(session: PollingSession, new_state: PollingState) -> bool:
        """状态只前进，终态后不再变化"""
        if session.is_terminal or new_state is session.state:
            return False
        if _STATE_RANK[new_state] < _STATE_RANK[session.state]:
            return False
        session.state = new_state
        return True

    async def _apply_snapshot(
        self,
        handle: _Handle,
        session: PollingSession,
        snapshot: JobSnapshot,
    ) -> None:
        """
        应用一次查询结果

        只有派生状态变化时才触发状态回调，进度变化单独触发进度回调。
        """
        previous = session.last_snapshot
        session.last_snapshot = snapshot
        session.error = None
        session.consecutive_errors = 0

        options = handle.options
        changed = self._advance(session, self._derive_state(snapshot, options))
        progress_changed = snapshot.progress is not None and (
            previous is None or previous.progress != snapshot.progress
        )

        if changed:
            logger.info(f"Job {session.job_id} -> {session.state.value} ({snapshot.status})")
            handle._emit(PollingEvent(
                PollingEventType.STATUS_CHANGE, session.job_id, session.state, snapshot
            ))
            await self._invoke(options.on_status_change, session)

        if progress_changed:
            logger.debug(f"Job {session.job_id} progress {snapshot.progress}%")
            handle._emit(PollingEvent(
                PollingEventType.PROGRESS, session.job_id, session.state, snapshot
            ))
            await self._invoke(options.on_progress, session)

        if changed and session.is_terminal:
            handle._emit(PollingEvent(
                _TERMINAL_EVENTS[session.state], session.job_id, session.state, snapshot
            ))
            if session.is_complete:
                await self._invoke(options.on_completion, session)
            elif session.is_failed:
                logger.error(f"Job {session.job_id} failed: {snapshot.message or snapshot.status}")

    async def _handle_fetch_error(
        self,
        handle: _Handle,
        session: PollingSession,
        error: GatewayError,
    ) -> bool:
        """
        处理查询失败

        Returns:
            bool: 是否应停止该任务的轮询
        """
        session.error = error
        session.consecutive_errors += 1
        handle._emit(PollingEvent(PollingEventType.ERROR, session.job_id, session.state, error=error))
        await self._invoke(handle.options.on_error, session, error)

        if not error.retryable:
            logger.error(f"Non-retryable error while polling job {session.job_id}: {error}")
            return True
        if handle.options.stop_on_error:
            logger.error(f"Error while polling job {session.job_id}, stopping: {error}")
            return True
        logger.warning(
            f"Retryable error while polling job {session.job_id} "
            f"(attempt {session.attempts}): {error}"
        )
        return False

    async def _handle_timeout(self, handle: _Handle, session: PollingSession) -> None:
        """处理轮询超时：报告超时错误，但不将任务标记为失败"""
        error = PollingTimeoutError(session.job_id, session.elapsed)
        session.error = error
        session.timed_out = True
        session.finish()
        logger.error(f"Polling for job {session.job_id} timed out after {session.elapsed:.1f}s")
        handle._emit(PollingEvent(PollingEventType.TIMEOUT, session.job_id, session.state, error=error))
        await self._invoke(handle.options.on_error, session, error)

    async def _invoke(self, callback: Callable[..., Any] | None, *args: Any) -> None:
        """调用回调，支持普通函数和协程函数"""
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.exception(f"Polling callback {getattr(callback, '__name__', callback)!r} failed: {e}")
