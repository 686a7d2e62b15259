"""Bounded-parallelism execution of independent, side-effecting work items.

Used by the build steps to speed up bulk operations that are otherwise
sequential (file removals inside a mounted image, offline registry writes,
ownership fix-ups).

Scheduling is a bounded-wave model by default:
- Items are partitioned into contiguous waves of size <= concurrency limit.
- All items of a wave run concurrently; the next wave starts only once the
  whole wave has finished. Waves run in submission order.
- A slow item stalls its own wave, never an earlier one.
- With item_timeout_s, a callable still running at the wave deadline is
  reported timed out and left running; it keeps its slot until it returns.
  Argv and registry items are killed by their own subprocess timeout, and
  the wave waits for that.

`scheduling="continuous"` keeps a pool refilled up to the limit instead.

Every submitted item yields exactly one JobResult, in submission order.
Item failures are recorded, never raised.
"""

from __future__ import annotations

import logging
import math
import os
import shutil
import stat
import sys
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, as_completed, wait
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, TypeVar, Union

from .cancel import CancellationToken
from .command import CmdResult, CommandTimeout, fmt_argv, run_cmd
from .registry import RegistryWrite, reg_add

logger = logging.getLogger(__name__)

T = TypeVar("T")

ENV_MAX_JOBS = "MAX_PARALLEL_JOBS"
CPU_FRACTION = 0.8
MIN_JOBS = 2
SCHEDULING_MODES = ("waves", "continuous")
STALL_POLL_S = 0.5


class Outcome(str, Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class JobResult:
    item: str
    outcome: Outcome
    error: Optional[str] = None
    output: Optional[str] = None
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return self.outcome is Outcome.SUCCEEDED

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"item": self.item, "outcome": self.outcome.value}
        if self.error:
            d["error"] = self.error
        if self.output:
            d["output"] = self.output
        if self.timed_out:
            d["timed_out"] = True
        return d


@dataclass(frozen=True)
class Summary:
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    timed_out: int = 0

    @property
    def total(self) -> int:
        return self.succeeded + self.skipped + self.failed

    def as_dict(self) -> Dict[str, int]:
        return {
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": self.failed,
            "timed_out": self.timed_out,
        }


def summarize(results: Iterable[JobResult]) -> Summary:
    counts = {o: 0 for o in Outcome}
    timed_out = 0
    for r in results:
        counts[r.outcome] += 1
        if r.timed_out:
            timed_out += 1
    return Summary(
        succeeded=counts[Outcome.SUCCEEDED],
        skipped=counts[Outcome.SKIPPED],
        failed=counts[Outcome.FAILED],
        timed_out=timed_out,
    )


def compute_concurrency_limit(override: Optional[int] = None, *, cpu_count: Optional[int] = None) -> int:
    """Resolve the number of simultaneously executing items.

    An override > 0 wins; otherwise 80% of the logical CPUs (floored),
    never less than 2.
    """

    if override is not None and int(override) > 0:
        return int(override)
    cpus = cpu_count if cpu_count is not None else os.cpu_count()
    derived = int(math.floor(max(cpus or 1, 1) * CPU_FRACTION))
    return max(MIN_JOBS, derived)


@dataclass(frozen=True)
class ParallelConfig:
    max_jobs: Optional[int] = None
    item_timeout_s: Optional[float] = None
    scheduling: str = "waves"

    def __post_init__(self) -> None:
        if self.scheduling not in SCHEDULING_MODES:
            raise ValueError(f"Unknown scheduling mode {self.scheduling!r} (expected one of {SCHEDULING_MODES})")
        if self.item_timeout_s is not None and self.item_timeout_s <= 0:
            raise ValueError("item_timeout_s must be > 0 when set")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **kwargs: Any) -> "ParallelConfig":
        """Build a config, taking max_jobs from MAX_PARALLEL_JOBS when not given.

        A non-positive max_jobs means "auto" and is treated as not given.
        """

        env = os.environ if environ is None else environ
        jobs = kwargs.get("max_jobs")
        if jobs is not None and int(jobs) <= 0:
            jobs = kwargs["max_jobs"] = None
        if jobs is None:
            raw = str(env.get(ENV_MAX_JOBS) or "").strip()
            if raw:
                try:
                    kwargs["max_jobs"] = int(raw)
                except ValueError:
                    logger.warning("Ignoring non-integer %s=%r", ENV_MAX_JOBS, raw)
        return cls(**kwargs)

    @property
    def concurrency_limit(self) -> int:
        return compute_concurrency_limit(self.max_jobs)


def partition_batches(items: Sequence[T], size: int) -> List[List[T]]:
    if size < 1:
        raise ValueError(f"batch size must be >= 1, got {size}")
    seq = list(items)
    return [seq[i : i + size] for i in range(0, len(seq), size)]


class WorkItem(Protocol):
    @property
    def identity(self) -> str:
        ...

    @property
    def enforces_timeout(self) -> bool:
        """True when execute() kills its own work once timeout_s passes."""
        ...

    def execute(self, *, timeout_s: Optional[float] = None) -> JobResult:
        ...


def _clear_readonly(func: Callable[..., Any], path: str, _exc: Any) -> None:
    os.chmod(path, stat.S_IWRITE)
    func(path)


def _remove_path(p: Path, *, recursive: bool) -> None:
    if p.is_dir() and not p.is_symlink():
        if not recursive:
            p.rmdir()
        elif sys.version_info >= (3, 12):
            shutil.rmtree(p, onexc=_clear_readonly)
        else:
            shutil.rmtree(p, onerror=_clear_readonly)
        return
    try:
        p.unlink()
    except PermissionError:
        # Read-only attribute on Windows.
        os.chmod(p, stat.S_IWRITE)
        p.unlink()


@dataclass(frozen=True)
class RemovalTask:
    path: str
    recursive: bool = True
    dry_run: bool = False

    @property
    def identity(self) -> str:
        return str(self.path)

    @property
    def enforces_timeout(self) -> bool:
        return False

    def execute(self, *, timeout_s: Optional[float] = None) -> JobResult:
        p = Path(self.path)
        if not os.path.lexists(p):
            return JobResult(item=self.identity, outcome=Outcome.SKIPPED, output="not found")
        if self.dry_run:
            logger.info("Would remove %s", p)
            return JobResult(item=self.identity, outcome=Outcome.SUCCEEDED, output="dry-run")
        try:
            _remove_path(p, recursive=self.recursive)
        except FileNotFoundError:
            # Removed concurrently by someone else.
            return JobResult(item=self.identity, outcome=Outcome.SKIPPED, output="not found")
        return JobResult(item=self.identity, outcome=Outcome.SUCCEEDED)


def _from_cmd_result(identity: str, r: CmdResult) -> JobResult:
    out = (r.stdout or "").strip() or None
    if r.returncode != 0:
        err = (r.stderr or r.stdout or "").strip() or f"exit code {r.returncode}"
        return JobResult(item=identity, outcome=Outcome.FAILED, error=err, output=out)
    return JobResult(item=identity, outcome=Outcome.SUCCEEDED, output=out)


@dataclass(frozen=True)
class RegistryWriteTask:
    write: RegistryWrite
    reg_exe: str = "reg"
    dry_run: bool = False

    @property
    def identity(self) -> str:
        return self.write.identity

    @property
    def enforces_timeout(self) -> bool:
        return True

    def execute(self, *, timeout_s: Optional[float] = None) -> JobResult:
        r = reg_add(self.write, reg_exe=self.reg_exe, check=False, dry_run=self.dry_run, timeout_s=timeout_s)
        return _from_cmd_result(self.identity, r)


Command = Union[Sequence[str], Callable[[], Any]]


@dataclass(frozen=True)
class CommandTask:
    """An argv to run, or a zero-argument callable.

    A callable returning a CmdResult is judged by its exit code; any other
    return value counts as success and is kept as output.
    With timed_call, the callable is called with timeout_s and must kill
    its own subprocesses once it passes.
    """

    command: Command
    label: Optional[str] = None
    timed_call: bool = False
    dry_run: bool = False

    def __post_init__(self) -> None:
        if isinstance(self.command, (str, bytes)):
            raise TypeError("CommandTask needs an argv sequence or a callable, not a string")
        if not callable(self.command) and not list(self.command):
            raise ValueError("CommandTask argv is empty")

    @property
    def identity(self) -> str:
        if self.label:
            return self.label
        if callable(self.command):
            return getattr(self.command, "__name__", repr(self.command))
        return fmt_argv([str(a) for a in self.command])

    @property
    def enforces_timeout(self) -> bool:
        return self.timed_call or not callable(self.command)

    def execute(self, *, timeout_s: Optional[float] = None) -> JobResult:
        if callable(self.command):
            value = self.command(timeout_s=timeout_s) if self.timed_call else self.command()
            if isinstance(value, CmdResult):
                return _from_cmd_result(self.identity, value)
            return JobResult(
                item=self.identity,
                outcome=Outcome.SUCCEEDED,
                output=None if value is None else str(value),
            )
        r = run_cmd(list(self.command), check=False, dry_run=self.dry_run, timeout_s=timeout_s)
        return _from_cmd_result(self.identity, r)


def _cancelled_result(item: WorkItem) -> JobResult:
    return JobResult(item=item.identity, outcome=Outcome.FAILED, error="cancelled")


class BatchRunner:
    """Runs one list of work items; build a new runner per invocation."""

    def __init__(
        self,
        config: ParallelConfig | None = None,
        *,
        cancel_token: CancellationToken | None = None,
        on_result: Callable[[JobResult], None] | None = None,
    ) -> None:
        self.config = config or ParallelConfig()
        self.cancel_token = cancel_token
        self.on_result = on_result

    def run(self, items: Sequence[WorkItem]) -> List[JobResult]:
        work = list(items)
        if not work:
            return []

        limit = self.config.concurrency_limit
        if self.config.scheduling == "continuous":
            results = self._run_continuous(work, limit)
        else:
            results = self._run_waves(work, limit)

        s = summarize(results)
        logger.info(
            "Parallel run done: %d succeeded, %d skipped, %d failed (%d timed out) [limit=%d, %s]",
            s.succeeded,
            s.skipped,
            s.failed,
            s.timed_out,
            limit,
            self.config.scheduling,
        )
        return results

    def _cancelled(self) -> bool:
        return self.cancel_token is not None and self.cancel_token.cancelled

    def _record(self, result: JobResult) -> JobResult:
        if result.outcome is Outcome.FAILED:
            logger.warning("FAILED %s: %s", result.item, result.error)
        else:
            logger.debug("%s %s", result.outcome.value.upper(), result.item)
        if self.on_result is not None:
            try:
                self.on_result(result)
            except Exception:
                logger.exception("on_result callback failed for %s", result.item)
        return result

    def _execute(self, item: WorkItem) -> JobResult:
        if self._cancelled():
            return _cancelled_result(item)
        try:
            return item.execute(timeout_s=self.config.item_timeout_s)
        except CommandTimeout as e:
            return JobResult(item=item.identity, outcome=Outcome.FAILED, error=str(e), timed_out=True)
        except Exception as e:
            logger.debug("Work item %s raised", item.identity, exc_info=True)
            return JobResult(item=item.identity, outcome=Outcome.FAILED, error=str(e) or type(e).__name__)

    def _run_waves(self, work: List[WorkItem], limit: int) -> List[JobResult]:
        """Run waves in submission order.

        Items abandoned at a wave deadline keep running in their threads and
        still count against the limit: the next wave is shrunk by the number
        still alive, and held back while none of the limit is free.
        """

        results: List[Optional[JobResult]] = [None] * len(work)
        pending = list(range(len(work)))
        stalled: List[Future] = []
        logger.info("%d items, %d wave(s) of up to %d planned", len(work), len(partition_batches(pending, limit)), limit)

        n = 0
        while pending:
            if self._cancelled():
                for i in pending:
                    results[i] = self._record(_cancelled_result(work[i]))
                break
            stalled = [f for f in stalled if not f.done()]
            if len(stalled) >= limit:
                logger.info("Waiting for %d timed-out item(s) still running", len(stalled))
                wait(stalled, timeout=STALL_POLL_S, return_when=FIRST_COMPLETED)
                continue
            wave, pending = pending[: limit - len(stalled)], pending[limit - len(stalled) :]
            n += 1
            logger.info("Wave %d (%d items, %d left)", n, len(wave), len(pending))
            stalled.extend(self._run_wave(work, wave, results))

        return [r for r in results if r is not None]

    def _run_wave(self, work: List[WorkItem], wave: List[int], results: List[Optional[JobResult]]) -> List[Future]:
        """Run one wave; returns the futures abandoned at the deadline."""

        timeout_s = self.config.item_timeout_s
        pool = ThreadPoolExecutor(max_workers=len(wave), thread_name_prefix="winiso-job")
        stalled: List[Future] = []
        try:
            futures = [(i, pool.submit(self._execute, work[i])) for i in wave]
            deadline = None if timeout_s is None else time.monotonic() + timeout_s
            for i, fut in futures:
                if deadline is None or getattr(work[i], "enforces_timeout", False):
                    # The item kills its own subprocess at timeout_s; wait for that.
                    results[i] = self._record(fut.result())
                    continue
                try:
                    res = fut.result(timeout=max(0.0, deadline - time.monotonic()))
                except FutureTimeoutError:
                    stalled.append(fut)
                    res = JobResult(
                        item=work[i].identity,
                        outcome=Outcome.FAILED,
                        error=f"timed out after {timeout_s}s",
                        timed_out=True,
                    )
                results[i] = self._record(res)
        finally:
            # A stalled worker thread cannot be interrupted; do not wait for it.
            pool.shutdown(wait=not stalled, cancel_futures=True)
        return stalled

    def _run_continuous(self, work: List[WorkItem], limit: int) -> List[JobResult]:
        results: List[Optional[JobResult]] = [None] * len(work)
        with ThreadPoolExecutor(max_workers=limit, thread_name_prefix="winiso-job") as pool:
            futures = {pool.submit(self._execute, item): i for i, item in enumerate(work)}
            for fut in as_completed(futures):
                results[futures[fut]] = self._record(fut.result())
        return [r for r in results if r is not None]


def _runner(
    config: ParallelConfig | None,
    concurrency_limit: Optional[int],
    cancel_token: CancellationToken | None,
    on_result: Callable[[JobResult], None] | None,
) -> BatchRunner:
    cfg = config or ParallelConfig()
    if concurrency_limit is not None:
        cfg = replace(cfg, max_jobs=concurrency_limit)
    return BatchRunner(cfg, cancel_token=cancel_token, on_result=on_result)


def remove_items_in_parallel(
    paths: Iterable[Union[str, Path]],
    recursive: bool = True,
    concurrency_limit: Optional[int] = None,
    *,
    config: ParallelConfig | None = None,
    cancel_token: CancellationToken | None = None,
    on_result: Callable[[JobResult], None] | None = None,
    dry_run: bool = False,
) -> List[JobResult]:
    """Best-effort removal; missing paths are Skipped, errors are Failed."""

    tasks = [RemovalTask(path=str(p), recursive=recursive, dry_run=dry_run) for p in paths]
    return _runner(config, concurrency_limit, cancel_token, on_result).run(tasks)


def apply_registry_writes_in_parallel(
    operations: Iterable[Union[RegistryWrite, Mapping[str, Any]]],
    concurrency_limit: Optional[int] = None,
    *,
    config: ParallelConfig | None = None,
    reg_exe: str = "reg",
    cancel_token: CancellationToken | None = None,
    on_result: Callable[[JobResult], None] | None = None,
    dry_run: bool = False,
) -> List[JobResult]:
    writes = [op if isinstance(op, RegistryWrite) else RegistryWrite.from_mapping(op) for op in operations]
    tasks = [RegistryWriteTask(write=w, reg_exe=reg_exe, dry_run=dry_run) for w in writes]
    return _runner(config, concurrency_limit, cancel_token, on_result).run(tasks)


def run_commands_in_parallel(
    commands: Iterable[Union[CommandTask, Command]],
    concurrency_limit: Optional[int] = None,
    *,
    config: ParallelConfig | None = None,
    cancel_token: CancellationToken | None = None,
    on_result: Callable[[JobResult], None] | None = None,
    dry_run: bool = False,
) -> List[JobResult]:
    tasks = [c if isinstance(c, CommandTask) else CommandTask(command=c, dry_run=dry_run) for c in commands]
    return _runner(config, concurrency_limit, cancel_token, on_result).run(tasks)
