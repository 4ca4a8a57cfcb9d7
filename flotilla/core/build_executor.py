"""Memoised build-graph executor.

Stages run in dependency order as asyncio tasks.  Each stage's fingerprint
folds in its declared inputs and its direct dependencies' fingerprints, so
the cache is reused up to the first changed stage and everything downstream
of it rebuilds.

Failure semantics:
- Structural errors (cycle, unknown dependency) raise before any build.
- A failed stage blocks its transitive dependents; unrelated branches
  still complete.  Nothing is retried.
- Cancelling ``run()`` cancels in-flight backend calls; those stages are
  recorded as CANCELLED, stages still waiting are recorded as BLOCKED.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Sequence

from flotilla.backends.base import BuildBackend
from flotilla.core.build_cache import BuildCache
from flotilla.core.dependency_graph import DependencyGraph
from flotilla.core.hasher import compute_fingerprint
from flotilla.models.builds import (
    SUCCESS_STATES,
    BuildGraphDescriptor,
    BuildReport,
    BuildRequest,
    BuildStageDefinition,
    StageResult,
    StageState,
)

logger = logging.getLogger(__name__)


class BuildFailedError(RuntimeError):
    """A stage build failed.  Carries the stage name and the underlying cause."""

    def __init__(self, stage: str, cause: BaseException | str) -> None:
        self.stage = stage
        self.cause = cause
        super().__init__(f"Build of stage {stage!r} failed: {cause}")


StageListener = Callable[[StageResult], None]


class BuildGraphExecutor:
    """Evaluates a build graph against a cache and a build backend.

    Parameters
    ----------
    backend:
        The build backend invoked on cache misses.
    cache:
        Fingerprint-keyed artifact cache.  A fresh in-memory cache if omitted.
    max_parallel:
        Upper bound on concurrently running backend calls.
    stage_timeout:
        Seconds allowed per backend call; ``None`` waits indefinitely.
    """

    def __init__(
        self,
        backend: BuildBackend,
        cache: BuildCache | None = None,
        *,
        max_parallel: int = 4,
        stage_timeout: float | None = None,
    ) -> None:
        if max_parallel < 1:
            raise ValueError("max_parallel must be at least 1")
        self.backend = backend
        self.cache = cache if cache is not None else BuildCache()
        self.max_parallel = max_parallel
        self.stage_timeout = stage_timeout
        self._results: dict[str, StageResult] = {}

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    @staticmethod
    def _as_stages(
        stages: BuildGraphDescriptor | Sequence[BuildStageDefinition],
    ) -> list[BuildStageDefinition]:
        if isinstance(stages, BuildGraphDescriptor):
            return list(stages.stages)
        return list(stages)

    @staticmethod
    def plan(stages: BuildGraphDescriptor | Sequence[BuildStageDefinition]) -> DependencyGraph:
        """Validate the stage graph and return it.

        Raises ``CyclicDependencyError`` or ``UnknownDependencyError``.
        """
        defs = BuildGraphExecutor._as_stages(stages)
        names = [s.name for s in defs]
        if len(set(names)) != len(names):
            duplicates = sorted({n for n in names if names.count(n) > 1})
            raise ValueError(f"Duplicate stage names: {', '.join(duplicates)}")
        return DependencyGraph({s.name: s.depends_on for s in defs})

    def fingerprints(
        self, stages: BuildGraphDescriptor | Sequence[BuildStageDefinition]
    ) -> dict[str, str]:
        """Compute every stage fingerprint, in topological order."""
        defs = {s.name: s for s in self._as_stages(stages)}
        graph = self.plan(list(defs.values()))
        result: dict[str, str] = {}
        for name in graph.nodes:
            stage = defs[name]
            result[name] = compute_fingerprint(
                name,
                stage.inputs,
                {dep: result[dep] for dep in stage.depends_on},
            )
        return result

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def snapshot(self) -> dict[str, StageResult]:
        """Return the stage results recorded so far by the latest run."""
        return dict(self._results)

    async def run(
        self,
        stages: BuildGraphDescriptor | Sequence[BuildStageDefinition],
        *,
        tag: str = "",
        listener: StageListener | None = None,
    ) -> BuildReport:
        """Build every stage, returning the per-stage report.

        Raises ``CyclicDependencyError``/``UnknownDependencyError`` before
        any backend call; build failures are reported, not raised.
        """
        defs = {s.name: s for s in self._as_stages(stages)}
        graph = self.plan(list(defs.values()))
        fingerprints = self.fingerprints(list(defs.values()))
        leaves = set(graph.terminals())
        terminals = [n for n in graph.nodes if defs[n].target or n in leaves]

        self._results = {
            name: StageResult(stage=name, state=StageState.PENDING, fingerprint=fingerprints[name])
            for name in graph.nodes
        }
        semaphore = asyncio.Semaphore(self.max_parallel)
        tasks: dict[str, asyncio.Task[StageResult]] = {}

        def record(result: StageResult) -> StageResult:
            self._results[result.stage] = result
            if listener is not None:
                listener(result)
            return result

        async def run_stage(name: str) -> StageResult:
            stage = defs[name]
            fingerprint = fingerprints[name]

            def cancelled_before_start() -> None:
                record(StageResult(
                    stage=name, state=StageState.BLOCKED,
                    fingerprint=fingerprint, blocked_by=["cancelled"],
                ))

            def failed(cause: str, started: float | None = None) -> StageResult:
                return record(StageResult(
                    stage=name, state=StageState.FAILED, fingerprint=fingerprint,
                    error=str(BuildFailedError(name, cause)),
                    duration_seconds=time.monotonic() - started if started is not None else 0.0,
                ))

            try:
                dep_results = [await tasks[dep] for dep in stage.depends_on]
            except asyncio.CancelledError:
                cancelled_before_start()
                raise

            failed_deps = [r.stage for r in dep_results if r.state not in SUCCESS_STATES]
            if failed_deps:
                logger.info("Stage %s blocked by %s", name, ", ".join(failed_deps))
                return record(StageResult(
                    stage=name, state=StageState.BLOCKED,
                    fingerprint=fingerprint, blocked_by=failed_deps,
                ))

            try:
                cached = self.cache.lookup(fingerprint)
            except Exception as exc:  # noqa: BLE001
                logger.error("Stage %s: cache lookup failed: %s", name, exc)
                return failed(f"cache lookup failed: {type(exc).__name__}: {exc}")
            if cached is not None:
                logger.info("Stage %s: cache hit (%s)", name, fingerprint[:12])
                return record(StageResult(
                    stage=name, state=StageState.CACHED,
                    fingerprint=fingerprint, artifact=cached,
                ))

            request = BuildRequest(
                stage=name,
                fingerprint=fingerprint,
                inputs=stage.inputs,
                dependencies={r.stage: r.artifact for r in dep_results if r.artifact},
                tag=tag,
            )
            try:
                await semaphore.acquire()
            except asyncio.CancelledError:
                cancelled_before_start()
                raise
            try:
                record(StageResult(stage=name, state=StageState.RUNNING, fingerprint=fingerprint))
                started = time.monotonic()
                try:
                    artifact = await asyncio.wait_for(
                        self.backend.build(request), timeout=self.stage_timeout
                    )
                    self.cache.store(fingerprint, artifact)
                except asyncio.CancelledError:
                    record(StageResult(
                        stage=name, state=StageState.CANCELLED, fingerprint=fingerprint,
                        error="cancelled", duration_seconds=time.monotonic() - started,
                    ))
                    raise
                except asyncio.TimeoutError:
                    cause = f"timed out after {self.stage_timeout} seconds"
                    logger.error("Stage %s %s", name, cause)
                    return failed(cause, started)
                except Exception as exc:  # noqa: BLE001
                    logger.error("Stage %s failed: %s", name, exc)
                    return failed(f"{type(exc).__name__}: {exc}", started)
            finally:
                semaphore.release()

            logger.info("Stage %s built %s", name, artifact.digest)
            return record(StageResult(
                stage=name, state=StageState.BUILT, fingerprint=fingerprint,
                artifact=artifact, duration_seconds=time.monotonic() - started,
            ))

        for name in graph.nodes:
            tasks[name] = asyncio.create_task(run_stage(name), name=f"build:{name}")

        try:
            await asyncio.gather(*tasks.values())
        finally:
            pending = [task for task in tasks.values() if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        return BuildReport(
            tag=tag,
            results={name: self._results[name] for name in graph.nodes},
            terminal_stages=terminals,
        )
