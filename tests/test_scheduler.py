"""Tests for PipelineScheduler: rounds, retries, deadlock, and lifecycle."""

import threading

import pytest

from src.pipeline.memory_store import InMemoryChunkStore
from src.pipeline.scheduler import PipelineScheduler
from src.pipeline.schemas import (
    ChunkExecutionResult,
    ChunkStatus,
    ChunkType,
    PipelineConfig,
    PipelineStatus,
)


def succeed(chunk):
    return ChunkExecutionResult(
        success=True,
        files_created=list(chunk.target_files),
        tokens_used=10,
        lines_generated=5,
    )


class TestCreatePipeline:
    def test_creates_pending_pipeline_with_chunks(self, scheduler, make_chunk):
        pid = scheduler.create_pipeline(
            "proj-1", "App", "Build an app",
            [make_chunk("a"), make_chunk("b")],
        )

        pipeline = scheduler.get_pipeline(pid)
        assert pipeline.status == PipelineStatus.PENDING
        assert pipeline.total_chunks == 2
        assert pipeline.description.startswith("Auto-generated pipeline for: Build an app")
        chunks = scheduler.get_pipeline_chunks(pid)
        assert {c.project_id for c in chunks} == {"proj-1"}
        assert {c.pipeline_id for c in chunks} == {pid}

    def test_key_dependencies_resolve_to_chunk_ids(self, scheduler, make_chunk):
        pid = scheduler.create_pipeline(
            "proj-1", "App", "prompt",
            [make_chunk("base"), make_chunk("child", dependencies=["base"])],
        )

        by_key = {c.key: c for c in scheduler.get_pipeline_chunks(pid)}
        assert by_key["child"].dependencies == [by_key["base"].id]

    def test_cycle_is_rejected(self, scheduler, make_chunk):
        with pytest.raises(ValueError, match="cycle"):
            scheduler.create_pipeline(
                "proj-1", "App", "prompt",
                [make_chunk("a", dependencies=["b"]), make_chunk("b", dependencies=["a"])],
            )

    def test_duplicate_keys_are_rejected(self, scheduler, make_chunk):
        with pytest.raises(ValueError, match="Duplicate"):
            scheduler.create_pipeline(
                "proj-1", "App", "prompt", [make_chunk("a"), make_chunk("a")],
            )

    def test_config_rejects_unknown_options(self):
        with pytest.raises(ValueError):
            PipelineConfig(parallelism=2, turbo=True)
        with pytest.raises(ValueError):
            PipelineConfig(parallelism=0)


class TestRunPipeline:
    def test_parallel_round_then_dependent_chunk(self, scheduler, store, make_chunk):
        """A and B run together in round 1, C (needs A and B) in round 2."""
        pid = scheduler.create_pipeline(
            "proj-1", "ABC", "prompt",
            [make_chunk("A"), make_chunk("B"), make_chunk("C", dependencies=["A", "B"])],
            PipelineConfig(parallelism=2),
        )
        barrier = threading.Barrier(2, timeout=5)
        calls = []
        lock = threading.Lock()

        def executor(chunk):
            with lock:
                calls.append(chunk.key)
            if chunk.key in ("A", "B"):
                barrier.wait()
            else:
                deps = [store.get_chunk(d) for d in chunk.dependencies]
                assert all(d.status == ChunkStatus.COMPLETED for d in deps)
            return succeed(chunk)

        rounds = []
        progress = scheduler.run_pipeline(pid, executor, on_progress=rounds.append)

        assert sorted(calls[:2]) == ["A", "B"]
        assert calls[2] == "C"
        assert len(rounds) == 2
        assert progress.status == PipelineStatus.COMPLETED
        assert progress.completed_chunks == 3
        assert progress.progress_percent == 100

    def test_chunk_only_starts_after_dependencies_complete(self, scheduler, store, make_chunk):
        pid = scheduler.create_pipeline(
            "proj-1", "Chain", "prompt",
            [
                make_chunk("a"),
                make_chunk("b", dependencies=["a"]),
                make_chunk("c", dependencies=["b"]),
                make_chunk("d", dependencies=["a"]),
            ],
            PipelineConfig(parallelism=3),
        )
        violations = []

        def executor(chunk):
            for dep_id in chunk.dependencies:
                if store.get_chunk(dep_id).status != ChunkStatus.COMPLETED:
                    violations.append(chunk.key)
            return succeed(chunk)

        progress = scheduler.run_pipeline(pid, executor)

        assert violations == []
        assert progress.status == PipelineStatus.COMPLETED

    def test_retries_exhaust_after_max_retries_plus_one_attempts(self, scheduler, make_chunk):
        pid = scheduler.create_pipeline(
            "proj-1", "Flaky", "prompt", [make_chunk("x", max_retries=2)],
        )
        attempts = []

        def executor(chunk):
            attempts.append(chunk.retry_count)
            return ChunkExecutionResult(success=False, errors=["boom"])

        progress = scheduler.run_pipeline(pid, executor)

        assert attempts == [0, 1, 2]
        assert progress.status == PipelineStatus.FAILED
        assert progress.failed_chunks == 1
        chunk = scheduler.get_pipeline_chunks(pid)[0]
        assert chunk.status == ChunkStatus.FAILED
        assert chunk.retry_count == 2
        assert chunk.errors == ["boom"]

    def test_rounds_bounded_by_depth_plus_retries(self, scheduler, make_chunk):
        pid = scheduler.create_pipeline(
            "proj-1", "Chain", "prompt",
            [make_chunk("a"), make_chunk("b", dependencies=["a"]), make_chunk("c", dependencies=["b"])],
        )
        failures_left = {"b": 1}

        def executor(chunk):
            if failures_left.get(chunk.key):
                failures_left[chunk.key] -= 1
                return {"success": False, "errors": ["transient"]}
            return succeed(chunk)

        rounds = []
        progress = scheduler.run_pipeline(pid, executor, on_progress=rounds.append)

        assert len(rounds) == 4
        assert progress.status == PipelineStatus.COMPLETED

    def test_missing_dependency_deadlocks_to_failed(self, scheduler, make_chunk):
        pid = scheduler.create_pipeline(
            "proj-1", "Orphan", "prompt",
            [make_chunk("lonely", dependencies=["does-not-exist"])],
        )
        calls = []

        progress = scheduler.run_pipeline(pid, lambda c: calls.append(c) or succeed(c))

        assert calls == []
        assert progress.status == PipelineStatus.FAILED
        assert scheduler.get_pipeline_chunks(pid)[0].status == ChunkStatus.PENDING

    def test_executor_exception_becomes_failed_result(self, scheduler, make_chunk):
        pid = scheduler.create_pipeline(
            "proj-1", "Crash", "prompt", [make_chunk("x")],
            PipelineConfig(auto_retry=False),
        )

        def executor(chunk):
            raise RuntimeError("generation backend down")

        progress = scheduler.run_pipeline(pid, executor)

        assert progress.status == PipelineStatus.FAILED
        assert scheduler.get_pipeline_chunks(pid)[0].errors == ["generation backend down"]

    def test_failure_without_errors_records_unknown_error(self, scheduler, make_chunk):
        pid = scheduler.create_pipeline(
            "proj-1", "Silent", "prompt", [make_chunk("x")],
            PipelineConfig(auto_retry=False),
        )

        scheduler.run_pipeline(pid, lambda c: {"success": False})

        assert scheduler.get_pipeline_chunks(pid)[0].errors == ["Unknown error"]

    def test_camel_case_dict_results_accumulate_stats(self, scheduler, make_chunk):
        pid = scheduler.create_pipeline(
            "proj-1", "Stats", "prompt",
            [make_chunk("a"), make_chunk("b")],
        )

        def executor(chunk):
            return {
                "success": True,
                "filesCreated": [f"{chunk.key}.py"],
                "tokensUsed": 100,
                "linesGenerated": 20,
            }

        scheduler.run_pipeline(pid, executor)

        pipeline = scheduler.get_pipeline(pid)
        assert pipeline.stats.total_tokens_used == 200
        assert pipeline.stats.total_files_generated == 2
        assert pipeline.stats.total_lines_generated == 40
        assert pipeline.stats.duration_ms is not None
        files = {c.key: c.files_created for c in scheduler.get_pipeline_chunks(pid)}
        assert files == {"a": ["a.py"], "b": ["b.py"]}

    def test_failure_without_stop_on_error_continues(self, scheduler, make_chunk):
        pid = scheduler.create_pipeline(
            "proj-1", "Mixed", "prompt",
            [make_chunk("bad", max_retries=0), make_chunk("good")],
        )

        progress = scheduler.run_pipeline(
            pid,
            lambda c: succeed(c) if c.key == "good" else {"success": False, "errors": ["x"]},
        )

        assert progress.status == PipelineStatus.FAILED
        assert progress.completed_chunks == 1
        assert progress.failed_chunks == 1

    def test_stop_on_error_leaves_remaining_chunks_pending(self, scheduler, make_chunk):
        pid = scheduler.create_pipeline(
            "proj-1", "Strict", "prompt",
            [make_chunk("bad", max_retries=0), make_chunk("good")],
            PipelineConfig(stop_on_error=True),
        )

        progress = scheduler.run_pipeline(
            pid,
            lambda c: succeed(c) if c.key == "good" else {"success": False, "errors": ["x"]},
        )

        assert progress.status == PipelineStatus.FAILED
        statuses = {c.key: c.status for c in scheduler.get_pipeline_chunks(pid)}
        assert statuses == {"bad": ChunkStatus.FAILED, "good": ChunkStatus.PENDING}

        assert scheduler.resume_pipeline(pid) is True
        assert scheduler.get_pipeline(pid).status == PipelineStatus.RUNNING

    def test_higher_priority_chunks_run_first(self, scheduler, make_chunk):
        pid = scheduler.create_pipeline(
            "proj-1", "Priority", "prompt",
            [
                make_chunk("docs", type=ChunkType.DOCUMENTATION),
                make_chunk("arch", type=ChunkType.ARCHITECTURE),
                make_chunk("ui", type=ChunkType.COMPONENT),
            ],
        )
        order = []

        scheduler.run_pipeline(pid, lambda c: order.append(c.key) or succeed(c))

        assert order == ["arch", "ui", "docs"]

    def test_progress_callback_errors_are_ignored(self, scheduler, make_chunk):
        pid = scheduler.create_pipeline("proj-1", "Cb", "prompt", [make_chunk("a")])

        def on_progress(progress):
            raise RuntimeError("listener broke")

        progress = scheduler.run_pipeline(pid, succeed, on_progress=on_progress)

        assert progress.status == PipelineStatus.COMPLETED

    def test_completed_pipeline_is_not_rerun(self, scheduler, make_chunk):
        pid = scheduler.create_pipeline("proj-1", "Once", "prompt", [make_chunk("a")])
        scheduler.run_pipeline(pid, succeed)
        calls = []

        progress = scheduler.run_pipeline(pid, lambda c: calls.append(c) or succeed(c))

        assert calls == []
        assert progress.status == PipelineStatus.COMPLETED

    def test_empty_pipeline_completes(self, scheduler):
        pid = scheduler.create_pipeline("proj-1", "Empty", "prompt", [])

        progress = scheduler.run_pipeline(pid, succeed)

        assert progress.status == PipelineStatus.COMPLETED
        assert progress.progress_percent == 0

    def test_concurrent_run_of_same_pipeline_is_refused(self, scheduler, make_chunk):
        pid = scheduler.create_pipeline("proj-1", "Dup", "prompt", [make_chunk("a"), make_chunk("b")])
        nested_calls = []

        def executor(chunk):
            if chunk.key == "a":
                scheduler.run_pipeline(pid, lambda c: nested_calls.append(c) or succeed(c))
            return succeed(chunk)

        progress = scheduler.run_pipeline(pid, executor)

        assert nested_calls == []
        assert progress.status == PipelineStatus.COMPLETED

    def test_background_thread_runs_to_completion(self, scheduler, make_chunk):
        pid = scheduler.create_pipeline("proj-1", "Bg", "prompt", [make_chunk("a")])

        thread = scheduler.start_pipeline_thread(pid, succeed)
        thread.join(timeout=10)

        assert not thread.is_alive()
        assert scheduler.get_progress(pid).status == PipelineStatus.COMPLETED


class TestLifecycle:
    def test_cancel_skips_pending_chunks(self, scheduler, make_chunk):
        pid = scheduler.create_pipeline(
            "proj-1", "Cancel", "prompt", [make_chunk("a"), make_chunk("b")],
        )

        assert scheduler.cancel_pipeline(pid) is True

        pipeline = scheduler.get_pipeline(pid)
        assert pipeline.status == PipelineStatus.CANCELLED
        assert pipeline.completed_at is not None
        assert {c.status for c in scheduler.get_pipeline_chunks(pid)} == {ChunkStatus.SKIPPED}

        calls = []
        progress = scheduler.run_pipeline(pid, lambda c: calls.append(c) or succeed(c))
        assert calls == []
        assert progress.status == PipelineStatus.CANCELLED

    def test_cancel_during_round_stops_before_next_round(self, scheduler, make_chunk):
        pid = scheduler.create_pipeline(
            "proj-1", "Cancel", "prompt",
            [make_chunk("first"), make_chunk("second"), make_chunk("third")],
        )
        calls = []

        def executor(chunk):
            calls.append(chunk.key)
            scheduler.cancel_pipeline(pid)
            return succeed(chunk)

        progress = scheduler.run_pipeline(pid, executor)

        assert calls == ["first"]
        assert progress.status == PipelineStatus.CANCELLED
        statuses = {c.key: c.status for c in scheduler.get_pipeline_chunks(pid)}
        assert statuses == {
            "first": ChunkStatus.COMPLETED,
            "second": ChunkStatus.SKIPPED,
            "third": ChunkStatus.SKIPPED,
        }

    def test_pause_then_resume(self, scheduler, make_chunk):
        pid = scheduler.create_pipeline(
            "proj-1", "Pause", "prompt", [make_chunk("first"), make_chunk("second")],
        )
        calls = []

        def pausing_executor(chunk):
            calls.append(chunk.key)
            scheduler.pause_pipeline(pid)
            return succeed(chunk)

        progress = scheduler.run_pipeline(pid, pausing_executor)
        assert calls == ["first"]
        assert progress.status == PipelineStatus.PAUSED

        # Paused pipelines do not run until resumed
        scheduler.run_pipeline(pid, pausing_executor)
        assert calls == ["first"]

        assert scheduler.resume_pipeline(pid) is True
        progress = scheduler.run_pipeline(pid, succeed)
        assert progress.status == PipelineStatus.COMPLETED
        assert progress.completed_chunks == 2

    def test_invalid_transitions_return_false(self, scheduler, make_chunk):
        pid = scheduler.create_pipeline("proj-1", "T", "prompt", [make_chunk("a")])

        assert scheduler.resume_pipeline(pid) is False
        scheduler.run_pipeline(pid, succeed)
        assert scheduler.pause_pipeline(pid) is False
        assert scheduler.cancel_pipeline(pid) is False

    def test_unknown_pipeline(self, scheduler):
        assert scheduler.get_progress("missing") is None
        with pytest.raises(KeyError):
            scheduler.pause_pipeline("missing")
        with pytest.raises(KeyError):
            scheduler.run_pipeline("missing", succeed)


class ChunkListingHookStore(InMemoryChunkStore):
    """In-memory store that runs a one-shot hook the next time chunks are listed."""

    def __init__(self):
        super().__init__()
        self.on_list_chunks = None

    def get_pipeline_chunks(self, pipeline_id):
        hook, self.on_list_chunks = self.on_list_chunks, None
        if hook is not None:
            hook()
        return super().get_pipeline_chunks(pipeline_id)


class TestControlDuringRun:
    def test_cancel_while_progress_is_recomputed_is_kept(self, make_chunk):
        store = ChunkListingHookStore()
        scheduler = PipelineScheduler(store)
        pid = scheduler.create_pipeline(
            "proj-1", "Cancel", "prompt",
            [make_chunk("first"), make_chunk("second"), make_chunk("third")],
        )
        store.on_list_chunks = lambda: scheduler.cancel_pipeline(pid)

        progress = scheduler.run_pipeline(pid, succeed)

        assert progress.status == PipelineStatus.CANCELLED
        statuses = {c.key: c.status for c in scheduler.get_pipeline_chunks(pid)}
        assert statuses == {
            "first": ChunkStatus.COMPLETED,
            "second": ChunkStatus.SKIPPED,
            "third": ChunkStatus.SKIPPED,
        }

    def test_start_does_not_revive_cancelled_pipeline(self, scheduler, make_chunk):
        pid = scheduler.create_pipeline("proj-1", "Cancel", "prompt", [make_chunk("a")])
        scheduler.cancel_pipeline(pid)

        assert scheduler.start_pipeline(pid) is False
        assert scheduler.get_pipeline(pid).status == PipelineStatus.CANCELLED

    def test_failure_after_cancel_is_skipped_not_requeued(self, scheduler, make_chunk):
        pid = scheduler.create_pipeline(
            "proj-1", "Cancel", "prompt", [make_chunk("a"), make_chunk("b")],
        )

        def cancelling_executor(chunk):
            scheduler.cancel_pipeline(pid)
            return {"success": False, "errors": ["interrupted"]}

        progress = scheduler.run_pipeline(pid, cancelling_executor)

        assert progress.status == PipelineStatus.CANCELLED
        chunks = {c.key: c for c in scheduler.get_pipeline_chunks(pid)}
        assert chunks["a"].status == ChunkStatus.SKIPPED
        assert chunks["a"].retry_count == 0
        assert chunks["b"].status == ChunkStatus.SKIPPED

    def test_concurrent_cancel_from_another_thread(self, scheduler, make_chunk):
        pid = scheduler.create_pipeline(
            "proj-1", "Cancel", "prompt",
            [make_chunk(f"c{i}") for i in range(20)],
            config=PipelineConfig(parallelism=2),
        )
        started = threading.Event()

        def executor(chunk):
            started.set()
            return succeed(chunk)

        thread = scheduler.start_pipeline_thread(pid, executor)
        assert started.wait(timeout=10)
        scheduler.cancel_pipeline(pid)
        thread.join(timeout=10)

        assert not thread.is_alive()
        assert scheduler.get_progress(pid).status in (
            PipelineStatus.CANCELLED, PipelineStatus.COMPLETED,
        )
        statuses = {c.status for c in scheduler.get_pipeline_chunks(pid)}
        assert ChunkStatus.PENDING not in statuses
        assert ChunkStatus.IN_PROGRESS not in statuses

    def test_resume_while_run_is_stopping_continues_the_run(self, make_chunk):
        store = ChunkListingHookStore()
        scheduler = PipelineScheduler(store)
        pid = scheduler.create_pipeline(
            "proj-1", "Resume", "prompt", [make_chunk("first"), make_chunk("second")],
        )
        calls = []
        nested = []

        def pausing_executor(chunk):
            calls.append(chunk.key)
            if chunk.key == "first":
                scheduler.pause_pipeline(pid)
            return succeed(chunk)

        def resume_and_rerun():
            assert scheduler.resume_pipeline(pid) is True
            nested.append(scheduler.run_pipeline(pid, succeed))

        def arm_after_pause(progress):
            # Fires on the first chunk listing after the loop has seen the pause
            if progress.status == PipelineStatus.PAUSED:
                store.on_list_chunks = resume_and_rerun

        progress = scheduler.run_pipeline(pid, pausing_executor, on_progress=arm_after_pause)

        assert nested[0].status == PipelineStatus.RUNNING
        assert calls == ["first", "second"]
        assert progress.status == PipelineStatus.COMPLETED
        assert progress.completed_chunks == 2


class TestExecuteNextChunk:
    def test_steps_one_chunk_at_a_time(self, scheduler, make_chunk):
        pid = scheduler.create_pipeline(
            "proj-1", "Steps", "prompt",
            [make_chunk("a"), make_chunk("b", dependencies=["a"])],
        )

        first = scheduler.execute_next_chunk(pid, succeed)
        assert first.executed and first.success
        assert scheduler.get_progress(pid).progress_percent == 50

        second = scheduler.execute_next_chunk(pid, succeed)
        assert second.executed

        third = scheduler.execute_next_chunk(pid, succeed)
        assert third.executed is False
        assert scheduler.get_progress(pid).status == PipelineStatus.COMPLETED

    def test_step_on_deadlocked_pipeline_fails_it(self, scheduler, make_chunk):
        pid = scheduler.create_pipeline(
            "proj-1", "Stuck", "prompt", [make_chunk("a", dependencies=["ghost"])],
        )

        step = scheduler.execute_next_chunk(pid, succeed)

        assert step.executed is False
        assert scheduler.get_progress(pid).status == PipelineStatus.FAILED

    def test_current_task_reported_while_chunk_runs(self, scheduler, make_chunk):
        pid = scheduler.create_pipeline("proj-1", "Current", "prompt", [make_chunk("a")])
        seen = []

        def executor(chunk):
            seen.append(scheduler.get_progress(pid).current_task)
            return succeed(chunk)

        scheduler.execute_next_chunk(pid, executor)

        assert seen[0].title == "a"
        assert scheduler.get_progress(pid).current_task is None
