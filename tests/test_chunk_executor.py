"""Tests for CachedChunkExecutor and the generation client."""

from types import SimpleNamespace

import pytest

from src.llm.client import GenerationOutput, generate_completion
from src.pipeline.chunk_executor import CONTEXT_ACK, CachedChunkExecutor
from src.pipeline.chunk_store import build_chunk
from src.pipeline.schemas import ChunkStatus, ChunkType, PipelineConfig, PipelineStatus


class FakeGenerate:
    """Generation function recording its calls."""

    def __init__(self, text="line 1\nline 2\nline 3", fail=False):
        self.text = text
        self.fail = fail
        self.calls = []

    def __call__(self, system_prompt, messages, model):
        self.calls.append((system_prompt, messages, model))
        if self.fail:
            raise RuntimeError("backend unavailable")
        return GenerationOutput(text=self.text, input_tokens=40, output_tokens=60)


class TestCachedChunkExecutor:
    def test_success_reports_files_lines_tokens_and_output(self, scheduler, store, cache, make_chunk):
        generate = FakeGenerate()
        executor = CachedChunkExecutor(generate, cache, model="m", system_prompt="sys", store=store)
        pid = scheduler.create_pipeline(
            "proj-1", "Exec", "prompt",
            [make_chunk("ui", target_files=["src/App.tsx", "src/index.tsx"])],
        )

        progress = scheduler.run_pipeline(pid, executor)

        assert progress.status == PipelineStatus.COMPLETED
        chunk = scheduler.get_pipeline_chunks(pid)[0]
        assert chunk.files_created == ["src/App.tsx", "src/index.tsx"]
        assert chunk.output == generate.text
        assert chunk.actual_tokens == 100
        stats = scheduler.get_pipeline(pid).stats
        assert stats.total_tokens_used == 100
        assert stats.total_lines_generated == 3
        assert stats.total_files_generated == 2
        assert cache.get_stats().total_entries == 1

    def test_generation_failure_becomes_failed_result(self, cache, store, scheduler, make_chunk):
        executor = CachedChunkExecutor(FakeGenerate(fail=True), cache)
        pid = scheduler.create_pipeline("proj-1", "Fail", "prompt", [make_chunk("ui", max_retries=1)])

        progress = scheduler.run_pipeline(pid, executor)

        assert progress.status == PipelineStatus.FAILED
        chunk = scheduler.get_pipeline_chunks(pid)[0]
        assert chunk.status == ChunkStatus.FAILED
        assert chunk.retry_count == 1
        assert chunk.errors == ["backend unavailable"]
        assert cache.get_stats().total_entries == 0

    def test_context_files_form_shared_prefix(self, cache, make_chunk, scheduler):
        files = {"src/types.ts": "export type Id = string;\n" * 40}
        generate = FakeGenerate()
        executor = CachedChunkExecutor(generate, cache, read_file=files.get)
        pid = scheduler.create_pipeline(
            "proj-1", "Ctx", "prompt",
            [
                make_chunk("a", type=ChunkType.API, context_files=["src/types.ts"]),
                make_chunk("b", type=ChunkType.COMPONENT, context_files=["src/types.ts"]),
            ],
        )

        scheduler.run_pipeline(pid, executor)

        first_messages = generate.calls[0][1]
        assert first_messages[0].content.startswith("Project context:")
        assert "export type Id" in first_messages[0].content
        assert first_messages[1].content == CONTEXT_ACK
        stats = cache.get_stats()
        assert stats.total_hits == 1
        assert stats.total_misses == 1

    def test_missing_context_file_is_listed_by_name(self, cache, make_chunk):
        executor = CachedChunkExecutor(FakeGenerate(), cache, read_file=lambda path: None)
        chunk = make_chunk("ui", context_files=["README.md"])

        messages = executor.build_messages(build_chunk(chunk, "chunk-1", 1))

        assert messages[0].content == "Project context:\n\nFile: README.md"
        assert messages[-1].role == "user"
        assert messages[-1].content.startswith("Generate ui")

    def test_context_files_over_budget_are_listed_by_name(self, cache, make_chunk):
        files = {"a.ts": "a" * 700, "b.ts": "b" * 700}
        executor = CachedChunkExecutor(FakeGenerate(), cache, system_prompt="sys", read_file=files.get)
        chunk = build_chunk(make_chunk("ui", context_files=["a.ts", "b.ts"]), "chunk-1", 1)

        # ~206 tokens per file section; only the first fits in 300 minus the task
        messages = executor.build_messages(chunk, max_context_tokens=300)

        context = messages[0].content
        assert "a" * 700 in context
        assert "b" * 700 not in context
        assert "File: b.ts (omitted, over context budget)" in context

    def test_pipeline_config_sets_context_budget(self, scheduler, store, cache, make_chunk):
        files = {"a.ts": "a" * 700, "b.ts": "b" * 700}
        generate = FakeGenerate()
        executor = CachedChunkExecutor(
            generate, cache, system_prompt="sys", store=store, read_file=files.get,
        )
        pid = scheduler.create_pipeline(
            "proj-1", "Budget", "prompt",
            [make_chunk("ui", context_files=["a.ts", "b.ts"])],
            config=PipelineConfig(max_context_tokens=300),
        )

        scheduler.run_pipeline(pid, executor)

        context = generate.calls[0][1][0].content
        assert "a" * 700 in context
        assert "b" * 700 not in context


def _fake_client(*outcomes):
    """Anthropic-like client whose messages.create() yields the given outcomes."""
    calls = []
    queue = list(outcomes)

    def create(**kwargs):
        calls.append(kwargs)
        outcome = queue.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    client = SimpleNamespace(messages=SimpleNamespace(create=create))
    return client, calls


def _response(text):
    return SimpleNamespace(
        content=[SimpleNamespace(type="text", text=text)],
        usage=SimpleNamespace(input_tokens=12, output_tokens=34),
    )


class TestGenerateCompletion:
    def test_returns_text_and_usage(self):
        client, calls = _fake_client(_response("hello"))

        output = generate_completion(
            "sys", [{"role": "user", "content": "hi"}], model="m", client=client,
        )

        assert output == GenerationOutput(text="hello", input_tokens=12, output_tokens=34)
        assert calls[0]["system"] == "sys"
        assert calls[0]["messages"] == [{"role": "user", "content": "hi"}]

    def test_retries_transient_errors(self):
        client, calls = _fake_client(RuntimeError("overloaded"), _response("ok"))

        output = generate_completion("", [{"role": "user", "content": "hi"}], client=client, retry_delays=[0])

        assert output.text == "ok"
        assert len(calls) == 2
        assert "system" not in calls[0]

    def test_authentication_errors_are_not_retried(self):
        client, calls = _fake_client(RuntimeError("authentication_error: invalid x-api-key"))

        with pytest.raises(RuntimeError, match="not retrying"):
            generate_completion("", [{"role": "user", "content": "hi"}], client=client, retry_delays=[0, 0])

        assert len(calls) == 1

    def test_gives_up_after_retries(self):
        client, calls = _fake_client(RuntimeError("503"), RuntimeError("503"))

        with pytest.raises(RuntimeError, match="after 2 attempts"):
            generate_completion("", [{"role": "user", "content": "hi"}], client=client, retry_delays=[0])

    def test_missing_api_key(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)

        with pytest.raises(RuntimeError, match="ANTHROPIC_API_KEY"):
            generate_completion("", [{"role": "user", "content": "hi"}])
